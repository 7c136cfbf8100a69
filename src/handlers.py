"""Kopf handlers for the Image and ImageImport CRDs."""

import logging
import os
import sys
from pathlib import Path
from typing import Any

# Add src directory to path for imports when run as script by Kopf
_src_dir = Path(__file__).parent
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

import kopf
from prometheus_client import start_http_server

from constants import API_GROUP, API_VERSION, IMAGE_IMPORT_PLURAL, IMAGE_PLURAL
from metrics import init_metrics, set_operator_info
from state import get_image_service, get_import_service, state

logger = logging.getLogger(__name__)

OPERATOR_VERSION = "0.1.0"

# Seconds to wait for running syncs on shutdown, slightly above the sync timeout
SHUTDOWN_GRACE_SECONDS = 90.0


def _watch_scope(settings: kopf.OperatorSettings) -> str:
    """Restrict watching to WATCH_NAMESPACE, or watch the whole cluster if unset."""
    namespace = os.environ.get("WATCH_NAMESPACE", "")
    if namespace:
        settings.watching.namespaces = [namespace]
    else:
        settings.watching.clusterwide = True
    return namespace


def _serve_metrics() -> None:
    port = int(os.environ.get("METRICS_PORT", "9090"))
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning("Metrics endpoint unavailable on port %d: %s", port, e)
        return
    logger.info("Serving metrics on port %d", port)


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure operator settings and start the dispatcher."""
    # Only warnings and errors become Kubernetes events
    settings.posting.level = logging.WARNING
    watch_namespace = _watch_scope(settings)

    _serve_metrics()
    init_metrics()
    set_operator_info(OPERATOR_VERSION, watch_namespace)

    state.start_dispatcher()
    logger.info("Image operator started (version %s)", OPERATOR_VERSION)


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    """Stop the dispatcher on operator shutdown."""
    logger.info("Image operator shutting down")
    state.close(timeout=SHUTDOWN_GRACE_SECONDS)


@kopf.on.event(API_GROUP, API_VERSION, IMAGE_PLURAL)
def image_event(event: dict[str, Any], body: kopf.Body, **_: Any) -> None:
    """Feed Image watch events to the Image informer."""
    get_image_service().informer.handle_event(event.get("type"), body)


@kopf.on.event(API_GROUP, API_VERSION, IMAGE_IMPORT_PLURAL)
def image_import_event(event: dict[str, Any], body: kopf.Body, **_: Any) -> None:
    """Feed ImageImport watch events to the ImageImport informer."""
    get_import_service().informer.handle_event(event.get("type"), body)
