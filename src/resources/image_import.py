"""ImageImport requests: creation and event wiring."""

import logging
from typing import Any

from kubernetes.client import CustomObjectsApi

from constants import API_GROUP, API_VERSION, IMAGE_IMPORT_KIND, IMAGE_IMPORT_PLURAL
from events import ResourceEventListener, ResourceInformer
from models import ImportOpts
from utils import parse_optional_bool

logger = logging.getLogger(__name__)


def build_import_opts(
    namespace: str,
    target_image: str,
    source: str = "",
    mirror: str | None = None,
    insecure: str | None = None,
) -> ImportOpts:
    """Build an import request from raw command line values.

    mirror and insecure accept "", "true" or "false"; empty means unset.

    Example: build_import_opts("ns1", "web", "quay.io/shop/web:1", mirror="true")
    """
    if not namespace:
        raise ValueError("namespace is required")
    if not target_image:
        raise ValueError("provide an image name")
    return ImportOpts(
        namespace=namespace,
        target_image=target_image,
        source=source,
        mirror=parse_optional_bool(mirror, "--mirror"),
        insecure=parse_optional_bool(insecure, "--insecure-source"),
    )


class ImageImportService:
    """Creates ImageImports and publishes their watch events."""

    def __init__(self, custom_api: CustomObjectsApi) -> None:
        self._custom_api = custom_api
        self.informer = ResourceInformer(IMAGE_IMPORT_KIND)

    def add_event_handler(self, listener: ResourceEventListener) -> None:
        self.informer.add_event_handler(listener)

    def new_import(self, opts: ImportOpts) -> dict[str, Any]:
        """Create an ImageImport for opts.

        Returns:
            The created object, with its generated name
        """
        body = {
            "apiVersion": f"{API_GROUP}/{API_VERSION}",
            "kind": IMAGE_IMPORT_KIND,
            "metadata": {
                "generateName": f"{opts.target_image}-",
                "namespace": opts.namespace,
            },
            "spec": opts.to_spec(),
        }
        created = self._custom_api.create_namespaced_custom_object(
            API_GROUP, API_VERSION, opts.namespace, IMAGE_IMPORT_PLURAL, body
        )
        logger.info(
            "New image import request created: %s/%s",
            opts.namespace,
            created["metadata"]["name"],
        )
        return created
