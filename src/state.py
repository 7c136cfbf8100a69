"""Shared operator state - thread-safe singleton for clients and the dispatcher."""

import logging
import threading
from dataclasses import dataclass, field

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from dispatcher import Dispatcher
from metrics import PrometheusMetrics
from ratelimit import get_token_pool
from resources.image import ImageService
from resources.image_import import ImageImportService
from skopeo import Skopeo
from sysctx import SysContext

logger = logging.getLogger(__name__)


@dataclass
class OperatorState:
    """Thread-safe operator state container.

    This class provides thread-safe access to shared operator resources:
    - Kubernetes API clients
    - Image and ImageImport services
    - The dispatcher and the thread running it

    All handlers should use the global `state` instance rather than
    creating their own clients.
    """

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _k8s_core_api: k8s_client.CoreV1Api | None = field(default=None, repr=False)
    _k8s_custom_api: k8s_client.CustomObjectsApi | None = field(default=None, repr=False)
    _k8s_configured: bool = field(default=False, repr=False)
    _image_service: ImageService | None = field(default=None, repr=False)
    _import_service: ImageImportService | None = field(default=None, repr=False)
    _dispatcher: Dispatcher | None = field(default=None, repr=False)
    _dispatcher_thread: threading.Thread | None = field(default=None, repr=False)
    _stop_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def _ensure_k8s_config(self) -> None:
        """Ensure Kubernetes configuration is loaded (must hold lock)."""
        if not self._k8s_configured:
            try:
                k8s_config.load_incluster_config()
            except k8s_config.ConfigException:
                k8s_config.load_kube_config()
            self._k8s_configured = True

    def _core_api(self) -> k8s_client.CoreV1Api:
        """Get or create the CoreV1Api client (must hold lock)."""
        self._ensure_k8s_config()
        if self._k8s_core_api is None:
            self._k8s_core_api = k8s_client.CoreV1Api()
        return self._k8s_core_api

    def _custom_api(self) -> k8s_client.CustomObjectsApi:
        """Get or create the CustomObjectsApi client (must hold lock)."""
        self._ensure_k8s_config()
        if self._k8s_custom_api is None:
            self._k8s_custom_api = k8s_client.CustomObjectsApi()
        return self._k8s_custom_api

    def _ensure_services(self) -> tuple[ImageService, ImageImportService, Dispatcher]:
        """Build services and dispatcher on first use (must hold lock)."""
        if (
            self._image_service is not None
            and self._import_service is not None
            and self._dispatcher is not None
        ):
            return self._image_service, self._import_service, self._dispatcher

        metrics = PrometheusMetrics()
        skopeo = Skopeo()
        sysctx = SysContext(self._core_api(), skopeo=skopeo, metrics=metrics)
        image_service = ImageService(self._custom_api(), sysctx, skopeo, metrics)
        import_service = ImageImportService(self._custom_api())
        dispatcher = Dispatcher(
            image_service,
            import_service,
            token_pool=get_token_pool(),
            metrics=metrics,
        )
        self._image_service = image_service
        self._import_service = import_service
        self._dispatcher = dispatcher
        return image_service, import_service, dispatcher

    def get_image_service(self) -> ImageService:
        """Get or create the Image service (thread-safe)."""
        with self._lock:
            image_service, _, _ = self._ensure_services()
            return image_service

    def get_import_service(self) -> ImageImportService:
        """Get or create the ImageImport service (thread-safe)."""
        with self._lock:
            _, import_service, _ = self._ensure_services()
            return import_service

    def start_dispatcher(self) -> None:
        """Run the dispatcher in a background thread (thread-safe)."""
        with self._lock:
            _, _, dispatcher = self._ensure_services()
            if self._dispatcher_thread is not None:
                return
            self._stop_event.clear()
            self._dispatcher_thread = threading.Thread(
                target=dispatcher.run,
                args=(self._stop_event,),
                name="image-controller",
                daemon=True,
            )
            self._dispatcher_thread.start()
            logger.info("Image dispatcher started")

    def close(self, timeout: float | None = None) -> None:
        """Stop the dispatcher, waiting for running syncs to finish."""
        with self._lock:
            thread = self._dispatcher_thread
            self._dispatcher_thread = None
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout)
        if thread.is_alive():
            logger.warning("Image dispatcher did not stop within %ss", timeout)


# Global operator state singleton
state = OperatorState()


# Convenience functions
def get_image_service() -> ImageService:
    """Get the shared Image service."""
    return state.get_image_service()


def get_import_service() -> ImageImportService:
    """Get the shared ImageImport service."""
    return state.get_import_service()
