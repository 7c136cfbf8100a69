"""Routing of watch events for Images and ImageImports onto reconcile keys."""

import abc
import logging
import threading
from collections.abc import Mapping
from typing import Any

from constants import IMAGE_IMPORT_KIND, IMAGE_KIND
from models import ReconcileKey
from workqueue import ReconcileQueue

logger = logging.getLogger(__name__)


class ResourceEventListener(abc.ABC):
    """Receives add, update and delete notifications for watched objects."""

    @abc.abstractmethod
    def on_add(self, obj: Mapping[str, Any]) -> None: ...

    @abc.abstractmethod
    def on_update(self, obj: Mapping[str, Any]) -> None: ...

    @abc.abstractmethod
    def on_delete(self, obj: Mapping[str, Any]) -> None: ...


class ResourceInformer:
    """Fans watch events of one resource kind out to registered listeners.

    Kopf event handlers feed handle_event(); a listener failing is logged
    and does not prevent the others from being notified.

    Updates that leave metadata.generation unchanged only touched status or
    metadata, such as the operator's own status writes, and are dropped.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._listeners: list[ResourceEventListener] = []
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def add_event_handler(self, listener: ResourceEventListener) -> None:
        self._listeners.append(listener)

    def handle_event(self, event_type: str | None, body: Mapping[str, Any]) -> None:
        """Dispatch a raw watch event.

        Args:
            event_type: "ADDED", "MODIFIED", "DELETED", or None for objects
                seen during the initial listing
            body: The object as received from the API
        """
        if not self._observe(event_type, body):
            logger.debug("Skipping %s %s event without spec change", self.kind, event_type)
            return

        for listener in self._listeners:
            try:
                if event_type == "DELETED":
                    listener.on_delete(body)
                elif event_type == "MODIFIED":
                    listener.on_update(body)
                else:
                    listener.on_add(body)
            except Exception as e:
                logger.error(f"Listener {listener!r} failed on {self.kind} event: {e}")

    def _observe(self, event_type: str | None, body: Mapping[str, Any]) -> bool:
        """Track the generation of body; False for updates that did not change it."""
        meta = body.get("metadata") or {}
        identity = meta.get("uid") or "/".join(_metadata(body))
        generation = meta.get("generation")

        with self._lock:
            if event_type == "DELETED":
                self._generations.pop(identity, None)
                return True
            if generation is None:
                return True
            previous = self._generations.get(identity)
            self._generations[identity] = generation
        return not (event_type == "MODIFIED" and previous == generation)


def _metadata(obj: Mapping[str, Any]) -> tuple[str, str]:
    meta = obj.get("metadata") or {}
    return meta.get("namespace", ""), meta.get("name", "")


class EventRouter(ResourceEventListener):
    """Turns every Image or ImageImport notification into one queue key.

    ImageImport objects are never processed here; they only tell which Image
    needs reconciling.
    """

    def __init__(self, queue: ReconcileQueue) -> None:
        self._queue = queue

    def key_for(self, obj: Mapping[str, Any]) -> ReconcileKey | None:
        """Derive the reconcile key for an object, None if it has none."""
        kind = obj.get("kind")
        namespace, name = _metadata(obj)

        if kind == IMAGE_KIND:
            if not namespace or not name:
                logger.error("Image event without namespace or name: %s", obj.get("metadata"))
                return None
            return ReconcileKey(namespace=namespace, name=name)

        if kind == IMAGE_IMPORT_KIND:
            target = (obj.get("spec") or {}).get("targetImage", "")
            if not namespace or not target:
                logger.error(
                    "ImageImport %s/%s has no target image, ignoring", namespace, name
                )
                return None
            return ReconcileKey(namespace=namespace, name=target)

        logger.error("Received event for an unknown object type: %s", kind)
        return None

    def enqueue(self, obj: Mapping[str, Any]) -> None:
        key = self.key_for(obj)
        if key is None:
            return
        self._queue.add(str(key))

    def on_add(self, obj: Mapping[str, Any]) -> None:
        self.enqueue(obj)

    def on_update(self, obj: Mapping[str, Any]) -> None:
        self.enqueue(obj)

    def on_delete(self, obj: Mapping[str, Any]) -> None:
        self.enqueue(obj)
