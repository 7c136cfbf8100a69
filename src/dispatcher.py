"""Dispatcher draining the reconcile queue into bounded concurrent syncs."""

import logging
import os
import threading
import time
from collections.abc import Mapping
from typing import Any, Protocol

from constants import DEFAULT_SYNC_TIMEOUT_SECONDS
from deadline import Deadline
from events import EventRouter, ResourceEventListener
from metrics import MetricsSink, NoopMetrics
from models import ReconcileKey, ResourceNotFoundError
from ratelimit import TokenPool
from workqueue import ReconcileQueue

logger = logging.getLogger(__name__)


class ImageSyncer(Protocol):
    """Synchronization capability the dispatcher drives.

    get() raises ResourceNotFoundError when the Image does not exist.
    """

    def get(self, deadline: Deadline, namespace: str, name: str) -> Mapping[str, Any]: ...

    def sync(self, deadline: Deadline, image: Mapping[str, Any]) -> None: ...

    def add_event_handler(self, listener: ResourceEventListener) -> None: ...


class EventSource(Protocol):
    """Anything that emits resource events, e.g. the ImageImport informer."""

    def add_event_handler(self, listener: ResourceEventListener) -> None: ...


class Dispatcher:
    """Runs image syncs for queued keys, at most token_pool.capacity at once.

    Keys for the same image are never processed concurrently because the
    queue only hands out a key again after done() was called for it.
    """

    def __init__(
        self,
        syncer: ImageSyncer,
        imports: EventSource,
        queue: ReconcileQueue | None = None,
        token_pool: TokenPool | None = None,
        metrics: MetricsSink | None = None,
        sync_timeout: float | None = None,
    ) -> None:
        """Initialize dispatcher and subscribe to both event sources.

        Args:
            syncer: Image synchronization capability
            imports: Source of ImageImport events
            queue: Reconcile queue, a new one by default
            token_pool: Concurrency bound, 10 tokens by default
            metrics: Metrics sink, no-op by default
            sync_timeout: Seconds allowed per image sync (default: from
                IMAGE_SYNC_TIMEOUT_SECONDS, else 60)
        """
        if sync_timeout is None:
            sync_timeout = float(
                os.environ.get("IMAGE_SYNC_TIMEOUT_SECONDS", str(DEFAULT_SYNC_TIMEOUT_SECONDS))
            )
        self._syncer = syncer
        self._queue = queue or ReconcileQueue()
        self._tokens = token_pool or TokenPool()
        self._metrics = metrics or NoopMetrics()
        self._sync_timeout = sync_timeout
        self._stop_event = threading.Event()

        self._running: set[threading.Thread] = set()
        self._running_cond = threading.Condition()

        router = EventRouter(self._queue)
        syncer.add_event_handler(router)
        imports.add_event_handler(router)

    @property
    def queue(self) -> ReconcileQueue:
        return self._queue

    @property
    def in_flight(self) -> int:
        """Number of sync workers currently running."""
        with self._running_cond:
            return len(self._running)

    def run(self, stop_event: threading.Event) -> None:
        """Process events until stop_event is set.

        On stop the queue is shut down and this call returns only once every
        already started sync has finished or hit its deadline.
        """
        self._stop_event = stop_event
        processor = threading.Thread(
            target=self._process_events, name="image-dispatcher", daemon=True
        )
        processor.start()

        stop_event.wait()

        logger.info("Stop requested, shutting down reconcile queue")
        self._queue.shut_down()
        processor.join()

    def _process_events(self) -> None:
        while True:
            key, shutdown = self._queue.get()
            if shutdown:
                logger.info("Queue closed, awaiting for running workers")
                self._wait_running()
                logger.info("All running workers finished")
                return
            if key is None:
                continue

            self._tokens.acquire()
            if self._stop_event.is_set():
                # Shutdown began while waiting for a token, leave the key be
                self._tokens.release()
                self._queue.done(key)
                continue

            worker = threading.Thread(
                target=self._work, args=(key,), name=f"image-sync-{key}", daemon=True
            )
            with self._running_cond:
                self._running.add(worker)
            worker.start()

    def _wait_running(self) -> None:
        with self._running_cond:
            while self._running:
                self._running_cond.wait()

    def _work(self, key: str) -> None:
        self._metrics.worker_started()
        try:
            self._process_key(key)
        finally:
            self._tokens.release()
            self._metrics.worker_finished()
            with self._running_cond:
                self._running.discard(threading.current_thread())
                self._running_cond.notify_all()

    def _process_key(self, key: str) -> None:
        try:
            parsed = ReconcileKey.parse(key)
        except ValueError as e:
            logger.error(f"Invalid event received {key}: {e}")
            self._queue.done(key)
            self._queue.forget(key)
            return

        logger.info(f"Received event for image: {key}")
        start_time = time.monotonic()
        try:
            self.sync_image(parsed.namespace, parsed.name)
        except Exception as e:
            logger.error(f"Error processing image {key}: {e}")
            self._metrics.reconcile(False, time.monotonic() - start_time)
            self._metrics.requeue()
            self._queue.done(key)
            self._queue.add_rate_limited(key)
            return

        self._metrics.reconcile(True, time.monotonic() - start_time)
        logger.info(f"Event for image {key} processed")
        self._queue.done(key)
        self._queue.forget(key)

    def sync_image(self, namespace: str, name: str) -> None:
        """Sync one image under the per image deadline.

        An image that no longer exists is not an error.
        """
        deadline = Deadline(timeout=self._sync_timeout, stop_event=self._stop_event)
        try:
            image = self._syncer.get(deadline, namespace, name)
        except ResourceNotFoundError:
            logger.debug("Image %s/%s is gone, nothing to sync", namespace, name)
            return
        self._syncer.sync(deadline, image)
