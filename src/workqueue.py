"""De-duplicating, rate limited work queue keyed by "namespace/name".

A key lives in at most one of two places at a time from the worker's point
of view: queued (waiting for get()) or processing (handed out, not yet
done()). A key added while processing is remembered as dirty and queued
again once done() is called, so no key is ever processed twice at once.
"""

import heapq
import itertools
import logging
import threading
import time
from collections import deque

from ratelimit import ItemExponentialBackoff

logger = logging.getLogger(__name__)


class ReconcileQueue:
    """Thread-safe work queue with delayed and rate limited adds."""

    def __init__(self, rate_limiter: ItemExponentialBackoff | None = None) -> None:
        """Initialize queue.

        Args:
            rate_limiter: Backoff used by add_rate_limited. Defaults to 1s-60s.
        """
        self._rate_limiter = rate_limiter or ItemExponentialBackoff()
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._shutting_down = False

        # Delayed adds: heap of (ready_at, sequence, key) plus earliest ready_at per key
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._waiting_cond = threading.Condition()
        self._waiting_thread = threading.Thread(
            target=self._waiting_loop, name="reconcile-queue-delay", daemon=True
        )
        self._waiting_thread.start()

    # -------------------------------------------------------------------------
    # Immediate queue
    # -------------------------------------------------------------------------

    def add(self, key: str) -> None:
        """Enqueue key unless it is already waiting to be processed."""
        with self._cond:
            if self._shutting_down:
                return
            if key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> tuple[str | None, bool]:
        """Block until a key is available.

        Returns:
            Tuple of (key, shutdown). When shutdown is True the key is None
            and the caller must stop asking for work.
        """
        with self._cond:
            end = None if timeout is None else time.monotonic() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if end is None else end - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)

            if self._shutting_down:
                return None, True

            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key, False

    def done(self, key: str) -> None:
        """Mark key as no longer processing, requeueing it if it was re-added."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def processing(self) -> set[str]:
        """Snapshot of the keys currently handed out."""
        with self._cond:
            return set(self._processing)

    # -------------------------------------------------------------------------
    # Delayed and rate limited adds
    # -------------------------------------------------------------------------

    def add_after(self, key: str, delay: float) -> None:
        """Enqueue key once delay seconds have passed."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        ready_at = time.monotonic() + delay
        with self._waiting_cond:
            current = self._waiting_ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[key] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), key))
            self._waiting_cond.notify()

    def add_rate_limited(self, key: str) -> None:
        """Enqueue key after its exponential failure backoff."""
        delay = self._rate_limiter.when(key)
        logger.debug("Requeueing %s in %.1fs", key, delay)
        self.add_after(key, delay)

    def forget(self, key: str) -> None:
        """Reset the failure backoff for key."""
        self._rate_limiter.forget(key)

    def num_requeues(self, key: str) -> int:
        return self._rate_limiter.num_requeues(key)

    def _waiting_loop(self) -> None:
        while True:
            with self._waiting_cond:
                while True:
                    if self._shutting_down:
                        return
                    if not self._waiting:
                        self._waiting_cond.wait()
                        continue
                    ready_at, _, key = self._waiting[0]
                    wait = ready_at - time.monotonic()
                    if wait > 0:
                        self._waiting_cond.wait(wait)
                        continue
                    heapq.heappop(self._waiting)
                    # Stale entry, superseded by an earlier ready time
                    if self._waiting_ready_at.get(key) != ready_at:
                        continue
                    del self._waiting_ready_at[key]
                    break
            self.add(key)

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def shut_down(self) -> None:
        """Stop handing out keys and wake every blocked get()."""
        with self._cond:
            if self._shutting_down:
                return
            self._shutting_down = True
            pending = len(self._queue)
            self._cond.notify_all()
        with self._waiting_cond:
            delayed = len(self._waiting_ready_at)
            self._waiting_cond.notify_all()

        if pending or delayed:
            logger.info(
                "Queue shut down with %d queued and %d delayed keys left unprocessed",
                pending,
                delayed,
            )
