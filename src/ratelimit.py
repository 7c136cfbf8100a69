"""Rate limiting for image reconciliation.

Two independent primitives:
- ItemExponentialBackoff decides how long a failing key waits before retry.
- TokenPool bounds how many syncs run at the same time.
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Generator

from constants import (
    BACKOFF_BASE_SECONDS,
    BACKOFF_MAX_SECONDS,
    DEFAULT_MAX_CONCURRENT_SYNCS,
)

logger = logging.getLogger(__name__)


class ItemExponentialBackoff:
    """Thread-safe per-key exponential failure backoff.

    Each call to when() for a key doubles the delay it returns, starting at
    base_delay and capped at max_delay. forget() resets the key.
    """

    def __init__(
        self,
        base_delay: float = BACKOFF_BASE_SECONDS,
        max_delay: float = BACKOFF_MAX_SECONDS,
    ) -> None:
        """Initialize backoff.

        Args:
            base_delay: Delay returned for the first failure, in seconds
            max_delay: Upper bound for any delay, in seconds
        """
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("require 0 < base_delay <= max_delay")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[str, int] = {}
        self._lock = threading.Lock()

    def when(self, key: str) -> float:
        """Record a failure for key and return how long it must wait."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1

        # Avoid float overflow for keys that failed many times
        if failures >= 64:
            return self._max_delay
        return min(self._base_delay * 2**failures, self._max_delay)

    def num_requeues(self, key: str) -> int:
        """Number of failures recorded for key since it was last forgotten."""
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: str) -> None:
        """Reset the failure count of key."""
        with self._lock:
            self._failures.pop(key, None)

    def __repr__(self) -> str:
        return (
            f"ItemExponentialBackoff(base_delay={self._base_delay}, "
            f"max_delay={self._max_delay})"
        )


class TokenPool:
    """Counting semaphore bounding concurrent sync workers.

    A token must be acquired before a unit of work starts and released
    exactly once when it finishes. Releasing more tokens than were acquired
    raises ValueError.
    """

    def __init__(self, capacity: int = DEFAULT_MAX_CONCURRENT_SYNCS) -> None:
        if capacity < 1:
            raise ValueError("token pool capacity must be at least 1")
        self._semaphore = threading.BoundedSemaphore(capacity)
        self._capacity = capacity
        self._in_use = 0
        self._lock = threading.Lock()

        logger.info("Token pool initialized: capacity=%d", capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def acquire(self, timeout: float | None = None) -> bool:
        """Take a token, blocking while none is free.

        Returns False only if timeout elapsed without a free token.
        """
        if not self._semaphore.acquire(timeout=timeout):
            return False
        with self._lock:
            self._in_use += 1
        return True

    def release(self) -> None:
        """Give a token back."""
        with self._lock:
            if self._in_use == 0:
                raise ValueError("token released more times than acquired")
            self._in_use -= 1
        self._semaphore.release()

    @contextmanager
    def slot(self) -> Generator[None, None, None]:
        """Hold a token for the duration of a block.

        Usage:
            with token_pool.slot():
                # run one sync
        """
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def __repr__(self) -> str:
        return f"TokenPool(capacity={self._capacity}, in_use={self.in_use})"


# Global token pool instance (initialized lazily)
_token_pool: TokenPool | None = None
_token_pool_lock = threading.Lock()


def get_token_pool() -> TokenPool:
    """Get or create the global token pool.

    Configuration via environment variables:
        IMAGE_MAX_CONCURRENT_SYNCS: Max concurrent image syncs (default: 10)
    """
    global _token_pool

    if _token_pool is None:
        with _token_pool_lock:
            # Double-check after acquiring lock
            if _token_pool is None:
                capacity = int(
                    os.environ.get(
                        "IMAGE_MAX_CONCURRENT_SYNCS", str(DEFAULT_MAX_CONCURRENT_SYNCS)
                    )
                )
                _token_pool = TokenPool(capacity=capacity)

    return _token_pool
