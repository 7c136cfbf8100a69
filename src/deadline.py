"""Deadlines bound to the operator's stop signal.

A Deadline is handed down from the dispatcher to every sync and transfer call
so that both the per-image timeout and operator shutdown interrupt work.
"""

import threading
import time

from models import DeadlineExceededError


class Deadline:
    """Expiry time plus the process-wide stop event."""

    def __init__(
        self,
        timeout: float | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Initialize deadline.

        Args:
            timeout: Seconds from now until expiry, None for no expiry
            stop_event: Event set when the operator shuts down
        """
        self._expires_at = time.monotonic() + timeout if timeout is not None else None
        self._stop_event = stop_event or threading.Event()

    def remaining(self) -> float | None:
        """Seconds left, never negative. None when there is no expiry."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._stop_event.is_set()

    def done(self) -> bool:
        """Check whether work bound to this deadline must stop."""
        return self.cancelled or self.expired

    def check(self) -> None:
        """Raise DeadlineExceededError if work must stop."""
        if self.cancelled:
            raise DeadlineExceededError("operator is shutting down")
        if self.expired:
            raise DeadlineExceededError("deadline exceeded")

    def api_timeout(self) -> float | None:
        """Raise if work must stop, else the seconds left for one API request.

        Suitable as the kubernetes client's _request_timeout argument.
        """
        self.check()
        return self.remaining()

    def child(self, timeout: float) -> "Deadline":
        """Derive a deadline that expires no later than this one."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        return Deadline(timeout=timeout, stop_event=self._stop_event)

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining()}, cancelled={self.cancelled})"
