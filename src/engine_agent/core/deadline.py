from __future__ import annotations

import threading
import time
from typing import Optional

from engine_agent.core.errors import DeadlineExceeded


class Deadline:
    """A cancellable point in time that bounds a sequence of runtime calls.

    ``Deadline(None)`` never expires on its own but can still be cancelled.
    """

    def __init__(self, seconds: Optional[float] = None, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + max(0.0, float(seconds))
        self._cancelled = threading.Event()

    def remaining(self) -> Optional[float]:
        """Seconds left, ``0.0`` once expired or cancelled, None when unbounded."""
        if self._cancelled.is_set():
            return 0.0
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0.0

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def check(self, operation: str) -> None:
        if self._cancelled.is_set():
            raise DeadlineExceeded(f"{operation}: cancelled")
        if self.expired():
            raise DeadlineExceeded(f"{operation}: deadline exceeded")

    def sleep(self, seconds: float) -> None:
        """Sleep up to ``seconds``, waking early on cancel or expiry."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._cancelled.wait(seconds)

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining()!r}, cancelled={self.cancelled})"
