"""Token bucket limiting how many sync jobs start per period."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class TokenBucket:
    """Thread-safe bucket holding up to ``capacity`` tokens.

    Tokens refill continuously at ``capacity / period_seconds`` per second.
    """

    def __init__(
        self,
        capacity: int,
        period_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity <= 0 or period_seconds <= 0:
            raise ValueError("capacity and period_seconds must be positive")
        self._capacity = float(capacity)
        self._rate = capacity / period_seconds
        self._clock = clock
        self._tokens = float(capacity)
        self._updated = clock()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Take one token if available."""
        with self._lock:
            self._refill()
            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return True
            return False

    def refund(self) -> None:
        """Return a token taken for work that was never started."""
        with self._lock:
            self._tokens = min(self._capacity, self._tokens + 1.0)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)
        self._updated = now


__all__ = ["TokenBucket"]
