"""
Sliding-window rate limiter for exchange calls.

ccxt throttles itself when `enableRateLimit` is set; pybit does not, so the
Bybit client gates its calls through these limiters.
"""

from __future__ import annotations

import threading
import time
from collections import deque


class RateLimiter:
    """
    Thread-safe limiter allowing `max_calls` per `period` seconds.

    acquire() blocks until a slot frees up or the timeout expires.
    """

    def __init__(self, max_calls: int, period: float = 1.0):
        self.max_calls = max_calls
        self.period = period
        self._lock = threading.Lock()
        self._call_times: deque = deque()

    def _prune(self, now: float) -> None:
        cutoff = now - self.period
        while self._call_times and self._call_times[0] < cutoff:
            self._call_times.popleft()

    def acquire(self, timeout: float | None = None) -> bool:
        """
        Acquire permission to make a call.

        Args:
            timeout: Maximum time to wait in seconds (None = wait forever)

        Returns:
            True if acquired, False if timed out
        """
        start_time = time.monotonic()

        while True:
            with self._lock:
                now = time.monotonic()
                self._prune(now)
                if len(self._call_times) < self.max_calls:
                    self._call_times.append(now)
                    return True
                wait_time = self._call_times[0] + self.period - now

            if timeout is not None:
                elapsed = time.monotonic() - start_time
                if elapsed >= timeout:
                    return False
                wait_time = min(wait_time, timeout - elapsed)

            time.sleep(min(max(wait_time, 0.001), 0.1))

    @property
    def available_slots(self) -> int:
        """Number of calls that could be made right now."""
        with self._lock:
            self._prune(time.monotonic())
            return max(0, self.max_calls - len(self._call_times))


def create_bybit_limiters() -> dict[str, RateLimiter]:
    """
    Limiters sized below Bybit V5 limits.

    - Private account/position endpoints: 50/s per key, we use 40/s
    - Order create/cancel: 10/s per symbol group, we use 8/s
    """
    return {
        "private": RateLimiter(max_calls=40, period=1.0),
        "orders": RateLimiter(max_calls=8, period=1.0),
    }
