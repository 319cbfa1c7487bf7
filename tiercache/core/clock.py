"""
Clock abstraction.

Every TTL and latency computation in the cache reads time through a
``Clock`` so tests can step time deterministically.
"""

import threading
import time


class Clock:
    """Monotonic wall clock in seconds."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Move time forward and return the new reading."""
        if seconds < 0:
            raise ValueError("Clock cannot move backwards")
        with self._lock:
            self._now += seconds
            return self._now

    def set(self, value: float) -> None:
        with self._lock:
            self._now = value


system_clock = Clock()
