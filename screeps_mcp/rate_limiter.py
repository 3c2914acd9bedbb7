"""Sliding-window rate limiting keyed by arbitrary strings."""

from __future__ import annotations

import time
from collections import deque
from typing import Callable

DEFAULT_WINDOW: float = 60.0
DEFAULT_MAX_REQUESTS: int = 100


class RateLimiter:
    """Counts admissions per key inside a trailing time window.

    Each key keeps the timestamps of its admitted calls, oldest first. A call
    is admitted while fewer than *max_requests* timestamps remain inside the
    window. Keys are fully independent.
    """

    def __init__(
        self,
        window: float = DEFAULT_WINDOW,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if window <= 0:
            raise ValueError("window must be positive")
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        self.window = window
        self.max_requests = max_requests
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}

    def _prune(self, stamps: deque[float], now: float) -> None:
        window_start = now - self.window
        while stamps and stamps[0] <= window_start:
            stamps.popleft()

    def allow(self, key: str) -> bool:
        """Admit one call for *key* if its window has room."""
        now = self._clock()
        stamps = self._requests.setdefault(key, deque())
        self._prune(stamps, now)
        if len(stamps) >= self.max_requests:
            return False
        stamps.append(now)
        return True

    def cleanup(self) -> None:
        """Drop keys with no admissions left inside the window."""
        now = self._clock()
        for key in list(self._requests):
            stamps = self._requests[key]
            self._prune(stamps, now)
            if not stamps:
                del self._requests[key]

    def tracked_keys(self) -> list[str]:
        return list(self._requests)
