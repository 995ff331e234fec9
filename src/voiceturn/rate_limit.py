"""Process-wide admission control for reply generation."""

import threading
import time
from collections import deque
from typing import Callable, Deque

import structlog

logger = structlog.get_logger(__name__)


class RateLimiter:
    """
    Sliding-window limiter: at most `max_requests` admissions per
    `window_seconds`. Expired timestamps are evicted on every check.

    Shared by every call session in the process.
    """

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._timestamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        """Record an admission and return True, or return False when over budget."""
        with self._lock:
            now = self._clock()
            cutoff = now - self.window_seconds
            while self._timestamps and self._timestamps[0] < cutoff:
                self._timestamps.popleft()

            if len(self._timestamps) < self.max_requests:
                self._timestamps.append(now)
                return True

        logger.warning(
            "Rate limit exceeded",
            max_requests=self.max_requests,
            window_seconds=self.window_seconds,
        )
        return False

    @property
    def in_window(self) -> int:
        with self._lock:
            return len(self._timestamps)
