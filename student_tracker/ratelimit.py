"""Fixed-window request limiting per actor."""

import math
import threading
import time
from typing import Callable, Dict, Tuple

from student_tracker.errors import RateLimited


class RateLimiter:
    """
    Allow ``limit`` requests per ``window`` seconds for each key.

    A limit of 0 disables limiting.
    """

    def __init__(self, limit: int, window: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (window start, requests in window)
        self._windows: Dict[str, Tuple[float, int]] = {}

    def _evict_expired(self, now: float) -> None:
        expired = [key for key, (start, _) in self._windows.items() if now - start >= self.window]
        for key in expired:
            del self._windows[key]

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    def check(self, key: str) -> None:
        """Count one request for ``key``; raise RateLimited when over the limit."""
        if self.limit <= 0:
            return
        now = self._clock()
        with self._lock:
            self._evict_expired(now)
            start, count = self._windows.get(key, (now, 0))
            if now - start >= self.window:
                start, count = now, 0
            if count >= self.limit:
                retry_after = max(1, math.ceil(self.window - (now - start)))
                raise RateLimited(
                    f"Rate limit exceeded. Please wait {retry_after} seconds and try again.",
                    retry_after=retry_after,
                )
            self._windows[key] = (start, count + 1)
