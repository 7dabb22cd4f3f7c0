"""
Completed-check counter for health reporting
"""

import threading
import time
from collections import deque
from typing import Callable, Deque

WINDOW_SECONDS = 3600.0


class CheckCounter:
    """Counts /check requests completed within the last hour"""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self.clock = clock
        self._stamps: Deque[float] = deque()
        self._lock = threading.Lock()

    def _prune(self, now: float):
        cutoff = now - WINDOW_SECONDS
        while self._stamps and self._stamps[0] <= cutoff:
            self._stamps.popleft()

    def increment(self):
        with self._lock:
            now = self.clock()
            self._prune(now)
            self._stamps.append(now)

    def count_last_hour(self) -> int:
        with self._lock:
            self._prune(self.clock())
            return len(self._stamps)
