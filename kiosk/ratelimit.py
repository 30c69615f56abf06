"""Fixed-window request counter keyed by source address."""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from kiosk.errors import RateLimited

_PURGE_THRESHOLD = 1000


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allow *limit* hits per *window* seconds for each key.

    The counter resets when the window elapses; it is not a sliding window.
    """

    def __init__(
        self,
        limit: int,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window = window
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> None:
        """Count one request for *key*; raise :class:`RateLimited` past the limit."""
        now = self._clock()
        with self._lock:
            w = self._windows.get(key)
            if w is None or now >= w.reset_at:
                w = _Window(count=1, reset_at=now + self.window)
                self._windows[key] = w
            else:
                w.count += 1

            if len(self._windows) > _PURGE_THRESHOLD:
                self._purge_locked(now)

            if w.count > self.limit:
                retry_after = max(1, math.ceil(w.reset_at - now))
                raise RateLimited(retry_after=retry_after)

    def remaining(self, key: str) -> int:
        now = self._clock()
        with self._lock:
            w = self._windows.get(key)
            if w is None or now >= w.reset_at:
                return self.limit
            return max(0, self.limit - w.count)

    def purge(self) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, w in self._windows.items() if now >= w.reset_at]
        for k in expired:
            del self._windows[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)
