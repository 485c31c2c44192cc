from __future__ import annotations

import time
from typing import Callable, Dict, Tuple

LIMITED_PREFIXES = ("/api/source", "/api/episode", "/api/playback-token", "/api/stream/", "/api/transcode/")
LIMITED_ROUTES = ("/api/play", "/api/fixed-episode")


def is_rate_limited_route(path: str) -> bool:
    return path in LIMITED_ROUTES or path.startswith(LIMITED_PREFIXES)


class FixedWindowRateLimiter:
    """Counts hits per key in fixed windows; the first hit of a key opens its window."""

    def __init__(self, window_sec: float = 60.0, max_requests: int = 60, clock: Callable[[], float] = time.monotonic):
        self.window_sec = window_sec if window_sec > 0 else 60.0
        self.max_requests = max_requests if max_requests > 0 else 60
        self._clock = clock
        self._windows: Dict[str, Tuple[int, float]] = {}

    def hit(self, key: str) -> bool:
        """Record one request; True when ``key`` is over its limit."""
        key = key.strip() or "global"
        now = self._clock()
        count, reset_at = self._windows.get(key, (0, 0.0))
        if count == 0 or now >= reset_at:
            self._windows[key] = (1, now + self.window_sec)
            self._prune(now)
            return False
        count += 1
        self._windows[key] = (count, reset_at)
        return count > self.max_requests

    def _prune(self, now: float) -> None:
        if len(self._windows) < 1024:
            return
        for key in [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]:
            del self._windows[key]

    def reset(self) -> None:
        self._windows.clear()
