"""In-memory fixed-window rate limiting."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from keygate.errors import RateLimitExceeded


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a single :meth:`RateLimiter.hit`."""

    limit: int
    remaining: int
    reset_at: float
    allowed: bool

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }


class RateLimiter:
    """Fixed-window counter keyed by an arbitrary string.

    Every hit counts, including rejected ones, so a client hammering the
    endpoint stays limited until its window expires.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_ms: int = 60_000,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_ms < 1:
            raise ValueError("window_ms must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_ms / 1000.0
        self._clock = clock or time.time
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._next_sweep = self._clock() + self.window_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        """Drop expired windows; runs at most once per window length."""

        if now < self._next_sweep:
            return
        expired = [key for key, window in self._windows.items() if window.reset_at < now]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.window_seconds

    def hit(self, key: str) -> RateLimitStatus:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or window.reset_at < now:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window
            window.count += 1
            count, reset_at = window.count, window.reset_at
        return RateLimitStatus(
            limit=self.max_requests,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            allowed=count <= self.max_requests,
        )

    def check(self, key: str) -> RateLimitStatus:
        """Count a hit for *key*, raising :class:`RateLimitExceeded` when over."""

        status = self.hit(key)
        if not status.allowed:
            raise RateLimitExceeded(status.limit, status.reset_at)
        return status

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)


__all__ = ["RateLimitStatus", "RateLimiter"]
