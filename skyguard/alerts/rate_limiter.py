"""
rate_limiter.py — Sliding-window request limiter keyed by operation.

Each key keeps a deque of accepted-call timestamps. A call is admitted when
fewer than ``max_requests`` timestamps fall inside the trailing window; the
check and the append happen under one lock so two concurrent sends by the
same sender cannot both take the last slot.

Keys that have gone quiet are swept periodically so a long-running process
does not accumulate one deque per sender forever.

    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60)
    if not limiter.allow(f"send_alert:{user_id}"):
        raise RateLimitError(...)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """In-memory sliding-window limiter, safe to share across threads."""

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = 60.0,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()
        self._cleanup_interval = cleanup_interval
        self._last_cleanup = clock()

    def _evict(self, timestamps: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()

    def _sweep(self, now: float) -> None:
        """Drop keys whose windows are empty. Caller holds the lock."""
        if now - self._last_cleanup < self._cleanup_interval:
            return
        stale = []
        for key, timestamps in self._requests.items():
            self._evict(timestamps, now)
            if not timestamps:
                stale.append(key)
        for key in stale:
            del self._requests[key]
        self._last_cleanup = now
        if stale:
            logger.debug("Cleaned up %d rate limit entries", len(stale))

    def allow(self, key: str) -> bool:
        """Record a call for ``key`` if the window has room."""
        with self._lock:
            now = self._clock()
            timestamps = self._requests[key]
            self._evict(timestamps, now)

            if len(timestamps) >= self.max_requests:
                logger.warning("Rate limit exceeded for key: %s", key)
                return False

            timestamps.append(now)
            self._sweep(now)
            return True

    def remaining(self, key: str) -> int:
        with self._lock:
            timestamps = self._requests.get(key)
            if not timestamps:
                return self.max_requests
            self._evict(timestamps, self._clock())
            return max(0, self.max_requests - len(timestamps))

    def retry_after(self, key: str) -> float:
        """Seconds until the oldest call in the window expires (0 if open)."""
        with self._lock:
            timestamps = self._requests.get(key)
            if not timestamps:
                return 0.0
            now = self._clock()
            self._evict(timestamps, now)
            if len(timestamps) < self.max_requests:
                return 0.0
            return max(0.0, timestamps[0] + self.window_seconds - now)

    def reset(self, key: str) -> None:
        with self._lock:
            self._requests.pop(key, None)
