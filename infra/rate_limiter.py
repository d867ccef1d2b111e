"""
Sliding-window rate limiter for the indicator provider.

TaAPI plans are metered as "N requests per 15 seconds". The limiter keeps the
timestamps of requests inside the window; when the window is full the caller
blocks until the oldest request leaves it, plus a small safety buffer.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStats:
    """Statistics for rate limit monitoring"""
    total_requests: int = 0
    blocked_requests: int = 0
    total_wait_time_ms: float = 0.0
    max_wait_time_ms: float = 0.0

    def record_wait(self, wait_time_seconds: float) -> None:
        self.total_requests += 1
        if wait_time_seconds > 0:
            self.blocked_requests += 1
            wait_ms = wait_time_seconds * 1000.0
            self.total_wait_time_ms += wait_ms
            self.max_wait_time_ms = max(self.max_wait_time_ms, wait_ms)

    def blocked_pct(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.blocked_requests / self.total_requests) * 100.0


class SlidingWindowRateLimiter:
    """
    Blocking limiter: at most ``max_requests`` acquisitions per ``window_seconds``.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=15)
        limiter.acquire("taapi:bulk")
        # ... make API call ...
    """

    def __init__(
        self,
        max_requests: int = 1,
        window_seconds: float = 15.0,
        buffer_seconds: float = 0.1,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        if max_requests < 1:
            raise ValueError(f"max_requests must be >= 1, got {max_requests}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be > 0, got {window_seconds}")

        self.max_requests = int(max_requests)
        self.window_seconds = float(window_seconds)
        self.buffer_seconds = float(buffer_seconds)
        self._clock = clock or time.monotonic
        self._sleep = sleep or time.sleep
        self._timestamps: Deque[float] = deque()
        self._stats = RateLimitStats()
        self._lock = Lock()

        logger.info(
            f"Initialized SlidingWindowRateLimiter: {self.max_requests} req / {self.window_seconds:.0f}s"
        )

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_seconds:
            self._timestamps.popleft()

    def wait_time(self) -> float:
        """Seconds until a slot is free (0 if one is free now)."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._timestamps) < self.max_requests:
                return 0.0
            return self.window_seconds - (now - self._timestamps[0]) + self.buffer_seconds

    def acquire(self, name: str = "request") -> float:
        """
        Block until a request may be sent, then record it.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    self._stats.record_wait(waited)
                    return waited
                wait = self.window_seconds - (now - self._timestamps[0]) + self.buffer_seconds

            if wait > 1.0:
                logger.warning(f"Rate limit throttle: {name} waiting {wait:.2f}s")
            elif wait > 0.1:
                logger.info(f"Rate limit pause: {name} waiting {wait:.3f}s")

            # Sleep outside the lock
            self._sleep(wait)
            waited += wait

    def in_window(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps)

    def get_stats(self) -> Dict:
        with self._lock:
            stats = self._stats
            return {
                "total_requests": stats.total_requests,
                "blocked_requests": stats.blocked_requests,
                "blocked_pct": stats.blocked_pct(),
                "total_wait_time_ms": stats.total_wait_time_ms,
                "max_wait_time_ms": stats.max_wait_time_ms,
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
            }

    def reset_stats(self) -> None:
        """Reset statistics (useful for testing)"""
        with self._lock:
            self._stats = RateLimitStats()
