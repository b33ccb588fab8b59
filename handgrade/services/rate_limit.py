"""
In-process rate limiting for the grading endpoints.

Process-local only: each worker process keeps its own windows.
"""
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60.0


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[int] = None


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per identifier in any ``window_seconds`` span."""

    def __init__(self, max_requests: int, window_seconds: float, name: str = "default"):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._hits = {}
        self._lock = threading.Lock()
        self._last_cleanup = time.time()

    def check(self, identifier: str, now: Optional[float] = None, record: bool = True) -> RateLimitResult:
        """Check ``identifier`` against the window; a request that fits is recorded unless ``record`` is False."""
        now = time.time() if now is None else now
        with self._lock:
            self._cleanup(now)
            hits = self._hits.setdefault(identifier, deque())
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()

            if len(hits) >= self.max_requests:
                reset_at = hits[0] + self.window_seconds
                retry_after = max(1, int(math.ceil(reset_at - now)))
                logger.info("Rate limit '%s' hit for %s (retry in %ds)", self.name, identifier, retry_after)
                return RateLimitResult(allowed=False, remaining=0, reset_at=reset_at, retry_after=retry_after)

            if not record:
                return RateLimitResult(
                    allowed=True,
                    remaining=self.max_requests - len(hits) - 1,
                    reset_at=(hits[0] if hits else now) + self.window_seconds,
                )
            hits.append(now)
            return RateLimitResult(
                allowed=True,
                remaining=self.max_requests - len(hits),
                reset_at=hits[0] + self.window_seconds,
            )

    def reset(self, identifier: str):
        with self._lock:
            self._hits.pop(identifier, None)

    def clear(self):
        with self._lock:
            self._hits.clear()

    def _cleanup(self, now: float):
        # Caller holds the lock
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        self._last_cleanup = now
        stale = [key for key, hits in self._hits.items()
                 if not hits or now - hits[-1] >= self.window_seconds]
        for key in stale:
            del self._hits[key]


class GradingRateGate:
    """The per-minute and burst limiters that guard grading requests."""

    def __init__(self, per_minute: SlidingWindowRateLimiter, burst: SlidingWindowRateLimiter):
        self.limiters = [burst, per_minute]
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, settings):
        return cls(
            SlidingWindowRateLimiter(settings.grading_rate_limit, settings.grading_rate_window_seconds,
                                     name="grading"),
            SlidingWindowRateLimiter(settings.grading_burst_limit, settings.grading_burst_window_seconds,
                                     name="grading-burst"),
        )

    def check(self, identifier: str, now: Optional[float] = None) -> RateLimitResult:
        """
        Return the first rejection, or the tightest admission.

        A request is recorded only once every limiter admits it.
        """
        now = time.time() if now is None else now
        with self._lock:
            for limiter in self.limiters:
                result = limiter.check(identifier, now=now, record=False)
                if not result.allowed:
                    return result
            admitted = [limiter.check(identifier, now=now) for limiter in self.limiters]
        return min(admitted, key=lambda r: r.remaining)

    def clear(self):
        for limiter in self.limiters:
            limiter.clear()
