"""
Rate limiting module for the Hive signer service.

Sliding window rate limiting per client key (normally the client IP).
State is per process.
"""

import math
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None

    def headers(self, now: Optional[float] = None) -> Dict[str, str]:
        """Standard ``RateLimit-*`` response headers."""
        now = time.time() if now is None else now
        out = {
            "RateLimit-Limit": str(self.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(max(0, math.ceil(self.reset_at - now))),
        }
        if self.retry_after is not None:
            out["Retry-After"] = str(math.ceil(self.retry_after))
        return out


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; one deque of hit timestamps per key.
    """

    def __init__(self, limit: int, window_seconds: int = 900,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            limit: Maximum requests per window
            window_seconds: Window size in seconds (default 15 minutes)
        """
        self._limit = max(1, limit)
        self._window = window_seconds
        self._clock = clock
        self._hits: Dict[str, deque] = defaultdict(deque)
        self._lock = threading.RLock()

    @property
    def limit(self) -> int:
        return self._limit

    def check(self, key: str) -> RateLimitResult:
        """
        Record a request for ``key`` if within the ceiling.

        Returns:
            RateLimitResult with allowed status and header metadata
        """
        now = self._clock()
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]

            while q and q[0] <= window_start:
                q.popleft()

            current_count = len(q)
            reset_at = (q[0] + self._window) if q else (now + self._window)

            if current_count >= self._limit:
                return RateLimitResult(
                    allowed=False,
                    limit=self._limit,
                    remaining=0,
                    reset_at=reset_at,
                    retry_after=max(0.0, q[0] + self._window - now),
                )

            q.append(now)

            return RateLimitResult(
                allowed=True,
                limit=self._limit,
                remaining=self._limit - current_count - 1,
                reset_at=reset_at,
            )

    def reset(self, key: Optional[str] = None) -> None:
        """
        Reset rate limit counters.

        Args:
            key: Specific key to reset, or None to reset all
        """
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()

    def cleanup_expired(self) -> int:
        """
        Drop expired hits and empty keys.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        window_start = now - self._window
        removed = 0

        with self._lock:
            empty_keys = []

            for key, q in self._hits.items():
                while q and q[0] <= window_start:
                    q.popleft()
                    removed += 1

                if not q:
                    empty_keys.append(key)

            for key in empty_keys:
                del self._hits[key]

        return removed
