"""
Per-provider token bucket rate limiting.

Each upstream provider gets its own bucket. A request consumes one token;
tokens refill continuously up to the burst limit.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger("memgate.rate_limiter")


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class RateLimiter:
    """Token bucket limiter keyed by provider name."""

    def __init__(
        self,
        max_burst: int = 15,
        refill_per_minute: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_burst: Bucket capacity, the largest burst allowed.
            refill_per_minute: Tokens added per minute.
            clock: Monotonic time source in seconds.
        """
        if max_burst <= 0 or refill_per_minute <= 0:
            raise ValueError("max_burst and refill_per_minute must be positive")
        self.max_burst = max_burst
        self.refill_per_minute = refill_per_minute
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def _refilled(self, key: str) -> _Bucket:
        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            bucket = self._buckets[key] = _Bucket(tokens=float(self.max_burst), last_refill=now)
            return bucket
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(self.max_burst, bucket.tokens + elapsed / 60.0 * self.refill_per_minute)
        bucket.last_refill = now
        return bucket

    def try_acquire(self, key: str) -> tuple[bool, float | None]:
        """
        Consume a token for key if one is available.

        Returns:
            (allowed, retry_after_seconds). retry_after is None when allowed.
        """
        with self._lock:
            bucket = self._refilled(key)
            if bucket.tokens >= 1:
                bucket.tokens -= 1
                return True, None
            deficit = 1 - bucket.tokens
            retry_after = math.ceil(deficit * 60.0 / self.refill_per_minute)
            logger.debug(f"Rate limit reached for {key}, retry in {retry_after}s")
            return False, float(retry_after)

    def remaining(self, key: str) -> int:
        """Whole tokens currently available for key."""
        with self._lock:
            return math.floor(self._refilled(key).tokens)
