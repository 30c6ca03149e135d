"""
Token bucket rate limiter for per-key (per-sender) send throughput.

Tokens are added at a fixed rate and each send consumes one, which allows
short bursts up to the bucket size while holding the long-term average rate.

State is in-memory and process-local: every running instance enforces its own
ceiling. Acceptable for webhook processing, where a single instance handles a
burst of sends from one sender.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict

from whatsapp_pipeline.metrics import record_rate_limit_wait

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """Raised when a token could not be acquired within the wait budget."""

    def __init__(self, key: str, elapsed_ms: int, max_wait_ms: int):
        self.key = key
        self.elapsed_ms = elapsed_ms
        self.max_wait_ms = max_wait_ms
        super().__init__(
            f"Rate limit exceeded for key: {key}. Could not acquire token within "
            f"{max_wait_ms}ms (waited {elapsed_ms}ms)"
        )


@dataclass
class _Bucket:
    tokens: float
    last_refill: float


class TokenBucketRateLimiter:
    def __init__(
        self,
        tokens_per_second: float = 80,
        bucket_size: float | None = None,
        cleanup_after_ms: int = 300_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if tokens_per_second <= 0:
            raise ValueError(f"tokens_per_second must be positive, got {tokens_per_second}")
        self.tokens_per_second = tokens_per_second
        self.bucket_size = bucket_size if bucket_size is not None else tokens_per_second
        self.cleanup_after_ms = cleanup_after_ms
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._last_cleanup = clock()

    def _refill(self, bucket: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(self.bucket_size, bucket.tokens + elapsed * self.tokens_per_second)
        bucket.last_refill = now

    def _get_bucket(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            # New keys start with a full bucket
            bucket = _Bucket(tokens=self.bucket_size, last_refill=now)
            self._buckets[key] = bucket
        else:
            self._refill(bucket, now)
        return bucket

    def _maybe_cleanup(self, now: float) -> None:
        window = self.cleanup_after_ms / 1000
        if now - self._last_cleanup < window:
            return
        self._last_cleanup = now
        cutoff = now - window
        stale = [key for key, bucket in self._buckets.items() if bucket.last_refill < cutoff]
        for key in stale:
            del self._buckets[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} stale rate limit bucket(s)")

    def try_acquire(self, key: str) -> bool:
        """Take one token without waiting. Returns False when rate limited."""
        now = self._clock()
        self._maybe_cleanup(now)
        bucket = self._get_bucket(key, now)
        if bucket.tokens >= 1:
            bucket.tokens -= 1
            return True
        return False

    async def acquire(self, key: str, max_wait_ms: int = 5000) -> None:
        """
        Take one token, sleeping until one is available.

        Raises:
            RateLimitExceeded: if no token became available within max_wait_ms
        """
        start = self._clock()
        waited = False

        while True:
            if self.try_acquire(key):
                if waited:
                    record_rate_limit_wait((self._clock() - start))
                return

            elapsed_ms = int((self._clock() - start) * 1000)
            if elapsed_ms >= max_wait_ms:
                logger.warning(f"Rate limit wait exhausted for key {key} after {elapsed_ms}ms")
                raise RateLimitExceeded(key, elapsed_ms, max_wait_ms)

            bucket = self._get_bucket(key, self._clock())
            tokens_needed = 1 - bucket.tokens
            wait_ms = math.ceil(tokens_needed / self.tokens_per_second * 1000)
            # Small buffer so the bucket has definitely refilled on wake-up
            sleep_ms = min(wait_ms + 10, max_wait_ms - elapsed_ms)
            waited = True
            await asyncio.sleep(sleep_ms / 1000)

    def get_available_tokens(self, key: str) -> int:
        """Whole tokens currently available for a key (testing/monitoring)."""
        bucket = self._get_bucket(key, self._clock())
        return math.floor(bucket.tokens)

    def get_bucket_count(self) -> int:
        return len(self._buckets)
