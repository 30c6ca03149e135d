"""
Tests for the token bucket rate limiter.
"""

import asyncio

import pytest

from whatsapp_pipeline.rate_limiter import RateLimitExceeded, TokenBucketRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def test_new_bucket_starts_full(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=10, bucket_size=5, clock=clock)
    assert limiter.get_available_tokens("sender") == 5


def test_try_acquire_until_empty(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=10, bucket_size=3, clock=clock)

    assert [limiter.try_acquire("sender") for _ in range(4)] == [True, True, True, False]


def test_refills_after_one_over_rate(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=10, bucket_size=1, clock=clock)
    assert limiter.try_acquire("sender") is True

    clock.advance(0.05)
    assert limiter.try_acquire("sender") is False

    clock.advance(0.06)
    assert limiter.try_acquire("sender") is True


def test_tokens_never_exceed_capacity(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=80, bucket_size=80, clock=clock)
    limiter.try_acquire("sender")

    clock.advance(3600)

    assert limiter.get_available_tokens("sender") == 80


def test_keys_are_independent(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=1, bucket_size=1, clock=clock)

    assert limiter.try_acquire("a") is True
    assert limiter.try_acquire("a") is False
    assert limiter.try_acquire("b") is True


def test_stale_buckets_are_evicted(clock):
    limiter = TokenBucketRateLimiter(tokens_per_second=1, cleanup_after_ms=1000, clock=clock)
    limiter.try_acquire("old")
    assert limiter.get_bucket_count() == 1

    clock.advance(2)
    limiter.try_acquire("new")

    assert limiter.get_bucket_count() == 1


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        TokenBucketRateLimiter(tokens_per_second=0)


def test_acquire_waits_for_refill():
    limiter = TokenBucketRateLimiter(tokens_per_second=50, bucket_size=1)

    async def run():
        await limiter.acquire("sender")
        await limiter.acquire("sender", max_wait_ms=1000)

    asyncio.run(run())
    assert limiter.get_available_tokens("sender") == 0


def test_acquire_raises_when_wait_budget_exhausted():
    limiter = TokenBucketRateLimiter(tokens_per_second=0.1, bucket_size=1)

    async def run():
        await limiter.acquire("sender")
        await limiter.acquire("sender", max_wait_ms=50)

    with pytest.raises(RateLimitExceeded) as exc_info:
        asyncio.run(run())

    assert exc_info.value.key == "sender"
    assert "sender" in str(exc_info.value)
    assert exc_info.value.elapsed_ms >= 50
