"""Tests for token bucket, sliding window and composite rate limiting."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeClock
from provider_broker.domain.enums import RateLimitAlgorithm
from provider_broker.domain.value_objects import RateLimitConfig
from provider_broker.shared.resilience.rate_limiter import (
    CompositeRateLimiter,
    RateLimiter,
    SlidingWindow,
    TokenBucket,
    _KeyedLimiter,
)


# ═══════════════════════════════════════════════════════════════
#  RateLimitConfig
# ═══════════════════════════════════════════════════════════════
class TestRateLimitConfig:
    def test_helpers(self) -> None:
        assert RateLimitConfig.per_minute(30) == RateLimitConfig(capacity=30, window_seconds=60.0)
        assert RateLimitConfig.per_hour(100).window_seconds == 3600.0
        assert RateLimitConfig(capacity=0).unlimited
        assert RateLimitConfig(capacity=60, window_seconds=60).refill_per_second == 1.0

    def test_rejects_non_positive_window(self) -> None:
        with pytest.raises(ValueError):
            RateLimitConfig(capacity=10, window_seconds=0)


# ═══════════════════════════════════════════════════════════════
#  TokenBucket
# ═══════════════════════════════════════════════════════════════
class TestTokenBucket:
    def test_burst_up_to_capacity_then_rejects(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=3, window_seconds=60), clock=clock)
        assert [bucket.try_acquire("k") for _ in range(4)] == [True, True, True, False]

    def test_refills_with_elapsed_time(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=60, window_seconds=60), clock=clock)
        for _ in range(60):
            assert bucket.try_acquire("k")
        assert not bucket.try_acquire("k")
        clock.advance(1.0)  # one token per second
        assert bucket.try_acquire("k")
        assert not bucket.try_acquire("k")

    def test_tokens_never_exceed_capacity(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=5, window_seconds=5), clock=clock)
        bucket.try_acquire("k")
        clock.advance(10_000)
        assert bucket.get_stats("k")["tokens_available"] == 5
        bucket.refund("k", tokens=10)
        assert bucket.get_stats("k")["tokens_available"] == 5

    def test_tokens_never_negative(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=2, window_seconds=60), clock=clock)
        assert not bucket.try_acquire("k", tokens=3)
        assert bucket.get_stats("k")["tokens_available"] == 2

    def test_keys_are_independent(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        assert bucket.try_acquire("a")
        assert not bucket.try_acquire("a")
        assert bucket.try_acquire("b")

    def test_per_key_override(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        bucket.configure("wide", RateLimitConfig(capacity=3))
        assert sum(bucket.try_acquire("wide") for _ in range(5)) == 3
        assert sum(bucket.try_acquire("narrow") for _ in range(5)) == 1

    def test_unlimited_always_admits(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=0), clock=clock)
        assert all(bucket.try_acquire("k") for _ in range(1000))
        assert bucket.retry_after("k") == 0.0

    def test_refund_restores_token(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        assert bucket.try_acquire("k")
        bucket.refund("k")
        assert bucket.try_acquire("k")

    def test_retry_after(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=2, window_seconds=60), clock=clock)
        bucket.try_acquire("k")
        bucket.try_acquire("k")
        assert bucket.retry_after("k") == pytest.approx(30.0)

    def test_stats_and_reset(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=5), clock=clock)
        bucket.try_acquire("k")
        bucket.try_acquire("k")
        stats = bucket.get_stats("k")
        assert stats["algorithm"] == "token_bucket"
        assert stats["request_count"] == 2
        assert stats["tokens_available"] == 3
        assert stats["capacity"] == 5
        bucket.reset("k")
        assert bucket.get_stats("k")["tokens_available"] == 5

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self) -> None:
        # Real clock: 20 tokens/s, so the next token arrives within ~50 ms.
        bucket = TokenBucket(RateLimitConfig(capacity=1, window_seconds=0.05))
        assert bucket.try_acquire("k")
        assert await bucket.acquire("k", timeout=1.0)

    @pytest.mark.asyncio
    async def test_acquire_times_out(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        assert bucket.try_acquire("k")
        assert await bucket.acquire("k", timeout=0.15) is False

    @pytest.mark.asyncio
    async def test_acquire_with_zero_timeout_is_single_try(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        assert await bucket.acquire("k", timeout=0)
        assert await bucket.acquire("k", timeout=0) is False

    @pytest.mark.asyncio
    async def test_cancelled_wait_consumes_nothing(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig(capacity=1), clock=clock)
        assert bucket.try_acquire("k")
        waiter = asyncio.create_task(bucket.acquire("k", timeout=30))
        await asyncio.sleep(0.05)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert bucket.get_stats("k")["request_count"] == 1


# ═══════════════════════════════════════════════════════════════
#  SlidingWindow
# ═══════════════════════════════════════════════════════════════
class TestSlidingWindow:
    def test_admits_up_to_capacity_in_window(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig(capacity=3, window_seconds=10), clock=clock)
        for _ in range(3):
            assert window.try_acquire("k")
            clock.advance(1)
        assert not window.try_acquire("k")

    def test_entries_age_out(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig(capacity=2, window_seconds=10), clock=clock)
        window.try_acquire("k")
        clock.advance(5)
        window.try_acquire("k")
        assert not window.try_acquire("k")
        clock.advance(5)  # first entry is now exactly window_seconds old
        assert window.try_acquire("k")
        assert not window.try_acquire("k")

    def test_retry_after_points_at_oldest_entry(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig(capacity=2, window_seconds=10), clock=clock)
        window.try_acquire("k")
        clock.advance(4)
        window.try_acquire("k")
        assert window.retry_after("k") == pytest.approx(6.0)

    def test_refund_drops_latest_entry(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig(capacity=1, window_seconds=10), clock=clock)
        assert window.try_acquire("k")
        window.refund("k")
        assert window.try_acquire("k")

    def test_stats(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig(capacity=5, window_seconds=30), clock=clock)
        window.try_acquire("k")
        assert window.get_stats("k") == {
            "algorithm": "sliding_window",
            "request_count": 1,
            "window_size": 5,
            "window_seconds": 30,
        }


# ═══════════════════════════════════════════════════════════════
#  Facade + composite
# ═══════════════════════════════════════════════════════════════
class TestRateLimiter:
    def test_selects_algorithm(self, clock: FakeClock) -> None:
        limiter = RateLimiter(RateLimitConfig(capacity=1), "sliding_window", clock=clock)
        assert limiter.algorithm is RateLimitAlgorithm.SLIDING_WINDOW
        assert limiter.try_acquire("k")
        assert not limiter.try_acquire("k")
        assert limiter.get_stats("k")["algorithm"] == "sliding_window"

    def test_rejects_unknown_algorithm(self) -> None:
        with pytest.raises(ValueError):
            RateLimiter(algorithm="leaky_bucket")

    def test_algorithms_must_implement_admission(self) -> None:
        class Partial(_KeyedLimiter):
            def retry_after(self, key: str, tokens: int = 1) -> float:
                return 0.0

        with pytest.raises(TypeError, match="try_acquire"):
            Partial()


class TestCompositeRateLimiter:
    @pytest.mark.asyncio
    async def test_all_limiters_must_admit(self, clock: FakeClock) -> None:
        composite = CompositeRateLimiter(clock=clock)
        composite.add_limiter("minute", RateLimitConfig(capacity=5, window_seconds=60))
        composite.add_limiter("hour", RateLimitConfig(capacity=2, window_seconds=3600))
        assert await composite.check_all_limits("k")
        assert await composite.check_all_limits("k")
        assert not await composite.check_all_limits("k")

    @pytest.mark.asyncio
    async def test_rejection_refunds_earlier_limiters(self, clock: FakeClock) -> None:
        composite = CompositeRateLimiter(clock=clock)
        composite.add_limiter("minute", RateLimitConfig(capacity=5, window_seconds=60))
        composite.add_limiter("hour", RateLimitConfig(capacity=1, window_seconds=3600))
        assert await composite.check_all_limits("k")
        assert not await composite.check_all_limits("k")
        stats = composite.get_all_stats("k")
        assert stats["minute"]["tokens_available"] == 4
        assert stats["minute"]["request_count"] == 1

    @pytest.mark.asyncio
    async def test_check_limit_by_name(self, clock: FakeClock) -> None:
        composite = CompositeRateLimiter(clock=clock)
        composite.add_limiter("minute", RateLimitConfig(capacity=1))
        assert await composite.check_limit("minute", "k")
        assert not await composite.check_limit("minute", "k")
        with pytest.raises(KeyError):
            await composite.check_limit("day", "k")

    @pytest.mark.asyncio
    async def test_reset_all(self, clock: FakeClock) -> None:
        composite = CompositeRateLimiter(clock=clock)
        composite.add_limiter("minute", RateLimitConfig(capacity=1))
        assert await composite.check_all_limits("k")
        composite.reset_all()
        assert await composite.check_all_limits("k")


class TestBudgets:
    def test_token_bucket_sixty_per_minute(self, clock: FakeClock) -> None:
        bucket = TokenBucket(RateLimitConfig.per_minute(60), clock=clock)
        results = [bucket.try_acquire("k") for _ in range(61)]
        assert results.count(True) == 60
        assert results[-1] is False

    def test_sliding_window_five_per_minute(self, clock: FakeClock) -> None:
        window = SlidingWindow(RateLimitConfig.per_minute(5), clock=clock)
        for _ in range(5):
            assert window.try_acquire("k")
            clock.advance(0.1)
        assert not window.try_acquire("k")
        clock.advance(60)
        assert window.try_acquire("k")
