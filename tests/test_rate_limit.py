"""Tests for the fixed-window RateLimiter."""

from __future__ import annotations

import pytest

from llm_broker.errors import RateLimited
from llm_broker.rate_limit import RateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, clock):
        limiter = RateLimiter(3, clock=clock)
        for _ in range(3):
            await limiter.check("acct-1")

        clock.now = 10.0
        with pytest.raises(RateLimited) as exc_info:
            await limiter.check("acct-1")

        assert exc_info.value.retry_after_seconds == 51
        assert exc_info.value.http_status == 429
        assert exc_info.value.details["limit"] == 3

    @pytest.mark.asyncio
    async def test_window_resets(self, clock):
        limiter = RateLimiter(1, clock=clock)
        await limiter.check("acct-1")
        with pytest.raises(RateLimited):
            await limiter.check("acct-1")

        clock.now = 60.0
        await limiter.check("acct-1")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock):
        limiter = RateLimiter(1, clock=clock)
        await limiter.check("a")
        await limiter.check("b")
        with pytest.raises(RateLimited):
            await limiter.check("a")

    @pytest.mark.asyncio
    async def test_zero_means_unlimited(self, clock):
        limiter = RateLimiter(0, clock=clock)
        for _ in range(1000):
            await limiter.check("acct-1")

    @pytest.mark.asyncio
    async def test_reset(self, clock):
        limiter = RateLimiter(1, clock=clock)
        await limiter.check("acct-1")
        limiter.reset("acct-1")
        await limiter.check("acct-1")

    @pytest.mark.asyncio
    async def test_cleanup_evicts_expired_windows(self, clock):
        limiter = RateLimiter(5, clock=clock)
        await limiter.check("old")
        clock.now = 30.0
        await limiter.check("fresh")

        clock.now = 61.0
        assert limiter.cleanup() == 1
        assert limiter.cleanup() == 0

    @pytest.mark.asyncio
    async def test_start_stop(self):
        limiter = RateLimiter(5, cleanup_interval=0.01)
        await limiter.start()
        await limiter.start()
        await limiter.stop()
        await limiter.stop()
