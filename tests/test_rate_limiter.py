"""Tests for per-client windowed rate limiting (limits/rate_limiter.py)."""

from __future__ import annotations

import asyncio

import pytest

from context_gateway.errors import RateLimitExceeded
from context_gateway.limits import InMemoryRateLimitStore, RateLimiter


class TestAdmission:
    """Window reset, increment, rejection."""

    @pytest.mark.asyncio
    async def test_first_call_admitted(self, clock):
        limiter = RateLimiter(limit=3, window_seconds=60, clock=clock)
        decision = await limiter.check("10.0.0.1")
        assert decision.allowed
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_rejects_after_limit_within_window(self, clock):
        limiter = RateLimiter(limit=3, window_seconds=60, clock=clock)
        results = [await limiter.admit("10.0.0.1") for _ in range(4)]
        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_rejection_does_not_increment(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(limit=2, window_seconds=60, store=store, clock=clock)
        for _ in range(5):
            await limiter.admit("k")
        assert store.get("k").count == 2

    @pytest.mark.asyncio
    async def test_retry_after_reports_remaining_window(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        await limiter.admit("k")
        clock.advance(20)
        decision = await limiter.check("k")
        assert not decision.allowed
        assert decision.retry_after == pytest.approx(40)

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        assert await limiter.admit("k")
        assert not await limiter.admit("k")
        clock.advance(61)
        decision = await limiter.check("k")
        assert decision.allowed
        assert decision.count == 1
        assert decision.window_start == clock.now

    @pytest.mark.asyncio
    async def test_window_boundary_is_inclusive(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        await limiter.admit("k")
        clock.advance(60)
        # now == window_start + window: still the same window
        assert not await limiter.admit("k")

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        assert await limiter.admit("a")
        assert await limiter.admit("b")
        assert not await limiter.admit("a")

    @pytest.mark.asyncio
    async def test_default_limit_twenty_per_five_minutes(self, clock):
        limiter = RateLimiter(clock=clock)
        results = [await limiter.admit("ip") for _ in range(21)]
        assert results.count(True) == 20
        assert results[-1] is False


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_calls_never_exceed_limit(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(limit=5, window_seconds=60, store=store, clock=clock)
        results = await asyncio.gather(*(limiter.admit("k") for _ in range(20)))
        assert sum(results) == 5
        assert store.get("k").count == 5


class TestEnforce:
    @pytest.mark.asyncio
    async def test_raises_with_retry_after(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=300, clock=clock)
        await limiter.enforce("k")
        with pytest.raises(RateLimitExceeded) as exc:
            await limiter.enforce("k")
        assert exc.value.client_key == "k"
        assert exc.value.limit == 1
        assert exc.value.retry_after == pytest.approx(300)
        assert "Rate limit exceeded" in str(exc.value)


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_sweep_removes_stale_entries_only(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(limit=5, window_seconds=60, store=store, clock=clock)
        await limiter.admit("old")
        clock.advance(200)
        await limiter.admit("fresh")
        removed = await limiter.sweep()
        assert removed == 1
        assert store.get("old") is None
        assert store.get("fresh") is not None

    @pytest.mark.asyncio
    async def test_reset_clears_all(self, clock):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(limit=1, window_seconds=60, store=store, clock=clock)
        await limiter.admit("k")
        await limiter.reset()
        assert len(store) == 0
        assert await limiter.admit("k")

    @pytest.mark.asyncio
    async def test_sweeper_start_stop(self, clock):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.start_sweeper(3600)
        await limiter.stop_sweeper()
        assert limiter._sweep_task is None


class TestConfigValidation:
    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            RateLimiter(limit=0)

    def test_invalid_window(self):
        with pytest.raises(ValueError):
            RateLimiter(window_seconds=0)
