"""Tests for the Redis-backed per-host rate limiter."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from harvester.core.exceptions import RateLimiterUnavailable
from harvester.scrapers.utils.rate_limiter import (
    ACQUIRE_SCRIPT,
    INFLIGHT_KEY_PREFIX,
    INFLIGHT_LEASE_MS,
    WINDOW_KEY_PREFIX,
    DomainRateLimiter,
    RateLimitPolicy,
)


@pytest.fixture
def redis():
    mock = AsyncMock()
    mock.eval.return_value = [1, 0]
    return mock


class TestRateLimitPolicy:
    def test_clamped_to_global_ceilings(self):
        policy = RateLimitPolicy(requests_per_second=10, min_delay_ms=100, max_concurrent=5).clamped()
        assert policy == RateLimitPolicy(requests_per_second=2.0, min_delay_ms=500, max_concurrent=1)

    def test_clamp_keeps_stricter_values(self):
        policy = RateLimitPolicy(requests_per_second=0.2, min_delay_ms=5000, max_concurrent=1)
        assert policy.clamped() == policy

    def test_crawl_delay_raises_min_delay(self):
        policy = RateLimitPolicy(min_delay_ms=2000)
        assert policy.with_crawl_delay(5).min_delay_ms == 5000
        assert policy.with_crawl_delay(1).min_delay_ms == 2000
        assert policy.with_crawl_delay(None) is policy


class TestDomainRateLimiter:
    def test_window_sizes(self):
        assert DomainRateLimiter._window(RateLimitPolicy(requests_per_second=0.5)) == (2000, 1)
        assert DomainRateLimiter._window(RateLimitPolicy(requests_per_second=2.0)) == (1000, 2)

    async def test_try_acquire_granted(self, redis):
        limiter = DomainRateLimiter(redis, window_ttl_seconds=60)
        token, retry_after = await limiter.try_acquire("sgammo.com", RateLimitPolicy())

        assert token is not None
        assert retry_after == 0

        args = redis.eval.call_args.args
        assert args[0] is ACQUIRE_SCRIPT
        assert args[1] == 2
        assert args[2] == f"{WINDOW_KEY_PREFIX}sgammo.com"
        assert args[3] == f"{INFLIGHT_KEY_PREFIX}sgammo.com"
        # window_ms, limit, min_delay, max_concurrent, ttl
        assert args[4:9] == (2000, 1, 2000, 1, 60)
        assert args[-1] == token

    async def test_try_acquire_denied(self, redis):
        redis.eval.return_value = [0, 750]
        limiter = DomainRateLimiter(redis)
        assert await limiter.try_acquire("sgammo.com") == (None, 750)

    async def test_acquire_waits_then_succeeds(self, redis):
        redis.eval.side_effect = [[0, 10], [0, 10], [1, 0]]
        limiter = DomainRateLimiter(redis)

        token = await limiter.acquire("sgammo.com", RateLimitPolicy())

        assert token
        assert redis.eval.await_count == 3

    async def test_redis_error_becomes_unavailable(self, redis):
        redis.eval.side_effect = RedisConnectionError("down")
        limiter = DomainRateLimiter(redis)

        with pytest.raises(RateLimiterUnavailable):
            await limiter.acquire("sgammo.com")

    async def test_release_removes_lease(self, redis):
        limiter = DomainRateLimiter(redis)
        await limiter.release("sgammo.com", "lease-1")
        redis.zrem.assert_awaited_once_with(f"{INFLIGHT_KEY_PREFIX}sgammo.com", "lease-1")

    async def test_release_error(self, redis):
        redis.zrem.side_effect = RedisConnectionError("down")
        with pytest.raises(RateLimiterUnavailable):
            await DomainRateLimiter(redis).release("sgammo.com", "lease-1")


class TestAcquireScript:
    """ACQUIRE_SCRIPT executed by a Lua-capable Redis."""

    HOST = "sgammo.com"

    @pytest.fixture
    def limiter(self, lua_redis):
        return DomainRateLimiter(lua_redis, window_ttl_seconds=60)

    async def test_min_delay_blocks_next_request(self, limiter):
        policy = RateLimitPolicy(requests_per_second=2.0, min_delay_ms=500)
        token, retry_after = await limiter.try_acquire(self.HOST, policy)
        assert token is not None
        assert retry_after == 0
        await limiter.release(self.HOST, token)

        token, retry_after = await limiter.try_acquire(self.HOST, policy)
        assert token is None
        assert 0 < retry_after <= 500

    async def test_inflight_lease_blocks_until_released(self, limiter):
        policy = RateLimitPolicy(requests_per_second=2.0, min_delay_ms=500)
        token, _ = await limiter.try_acquire(self.HOST, policy)

        # Waiting on the lease, not on the minimum delay
        _, retry_after = await limiter.try_acquire(self.HOST, policy)
        assert retry_after > policy.min_delay_ms

        await limiter.release(self.HOST, token)
        _, retry_after = await limiter.try_acquire(self.HOST, policy)
        assert 0 < retry_after <= policy.min_delay_ms

    async def test_window_limit(self, limiter):
        policy = RateLimitPolicy(requests_per_second=0.01, min_delay_ms=500)
        token, _ = await limiter.try_acquire(self.HOST, policy)
        await limiter.release(self.HOST, token)
        await asyncio.sleep(0.55)

        token, retry_after = await limiter.try_acquire(self.HOST, policy)
        assert token is None
        assert retry_after > 90_000

    async def test_keys_carry_ttls(self, limiter, lua_redis):
        token, _ = await limiter.try_acquire(self.HOST, RateLimitPolicy())

        assert 0 < await lua_redis.ttl(f"{WINDOW_KEY_PREFIX}{self.HOST}") <= 60
        assert 0 < await lua_redis.pttl(f"{INFLIGHT_KEY_PREFIX}{self.HOST}") <= INFLIGHT_LEASE_MS
        assert await lua_redis.zscore(f"{INFLIGHT_KEY_PREFIX}{self.HOST}", token) is not None

    async def test_hosts_are_independent(self, limiter):
        policy = RateLimitPolicy()
        first, _ = await limiter.try_acquire(self.HOST, policy)
        second, _ = await limiter.try_acquire("www.primaryarms.com", policy)
        assert first is not None
        assert second is not None

    async def test_acquire_waits_out_min_delay(self, limiter):
        policy = RateLimitPolicy(requests_per_second=2.0, min_delay_ms=500)
        token = await limiter.acquire(self.HOST, policy)
        await limiter.release(self.HOST, token)

        started = asyncio.get_running_loop().time()
        assert await limiter.acquire(self.HOST, policy)
        assert asyncio.get_running_loop().time() - started >= 0.4
