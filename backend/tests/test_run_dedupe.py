"""Tests for per-run duplicate detection."""

from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from harvester.core.exceptions import RateLimiterUnavailable
from harvester.services.run_dedupe import DEDUPE_KEY_PREFIX, RunDedupe


@pytest.fixture
def dedupe(fake_redis):
    return RunDedupe(fake_redis, ttl_seconds=600)


class TestRunDedupe:
    async def test_first_sighting(self, dedupe, fake_redis):
        assert await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")
        assert fake_redis.ttls[f"{DEDUPE_KEY_PREFIX}run-1"] == 600

    async def test_repeat_in_same_run(self, dedupe):
        await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")
        assert not await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")

    async def test_runs_are_independent(self, dedupe):
        await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")
        assert await dedupe.check_and_mark("run-2", "sgammo.com:SKU:AE9DP")

    async def test_clear(self, dedupe):
        await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")
        await dedupe.clear("run-1")
        assert await dedupe.check_and_mark("run-1", "sgammo.com:SKU:AE9DP")

    async def test_redis_error(self):
        redis = AsyncMock()
        redis.sadd.side_effect = RedisConnectionError("down")
        with pytest.raises(RateLimiterUnavailable):
            await RunDedupe(redis, ttl_seconds=60).check_and_mark("run-1", "k")

    async def test_clear_redis_error(self):
        redis = AsyncMock()
        redis.delete.side_effect = RedisConnectionError("down")
        with pytest.raises(RateLimiterUnavailable):
            await RunDedupe(redis, ttl_seconds=60).clear("run-1")
