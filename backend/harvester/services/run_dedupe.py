"""Per-run duplicate detection over Redis sets."""

from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from harvester.config import settings
from harvester.core.exceptions import RateLimiterUnavailable

logger = structlog.get_logger(__name__)

DEDUPE_KEY_PREFIX = "harvester:dedupe:"


class RunDedupe:
    """Tracks which identity keys a run has already written.

    Two targets can resolve to the same product (URL variants of one
    listing); only the first one in a run is written.
    """

    def __init__(self, redis: Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis
        self.ttl_seconds = ttl_seconds or settings.RUN_DEDUPE_TTL_SECONDS

    async def check_and_mark(self, run_id: str, identity_key: str) -> bool:
        """Record identity_key for the run.

        Returns:
            True if this is the first time the run sees the key

        Raises:
            RateLimiterUnavailable: If Redis cannot be reached
        """
        key = f"{DEDUPE_KEY_PREFIX}{run_id}"
        try:
            added = await self.redis.sadd(key, identity_key)
            await self.redis.expire(key, self.ttl_seconds)
        except RedisError as e:
            logger.error("run_dedupe_unavailable", run_id=run_id, error=str(e))
            raise RateLimiterUnavailable(f"Dedupe store unavailable: {e}") from e
        return int(added) == 1

    async def clear(self, run_id: str) -> None:
        try:
            await self.redis.delete(f"{DEDUPE_KEY_PREFIX}{run_id}")
        except RedisError as e:
            raise RateLimiterUnavailable(f"Dedupe store unavailable: {e}") from e
