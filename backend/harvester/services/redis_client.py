"""Shared async Redis connection for locks, rate limits and run dedupe."""

from typing import Optional

import structlog
from redis.asyncio import Redis, from_url

from harvester.config import settings

logger = structlog.get_logger(__name__)

_redis: Optional[Redis] = None


def get_redis(redis_url: Optional[str] = None) -> Redis:
    """Get or create the process-wide Redis client.

    Args:
        redis_url: Override for settings.REDIS_URL (first call only)

    Returns:
        Redis client instance
    """
    global _redis
    if _redis is None:
        url = redis_url or settings.REDIS_URL
        _redis = from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
        )
        logger.info("redis_connection_created", url=url)
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
        logger.info("redis_connection_closed")
