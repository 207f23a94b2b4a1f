"""Cross-process per-host rate limiter backed by Redis.

Every check runs as one Lua script so the window count, the minimum
inter-request delay and the in-flight concurrency cap are evaluated and
updated atomically, whichever worker process asks.
"""

import asyncio
import math
import uuid
from dataclasses import dataclass, replace
from typing import Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from harvester.config import settings
from harvester.core.exceptions import RateLimiterUnavailable

logger = structlog.get_logger(__name__)

WINDOW_KEY_PREFIX = "harvester:ratelimit:"
INFLIGHT_KEY_PREFIX = "harvester:inflight:"

# Hard ceilings applied to any adapter-provided policy
MAX_REQUESTS_PER_SECOND = 2.0
MIN_DELAY_FLOOR_MS = 500
MAX_CONCURRENT_CEILING = 1

# In-flight leases expire on their own if a worker dies mid-request
INFLIGHT_LEASE_MS = 120_000

ACQUIRE_SCRIPT = """
local window_key = KEYS[1]
local inflight_key = KEYS[2]
local window_ms = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local min_delay = tonumber(ARGV[3])
local max_concurrent = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
local lease_ms = tonumber(ARGV[6])
local member = ARGV[7]

local t = redis.call("TIME")
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)

redis.call("ZREMRANGEBYSCORE", window_key, "-inf", now - math.max(window_ms, min_delay))
redis.call("ZREMRANGEBYSCORE", inflight_key, "-inf", now)

if redis.call("ZCARD", inflight_key) >= max_concurrent then
    local soonest = redis.call("ZRANGE", inflight_key, 0, 0, "WITHSCORES")
    return {0, math.max(tonumber(soonest[2]) - now, 1)}
end

local newest = redis.call("ZRANGE", window_key, -1, -1, "WITHSCORES")
if newest[2] then
    local since = now - tonumber(newest[2])
    if since < min_delay then
        return {0, min_delay - since}
    end
end

local in_window = redis.call("ZCOUNT", window_key, now - window_ms, "+inf")
if in_window >= limit then
    local oldest = redis.call("ZRANGEBYSCORE", window_key, now - window_ms, "+inf", "WITHSCORES", "LIMIT", 0, 1)
    return {0, math.max(window_ms - (now - tonumber(oldest[2])), 1)}
end

redis.call("ZADD", window_key, now, member)
redis.call("EXPIRE", window_key, ttl)
redis.call("ZADD", inflight_key, now + lease_ms, member)
redis.call("PEXPIRE", inflight_key, lease_ms)
return {1, 0}
"""


@dataclass(frozen=True)
class RateLimitPolicy:
    """Request budget for one host."""

    requests_per_second: float = 0.5
    min_delay_ms: int = 2000
    max_concurrent: int = 1

    @classmethod
    def default(cls) -> "RateLimitPolicy":
        return cls(
            requests_per_second=settings.RATE_LIMIT_REQUESTS_PER_SECOND,
            min_delay_ms=settings.RATE_LIMIT_MIN_DELAY_MS,
            max_concurrent=settings.RATE_LIMIT_MAX_CONCURRENT,
        )

    def clamped(self) -> "RateLimitPolicy":
        """Apply the global politeness ceilings."""
        return RateLimitPolicy(
            requests_per_second=min(max(self.requests_per_second, 0.01), MAX_REQUESTS_PER_SECOND),
            min_delay_ms=max(self.min_delay_ms, MIN_DELAY_FLOOR_MS),
            max_concurrent=min(max(self.max_concurrent, 1), MAX_CONCURRENT_CEILING),
        )

    def with_crawl_delay(self, crawl_delay: Optional[float]) -> "RateLimitPolicy":
        """Raise the minimum delay to a robots.txt Crawl-delay."""
        if not crawl_delay:
            return self
        return replace(self, min_delay_ms=max(self.min_delay_ms, int(crawl_delay * 1000)))


class DomainRateLimiter:
    """Per-host rate limiter whose counters live in Redis.

    acquire() suspends the caller until the host's budget allows one
    request and returns a lease token; release() frees the concurrency
    slot early.
    """

    def __init__(self, redis: Redis, window_ttl_seconds: Optional[int] = None):
        """Initialize rate limiter.

        Args:
            redis: Async Redis client shared by all workers
            window_ttl_seconds: TTL on per-host window keys
        """
        self.redis = redis
        self.window_ttl_seconds = window_ttl_seconds or settings.RATE_LIMIT_WINDOW_TTL_SECONDS
        self.logger = logger.bind(service="rate_limiter")

    @staticmethod
    def _window(policy: RateLimitPolicy):
        window_ms = max(1000, math.ceil(1000 / policy.requests_per_second))
        limit = max(1, math.floor(policy.requests_per_second * window_ms / 1000))
        return window_ms, limit

    async def try_acquire(self, host: str, policy: Optional[RateLimitPolicy] = None):
        """Run one atomic budget check.

        Returns:
            Tuple (lease token or None, retry_after_ms)

        Raises:
            RateLimiterUnavailable: If Redis cannot be reached
        """
        policy = (policy or RateLimitPolicy.default()).clamped()
        window_ms, limit = self._window(policy)
        member = uuid.uuid4().hex

        try:
            acquired, retry_after_ms = await self.redis.eval(
                ACQUIRE_SCRIPT,
                2,
                f"{WINDOW_KEY_PREFIX}{host}",
                f"{INFLIGHT_KEY_PREFIX}{host}",
                window_ms,
                limit,
                policy.min_delay_ms,
                policy.max_concurrent,
                self.window_ttl_seconds,
                INFLIGHT_LEASE_MS,
                member,
            )
        except RedisError as e:
            self.logger.error("rate_limiter_unavailable", host=host, error=str(e))
            raise RateLimiterUnavailable(f"Rate limiter store unavailable for {host}: {e}") from e

        if int(acquired) == 1:
            return member, 0
        return None, int(retry_after_ms)

    async def acquire(self, host: str, policy: Optional[RateLimitPolicy] = None) -> str:
        """Block until the host's budget allows one request.

        Args:
            host: Host name the request goes to
            policy: Adapter policy, clamped to global ceilings

        Returns:
            Lease token to pass to release()

        Raises:
            RateLimiterUnavailable: If Redis cannot be reached
        """
        while True:
            token, retry_after_ms = await self.try_acquire(host, policy)
            if token is not None:
                return token
            self.logger.debug("rate_limited", host=host, retry_after_ms=retry_after_ms)
            await asyncio.sleep(max(retry_after_ms, 50) / 1000)

    async def release(self, host: str, token: str) -> None:
        """Free the in-flight slot held by a lease.

        Raises:
            RateLimiterUnavailable: If Redis cannot be reached
        """
        try:
            await self.redis.zrem(f"{INFLIGHT_KEY_PREFIX}{host}", token)
        except RedisError as e:
            raise RateLimiterUnavailable(f"Rate limiter store unavailable for {host}: {e}") from e
