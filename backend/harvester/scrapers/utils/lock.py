"""Distributed per-target lock backed by Redis.

Acquisition is a single ``SET key token NX PX ttl``; there is no waiting.
Release and extend are Lua compare-and-act scripts, so a worker whose lock
expired and was taken over cannot delete or prolong the new owner's lock.
"""

import asyncio
import secrets
import time
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from harvester.config import settings

logger = structlog.get_logger(__name__)

LOCK_KEY_PREFIX = "harvester:lock:"

RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
end
return 0
"""

EXTEND_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
end
return 0
"""


@dataclass
class LockHandle:
    """Proof of ownership for a held lock."""

    key: str
    token: str
    expires_at: float  # time.monotonic() deadline


class DistributedLock:
    """Mutual exclusion over Redis for independently scheduled workers."""

    def __init__(
        self,
        redis: Redis,
        default_ttl_ms: Optional[int] = None,
        renewal_interval: Optional[float] = None,
    ):
        """Initialize the lock client.

        Args:
            redis: Async Redis client
            default_ttl_ms: Lock TTL, defaults to settings.LOCK_TTL_MS
            renewal_interval: Seconds between extensions inside hold()
        """
        self.redis = redis
        self.default_ttl_ms = default_ttl_ms or settings.LOCK_TTL_MS
        self.renewal_interval = renewal_interval or settings.LOCK_RENEWAL_INTERVAL_SECONDS
        self.logger = logger.bind(service="distributed_lock")

    async def acquire(self, key: str, ttl_ms: Optional[int] = None) -> Optional[LockHandle]:
        """Try to take the lock once.

        Args:
            key: Lock name (e.g., "target:<uuid>")
            ttl_ms: Expiry in milliseconds

        Returns:
            LockHandle if acquired, None if another owner holds it

        Raises:
            RedisError: If Redis cannot be reached
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        full_key = f"{LOCK_KEY_PREFIX}{key}"
        token = secrets.token_hex(16)

        acquired = await self.redis.set(full_key, token, nx=True, px=ttl_ms)
        if not acquired:
            self.logger.debug("lock_busy", key=full_key)
            return None

        self.logger.debug("lock_acquired", key=full_key, ttl_ms=ttl_ms)
        return LockHandle(key=full_key, token=token, expires_at=time.monotonic() + ttl_ms / 1000)

    async def release(self, handle: LockHandle) -> bool:
        """Release the lock if this handle still owns it.

        Returns:
            True if the key was deleted, False if the token no longer matches
        """
        result = await self.redis.eval(RELEASE_SCRIPT, 1, handle.key, handle.token)
        released = int(result or 0) == 1
        if not released:
            self.logger.warning("lock_release_mismatch", key=handle.key)
        return released

    async def extend(self, handle: LockHandle, ttl_ms: Optional[int] = None) -> bool:
        """Push the lock expiry forward if this handle still owns it.

        Returns:
            True if extended, False if the token no longer matches
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        result = await self.redis.eval(EXTEND_SCRIPT, 1, handle.key, handle.token, ttl_ms)
        extended = int(result or 0) == 1
        if extended:
            handle.expires_at = time.monotonic() + ttl_ms / 1000
        return extended

    async def _keep_alive(self, handle: LockHandle, ttl_ms: int) -> None:
        while True:
            await asyncio.sleep(self.renewal_interval)
            try:
                extended = await self.extend(handle, ttl_ms)
            except RedisError as e:
                # Retry on the next tick; the TTL still covers us until then
                self.logger.warning("lock_extend_failed", key=handle.key, error=str(e))
                continue
            if not extended:
                self.logger.error("lock_lost", key=handle.key)
                return

    @asynccontextmanager
    async def hold(self, key: str, ttl_ms: Optional[int] = None) -> AsyncIterator[Optional[LockHandle]]:
        """Hold a lock for the duration of a block, renewing it in the background.

        Yields None when the lock is owned elsewhere; the caller decides
        whether to skip or defer.
        """
        ttl_ms = ttl_ms or self.default_ttl_ms
        handle = await self.acquire(key, ttl_ms)
        if handle is None:
            yield None
            return

        renewer = asyncio.create_task(self._keep_alive(handle, ttl_ms))
        try:
            yield handle
        finally:
            renewer.cancel()
            with suppress(asyncio.CancelledError):
                await renewer
            try:
                await self.release(handle)
            except RedisError as e:
                # The TTL frees the key; the block's result stands
                self.logger.warning("lock_release_failed", key=handle.key, error=str(e))
