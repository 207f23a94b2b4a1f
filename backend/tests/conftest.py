"""Pytest configuration and shared fixtures."""

import time
from decimal import Decimal
from typing import Dict, Optional, Set

import fakeredis
import pytest
import pytest_asyncio

from harvester.db.session import create_engine, create_session_factory, init_db
from harvester.scrapers.base import AVAILABILITY_IN_STOCK, NormalizedOffer
from harvester.scrapers.utils.lock import EXTEND_SCRIPT, RELEASE_SCRIPT


class FakeRedis:
    """In-memory stand-in for the handful of Redis commands the lock and
    run dedupe use. Lua scripts are recognised by identity."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.expiry: Dict[str, float] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.ttls: Dict[str, int] = {}

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= time.monotonic():
            self.values.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.values

    async def set(self, key: str, value: str, nx: bool = False, px: Optional[int] = None):
        if nx and self._alive(key):
            return None
        self.values[key] = value
        if px is not None:
            self.expiry[key] = time.monotonic() + px / 1000
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key) if self._alive(key) else None

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            removed += int(self.sets.pop(key, None) is not None)
            self.expiry.pop(key, None)
        return removed

    async def eval(self, script: str, numkeys: int, *args):
        key, token = args[0], args[1]
        if await self.get(key) != token:
            return 0
        if script is RELEASE_SCRIPT:
            return await self.delete(key)
        if script is EXTEND_SCRIPT:
            self.expiry[key] = time.monotonic() + int(args[2]) / 1000
            return 1
        raise NotImplementedError("unknown script")

    async def sadd(self, key: str, *members: str) -> int:
        bucket = self.sets.setdefault(key, set())
        added = len(set(members) - bucket)
        bucket.update(members)
        return added

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True


@pytest.fixture
def anyio_backend():
    """Use asyncio as the async backend for tests."""
    return "asyncio"


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest_asyncio.fixture
async def lua_redis():
    """fakeredis with Lua scripting, so the real lock and rate limiter scripts run."""
    redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield redis
    await redis.aclose()


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_engine("sqlite+aiosqlite:///:memory:", echo=False)
    await init_db(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_offer():
    """Factory for valid NormalizedOffers; keyword overrides replace fields."""

    def _make(**overrides) -> NormalizedOffer:
        fields = {
            "source_id": "sgammo",
            "retailer_id": "sgammo.com",
            "title": "Federal American Eagle 9mm Luger 115gr FMJ 50 Rounds",
            "url": "https://sgammo.com/product/ae9dp",
            "normalized_url": "https://sgammo.com/product/ae9dp",
            "identity_key": "sgammo.com:SKU:AE9DP",
            "price": Decimal("15.99"),
            "in_stock": True,
            "availability": AVAILABILITY_IN_STOCK,
            "caliber": "9mm Luger",
            "grain_weight": 115,
            "round_count": 50,
            "retailer_sku": "AE9DP",
        }
        fields.update(overrides)
        return NormalizedOffer(**fields)

    return _make
