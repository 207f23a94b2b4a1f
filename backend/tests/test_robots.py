"""Tests for robots.txt policy and caching."""

import httpx
import pytest
import pytest_asyncio
import respx

from harvester.scrapers.utils.retry import RetryPolicy
from harvester.scrapers.utils.robots import RobotsPolicy

ROBOTS_URL = "https://shop.example.com/robots.txt"
FAST_RETRY = RetryPolicy(max_attempts=2, min_wait=0, max_wait=0)

ROBOTS_TXT = """
User-agent: *
Disallow: /checkout
Crawl-delay: 5

User-agent: BadBot
Disallow: /
"""


@pytest_asyncio.fixture
async def client():
    async with httpx.AsyncClient() as c:
        yield c


class TestRobotsRules:
    async def test_parses_rules(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(return_value=httpx.Response(200, text=ROBOTS_TXT))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)

            assert await policy.is_allowed("https://shop.example.com/product/1", "OfferHarvesterBot")
            assert not await policy.is_allowed("https://shop.example.com/checkout/cart", "OfferHarvesterBot")
            assert not await policy.is_allowed("https://shop.example.com/product/1", "BadBot")

    async def test_crawl_delay(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(return_value=httpx.Response(200, text=ROBOTS_TXT))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)
            assert await policy.crawl_delay("https://shop.example.com/product/1", "OfferHarvesterBot") == 5.0

    async def test_crawl_delay_clamped(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(
                return_value=httpx.Response(200, text="User-agent: *\nCrawl-delay: 600\n")
            )
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)
            assert await policy.crawl_delay("https://shop.example.com/x") == 60.0

    async def test_no_crawl_delay(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(return_value=httpx.Response(200, text="User-agent: *\nDisallow:\n"))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)
            assert await policy.crawl_delay("https://shop.example.com/x") is None


class TestRobotsStatusHandling:
    async def test_missing_allows_all(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(return_value=httpx.Response(404))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)
            assert await policy.is_allowed("https://shop.example.com/anything")

    async def test_forbidden_disallows_all(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(return_value=httpx.Response(403))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)
            assert not await policy.is_allowed("https://shop.example.com/anything")

    async def test_server_error_retried_then_fails_closed(self, client):
        with respx.mock:
            route = respx.get(ROBOTS_URL).mock(return_value=httpx.Response(503))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY, allow_when_unreachable=False)

            assert not await policy.is_allowed("https://shop.example.com/anything")
            assert route.call_count == 2

    async def test_unreachable_can_fail_open(self, client):
        with respx.mock:
            respx.get(ROBOTS_URL).mock(side_effect=httpx.ConnectError("refused"))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY, allow_when_unreachable=True)
            assert await policy.is_allowed("https://shop.example.com/anything")


class TestRobotsCache:
    async def test_cached_per_origin(self, client):
        with respx.mock:
            route = respx.get(ROBOTS_URL).mock(return_value=httpx.Response(200, text=ROBOTS_TXT))
            other = respx.get("https://other.example.com/robots.txt").mock(return_value=httpx.Response(404))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)

            await policy.is_allowed("https://shop.example.com/a")
            await policy.is_allowed("https://shop.example.com/b")
            await policy.crawl_delay("https://shop.example.com/c")
            await policy.is_allowed("https://other.example.com/a")

            assert route.call_count == 1
            assert other.call_count == 1

    async def test_clear_forces_refetch(self, client):
        with respx.mock:
            route = respx.get(ROBOTS_URL).mock(return_value=httpx.Response(404))
            policy = RobotsPolicy(client, retry_policy=FAST_RETRY)

            await policy.is_allowed("https://shop.example.com/a")
            policy.clear()
            await policy.is_allowed("https://shop.example.com/a")

            assert route.call_count == 2
