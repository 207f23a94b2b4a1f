"""Tests for the policy-aware fetcher."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
import respx

from harvester.core.exceptions import FetchFailed, InvalidUrl, OutOfScopeUrl, RobotsDisallowed
from harvester.scrapers.fetcher import ACCEPT_BY_MODE, FetchRequest, Fetcher, looks_blocked
from harvester.scrapers.utils.rate_limiter import RateLimitPolicy

BASE_URLS = ("https://sgammo.com", "https://www.sgammo.com")
PRODUCT_URL = "https://sgammo.com/product/winchester-9mm-115gr"


@pytest.fixture
def robots():
    mock = MagicMock()
    mock.is_allowed = AsyncMock(return_value=True)
    mock.crawl_delay = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def rate_limiter():
    mock = MagicMock()
    mock.acquire = AsyncMock(return_value="lease-1")
    mock.release = AsyncMock()
    return mock


@pytest_asyncio.fixture
async def fetcher(robots, rate_limiter):
    async with httpx.AsyncClient() as client:
        yield Fetcher(client, robots, rate_limiter, user_agent="TestBot/1.0", timeout_seconds=5)


class TestScope:
    async def test_allowed_host(self, fetcher):
        assert fetcher.check_scope(PRODUCT_URL, BASE_URLS) == "sgammo.com"

    async def test_other_host(self, fetcher):
        with pytest.raises(OutOfScopeUrl):
            fetcher.check_scope("https://evil.example.com/p", BASE_URLS)

    async def test_private_host(self, fetcher):
        with pytest.raises(OutOfScopeUrl):
            fetcher.check_scope("http://127.0.0.1/admin", ("http://127.0.0.1",))

    async def test_invalid(self, fetcher):
        with pytest.raises(InvalidUrl):
            fetcher.check_scope("ftp://sgammo.com/file", BASE_URLS)


class TestFetchWithPolicy:
    async def test_success(self, fetcher, rate_limiter):
        with respx.mock:
            route = respx.get(PRODUCT_URL).mock(
                return_value=httpx.Response(200, text="<html>ok</html>", headers={"content-type": "text/html"})
            )
            result = await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert result.status == 200
        assert result.content == "<html>ok</html>"
        assert result.final_url == PRODUCT_URL
        assert result.content_type == "text/html"
        assert len(result.content_hash) == 32

        request = route.calls.last.request
        assert request.headers["User-Agent"] == "TestBot/1.0"
        assert request.headers["Accept"] == ACCEPT_BY_MODE["html"]
        rate_limiter.release.assert_awaited_once_with("sgammo.com", "lease-1")

    async def test_json_accept_header(self, fetcher):
        with respx.mock:
            route = respx.get(PRODUCT_URL).mock(return_value=httpx.Response(200, json={"items": []}))
            await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, mode="json", base_urls=BASE_URLS))
        assert route.calls.last.request.headers["Accept"] == ACCEPT_BY_MODE["json"]

    async def test_out_of_scope_makes_no_request(self, fetcher, robots, rate_limiter):
        with pytest.raises(OutOfScopeUrl):
            await fetcher.fetch_with_policy(FetchRequest(url="https://evil.example.com/p", base_urls=BASE_URLS))
        robots.is_allowed.assert_not_awaited()
        rate_limiter.acquire.assert_not_awaited()

    async def test_robots_disallowed_makes_no_request(self, fetcher, robots, rate_limiter):
        robots.is_allowed.return_value = False
        with respx.mock:
            route = respx.get(PRODUCT_URL).mock(return_value=httpx.Response(200))
            with pytest.raises(RobotsDisallowed):
                await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))
            assert not route.called
        rate_limiter.acquire.assert_not_awaited()

    async def test_crawl_delay_raises_min_delay(self, fetcher, robots, rate_limiter):
        robots.crawl_delay.return_value = 5.0
        with respx.mock:
            respx.get(PRODUCT_URL).mock(return_value=httpx.Response(200, text="ok"))
            await fetcher.fetch_with_policy(
                FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS, rate_limit=RateLimitPolicy(min_delay_ms=2000))
            )
        host, policy = rate_limiter.acquire.await_args.args
        assert host == "sgammo.com"
        assert policy.min_delay_ms == 5000

    async def test_http_error_status(self, fetcher, rate_limiter):
        with respx.mock:
            respx.get(PRODUCT_URL).mock(return_value=httpx.Response(404, text="not found"))
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert exc_info.value.status == 404
        assert exc_info.value.reason == "http_404"
        assert not exc_info.value.retryable
        rate_limiter.release.assert_awaited_once()

    async def test_block_page(self, fetcher):
        with respx.mock:
            respx.get(PRODUCT_URL).mock(
                return_value=httpx.Response(503, text="<html>Please complete the CAPTCHA</html>")
            )
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert exc_info.value.reason == "blocked"
        assert exc_info.value.retryable

    async def test_timeout(self, fetcher, rate_limiter):
        with respx.mock:
            respx.get(PRODUCT_URL).mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert exc_info.value.status is None
        assert exc_info.value.reason == "timeout"
        assert exc_info.value.retryable
        rate_limiter.release.assert_awaited_once()

    async def test_body_too_large(self, robots, rate_limiter):
        async with httpx.AsyncClient() as client:
            fetcher = Fetcher(client, robots, rate_limiter, max_bytes=10)
            with respx.mock:
                respx.get(PRODUCT_URL).mock(return_value=httpx.Response(200, text="x" * 100))
                with pytest.raises(FetchFailed) as exc_info:
                    await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert exc_info.value.reason == "body_too_large"

    async def test_redirect_out_of_scope(self, fetcher):
        with respx.mock:
            respx.get(PRODUCT_URL).mock(
                return_value=httpx.Response(302, headers={"Location": "https://evil.example.com/landing"})
            )
            respx.get("https://evil.example.com/landing").mock(return_value=httpx.Response(200, text="hi"))
            with pytest.raises(OutOfScopeUrl):
                await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

    async def test_redirect_within_scope(self, fetcher):
        target = "https://www.sgammo.com/product/winchester-9mm-115gr"
        with respx.mock:
            respx.get(PRODUCT_URL).mock(return_value=httpx.Response(301, headers={"Location": target}))
            respx.get(target).mock(return_value=httpx.Response(200, text="ok"))
            result = await fetcher.fetch_with_policy(FetchRequest(url=PRODUCT_URL, base_urls=BASE_URLS))

        assert result.final_url == target


class TestLooksBlocked:
    def test_markers(self):
        assert looks_blocked("<title>Access Denied</title>")
        assert not looks_blocked("<h1>Winchester 9mm</h1>")
