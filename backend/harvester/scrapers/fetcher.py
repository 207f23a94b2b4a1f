"""Single-attempt policy-aware fetcher.

fetch_with_policy() enforces scope, robots.txt and the shared rate limit
before touching the network, then performs exactly one HTTP request.
Retries belong to the caller (see scrapers.utils.retry).
"""

import hashlib
import ipaddress
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Sequence
from urllib.parse import urlsplit

import httpx
import structlog

from harvester.config import settings
from harvester.core.exceptions import FetchFailed, InvalidUrl, OutOfScopeUrl, RobotsDisallowed
from harvester.scrapers.utils.rate_limiter import DomainRateLimiter, RateLimitPolicy
from harvester.scrapers.utils.robots import RobotsPolicy
from harvester.scrapers.utils.url import is_valid_url

logger = structlog.get_logger(__name__)

ACCEPT_BY_MODE = {
    "html": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "json": "application/json,text/plain;q=0.9,*/*;q=0.8",
}

BLOCKED_PAGE_MARKERS = (
    "captcha",
    "are you a robot",
    "access denied",
    "request unsuccessful",
    "cf-chl",
    "px-captcha",
    "unusual traffic",
)

PRIVATE_HOSTNAMES = frozenset({"localhost", "localhost.localdomain", "ip6-localhost"})


@dataclass(frozen=True)
class FetchRequest:
    """What to fetch and under which adapter policy."""

    url: str
    mode: str = "html"
    base_urls: Sequence[str] = ()
    rate_limit: Optional[RateLimitPolicy] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class FetchResult:
    """Raw payload plus status metadata from one successful request."""

    url: str
    final_url: str
    status: int
    content: str
    content_type: Optional[str]
    content_hash: str
    duration_ms: int
    fetched_at: datetime


def looks_blocked(content: str) -> bool:
    """Heuristic for captcha / bot-wall pages."""
    lowered = content[:20000].lower()
    return any(marker in lowered for marker in BLOCKED_PAGE_MARKERS)


def _is_private_host(host: str) -> bool:
    if host in PRIVATE_HOSTNAMES or host.endswith(".localhost"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local or address.is_reserved


class Fetcher:
    """Fetches raw page or feed content for adapters.

    Shares one httpx.AsyncClient, one RobotsPolicy and one
    DomainRateLimiter across every adapter in the process.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        robots: RobotsPolicy,
        rate_limiter: DomainRateLimiter,
        user_agent: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_bytes: Optional[int] = None,
    ):
        self.client = client
        self.robots = robots
        self.rate_limiter = rate_limiter
        self.user_agent = user_agent or settings.get_user_agent()
        self.timeout_seconds = timeout_seconds or settings.FETCH_TIMEOUT_SECONDS
        self.max_bytes = max_bytes or settings.FETCH_MAX_BYTES
        self.logger = logger.bind(service="fetcher")

    def check_scope(self, url: str, base_urls: Sequence[str]) -> str:
        """Validate url and return its host.

        Raises:
            InvalidUrl: If url is not an absolute http(s) URL
            OutOfScopeUrl: If the host is private or not one of the base URL hosts
        """
        if not is_valid_url(url):
            raise InvalidUrl(url, "not an absolute http(s) URL")

        host = (urlsplit(url).hostname or "").lower()
        if _is_private_host(host):
            raise OutOfScopeUrl(url, "private or loopback host")

        allowed_hosts = {(urlsplit(base).hostname or "").lower() for base in base_urls}
        if host not in allowed_hosts:
            raise OutOfScopeUrl(url)
        return host

    def _headers(self, request: FetchRequest) -> Dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": ACCEPT_BY_MODE.get(request.mode, ACCEPT_BY_MODE["html"]),
            "Accept-Language": "en-US,en;q=0.9",
        }
        headers.update(request.headers)
        return headers

    async def fetch_with_policy(self, request: FetchRequest) -> FetchResult:
        """Fetch one URL after scope, robots and rate-limit checks.

        Args:
            request: URL, content mode, adapter base URLs and rate-limit policy

        Returns:
            FetchResult for a 2xx response

        Raises:
            InvalidUrl: If the URL is malformed
            OutOfScopeUrl: If the URL (or its redirect target) leaves the adapter's hosts
            RobotsDisallowed: If robots.txt forbids the URL (no request is made)
            RateLimiterUnavailable: If the shared rate-limit store is down
            FetchFailed: On non-2xx status, oversized body or transport error
        """
        url = request.url
        host = self.check_scope(url, request.base_urls)

        if not await self.robots.is_allowed(url, settings.BOT_NAME):
            self.logger.info("robots_disallowed", url=url)
            raise RobotsDisallowed(url)

        crawl_delay = await self.robots.crawl_delay(url, settings.BOT_NAME)
        policy = (request.rate_limit or RateLimitPolicy.default()).with_crawl_delay(crawl_delay)

        lease = await self.rate_limiter.acquire(host, policy)
        started = time.monotonic()
        try:
            status, final_url, content_type, body = await self._request(url, request)
        finally:
            await self.rate_limiter.release(host, lease)
        duration_ms = int((time.monotonic() - started) * 1000)

        final_host = (urlsplit(final_url).hostname or "").lower()
        if final_host != host:
            self.check_scope(final_url, request.base_urls)

        if not 200 <= status < 300:
            reason = f"http_{status}"
            if status in (403, 503) and looks_blocked(body):
                reason = "blocked"
            self.logger.warning("fetch_failed", url=url, status=status, reason=reason, duration_ms=duration_ms)
            raise FetchFailed(url, status, reason)

        self.logger.debug("fetch_succeeded", url=url, status=status, duration_ms=duration_ms)
        return FetchResult(
            url=url,
            final_url=final_url,
            status=status,
            content=body,
            content_type=content_type,
            content_hash=hashlib.sha256(body.encode("utf-8")).hexdigest()[:32],
            duration_ms=duration_ms,
            fetched_at=datetime.now(timezone.utc),
        )

    async def _request(self, url: str, request: FetchRequest):
        try:
            async with self.client.stream(
                "GET",
                url,
                headers=self._headers(request),
                timeout=self.timeout_seconds,
                follow_redirects=True,
            ) as response:
                chunks = []
                size = 0
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise FetchFailed(url, response.status_code, "body_too_large")
                    chunks.append(chunk)
                body = b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")
                return (
                    response.status_code,
                    str(response.url),
                    response.headers.get("content-type"),
                    body,
                )
        except httpx.TimeoutException as e:
            raise FetchFailed(url, None, "timeout") from e
        except httpx.HTTPError as e:
            raise FetchFailed(url, None, type(e).__name__) from e
