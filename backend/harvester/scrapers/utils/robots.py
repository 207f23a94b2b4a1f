"""robots.txt policy with per-origin TTL cache."""

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import httpx
import structlog
from tenacity import retry_if_exception_type

from harvester.config import settings
from harvester.scrapers.utils.retry import RetryPolicy

logger = structlog.get_logger(__name__)

MIN_CRAWL_DELAY = 1.0
MAX_CRAWL_DELAY = 60.0

# Fail-closed decisions are re-checked sooner than real rules
UNREACHABLE_CACHE_TTL_SECONDS = 300

ALLOW_ALL = ["User-agent: *", "Allow: /"]
DISALLOW_ALL = ["User-agent: *", "Disallow: /"]


class _RobotsServerError(Exception):
    """5xx from robots.txt, retried like a transport error."""


@dataclass
class _CachedRules:
    parser: RobotFileParser
    expires_at: float


class RobotsPolicy:
    """Caches robots.txt rules per origin and answers crawl permission.

    A missing robots.txt (404/410) allows everything. 401/403 disallow
    everything. An unreachable robots.txt fails closed unless
    allow_when_unreachable is set.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache_ttl_seconds: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        allow_when_unreachable: Optional[bool] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.client = client
        self.cache_ttl_seconds = cache_ttl_seconds or settings.ROBOTS_CACHE_TTL_SECONDS
        self.timeout_seconds = timeout_seconds or settings.ROBOTS_FETCH_TIMEOUT_SECONDS
        self.allow_when_unreachable = (
            settings.ROBOTS_ALLOW_WHEN_UNREACHABLE if allow_when_unreachable is None else allow_when_unreachable
        )
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self._cache: Dict[str, _CachedRules] = {}
        self._origin_locks: Dict[str, asyncio.Lock] = {}
        self.logger = logger.bind(service="robots_policy")

    async def is_allowed(self, url: str, user_agent: Optional[str] = None) -> bool:
        """Return whether robots.txt permits fetching url."""
        parser = await self._get_parser(url)
        agent = user_agent or settings.BOT_NAME
        return parser.can_fetch(agent, url)

    async def crawl_delay(self, url: str, user_agent: Optional[str] = None) -> Optional[float]:
        """Crawl-delay for our agent (or *), clamped to 1-60 seconds."""
        parser = await self._get_parser(url)
        agent = user_agent or settings.BOT_NAME
        delay = parser.crawl_delay(agent)
        if delay is None:
            delay = parser.crawl_delay("*")
        if delay is None:
            return None
        return min(max(float(delay), MIN_CRAWL_DELAY), MAX_CRAWL_DELAY)

    def clear(self) -> None:
        self._cache.clear()

    async def _get_parser(self, url: str) -> RobotFileParser:
        origin = self._origin(url)
        cached = self._cache.get(origin)
        if cached and cached.expires_at > time.monotonic():
            return cached.parser

        lock = self._origin_locks.setdefault(origin, asyncio.Lock())
        async with lock:
            cached = self._cache.get(origin)
            if cached and cached.expires_at > time.monotonic():
                return cached.parser

            parser, ttl = await self._load(origin)
            self._cache[origin] = _CachedRules(parser=parser, expires_at=time.monotonic() + ttl)
            return parser

    async def _load(self, origin: str):
        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser()
        parser.set_url(robots_url)

        try:
            response = await self.retry_policy.retrying(
                retry=retry_if_exception_type((httpx.TransportError, _RobotsServerError))
            )(self._fetch, robots_url)
        except (httpx.TransportError, _RobotsServerError) as e:
            parser.parse(ALLOW_ALL if self.allow_when_unreachable else DISALLOW_ALL)
            self.logger.warning(
                "robots_unreachable",
                origin=origin,
                fallback_allow=self.allow_when_unreachable,
                error=str(e),
            )
            return parser, UNREACHABLE_CACHE_TTL_SECONDS

        if response.status_code in (404, 410):
            parser.parse(ALLOW_ALL)
            self.logger.info("robots_missing", origin=origin, status_code=response.status_code)
        elif response.status_code in (401, 403):
            parser.parse(DISALLOW_ALL)
            self.logger.warning("robots_forbidden", origin=origin, status_code=response.status_code)
        elif response.is_success:
            parser.parse(response.text.splitlines())
            self.logger.info("robots_loaded", origin=origin)
        else:
            parser.parse(ALLOW_ALL if self.allow_when_unreachable else DISALLOW_ALL)
            self.logger.warning(
                "robots_unexpected_status",
                origin=origin,
                status_code=response.status_code,
                fallback_allow=self.allow_when_unreachable,
            )
            return parser, UNREACHABLE_CACHE_TTL_SECONDS

        return parser, self.cache_ttl_seconds

    async def _fetch(self, robots_url: str) -> httpx.Response:
        response = await self.client.get(
            robots_url,
            timeout=self.timeout_seconds,
            headers={"User-Agent": settings.get_user_agent()},
            follow_redirects=True,
        )
        if response.status_code >= 500:
            raise _RobotsServerError(f"robots.txt returned {response.status_code}")
        return response

    @staticmethod
    def _origin(url: str) -> str:
        parts = urlsplit(url)
        scheme = parts.scheme or "https"
        return f"{scheme}://{parts.netloc.lower()}"
