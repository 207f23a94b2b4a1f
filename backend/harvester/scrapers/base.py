"""Base adapter contract.

Every retailer adapter exposes the same four capabilities: a manifest,
fetch_raw(), extract() and normalize(). Two variants share the plumbing:
HtmlAdapter (JSON-LD first, CSS selectors second) and JsonAdapter (dotted
field paths into an API payload). Concrete adapters only supply their
manifest and their static field tables.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from bs4 import BeautifulSoup

from harvester.core.exceptions import InvalidUrl
from harvester.scrapers.fetcher import FetchRequest, FetchResult, Fetcher, looks_blocked
from harvester.scrapers.utils.normalizer import (
    AVAILABILITY_BACKORDER,
    AVAILABILITY_IN_STOCK,
    AVAILABILITY_OUT_OF_STOCK,
    AVAILABILITY_UNKNOWN,
    PriceNormalizer,
    extract_grain_weight,
    extract_round_count,
    normalize_availability,
    normalize_caliber_string,
    parse_int,
)
from harvester.scrapers.utils.rate_limiter import RateLimitPolicy
from harvester.scrapers.utils.url import canonicalize_url, generate_identity_key

MODE_HTML = "html"
MODE_JSON = "json"
CONTENT_MODES = (MODE_HTML, MODE_JSON)


class ExtractFailureReason:
    PARSE_FAILED = "PARSE_FAILED"
    PAGE_STRUCTURE_CHANGED = "PAGE_STRUCTURE_CHANGED"
    BLOCKED_PAGE = "BLOCKED_PAGE"
    NO_PRICE = "NO_PRICE"
    OOS_NO_PRICE = "OOS_NO_PRICE"


class NormalizeFailureReason:
    MISSING_TITLE = "MISSING_TITLE"
    MISSING_URL = "MISSING_URL"
    INVALID_URL = "INVALID_URL"
    MISSING_PRICE = "MISSING_PRICE"
    ZERO_PRICE = "ZERO_PRICE"
    PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
    UNKNOWN_AVAILABILITY = "UNKNOWN_AVAILABILITY"
    MISSING_IDENTITY = "MISSING_IDENTITY"


@dataclass(frozen=True)
class AdapterManifest:
    """Static description of one retailer adapter. Never mutated."""

    id: str
    name: str
    domain: str
    mode: str
    base_urls: Tuple[str, ...]
    version: str = "1.0.0"
    rate_limit: Optional[RateLimitPolicy] = None
    currency: str = "USD"


@dataclass
class AdapterContext:
    """Per-target context handed to every adapter call."""

    source_id: str
    retailer_id: str
    target_id: Optional[str] = None
    run_id: Optional[str] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RawOffer:
    """Adapter-specific intermediate produced by extract(); never persisted."""

    url: str
    title: Optional[str] = None
    price: Any = None
    availability: Any = None
    retailer_product_id: Optional[str] = None
    retailer_sku: Optional[str] = None
    upc: Optional[str] = None
    brand: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Any = None
    round_count: Any = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)


@dataclass
class NormalizedOffer:
    """Canonical offer shape written by the pipeline."""

    source_id: str
    retailer_id: str
    title: str
    url: str
    normalized_url: str
    identity_key: str
    price: Decimal
    currency: str = "USD"
    in_stock: Optional[bool] = None
    availability: str = AVAILABILITY_UNKNOWN
    brand: Optional[str] = None
    caliber: Optional[str] = None
    grain_weight: Optional[int] = None
    round_count: Optional[int] = None
    image_url: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    retailer_product_id: Optional[str] = None
    retailer_sku: Optional[str] = None
    upc: Optional[str] = None
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    adapter_version: Optional[str] = None

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.identity_key:
            raise ValueError("identity_key is required")
        if not self.normalized_url:
            raise ValueError("normalized_url is required")
        if self.price is None:
            raise ValueError("price is required")


@dataclass
class ExtractResult:
    ok: bool
    offer: Optional[RawOffer] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, offer: RawOffer) -> "ExtractResult":
        return cls(ok=True, offer=offer)

    @classmethod
    def failure(cls, reason: str) -> "ExtractResult":
        return cls(ok=False, reason=reason)


@dataclass
class NormalizeResult:
    status: str  # 'ok' or 'invalid'
    offer: Optional[NormalizedOffer] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @classmethod
    def valid(cls, offer: NormalizedOffer) -> "NormalizeResult":
        return cls(status="ok", offer=offer)

    @classmethod
    def invalid(cls, reason: str) -> "NormalizeResult":
        return cls(status="invalid", reason=reason)


def _first_text(*values: Any) -> Optional[str]:
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def normalize_raw_offer(
    raw: RawOffer,
    ctx: AdapterContext,
    manifest: AdapterManifest,
    caliber_hint: Optional[str] = None,
) -> NormalizeResult:
    """Shared raw -> canonical mapping used by every adapter's normalize().

    Args:
        raw: Output of extract()
        ctx: Target context
        manifest: Adapter manifest (domain, base URL, currency, version)
        caliber_hint: Site-specific caliber value looked up from attribute labels

    Returns:
        NormalizeResult with status 'ok' and the offer, or 'invalid' and a reason
    """
    title = _first_text(raw.title)
    if not title:
        return NormalizeResult.invalid(NormalizeFailureReason.MISSING_TITLE)
    if not raw.url:
        return NormalizeResult.invalid(NormalizeFailureReason.MISSING_URL)

    try:
        normalized_url = canonicalize_url(raw.url, base_url=manifest.base_urls[0])
    except InvalidUrl:
        return NormalizeResult.invalid(NormalizeFailureReason.INVALID_URL)

    price = PriceNormalizer.clean_price_string(raw.price)
    if price is None:
        return NormalizeResult.invalid(NormalizeFailureReason.MISSING_PRICE)
    if price == 0:
        return NormalizeResult.invalid(NormalizeFailureReason.ZERO_PRICE)
    if price < 0 or price > PriceNormalizer.MAX_PRICE:
        return NormalizeResult.invalid(NormalizeFailureReason.PRICE_OUT_OF_RANGE)

    availability = normalize_availability(raw.availability)
    if availability == AVAILABILITY_UNKNOWN:
        return NormalizeResult.invalid(NormalizeFailureReason.UNKNOWN_AVAILABILITY)

    try:
        identity_key = generate_identity_key(
            manifest.domain,
            retailer_product_id=raw.retailer_product_id,
            retailer_sku=raw.retailer_sku,
            canonical_url=normalized_url,
        )
    except ValueError:
        return NormalizeResult.invalid(NormalizeFailureReason.MISSING_IDENTITY)

    caliber = (
        normalize_caliber_string(caliber_hint)
        or normalize_caliber_string(raw.caliber)
        or normalize_caliber_string(title)
    )
    grain_weight = parse_int(raw.grain_weight) or extract_grain_weight(title)
    round_count = parse_int(raw.round_count) or extract_round_count(title)

    image_url = None
    if raw.image_url:
        try:
            image_url = canonicalize_url(raw.image_url, base_url=manifest.base_urls[0])
        except InvalidUrl:
            image_url = None

    offer = NormalizedOffer(
        source_id=ctx.source_id,
        retailer_id=ctx.retailer_id,
        title=title,
        url=raw.url if raw.url.startswith("http") else normalized_url,
        normalized_url=normalized_url,
        identity_key=identity_key,
        price=price.quantize(Decimal("0.01")),
        currency=manifest.currency,
        in_stock=availability == AVAILABILITY_IN_STOCK,
        availability=availability,
        brand=_first_text(raw.brand),
        caliber=caliber,
        grain_weight=grain_weight,
        round_count=round_count,
        image_url=image_url,
        description=_first_text(raw.description),
        category=_first_text(raw.category),
        retailer_product_id=_first_text(raw.retailer_product_id),
        retailer_sku=_first_text(raw.retailer_sku),
        upc=_first_text(raw.upc),
        observed_at=ctx.observed_at,
        adapter_version=manifest.version,
    )
    return NormalizeResult.valid(offer)


class BaseAdapter(ABC):
    """Abstract base class for all retailer adapters.

    Subclasses set ``manifest`` and implement extract() and normalize().
    The fetcher is injected by the registry entry point.
    """

    manifest: AdapterManifest = None  # Must be overridden in subclass
    mode: str = ""  # Set by the HtmlAdapter / JsonAdapter variants

    def __init__(self, fetcher: Optional[Fetcher] = None):
        self.fetcher = fetcher
        self.logger = structlog.get_logger(adapter=self.manifest.id if self.manifest else None)

    @property
    def id(self) -> str:
        return self.manifest.id

    async def fetch_raw(self, url: str, ctx: AdapterContext) -> FetchResult:
        """Fetch one target URL through the shared policy-aware fetcher.

        Raises:
            InvalidUrl, OutOfScopeUrl, RobotsDisallowed, FetchFailed,
            RateLimiterUnavailable: Propagated from the fetcher
        """
        if self.fetcher is None:
            raise RuntimeError(f"Adapter '{self.id}' has no fetcher injected")
        return await self.fetcher.fetch_with_policy(
            FetchRequest(
                url=url,
                mode=self.manifest.mode,
                base_urls=self.manifest.base_urls,
                rate_limit=self.manifest.rate_limit,
            )
        )

    @abstractmethod
    def extract(self, content: str, url: str, ctx: AdapterContext) -> ExtractResult:
        """Turn raw page or feed content into a RawOffer.

        Failure means the content did not have the expected shape (layout
        change, error page, captcha), not that business rules were violated.
        """

    def normalize(self, raw: RawOffer, ctx: AdapterContext) -> NormalizeResult:
        """Map a RawOffer to the canonical shape.

        Adapters override this to feed site-specific attribute lookups
        into normalize_raw_offer().
        """
        return normalize_raw_offer(raw, ctx, self.manifest)


class HtmlAdapter(BaseAdapter):
    """Adapter variant for product pages.

    JSON-LD Product data is preferred; any field it leaves empty falls back
    to the subclass's SELECTORS table. Selector entries may end with
    ``@attr`` to read an attribute instead of text.
    """

    mode = MODE_HTML

    # field name -> CSS selectors tried in order
    SELECTORS: Dict[str, List[str]] = {}

    def extract(self, content: str, url: str, ctx: AdapterContext) -> ExtractResult:
        if not content or not content.strip():
            return ExtractResult.failure(ExtractFailureReason.PARSE_FAILED)

        soup = BeautifulSoup(content, "html.parser")
        fields = self._extract_json_ld(soup)

        for name, selectors in self.SELECTORS.items():
            if fields.get(name) in (None, ""):
                fields[name] = self._select_first(soup, selectors)

        if not fields.get("title") and looks_blocked(content):
            return ExtractResult.failure(ExtractFailureReason.BLOCKED_PAGE)
        if not fields.get("title"):
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)

        availability = normalize_availability(fields.get("availability"))
        if fields.get("price") in (None, ""):
            if availability == AVAILABILITY_OUT_OF_STOCK:
                return ExtractResult.failure(ExtractFailureReason.OOS_NO_PRICE)
            return ExtractResult.failure(ExtractFailureReason.NO_PRICE)

        attributes = fields.pop("attributes", None) or {}
        return ExtractResult.success(
            RawOffer(
                url=fields.get("url") or url,
                title=fields.get("title"),
                price=fields.get("price"),
                availability=fields.get("availability"),
                retailer_product_id=fields.get("retailer_product_id"),
                retailer_sku=fields.get("retailer_sku"),
                upc=fields.get("upc"),
                brand=fields.get("brand"),
                caliber=fields.get("caliber"),
                grain_weight=fields.get("grain_weight"),
                round_count=fields.get("round_count"),
                image_url=fields.get("image_url"),
                description=fields.get("description"),
                category=fields.get("category"),
                attributes=attributes,
            )
        )

    @staticmethod
    def _select_first(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
        for selector in selectors:
            css, _, attr = selector.partition("@")
            element = soup.select_one(css.strip())
            if element is None:
                continue
            value = element.get(attr) if attr else element.get_text(" ", strip=True)
            if isinstance(value, list):
                value = " ".join(value)
            if value and str(value).strip():
                return str(value).strip()
        return None

    def _extract_json_ld(self, soup: BeautifulSoup) -> Dict[str, Any]:
        """Pull Product fields from JSON-LD script blocks, if any."""
        for script in soup.find_all("script", type="application/ld+json"):
            try:
                data = json.loads(script.string or script.get_text() or "")
            except (json.JSONDecodeError, TypeError):
                continue
            product = self._find_product_node(data)
            if product is not None:
                return self._product_fields(product)
        return {}

    @classmethod
    def _find_product_node(cls, data: Any) -> Optional[dict]:
        if isinstance(data, list):
            for item in data:
                found = cls._find_product_node(item)
                if found is not None:
                    return found
            return None
        if not isinstance(data, dict):
            return None
        node_type = data.get("@type")
        types = node_type if isinstance(node_type, list) else [node_type]
        if "Product" in types:
            return data
        if "@graph" in data:
            return cls._find_product_node(data["@graph"])
        return None

    @staticmethod
    def _first_mapping(value: Any) -> dict:
        """Return value if it is a dict, else the first dict in a list, else {}."""
        if isinstance(value, dict):
            return value
        if isinstance(value, list):
            return next((item for item in value if isinstance(item, dict)), {})
        return {}

    @classmethod
    def _product_fields(cls, product: dict) -> Dict[str, Any]:
        offers = cls._first_mapping(product.get("offers"))
        if offers.get("@type") == "AggregateOffer" and offers.get("price") is None:
            offers = {**offers, "price": offers.get("lowPrice")}

        price = offers.get("price")
        if price is None:
            price = cls._first_mapping(offers.get("priceSpecification")).get("price")

        brand = product.get("brand")
        if isinstance(brand, dict):
            brand = brand.get("name")

        image = product.get("image")
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            image = image.get("url")

        return {
            "title": product.get("name"),
            "price": price,
            "availability": offers.get("availability"),
            "url": offers.get("url") or product.get("url"),
            "retailer_product_id": product.get("productID"),
            "retailer_sku": product.get("sku") or product.get("mpn"),
            "upc": product.get("gtin12") or product.get("gtin13") or product.get("gtin"),
            "brand": brand,
            "image_url": image,
            "description": product.get("description"),
            "category": product.get("category"),
        }


class JsonAdapter(BaseAdapter):
    """Adapter variant for structured API responses.

    ITEM_PATH locates the item inside the payload; FIELD_PATHS maps each
    RawOffer field to dotted paths, the first non-empty value winning.
    """

    mode = MODE_JSON

    ITEM_PATH: str = ""
    FIELD_PATHS: Dict[str, List[str]] = {}

    def extract(self, content: str, url: str, ctx: AdapterContext) -> ExtractResult:
        try:
            payload = json.loads(content)
        except (json.JSONDecodeError, TypeError):
            return ExtractResult.failure(ExtractFailureReason.PARSE_FAILED)

        item = self.resolve_path(payload, self.ITEM_PATH) if self.ITEM_PATH else payload
        if not isinstance(item, dict):
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)

        fields = {
            name: self._first_value(item, paths)
            for name, paths in self.FIELD_PATHS.items()
        }
        return self.build_raw_offer(item, fields, url)

    def build_raw_offer(self, item: dict, fields: Dict[str, Any], url: str) -> ExtractResult:
        """Assemble the RawOffer; adapters override to derive availability etc."""
        if not fields.get("title"):
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)
        if fields.get("price") in (None, ""):
            return ExtractResult.failure(ExtractFailureReason.NO_PRICE)
        return ExtractResult.success(RawOffer(url=fields.pop("url", None) or url, **fields))

    @staticmethod
    def resolve_path(payload: Any, path: str) -> Any:
        current = payload
        for segment in [s for s in path.split(".") if s]:
            if isinstance(current, dict):
                current = current.get(segment)
            elif isinstance(current, list) and segment.isdigit():
                index = int(segment)
                current = current[index] if index < len(current) else None
            else:
                return None
            if current is None:
                return None
        return current

    @classmethod
    def _first_value(cls, item: dict, paths: List[str]) -> Any:
        for path in paths:
            value = cls.resolve_path(item, path)
            if value not in (None, "", [], {}):
                return value
        return None


__all__ = [
    "AVAILABILITY_BACKORDER",
    "AVAILABILITY_IN_STOCK",
    "AVAILABILITY_OUT_OF_STOCK",
    "AVAILABILITY_UNKNOWN",
    "AdapterContext",
    "AdapterManifest",
    "BaseAdapter",
    "CONTENT_MODES",
    "ExtractFailureReason",
    "ExtractResult",
    "HtmlAdapter",
    "JsonAdapter",
    "MODE_HTML",
    "MODE_JSON",
    "NormalizeFailureReason",
    "NormalizeResult",
    "NormalizedOffer",
    "RateLimitPolicy",
    "RawOffer",
    "normalize_raw_offer",
]
