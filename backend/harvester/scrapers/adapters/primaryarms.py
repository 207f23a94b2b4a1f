"""Primary Arms adapter.

Primary Arms serves product data from a NetSuite JSON endpoint
(/api/items?url=...). Targets point at that endpoint, not the HTML shell.
"""

import json
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

from harvester.scrapers.base import (
    AVAILABILITY_BACKORDER,
    AVAILABILITY_IN_STOCK,
    AVAILABILITY_OUT_OF_STOCK,
    AdapterContext,
    AdapterManifest,
    ExtractFailureReason,
    ExtractResult,
    JsonAdapter,
    NormalizeResult,
    RateLimitPolicy,
    RawOffer,
    normalize_raw_offer,
)
from harvester.scrapers.utils.normalizer import PriceNormalizer, extract_grain_weight

# Attribute labels used in the custitem_test_for_website JSON blob
ATTRIBUTE_LABELS: Dict[str, List[str]] = {
    "caliber": ["Caliber", "Cartridge", "Gauge"],
    "bullet_weight": ["Bullet Weight", "Grain", "Grain Weight"],
    "brand": ["Brand", "Manufacturer"],
    "round_count": ["Rounds", "Round Count", "Quantity"],
    "bullet_type": ["Bullet Type"],
    "case_material": ["Case Material", "Casing"],
}


class PrimaryArmsAdapter(JsonAdapter):
    """JSON adapter for primaryarms.com /api/items payloads."""

    manifest = AdapterManifest(
        id="primaryarms",
        name="Primary Arms",
        domain="primaryarms.com",
        mode="json",
        base_urls=("https://www.primaryarms.com",),
        version="1.0.0",
        rate_limit=RateLimitPolicy(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    ITEM_PATH = "items.0"
    FIELD_PATHS = {
        "title": ["pagetitle", "displayname", "itemid"],
        "price": ["onlinecustomerprice", "onlinecustomerprice_detail.onlinecustomerprice"],
        "retailer_product_id": ["internalid"],
        "retailer_sku": ["itemid"],
        "upc": ["upccode"],
        "brand": ["custitem_brand", "manufacturer"],
        "url": ["urlcomponent"],
        "image_url": ["itemimages_detail.urls.0.url"],
        "description": ["storedescription"],
        "category": ["custitem_category"],
    }

    def extract(self, content: str, url: str, ctx: AdapterContext) -> ExtractResult:
        stripped = (content or "").strip()
        if not stripped or stripped.startswith("<"):
            # HTML shell or error page instead of the API payload
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)

        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            return ExtractResult.failure(ExtractFailureReason.PARSE_FAILED)

        if isinstance(payload, dict) and payload.get("code") not in (None, 200):
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)

        return super().extract(stripped, url, ctx)

    def build_raw_offer(self, item: dict, fields: Dict[str, Any], url: str) -> ExtractResult:
        if not fields.get("title"):
            return ExtractResult.failure(ExtractFailureReason.PAGE_STRUCTURE_CHANGED)

        availability = self._resolve_availability(item)
        price = PriceNormalizer.clean_price_string(fields.get("price"))
        if price is None or price <= 0:
            if availability == AVAILABILITY_OUT_OF_STOCK:
                return ExtractResult.failure(ExtractFailureReason.OOS_NO_PRICE)
            return ExtractResult.failure(ExtractFailureReason.NO_PRICE)

        url_component = fields.pop("url", None) or self._url_param(url)
        if url_component:
            product_url = self._build_product_url(str(url_component))
        else:
            self.logger.warning("primaryarms_missing_urlcomponent", url=url)
            product_url = url

        for key in ("retailer_product_id", "retailer_sku"):
            if fields.get(key) is not None:
                fields[key] = str(fields[key]).strip()

        return ExtractResult.success(
            RawOffer(
                url=product_url,
                availability=availability,
                attributes=self._parse_attributes(item.get("custitem_test_for_website")),
                **fields,
            )
        )

    def normalize(self, raw: RawOffer, ctx: AdapterContext) -> NormalizeResult:
        attributes = raw.attributes
        if raw.grain_weight is None:
            raw.grain_weight = extract_grain_weight(self._attribute(attributes, "bullet_weight"))
        if raw.brand is None:
            raw.brand = self._attribute(attributes, "brand")
        if raw.round_count is None:
            raw.round_count = self._attribute(attributes, "round_count")
        return normalize_raw_offer(
            raw,
            ctx,
            self.manifest,
            caliber_hint=self._attribute(attributes, "caliber"),
        )

    @staticmethod
    def _resolve_availability(item: dict) -> Optional[str]:
        if item.get("isinstock") is True:
            return AVAILABILITY_IN_STOCK
        if item.get("isbackorderable") is True:
            return AVAILABILITY_BACKORDER
        if item.get("isinstock") is False:
            return AVAILABILITY_OUT_OF_STOCK
        if item.get("ispurchasable") is True:
            return AVAILABILITY_IN_STOCK
        if item.get("ispurchasable") is False:
            return AVAILABILITY_OUT_OF_STOCK
        return None

    @staticmethod
    def _parse_attributes(raw: Optional[str]) -> Dict[str, str]:
        """Parse {"attributes": [{"attribute": label, "value": v}]} into label -> value."""
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return {}

        entries = parsed.get("attributes") if isinstance(parsed, dict) else None
        if not isinstance(entries, list):
            return {}

        attributes = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            label = str(entry.get("attribute") or "").strip().lower()
            value = str(entry.get("value") or "").strip()
            if label and value:
                attributes[label] = value
        return attributes

    @staticmethod
    def _attribute(attributes: Dict[str, str], field: str) -> Optional[str]:
        for label in ATTRIBUTE_LABELS[field]:
            value = attributes.get(label.lower())
            if value:
                return value
        return None

    @staticmethod
    def _url_param(request_url: str) -> Optional[str]:
        values = parse_qs(urlsplit(request_url).query).get("url")
        return values[0].lstrip("/") if values else None

    def _build_product_url(self, url_component: str) -> str:
        if url_component.startswith(("http://", "https://")):
            return url_component
        return f"{self.manifest.base_urls[0]}/{url_component.lstrip('/')}"
