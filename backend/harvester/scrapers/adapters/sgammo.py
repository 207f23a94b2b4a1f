"""SGAmmo adapter.

Product pages carry schema.org JSON-LD for most listings; older templates
only have the rendered markup, so CSS selectors cover the gaps.
"""

from harvester.scrapers.base import AdapterManifest, HtmlAdapter, RateLimitPolicy


class SGAmmoAdapter(HtmlAdapter):
    """HTML adapter for sgammo.com product pages."""

    manifest = AdapterManifest(
        id="sgammo",
        name="SGAmmo",
        domain="sgammo.com",
        mode="html",
        base_urls=("https://sgammo.com", "https://www.sgammo.com"),
        version="1.0.0",
        rate_limit=RateLimitPolicy(requests_per_second=0.5, min_delay_ms=2000, max_concurrent=1),
    )

    SELECTORS = {
        "title": ["h1.product-title", "h1[itemprop=name]", "h1"],
        "price": [
            "meta[itemprop=price]@content",
            ".product-info .price",
            ".price-box .price",
            ".price",
        ],
        "availability": [
            "link[itemprop=availability]@href",
            "meta[itemprop=availability]@content",
            ".stock",
            ".availability",
        ],
        "retailer_sku": ["[itemprop=sku]", ".product-sku .value", ".sku"],
        "brand": ["[itemprop=brand]", ".product-brand"],
        "image_url": ["meta[property='og:image']@content", "img.product-image@src"],
        "description": ["meta[name=description]@content"],
        "url": ["link[rel=canonical]@href"],
    }
