"""Data normalization utilities for prices, availability and ammo attributes."""

import re
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

AVAILABILITY_IN_STOCK = "IN_STOCK"
AVAILABILITY_OUT_OF_STOCK = "OUT_OF_STOCK"
AVAILABILITY_BACKORDER = "BACKORDER"
AVAILABILITY_UNKNOWN = "UNKNOWN"

# Canonical caliber -> aliases seen in retailer titles and attribute tables
CALIBER_ALIASES: Dict[str, List[str]] = {
    "5.56 NATO": [
        "5.56x45mm nato", "5.56x45 nato", "5.56 x 45mm", "5.56x45mm", "5.56x45",
        "5.56mm nato", "5.56 nato", "5.56mm", "5.56",
    ],
    ".223 Remington": [".223 remington", "223 remington", ".223 rem", "223 rem", ".223"],
    "9mm Luger": ["9mm luger", "9mm parabellum", "9mm para", "9x19mm", "9x19", "9 mm", "9mm"],
    ".380 ACP": [".380 acp", "380 acp", ".380 auto", "380 auto", ".380"],
    ".40 S&W": [".40 smith & wesson", ".40 s&w", "40 s&w", ".40 sw", "40 cal"],
    ".45 ACP": [".45 acp", "45 acp", ".45 auto", "45 auto"],
    "10mm Auto": ["10mm auto", "10mm"],
    ".38 Special": [".38 special", "38 special", ".38 spl", "38 spl"],
    ".357 Magnum": [".357 magnum", "357 magnum", ".357 mag", "357 mag"],
    "5.7x28mm": ["5.7x28mm", "5.7x28"],
    ".22 LR": [".22 long rifle", "22 long rifle", ".22 lr", "22 lr", "22lr"],
    ".300 Blackout": [
        ".300 aac blackout", "300 aac blackout", ".300 blackout", "300 blackout",
        ".300 blk", "300 blk", "300blk", "300 aac",
    ],
    "7.62x39mm": ["7.62x39mm", "7.62 x 39mm", "7.62x39"],
    ".308 Winchester": [
        "7.62x51mm nato", "7.62x51mm", "7.62x51", ".308 winchester", "308 winchester",
        ".308 win", "308 win", ".308",
    ],
    "6.5 Creedmoor": ["6.5mm creedmoor", "6.5 creedmoor", "6.5 cm"],
    ".30-06 Springfield": [".30-06 springfield", "30-06 springfield", ".30-06", "30-06"],
    "12 Gauge": ["12 gauge", "12-gauge", "12 ga", "12ga"],
    "20 Gauge": ["20 gauge", "20-gauge", "20 ga", "20ga"],
}


def _alias_pattern(alias: str) -> "re.Pattern[str]":
    body = re.escape(alias).replace(r"\ ", r"\s*")
    return re.compile(r"(?<![\w.])" + body + r"(?![\w])", re.IGNORECASE)


# Longest alias first so "5.56x45mm nato" wins over "5.56"
CALIBER_RULES: List[Tuple["re.Pattern[str]", str]] = [
    (_alias_pattern(alias), canonical)
    for alias, canonical in sorted(
        ((alias, canonical) for canonical, aliases in CALIBER_ALIASES.items() for alias in aliases),
        key=lambda pair: len(pair[0]),
        reverse=True,
    )
]

GRAIN_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*-?\s*(?:grains?|gr)\b", re.IGNORECASE)
MIN_GRAIN_WEIGHT = 15
MAX_GRAIN_WEIGHT = 800

ROUND_COUNT_PATTERNS = [
    re.compile(r"\b(?:box|case|bag|pack|can|tin)\s+of\s+(\d{1,3}(?:,\d{3})+|\d+)\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,3}(?:,\d{3})+|\d+)\s*(?:rounds?|rds?|ct|count)\b", re.IGNORECASE),
    re.compile(r"\b(\d+)\s*(?:/|per)\s*(?:box|case)\b", re.IGNORECASE),
]
MAX_ROUND_COUNT = 100_000

_PRICE_PATTERN = re.compile(r"\d[\d,]*(?:\.\d+)?")

_IN_STOCK_MARKERS = ("instock", "in stock", "in_stock", "add to cart", "available", "limitedavailability",
                     "onlineonly", "instoreonly")
_OUT_OF_STOCK_MARKERS = ("outofstock", "out of stock", "out_of_stock", "sold out", "soldout",
                         "unavailable", "discontinued", "notify me")
_BACKORDER_MARKERS = ("backorder", "back order", "preorder", "pre-order")
# Checked before the in-stock markers, which they contain
_NEGATED_STOCK_MARKERS = ("not in stock", "not available", "no longer available", "not currently available",
                          "currently not available")


class PriceNormalizer:
    """Price parsing utilities.

    Handles price values as they appear in retailer markup and API
    payloads: formatted strings, bare numbers and Decimals.
    """

    MAX_PRICE = Decimal("999999.99")

    @staticmethod
    def clean_price_string(raw: Union[str, int, float, Decimal, None]) -> Optional[Decimal]:
        """Parse a price value and extract its numeric amount.

        Handles various formats:
        - "$1,299.99" -> 1299.99
        - "19.99 USD" -> 19.99
        - "$19.99 - $24.99" -> 19.99 (first price of a range)
        - 19.99 -> 19.99

        Args:
            raw: Raw price string or number

        Returns:
            Decimal price value, or None if parsing fails
        """
        if raw is None or isinstance(raw, bool):
            return None

        if isinstance(raw, Decimal):
            price = raw
        elif isinstance(raw, (int, float)):
            price = Decimal(str(raw))
        else:
            match = _PRICE_PATTERN.search(str(raw))
            if not match:
                return None
            try:
                price = Decimal(match.group(0).replace(",", ""))
            except InvalidOperation:
                return None

        # NaN and Infinity from JSON payloads are not prices
        return price if price.is_finite() else None


def normalize_availability(value: Union[str, bool, None]) -> str:
    """Map schema.org availability URLs, flags and free text to a status.

    Returns:
        One of IN_STOCK, OUT_OF_STOCK, BACKORDER, UNKNOWN
    """
    if value is None:
        return AVAILABILITY_UNKNOWN
    if isinstance(value, bool):
        return AVAILABILITY_IN_STOCK if value else AVAILABILITY_OUT_OF_STOCK

    text = str(value).strip().lower()
    if not text:
        return AVAILABILITY_UNKNOWN

    # https://schema.org/InStock -> instock
    if "schema.org/" in text:
        text = text.rsplit("/", 1)[-1]

    if any(marker in text for marker in _BACKORDER_MARKERS):
        return AVAILABILITY_BACKORDER
    if any(marker in text for marker in _NEGATED_STOCK_MARKERS):
        return AVAILABILITY_OUT_OF_STOCK
    if any(marker in text for marker in _OUT_OF_STOCK_MARKERS):
        return AVAILABILITY_OUT_OF_STOCK
    if any(marker in text for marker in _IN_STOCK_MARKERS):
        return AVAILABILITY_IN_STOCK
    return AVAILABILITY_UNKNOWN


def normalize_caliber_string(text: Optional[str]) -> Optional[str]:
    """Return the canonical caliber named in a title or attribute value.

    Aliases are tried longest first, so "5.56mm NATO", "5.56x45mm" and
    "M855 Green Tip 5.56 - 62 Grain" all resolve to "5.56 NATO".
    """
    if not text:
        return None
    for pattern, canonical in CALIBER_RULES:
        if pattern.search(text):
            return canonical
    return None


def extract_grain_weight(text: Optional[str]) -> Optional[int]:
    """Extract bullet weight in grains (15-800 gr) from text."""
    if not text:
        return None
    for match in GRAIN_PATTERN.finditer(text):
        grains = round(float(match.group(1)))
        if MIN_GRAIN_WEIGHT <= grains <= MAX_GRAIN_WEIGHT:
            return grains
    return None


def extract_round_count(text: Optional[str]) -> Optional[int]:
    """Extract rounds per package, e.g. "Box of 50", "1,000 Rounds", "20rds"."""
    if not text:
        return None
    for pattern in ROUND_COUNT_PATTERNS:
        match = pattern.search(text)
        if match:
            count = int(match.group(1).replace(",", ""))
            if 0 < count <= MAX_ROUND_COUNT:
                return count
    return None


def parse_int(value) -> Optional[int]:
    """Lenient integer parse for attribute values like "124 gr" or 50."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = re.search(r"\d[\d,]*", str(value))
    if not match:
        return None
    return int(match.group(0).replace(",", ""))
