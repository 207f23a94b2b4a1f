"""Business-rule validation for normalized offers.

Validation gates the writer: an offer that fails here is never persisted.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List

from harvester.scrapers.base import NormalizedOffer
from harvester.scrapers.utils.normalizer import AVAILABILITY_UNKNOWN, PriceNormalizer
from harvester.scrapers.utils.url import is_valid_url, parse_identity_key


class ValidationReason:
    MISSING_TITLE = "MISSING_TITLE"
    MISSING_URL = "MISSING_URL"
    MISSING_NORMALIZED_URL = "MISSING_NORMALIZED_URL"
    MISSING_IDENTITY_KEY = "MISSING_IDENTITY_KEY"
    MISSING_SOURCE = "MISSING_SOURCE"
    INVALID_IDENTITY_KEY = "INVALID_IDENTITY_KEY"
    INVALID_URL = "INVALID_URL"
    MISSING_PRICE = "MISSING_PRICE"
    ZERO_PRICE = "ZERO_PRICE"
    NEGATIVE_PRICE = "NEGATIVE_PRICE"
    PRICE_TOO_HIGH = "PRICE_TOO_HIGH"
    ZERO_PRICE_IN_STOCK = "ZERO_PRICE_IN_STOCK"
    UNKNOWN_AVAILABILITY = "UNKNOWN_AVAILABILITY"


@dataclass
class ValidationResult:
    valid: bool
    reasons: List[str] = field(default_factory=list)

    @property
    def is_zero_price(self) -> bool:
        return ValidationReason.ZERO_PRICE in self.reasons


def validate_offer(offer: NormalizedOffer) -> ValidationResult:
    """Check a normalized offer against the pipeline's invariants.

    Args:
        offer: Output of an adapter's normalize()

    Returns:
        ValidationResult; valid is False when any reason was recorded
    """
    reasons: List[str] = []

    if not offer.title or not offer.title.strip():
        reasons.append(ValidationReason.MISSING_TITLE)
    if not offer.url:
        reasons.append(ValidationReason.MISSING_URL)
    elif not is_valid_url(offer.url):
        reasons.append(ValidationReason.INVALID_URL)
    if not offer.normalized_url:
        reasons.append(ValidationReason.MISSING_NORMALIZED_URL)
    if not offer.source_id or not offer.retailer_id:
        reasons.append(ValidationReason.MISSING_SOURCE)

    if not offer.identity_key:
        reasons.append(ValidationReason.MISSING_IDENTITY_KEY)
    else:
        try:
            parse_identity_key(offer.identity_key)
        except ValueError:
            reasons.append(ValidationReason.INVALID_IDENTITY_KEY)

    price = offer.price
    if price is None:
        reasons.append(ValidationReason.MISSING_PRICE)
    else:
        price = Decimal(price)
        if price == 0:
            reasons.append(ValidationReason.ZERO_PRICE)
            if offer.in_stock:
                reasons.append(ValidationReason.ZERO_PRICE_IN_STOCK)
        elif price < 0:
            reasons.append(ValidationReason.NEGATIVE_PRICE)
        elif price > PriceNormalizer.MAX_PRICE:
            reasons.append(ValidationReason.PRICE_TOO_HIGH)

    if offer.in_stock is None or offer.availability == AVAILABILITY_UNKNOWN:
        reasons.append(ValidationReason.UNKNOWN_AVAILABILITY)

    return ValidationResult(valid=not reasons, reasons=reasons)


def should_count_toward_drift(offer: NormalizedOffer) -> bool:
    """Whether an offer carries a meaningful price signal for the baseline.

    Out-of-stock and backordered offers often show placeholder prices.
    """
    return bool(offer.in_stock)
