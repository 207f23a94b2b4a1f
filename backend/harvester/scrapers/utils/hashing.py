"""Deterministic hashing for fixtures and feed change detection."""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Sequence, Tuple, Union

# Volatile timestamps that must not affect content hashes
DEFAULT_EXCLUDE_KEYS = (
    "observedAt",
    "observed_at",
    "createdAt",
    "created_at",
    "updatedAt",
    "updated_at",
)

_OFFER_KEYS = (
    ("url",),
    ("retailerProductId", "retailer_product_id"),
    ("retailerSku", "retailer_sku"),
)


def _first_present(item: Mapping, names: Sequence[str]) -> str:
    for name in names:
        value = item.get(name)
        if value is not None:
            return str(value)
    return ""


def _offer_sort_key(item: Any) -> Tuple[str, str, str]:
    if isinstance(item, Mapping):
        return tuple(_first_present(item, names) for names in _OFFER_KEYS)
    return tuple(str(getattr(item, names[-1], None) or "") for names in _OFFER_KEYS)


def _looks_like_offer(item: Any) -> bool:
    return isinstance(item, Mapping) and any(
        name in item for names in _OFFER_KEYS for name in names
    )


def sort_offers_for_hash(offers: Iterable[Any]) -> List[Any]:
    """Sort offers by (url, retailer product id, retailer SKU).

    Accepts mappings (camelCase or snake_case keys) or objects with
    snake_case attributes. Missing values sort as empty strings. The sort
    is stable, so applying it twice yields the same sequence.
    """
    return sorted(offers, key=_offer_sort_key)


def _canonicalize(value: Any, exclude: frozenset) -> Any:
    if isinstance(value, Mapping):
        return {
            str(k): _canonicalize(v, exclude)
            for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))
            if str(k) not in exclude
        }
    if isinstance(value, (list, tuple)):
        items = list(value)
        if items and all(_looks_like_offer(item) for item in items):
            items = sort_offers_for_hash(items)
        return [_canonicalize(item, exclude) for item in items]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(
            (_canonicalize(item, exclude) for item in value),
            key=lambda item: json.dumps(item, sort_keys=True, default=str),
        )
    return value


def deterministic_hash(value: Any, exclude_keys: Sequence[str] = DEFAULT_EXCLUDE_KEYS) -> str:
    """Hash a JSON-like value independently of mapping key order.

    Args:
        value: Nested dicts/lists/scalars (Decimal and datetime are stringified)
        exclude_keys: Keys dropped at every nesting level before hashing

    Returns:
        sha256 hex digest
    """
    canonical = _canonicalize(value, frozenset(exclude_keys))
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_content_hash(content: Union[str, bytes, Mapping, list]) -> str:
    """Hash feed content to detect changes between fetches.

    Raw text and bytes are hashed as-is; parsed JSON goes through
    deterministic_hash so key order does not matter.
    """
    if isinstance(content, bytes):
        return hashlib.sha256(content).hexdigest()
    if isinstance(content, str):
        return hashlib.sha256(content.encode("utf-8")).hexdigest()
    return deterministic_hash(content)


def fixture_hash(offers: Iterable[Mapping]) -> str:
    """Content address for a golden fixture's offer collection."""
    return deterministic_hash(sort_offers_for_hash(offers))


def extract_array(payload: Any, path: str) -> list:
    """Walk a dotted path into a JSON payload and return the list found there.

    Numeric segments index into lists. Returns an empty list when any
    segment is missing or the final value is not a list.
    """
    current = payload
    for segment in [s for s in path.split(".") if s]:
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return []
        if current is None:
            return []
    return current if isinstance(current, list) else []
