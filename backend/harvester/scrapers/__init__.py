"""Scraper system for fetching offers from retailer sites.

This package provides:
- Base adapter classes (HTML and JSON variants) and the offer data shapes
- The policy-aware fetcher shared by every adapter
- The adapter registry
- Utility modules for URLs, hashing, normalization, locks and rate limits
"""

from .base import (
    AdapterContext,
    AdapterManifest,
    BaseAdapter,
    HtmlAdapter,
    JsonAdapter,
    NormalizedOffer,
    RawOffer,
)
from .registry import AdapterRegistry, adapter_registry, get_adapter_registry

__all__ = [
    # Base classes
    "BaseAdapter",
    "HtmlAdapter",
    "JsonAdapter",
    # Data structures
    "AdapterManifest",
    "AdapterContext",
    "RawOffer",
    "NormalizedOffer",
    # Registry
    "AdapterRegistry",
    "adapter_registry",
    "get_adapter_registry",
]
