"""Scraper utilities for URLs, hashing, normalization, locking and rate limiting."""

from .hashing import compute_content_hash, deterministic_hash, sort_offers_for_hash
from .lock import DistributedLock, LockHandle
from .rate_limiter import DomainRateLimiter, RateLimitPolicy
from .retry import RetryPolicy
from .robots import RobotsPolicy
from .url import (
    canonicalize_url,
    generate_identity_key,
    get_registrable_domain,
    hash_url,
    parse_identity_key,
)

__all__ = [
    "compute_content_hash",
    "deterministic_hash",
    "sort_offers_for_hash",
    "DistributedLock",
    "LockHandle",
    "DomainRateLimiter",
    "RateLimitPolicy",
    "RetryPolicy",
    "RobotsPolicy",
    "canonicalize_url",
    "generate_identity_key",
    "get_registrable_domain",
    "hash_url",
    "parse_identity_key",
]
