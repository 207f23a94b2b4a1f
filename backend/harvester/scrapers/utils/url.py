"""URL canonicalization and offer identity keys.

Identity keys have the form ``{domain}:{TYPE}:{value}`` where TYPE is one of
PID (retailer product id), SKU (retailer SKU) or URL (hash of the canonical
URL). Retailer-assigned identifiers are preferred because catalog ids
survive URL changes.
"""

import hashlib
import re
from typing import NamedTuple, Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urljoin, urlsplit, urlunsplit

import tldextract

from harvester.core.exceptions import InvalidUrl

# Query parameters that never change which product a URL points to
TRACKING_PARAMS = frozenset({
    "fbclid",
    "gclid",
    "msclkid",
    "dclid",
    "ref",
    "source",
    "campaign",
    "mc_cid",
    "mc_eid",
    "_ga",
})

DEFAULT_PORTS = {80, 443}

IDENTITY_TYPES = ("PID", "SKU", "URL")
MAX_IDENTITY_VALUE_LENGTH = 255

# Bundled public suffix snapshot only, never fetched at runtime
_domain_extractor = tldextract.TLDExtract(suffix_list_urls=())


class IdentityKey(NamedTuple):
    domain: str
    id_type: str
    value: str


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_PARAMS


def canonicalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Canonicalize a product URL so equivalent URLs compare equal.

    Args:
        url: Absolute URL, or a relative reference when base_url is given
        base_url: Adapter base URL used to resolve relative references

    Returns:
        Canonical https URL with lower-cased host, no default port, collapsed
        slashes, sorted non-tracking query parameters and no fragment

    Raises:
        InvalidUrl: If the URL cannot be parsed or is not http(s)
    """
    if not url or not isinstance(url, str):
        raise InvalidUrl(str(url), "empty")

    raw = url.strip()
    if base_url:
        raw = urljoin(base_url, raw)

    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as e:
        raise InvalidUrl(url, str(e)) from e

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidUrl(url, f"unsupported scheme '{parts.scheme}'")

    host = parts.hostname
    if not host:
        raise InvalidUrl(url, "missing host")
    if ":" in host:
        host = f"[{host}]"

    netloc = host if port is None or port in DEFAULT_PORTS else f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if value != "" and not _is_tracking_param(key)
    ]
    params.sort()
    query = urlencode(params)

    return urlunsplit(("https", netloc, path, query, ""))


def is_valid_url(url: str) -> bool:
    """Check whether a string is an absolute http(s) URL with a host."""
    if not url or not isinstance(url, str):
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    return parts.scheme.lower() in ("http", "https") and bool(parts.hostname)


def get_registrable_domain(url_or_host: str) -> str:
    """Return the registrable domain (eTLD+1) of a URL or bare host.

    Falls back to the lower-cased host for IP addresses and hosts without
    a known public suffix.
    """
    value = (url_or_host or "").strip()
    if "://" in value:
        host = urlsplit(value).hostname or ""
    else:
        host = value.split("/", 1)[0].split(":", 1)[0]
    host = host.lower().rstrip(".")

    extracted = _domain_extractor(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return host


def hash_url(url: str) -> str:
    """Return a 16 hex char digest of the canonical form of a URL."""
    canonical = canonicalize_url(url)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def generate_identity_key(
    domain: str,
    retailer_product_id: Optional[str] = None,
    retailer_sku: Optional[str] = None,
    canonical_url: Optional[str] = None,
) -> str:
    """Build the identity key for an offer.

    Precedence is retailer product id, then SKU, then the URL hash.

    Raises:
        ValueError: If the domain is empty or no identifier is usable
    """
    domain = (domain or "").strip().lower()
    if not domain or ":" in domain:
        raise ValueError(f"Invalid identity domain: {domain!r}")

    if retailer_product_id is not None and str(retailer_product_id).strip():
        id_type, value = "PID", str(retailer_product_id).strip()
    elif retailer_sku is not None and str(retailer_sku).strip():
        id_type, value = "SKU", str(retailer_sku).strip()
    elif canonical_url:
        id_type, value = "URL", hash_url(canonical_url)
    else:
        raise ValueError("Identity key needs a product id, SKU or URL")

    encoded = quote(value, safe="")
    if len(encoded) > MAX_IDENTITY_VALUE_LENGTH:
        raise ValueError(f"Identity value too long ({len(encoded)} chars)")

    return f"{domain}:{id_type}:{encoded}"


def parse_identity_key(key: str) -> IdentityKey:
    """Split an identity key back into (domain, type, value).

    Raises:
        ValueError: If the key is malformed
    """
    if not key or not isinstance(key, str):
        raise ValueError("Identity key is empty")

    parts = key.split(":")
    if len(parts) != 3:
        raise ValueError(f"Malformed identity key: {key!r}")

    domain, id_type, encoded = parts
    if not domain:
        raise ValueError(f"Identity key has no domain: {key!r}")
    if id_type not in IDENTITY_TYPES:
        raise ValueError(f"Unknown identity type '{id_type}' in {key!r}")
    if not encoded:
        raise ValueError(f"Identity key has empty value: {key!r}")
    if len(encoded) > MAX_IDENTITY_VALUE_LENGTH:
        raise ValueError(f"Identity value too long in {key!r}")

    return IdentityKey(domain=domain, id_type=id_type, value=unquote(encoded))
