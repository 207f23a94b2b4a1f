"""Tests for URL canonicalization and identity keys."""

import pytest

from harvester.core.exceptions import InvalidUrl
from harvester.scrapers.utils.url import (
    canonicalize_url,
    generate_identity_key,
    get_registrable_domain,
    hash_url,
    is_valid_url,
    parse_identity_key,
)


class TestCanonicalizeUrl:
    def test_full_normalization(self):
        url = "HTTP://WWW.Example.com:80//ammo//9mm/?utm_source=x&b=2&a=1&fbclid=abc#reviews"
        assert canonicalize_url(url) == "https://www.example.com/ammo/9mm?a=1&b=2"

    def test_equivalent_urls_compare_equal(self):
        a = canonicalize_url("https://shop.example.com/p/123?color=red&size=l")
        b = canonicalize_url("http://SHOP.example.com/p/123/?size=l&color=red&utm_campaign=spring")
        assert a == b

    def test_non_default_port_kept(self):
        assert canonicalize_url("https://example.com:8443/x") == "https://example.com:8443/x"

    def test_empty_params_dropped(self):
        assert canonicalize_url("https://example.com/x?a=&b=1") == "https://example.com/x?b=1"

    def test_root_path(self):
        assert canonicalize_url("https://example.com") == "https://example.com/"

    def test_relative_resolved_against_base(self):
        result = canonicalize_url("/product/winchester-9mm", base_url="https://sgammo.com")
        assert result == "https://sgammo.com/product/winchester-9mm"

    def test_idempotent(self):
        once = canonicalize_url("http://Example.com/a//b/?z=1&y=2")
        assert canonicalize_url(once) == once

    @pytest.mark.parametrize("url", ["", "ftp://example.com/file", "mailto:x@example.com", "https:///nohost"])
    def test_rejects_invalid(self, url):
        with pytest.raises(InvalidUrl):
            canonicalize_url(url)


class TestIsValidUrl:
    def test_valid(self):
        assert is_valid_url("https://example.com/p")

    @pytest.mark.parametrize("url", [None, "", "example.com/p", "javascript:alert(1)"])
    def test_invalid(self, url):
        assert not is_valid_url(url)


class TestRegistrableDomain:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://www.primaryarms.com/api/items", "primaryarms.com"),
            ("shop.example.co.uk", "example.co.uk"),
            ("SGAMMO.COM", "sgammo.com"),
            ("http://127.0.0.1:8080/x", "127.0.0.1"),
        ],
    )
    def test_extracts_etld_plus_one(self, value, expected):
        assert get_registrable_domain(value) == expected


class TestIdentityKey:
    def test_product_id_preferred(self):
        key = generate_identity_key("primaryarms.com", retailer_product_id="12345", retailer_sku="ABC")
        assert key == "primaryarms.com:PID:12345"

    def test_sku_when_no_product_id(self):
        key = generate_identity_key("sgammo.com", retailer_product_id="  ", retailer_sku="WIN-9MM")
        assert key == "sgammo.com:SKU:WIN-9MM"

    def test_url_hash_fallback(self):
        url = "https://sgammo.com/product/abc"
        key = generate_identity_key("sgammo.com", canonical_url=url)
        assert key == f"sgammo.com:URL:{hash_url(url)}"
        assert len(hash_url(url)) == 16

    def test_value_with_colon_round_trips(self):
        key = generate_identity_key("example.com", retailer_sku="A:B/C")
        assert key.count(":") == 2
        parsed = parse_identity_key(key)
        assert parsed.domain == "example.com"
        assert parsed.id_type == "SKU"
        assert parsed.value == "A:B/C"

    def test_missing_identifiers(self):
        with pytest.raises(ValueError):
            generate_identity_key("example.com")

    def test_empty_domain(self):
        with pytest.raises(ValueError):
            generate_identity_key("", retailer_product_id="1")

    def test_value_too_long(self):
        with pytest.raises(ValueError):
            generate_identity_key("example.com", retailer_sku="x" * 300)

    @pytest.mark.parametrize(
        "key",
        ["", "example.com:PID", "example.com:XYZ:1", ":PID:1", "example.com:PID:", "a:b:c:d"],
    )
    def test_parse_rejects_malformed(self, key):
        with pytest.raises(ValueError):
            parse_identity_key(key)
