"""Tests for price, availability and ammo attribute normalization."""

from decimal import Decimal

import pytest

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


class TestPriceNormalizer:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("$1,299.99", Decimal("1299.99")),
            ("19.99 USD", Decimal("19.99")),
            ("$19.99 - $24.99", Decimal("19.99")),
            (19.99, Decimal("19.99")),
            (25, Decimal("25")),
            (Decimal("7.50"), Decimal("7.50")),
        ],
    )
    def test_parses(self, raw, expected):
        assert PriceNormalizer.clean_price_string(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "Call for price", True])
    def test_unparsable(self, raw):
        assert PriceNormalizer.clean_price_string(raw) is None

    @pytest.mark.parametrize(
        "raw", [float("nan"), float("inf"), float("-inf"), Decimal("NaN"), Decimal("Infinity")]
    )
    def test_non_finite_is_not_a_price(self, raw):
        assert PriceNormalizer.clean_price_string(raw) is None


class TestAvailability:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("https://schema.org/InStock", AVAILABILITY_IN_STOCK),
            ("http://schema.org/OutOfStock", AVAILABILITY_OUT_OF_STOCK),
            ("https://schema.org/BackOrder", AVAILABILITY_BACKORDER),
            ("https://schema.org/PreOrder", AVAILABILITY_BACKORDER),
            ("In Stock", AVAILABILITY_IN_STOCK),
            ("Sold Out", AVAILABILITY_OUT_OF_STOCK),
            ("Currently unavailable", AVAILABILITY_OUT_OF_STOCK),
            (True, AVAILABILITY_IN_STOCK),
            (False, AVAILABILITY_OUT_OF_STOCK),
            (None, AVAILABILITY_UNKNOWN),
            ("", AVAILABILITY_UNKNOWN),
            ("ships soon maybe", AVAILABILITY_UNKNOWN),
        ],
    )
    def test_mapping(self, value, expected):
        assert normalize_availability(value) == expected

    @pytest.mark.parametrize(
        "value",
        ["Not in stock", "Currently not available", "Not available online", "No longer available"],
    )
    def test_negated_in_stock_text(self, value):
        assert normalize_availability(value) == AVAILABILITY_OUT_OF_STOCK


class TestCaliber:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("5.56mm NATO", "5.56 NATO"),
            ("5.56x45mm", "5.56 NATO"),
            ("Lake City M855 Green Tip 5.56 - 62 Grain", "5.56 NATO"),
            ("Federal American Eagle 9mm Luger 115gr FMJ", "9mm Luger"),
            ("Winchester .223 Rem 55 Grain", ".223 Remington"),
            ("PMC Bronze 7.62x51mm 147gr", ".308 Winchester"),
            ("Hornady 6.5 Creedmoor 140gr ELD Match", "6.5 Creedmoor"),
            ("CCI Mini-Mag 22LR 40gr", ".22 LR"),
            ("Barnes 300 AAC Blackout 110gr", ".300 Blackout"),
            ("Fiocchi 12 Gauge 2-3/4\" 00 Buck", "12 Gauge"),
        ],
    )
    def test_canonical(self, text, expected):
        assert normalize_caliber_string(text) == expected

    @pytest.mark.parametrize("text", [None, "", "Cleaning kit", "Gun oil 4oz"])
    def test_no_caliber(self, text):
        assert normalize_caliber_string(text) is None


class TestGrainWeight:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("62 Grain", 62),
            ("124gr JHP", 124),
            ("Lake City M855 Green Tip 5.56 - 62 Grain", 62),
            ("55-gr FMJ", 55),
        ],
    )
    def test_extracts(self, text, expected):
        assert extract_grain_weight(text) == expected

    @pytest.mark.parametrize("text", [None, "no weight here", "5 gr", "1200 grain"])
    def test_out_of_range_or_missing(self, text):
        assert extract_grain_weight(text) is None


class TestRoundCount:
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Box of 50", 50),
            ("1,000 Rounds", 1000),
            ("9mm 115gr 20rds", 20),
            ("50 ct", 50),
            ("Case of 500", 500),
            ("20/box", 20),
        ],
    )
    def test_extracts(self, text, expected):
        assert extract_round_count(text) == expected

    def test_missing(self):
        assert extract_round_count("Federal 9mm 115gr FMJ") is None


class TestParseInt:
    def test_values(self):
        assert parse_int("124 gr") == 124
        assert parse_int(50) == 50
        assert parse_int("1,000") == 1000
        assert parse_int("none") is None
        assert parse_int(None) is None
