"""
Unit tests for phone/email canonicalization helpers.

Tests cover:
- Equivalent US formats collapse to one key
- Blank and too-short input (documented behavior: empty key)
- Configurable country-code table
- Opt-in flag parsing
"""

import pytest

from app.identity.config import parse_country_codes
from app.identity.modules.customer_linking.utils import (
    PhoneNormalizer,
    clean_text,
    is_blank,
    normalize_email,
    parse_opt_in,
)


class TestPhoneNormalizer:
    """Tests for PhoneNormalizer.normalize()"""

    def test_equivalent_us_formats(self):
        """Every common spelling of one US number yields the same key"""
        n = PhoneNormalizer()
        keys = {
            n.normalize("+16026866672"),
            n.normalize("6026866672"),
            n.normalize("16026866672"),
            n.normalize("602-686-6672"),
            n.normalize("(602) 686-6672"),
            n.normalize("+1 602.686.6672"),
        }
        assert keys == {"6026866672"}

    def test_blank_input_is_empty_key(self):
        n = PhoneNormalizer()
        assert n.normalize(None) == ""
        assert n.normalize("") == ""
        assert n.normalize("   ") == ""
        assert n.normalize("call me") == ""

    def test_short_numbers_are_not_phones(self):
        """Fewer than min_digits digits → empty key"""
        n = PhoneNormalizer()
        assert n.normalize("12345") == ""
        assert n.normalize("555-1234") == "5551234"
        assert PhoneNormalizer(min_digits=10).normalize("555-1234") == ""

    def test_leading_one_only_stripped_for_eleven_digits(self):
        n = PhoneNormalizer()
        assert n.normalize("1602686667") == "1602686667"  # 10 digits, kept
        assert n.normalize("26026866672") == "26026866672"  # 11 digits, not +1

    def test_idempotent(self):
        n = PhoneNormalizer()
        for raw in ("+16026866672", "602-686-6672", "555 1234", "+44 20 7946 0958"):
            assert n.normalize(n.normalize(raw)) == n.normalize(raw)

    def test_unconfigured_country_compared_by_digits(self):
        """Documented behavior: +44 numbers keep their country code by default"""
        n = PhoneNormalizer()
        assert n.normalize("+44 20 7946 0958") == "442079460958"
        assert not n.same_number("+44 20 7946 0958", "20 7946 0958")

    def test_configured_country_code(self):
        n = PhoneNormalizer(country_codes={"1": 10, "44": 10})
        assert n.normalize("+44 20 7946 0958") == "2079460958"
        assert n.same_number("+44 20 7946 0958", "2079460958")
        assert n.normalize("+16026866672") == "6026866672"

    def test_same_number_never_matches_empty(self):
        n = PhoneNormalizer()
        assert n.same_number("602-686-6672", "+1 (602) 686 6672")
        assert not n.same_number(None, "")
        assert not n.same_number("", "   ")

    def test_from_config(self):
        n = PhoneNormalizer.from_config({"PHONE_COUNTRY_CODES": {"44": 10}, "PHONE_MIN_DIGITS": 8})
        assert n.normalize("+44 20 7946 0958") == "2079460958"
        assert n.normalize("16026866672") == "16026866672"
        assert n.normalize("5551234") == ""

    def test_from_empty_config_uses_defaults(self):
        n = PhoneNormalizer.from_config({})
        assert n.normalize("+16026866672") == "6026866672"


class TestParseCountryCodes:
    def test_parses_table(self):
        assert parse_country_codes("1:10, +44:10") == {"1": 10, "44": 10}

    def test_empty(self):
        assert parse_country_codes("") == {}

    @pytest.mark.parametrize("raw", ["1", "x:10", "1:ten"])
    def test_rejects_bad_entries(self, raw):
        with pytest.raises(ValueError):
            parse_country_codes(raw)


class TestTextHelpers:
    def test_normalize_email(self):
        assert normalize_email("  GUEST@Example.com ") == "guest@example.com"
        assert normalize_email(None) == ""

    def test_is_blank(self):
        assert is_blank(None)
        assert is_blank("  ")
        assert not is_blank("John")
        assert not is_blank(0)

    def test_clean_text(self):
        assert clean_text("  John ") == "John"
        assert clean_text("   ") is None
        assert clean_text(None) is None

    @pytest.mark.parametrize("value", [True, "true", "1", "on", "YES"])
    def test_parse_opt_in_truthy(self, value):
        assert parse_opt_in(value) is True

    @pytest.mark.parametrize("value", [False, None, "", "false", "0", "off"])
    def test_parse_opt_in_falsy(self, value):
        assert parse_opt_in(value) is False
