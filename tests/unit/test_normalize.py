"""Numeric parsing of feed values."""

import pytest

from pim.normalize import parse_numeric, same_number, to_int


@pytest.mark.unit
class TestParseNumeric:
    """parse_numeric accepts both decimal separators and nothing else."""

    @pytest.mark.parametrize("raw, expected", [
        ("12", 12),
        ("-3", -3),
        ("12.50", 12.5),
        ("12,50", 12.5),
        ("  7,25 ", 7.25),
        (42, 42),
        (3.5, 3.5),
    ])
    def test_valid(self, raw, expected):
        assert parse_numeric(raw) == expected

    def test_comma_and_dot_are_equivalent(self):
        assert parse_numeric("1499,90") == parse_numeric("1499.90")

    def test_integer_text_stays_int(self):
        assert isinstance(parse_numeric("15"), int)
        assert isinstance(parse_numeric("15,0"), float)

    @pytest.mark.parametrize("raw", [
        "", "abc", "1 000", "1,000.50", "12.", ",5", "$10", "10грн", None, True, False, [], {},
    ])
    def test_invalid(self, raw):
        assert parse_numeric(raw) is None


@pytest.mark.unit
class TestConversions:

    def test_to_int_truncates(self):
        assert to_int("7,9") == 7
        assert to_int("-1.5") == -1

    def test_to_int_fallback(self):
        assert to_int("many") == 0
        assert to_int(None, default=3) == 3

    def test_same_number(self):
        assert same_number("199,99", 199.99)
        assert same_number(5, "5.0")
        assert not same_number("10", "10,01")
        assert same_number(None, None)
        assert not same_number(None, 0)
