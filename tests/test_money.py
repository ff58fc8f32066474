"""
Tests for the Money and Ratio Helpers
"""
import pytest
from decimal import Decimal

from src.tools.money import format_inr, percent_of, round_half_up, safe_divide, sum_decimal, to_decimal


class TestToDecimal:
    """Tests for raw value conversion."""

    @pytest.mark.parametrize("raw, expected", [
        (None, Decimal("0")),
        ("", Decimal("0")),
        (500, Decimal("500")),
        ("1250.50", Decimal("1250.50")),
        (0.1, Decimal("0.1")),
        (True, Decimal("1")),
        ("not a number", Decimal("0")),
    ])
    def test_conversion(self, raw, expected):
        assert to_decimal(raw) == expected

    def test_float_sums_do_not_drift(self):
        assert sum_decimal([0.1, 0.2]) == Decimal("0.3")
        assert sum_decimal([0.1] * 10) == Decimal("1.0")


class TestRatios:
    """Tests for division, rounding and percentages."""

    def test_safe_divide_by_zero(self):
        assert safe_divide(100, 0) is None
        assert safe_divide(100, None) is None
        assert safe_divide(100, 4) == Decimal("25")

    def test_round_half_up(self):
        assert round_half_up(Decimal("2.5")) == Decimal("3")
        assert round_half_up(Decimal("3.5")) == Decimal("4")
        assert round_half_up("2.345", 2) == Decimal("2.35")
        # Float rounding would give 2.67 here
        assert round_half_up(2.675, 2) == Decimal("2.68")

    @pytest.mark.parametrize("part, whole, expected", [
        (500, 1000, 50),
        (1, 3, 33),
        (2, 3, 67),
        (1500, 1000, 150),
        (5, 0, 0),
    ])
    def test_percent_of(self, part, whole, expected):
        assert percent_of(part, whole) == expected


class TestFormatInr:
    """Tests for display formatting of rupee amounts."""

    @pytest.mark.parametrize("amount, expected", [
        (15000000, "₹1.50 Cr"),
        (250000, "₹2.50 L"),
        (1500, "₹1.5K"),
        (Decimal("999.50"), "₹999.5"),
        (0, "₹0"),
        (-2500, "-₹2.5K"),
    ])
    def test_format(self, amount, expected):
        assert format_inr(amount) == expected
