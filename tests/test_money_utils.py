"""Tests for billing engine money_utils module."""

from decimal import Decimal

import pytest
from moneyed import Money

from dotmac.billing_engine.money_utils import (
    MoneyHandler,
    decimal_to_plain_string,
    format_cents,
    normalize_currency,
    round_half_up,
    tax_cents_for,
    to_decimal,
    usage_amount_cents,
)

pytestmark = pytest.mark.unit


class TestDecimalHelpers:
    """Exact decimal conversion and rounding."""

    def test_to_decimal_from_float_uses_shortest_repr(self):
        assert to_decimal(0.1) == Decimal("0.1")

    def test_to_decimal_from_string_and_int(self):
        assert to_decimal("2.50") == Decimal("2.50")
        assert to_decimal(3) == Decimal(3)

    def test_to_decimal_rejects_garbage(self):
        with pytest.raises(ValueError, match="Invalid decimal value"):
            to_decimal("ten")

    def test_to_decimal_rejects_non_finite(self):
        with pytest.raises(ValueError, match="finite"):
            to_decimal("NaN")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (Decimal("1.50"), "1.5"),
            (Decimal("1E+2"), "100"),
            (Decimal("0.000"), "0"),
            (Decimal("-0"), "0"),
            (Decimal("12.345"), "12.345"),
        ],
    )
    def test_decimal_to_plain_string(self, value, expected):
        assert decimal_to_plain_string(value) == expected

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(Decimal("0.5"), 1), (Decimal("1.49"), 1), (Decimal("2.5"), 3), (Decimal("-0.5"), -1)],
    )
    def test_round_half_up(self, value, expected):
        assert round_half_up(value) == expected


class TestPricing:
    """Usage pricing and tax."""

    def test_usage_amount_rounds_half_up(self):
        # 2.5 units at 3 cents = 7.5 cents
        assert usage_amount_cents(Decimal("2.5"), 3) == 8

    def test_usage_amount_applies_minimum(self):
        assert usage_amount_cents(Decimal("1"), 10, minimum_amount_cents=500) == 500
        assert usage_amount_cents(Decimal("100"), 10, minimum_amount_cents=500) == 1000

    def test_zero_quantity_prices_to_zero(self):
        assert usage_amount_cents(Decimal(0), 250) == 0

    def test_tax_from_basis_points(self):
        # 7.5% of 130.00
        assert tax_cents_for(13000, 750) == 975

    def test_tax_rounds_half_up(self):
        # 1% of 50 cents = 0.5 cents
        assert tax_cents_for(50, 100) == 1

    def test_no_tax_on_zero_or_negative_subtotal(self):
        assert tax_cents_for(0, 750) == 0
        assert tax_cents_for(-500, 750) == 0

    def test_tax_rate_out_of_range(self):
        with pytest.raises(ValueError):
            tax_cents_for(1000, 10001)


class TestMoneyHandler:
    """Currency validation and formatting."""

    def test_normalize_currency_lowercases(self):
        assert normalize_currency("USD") == "usd"
        assert normalize_currency("eur") == "eur"

    def test_normalize_currency_invalid(self):
        with pytest.raises(ValueError, match="Invalid currency code"):
            normalize_currency("XXZ")

    def test_invalid_locale_falls_back(self):
        handler = MoneyHandler(default_locale="not_a_locale")
        assert handler.default_locale == "en_US"

    def test_minor_units_round_trip_respects_precision(self):
        handler = MoneyHandler()
        money = handler.money_from_minor_units(1234, "usd")
        assert money == Money(Decimal("12.34"), "USD")
        assert handler.money_to_minor_units(money) == 1234

        yen = handler.money_from_minor_units(500, "JPY")
        assert yen.amount == Decimal(500)

    def test_format_cents(self):
        assert format_cents(123456, "usd") == "$1,234.56"
