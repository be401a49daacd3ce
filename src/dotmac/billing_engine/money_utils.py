"""
Money, quantity and currency utilities using py-moneyed and Babel.

Money is carried as integer minor units (cents); usage quantities and every
intermediate product are ``Decimal``. Binary floats never take part in totals.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, TypeAlias

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

BASIS_POINTS = Decimal(10000)

DEFAULT_LOCALE = "en_US"

DecimalLike: TypeAlias = Decimal | int | str | float


def to_decimal(value: DecimalLike) -> Decimal:
    """Convert to Decimal without inheriting binary float error."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(value)
        except (InvalidOperation, TypeError) as exc:
            raise ValueError(f"Invalid decimal value: {value!r}") from exc

    if not result.is_finite():
        raise ValueError(f"Decimal value must be finite: {value!r}")
    return result


def decimal_to_plain_string(value: Decimal) -> str:
    """Canonical text for a decimal: no exponent, no trailing zeros (``1.50`` -> ``1.5``)."""
    normalized = value.normalize()
    if normalized == 0:
        return "0"
    return format(normalized, "f")


def round_half_up(value: Decimal) -> int:
    """Round a Decimal to the nearest integer, halves away from zero."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def usage_amount_cents(
    quantity: DecimalLike, unit_amount_cents: int, minimum_amount_cents: int | None = None
) -> int:
    """Price a usage quantity: ``round(quantity * unit price)`` with an optional floor."""
    amount = round_half_up(to_decimal(quantity) * Decimal(unit_amount_cents))
    if minimum_amount_cents is not None:
        amount = max(amount, minimum_amount_cents)
    return amount


def tax_cents_for(subtotal_cents: int, tax_rate_bps: int) -> int:
    """Tax on a subtotal at a basis-point rate (750 bps = 7.5%).

    Nothing is taxed when the subtotal is zero or negative.
    """
    if not 0 <= tax_rate_bps <= 10000:
        raise ValueError(f"tax_rate_bps must be between 0 and 10000, got {tax_rate_bps}")
    if subtotal_cents <= 0:
        return 0
    return round_half_up(Decimal(subtotal_cents) * Decimal(tax_rate_bps) / BASIS_POINTS)


class MoneyHandler:
    """Central handler for currency validation and money presentation."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def normalize_currency(self, currency_code: str) -> str:
        """Validate an ISO 4217 code and return it in the stored (lowercase) form."""
        return self._validate_currency(currency_code).code.lower()

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def money_from_minor_units(self, minor_units: int, currency: str) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated_currency = self._validate_currency(currency)
        precision = self.get_currency_precision(currency)
        amount = Decimal(minor_units) / Decimal(10**precision)
        return Money(amount=amount, currency=validated_currency)

    def money_to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units (e.g., cents for USD)."""
        precision = self.get_currency_precision(money.currency.code)
        return round_half_up(money.amount * Decimal(10**precision))

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)
        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def format_cents(self, amount_cents: int, currency: str, locale: str | None = None) -> str:
        """Format an integer minor-unit amount for descriptions and logs."""
        return self.format_money(self.money_from_minor_units(amount_cents, currency), locale)


money_handler = MoneyHandler()


def normalize_currency(currency_code: str) -> str:
    """Validate a currency code with the default handler."""
    return money_handler.normalize_currency(currency_code)


def format_cents(amount_cents: int, currency: str, locale: str | None = None) -> str:
    """Format minor units with the default handler."""
    return money_handler.format_cents(amount_cents, currency, locale)


__all__ = [
    "BASIS_POINTS",
    "DecimalLike",
    "MoneyHandler",
    "money_handler",
    "to_decimal",
    "decimal_to_plain_string",
    "round_half_up",
    "usage_amount_cents",
    "tax_cents_for",
    "normalize_currency",
    "format_cents",
]
