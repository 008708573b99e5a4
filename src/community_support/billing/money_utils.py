"""
Money and currency utilities using py-moneyed and Babel.

Internally every amount is an integer count of minor units (cents for USD).
These helpers validate ISO 4217 codes, move between minor units and Money
objects, and render amounts for read models.
"""

from decimal import Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

# Default locale for formatting
DEFAULT_LOCALE = "en_US"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def normalize_currency(self, currency_code: str) -> str:
        """Return the upper-case ISO 4217 code, raising ValueError if unknown."""
        return self._validate_currency(currency_code).code

    def is_valid_currency(self, currency_code: str) -> bool:
        """Check an ISO 4217 code without raising."""
        try:
            self._validate_currency(currency_code)
        except ValueError:
            return False
        return True

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency."""
        return get_currency_precision(currency_code.upper())

    def money_to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units (e.g., cents for USD)."""
        precision = self.get_currency_precision(money.currency.code)
        return int((money.amount * (10**precision)).to_integral_value())

    def money_from_minor_units(self, minor_units: int, currency: str) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated_currency = self._validate_currency(currency)
        precision = self.get_currency_precision(currency)
        amount = Decimal(minor_units) / Decimal(10**precision)
        return Money(amount=amount, currency=validated_currency)

    def rescale_minor_units(self, minor_units: int, from_precision: int, to_precision: int) -> int:
        """Re-express an integer amount at another number of decimal places."""
        if from_precision == to_precision:
            return minor_units
        if to_precision > from_precision:
            return minor_units * 10 ** (to_precision - from_precision)
        divisor = 10 ** (from_precision - to_precision)
        if minor_units % divisor:
            raise ValueError(
                f"Amount {minor_units} cannot be expressed with {to_precision} decimal places"
            )
        return minor_units // divisor

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"

    def format_minor_units(self, minor_units: int, currency: str, locale: str | None = None) -> str:
        """Render an integer minor-unit amount for display."""
        return self.format_money(self.money_from_minor_units(minor_units, currency), locale)


# Global instance for convenience
money_handler = MoneyHandler()


def normalize_currency(currency_code: str) -> str:
    """Normalize an ISO 4217 code with the default handler."""
    return money_handler.normalize_currency(currency_code)


def format_minor_units(minor_units: int, currency: str, locale: str | None = None) -> str:
    """Format a minor-unit amount with the default handler."""
    return money_handler.format_minor_units(minor_units, currency, locale)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "normalize_currency",
    "format_minor_units",
]
