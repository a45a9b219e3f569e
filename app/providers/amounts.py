"""Conversion between canonical major units and gateway minor units."""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

# ISO 4217 currencies without a minor unit (as charged by card networks)
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def minor_unit_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the integer minor units a gateway expects."""
    scaled = amount * (10 ** minor_unit_exponent(currency))
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any, currency: str) -> Decimal:
    return Decimal(str(value)) / (10 ** minor_unit_exponent(currency))
