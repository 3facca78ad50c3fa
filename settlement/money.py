"""Decimal money helpers."""

from decimal import ROUND_HALF_UP, Decimal

# Digits after the decimal point for each supported currency
CURRENCY_MINOR_UNITS = {
    "usd": 2,
    "eur": 2,
    "gbp": 2,
    "cad": 2,
    "aud": 2,
    "inr": 2,
    "jpy": 0,
    "krw": 0,
}

HUNDRED = Decimal("100")


def minor_unit_exponent(currency: str) -> Decimal:
    """Quantization exponent for ``currency`` (``Decimal("0.01")`` for usd)."""
    digits = CURRENCY_MINOR_UNITS.get(currency.lower(), 2)
    return Decimal(1).scaleb(-digits)


def round_money(amount: Decimal, currency: str) -> Decimal:
    """Round half-up to the currency's minor unit."""
    return amount.quantize(minor_unit_exponent(currency), rounding=ROUND_HALF_UP)


def is_representable(amount: Decimal, currency: str) -> bool:
    """True if ``amount`` has no digits below the currency's minor unit."""
    return round_money(amount, currency) == amount


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Integer amount in minor units (cents), as gateways expect it."""
    digits = CURRENCY_MINOR_UNITS.get(currency.lower(), 2)
    return int(round_money(amount, currency).scaleb(digits))


def from_minor_units(value: int, currency: str) -> Decimal:
    digits = CURRENCY_MINOR_UNITS.get(currency.lower(), 2)
    return round_money(Decimal(value).scaleb(-digits), currency)
