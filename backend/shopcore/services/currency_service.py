"""
Currency conversion between USD and the store's local currency.

Rates are always quoted as "local units per 1 USD" (e.g. 150 VES/USD).
Pure functions: the caller supplies the rate it captured, nothing is looked up.
"""

from __future__ import annotations

from decimal import Decimal

from ..money import quantize_money, quantize_rate, to_decimal
from .errors import ValidationError

USD = "USD"


def normalize_currency(currency: str | None) -> str:
    if not currency:
        return USD
    return currency.strip().upper()


def is_usd(currency: str | None) -> bool:
    return normalize_currency(currency) == USD


def validate_rate(exchange_rate) -> Decimal:
    try:
        rate = quantize_rate(exchange_rate)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if rate <= 0:
        raise ValidationError("exchange_rate must be greater than zero")
    return rate


def to_usd(amount, currency: str | None, exchange_rate) -> Decimal:
    """Native amount -> USD. USD amounts pass through untouched (rate ignored)."""
    value = to_decimal(amount)
    if is_usd(currency):
        return quantize_money(value)
    return quantize_money(value / validate_rate(exchange_rate))


def from_usd(amount_usd, currency: str | None, exchange_rate) -> Decimal:
    """USD -> native amount in `currency`."""
    value = to_decimal(amount_usd)
    if is_usd(currency):
        return quantize_money(value)
    return quantize_money(value * validate_rate(exchange_rate))


def rate_for(currency: str | None, exchange_rate) -> Decimal:
    """Rate to freeze on a row: 1 for USD rows, the captured rate otherwise."""
    if is_usd(currency):
        return quantize_rate(1)
    return validate_rate(exchange_rate)
