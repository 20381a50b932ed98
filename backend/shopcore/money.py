# Overview: Decimal helpers shared by models and services.

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any

CENT = Decimal("0.01")
RATE_QUANTUM = Decimal("0.000001")
ZERO = Decimal("0.00")


def to_decimal(value: Any, *, field: str = "amount") -> Decimal:
    """
    Coerce user/database input to Decimal.

    Floats go through str() so 0.1 stays 0.1 instead of its binary expansion.
    Booleans are rejected even though they are ints.
    """
    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    if isinstance(value, float):
        value = str(value)
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError):
        raise ValueError(f"{field} must be a number")
    if not result.is_finite():
        raise ValueError(f"{field} must be a finite number")
    return result


def quantize_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Any) -> Decimal:
    return to_decimal(value, field="exchange_rate").quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def money_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(quantize_money(value))


def rate_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(quantize_rate(value))
