"""
Daily cash closing.

WHY: A closing is a point-in-time fact about one calendar day of finance
transactions. It is written once and never merged or adjusted; a second close
for the same date is rejected.

TOTALS:
- total_*_usd: native amounts of USD-denominated rows
- total_*_local: native amounts of rows in any other currency
- by_category sums amount_usd_equivalent so categories compare across
  currencies
- total_orders: distinct order_ids among the day's rows
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import CashClosing, FinanceTransaction
from ..models.finance import TRANSACTION_TYPE_EXPENSE, TRANSACTION_TYPE_INCOME
from ..money import ZERO, quantize_money
from ..time_utils import day_bounds, parse_iso_date
from .currency_service import is_usd, normalize_currency
from .errors import AlreadyClosedError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"


def _coerce_date(close_date) -> date:
    try:
        day = parse_iso_date(close_date)
    except ValueError:
        raise ValidationError("close_date must be YYYY-MM-DD")
    if day is None:
        raise ValidationError("close_date is required")
    return day


def _already_closed(day: date) -> AlreadyClosedError:
    return AlreadyClosedError(
        f"Cash closing for {day.isoformat()} already exists",
        {"close_date": day.isoformat()},
    )


def _summarize(transactions: list[FinanceTransaction]) -> dict:
    totals = {
        TRANSACTION_TYPE_INCOME: defaultdict(lambda: ZERO),
        TRANSACTION_TYPE_EXPENSE: defaultdict(lambda: ZERO),
    }
    by_account: dict[int, dict] = {}
    by_category: dict[str, dict] = {}
    order_ids = set()

    for tx in transactions:
        amount = quantize_money(tx.amount)
        currency = normalize_currency(tx.currency)
        totals[tx.type][currency] += amount

        account = by_account.setdefault(tx.account_id, {
            "name": tx.account.name if tx.account else None,
            "currency": currency,
            "income": ZERO,
            "expense": ZERO,
        })
        account[tx.type] += amount

        key = str(tx.category_id) if tx.category_id is not None else UNCATEGORIZED
        category = by_category.setdefault(key, {
            "name": tx.category.name if tx.category else UNCATEGORIZED,
            "type": tx.category.type if tx.category else tx.type,
            "total": ZERO,
        })
        category["total"] += quantize_money(tx.amount_usd_equivalent)

        if tx.order_id is not None:
            order_ids.add(tx.order_id)

    return {
        "totals": totals,
        "by_account": by_account,
        "by_category": by_category,
        "order_ids": order_ids,
    }


def _split_usd_local(per_currency: dict) -> tuple:
    usd = sum((v for c, v in per_currency.items() if is_usd(c)), ZERO)
    local = sum((v for c, v in per_currency.items() if not is_usd(c)), ZERO)
    return quantize_money(usd), quantize_money(local)


def _summary_json(summary: dict, transaction_count: int) -> dict:
    """JSON-safe copy: Decimals as strings, keys as strings."""
    return {
        "transaction_count": transaction_count,
        "totals": {
            tx_type: {currency: str(value) for currency, value in sorted(per_currency.items())}
            for tx_type, per_currency in summary["totals"].items()
        },
        "by_account": {
            str(account_id): {
                "name": data["name"],
                "currency": data["currency"],
                "income": str(data["income"]),
                "expense": str(data["expense"]),
                "net": str(data["income"] - data["expense"]),
            }
            for account_id, data in sorted(summary["by_account"].items())
        },
        "by_category": {
            key: {"name": data["name"], "type": data["type"], "total": str(data["total"])}
            for key, data in sorted(summary["by_category"].items())
        },
    }


def close_day(close_date, *, notes: str | None = None, actor_id: int | None = None) -> CashClosing:
    """
    Snapshot every finance transaction dated on close_date (local time,
    00:00:00 through 23:59:59.999999).

    Raises:
        AlreadyClosedError: a closing exists for the date (message names it)
        ValidationError: malformed date
    """
    day = _coerce_date(close_date)

    if db.session.query(CashClosing.id).filter_by(close_date=day).first() is not None:
        raise _already_closed(day)

    start, end = day_bounds(day)
    transactions = (
        db.session.query(FinanceTransaction)
        .filter(FinanceTransaction.transaction_date >= start)
        .filter(FinanceTransaction.transaction_date <= end)
        .order_by(FinanceTransaction.id.asc())
        .all()
    )

    summary = _summarize(transactions)
    income_usd, income_local = _split_usd_local(summary["totals"][TRANSACTION_TYPE_INCOME])
    expense_usd, expense_local = _split_usd_local(summary["totals"][TRANSACTION_TYPE_EXPENSE])

    closing = CashClosing(
        close_date=day,
        summary_json=_summary_json(summary, len(transactions)),
        total_income_usd=income_usd,
        total_income_local=income_local,
        total_expense_usd=expense_usd,
        total_expense_local=expense_local,
        total_orders=len(summary["order_ids"]),
        notes=notes,
        created_by=actor_id,
    )
    db.session.add(closing)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise _already_closed(day)

    logger.info(
        "Cash closing %s: %s transactions, %s orders",
        day.isoformat(), len(transactions), closing.total_orders,
    )
    return closing


def get_closing(close_date) -> CashClosing:
    day = _coerce_date(close_date)
    closing = db.session.query(CashClosing).filter_by(close_date=day).first()
    if closing is None:
        raise NotFoundError(f"No cash closing for {day.isoformat()}", {"close_date": day.isoformat()})
    return closing


def list_closings(*, start=None, end=None, limit: int = 100) -> list[CashClosing]:
    query = db.session.query(CashClosing)
    if start is not None:
        query = query.filter(CashClosing.close_date >= _coerce_date(start))
    if end is not None:
        query = query.filter(CashClosing.close_date <= _coerce_date(end))
    return query.order_by(CashClosing.close_date.desc()).limit(limit).all()
