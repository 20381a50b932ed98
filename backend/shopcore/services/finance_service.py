"""
Finance transaction recorder.

WHY: Income and expenses are recorded once, in the account's native currency,
together with the exchange rate in force and the USD equivalent. Rows are
never re-priced: a later rate change does not touch history.

IDEMPOTENCY:
At most one income row may reference an order. record_order_income() checks
first and the partial unique index backs the check under concurrency; both
paths surface as DuplicateFinanceEntry, which the order state machine treats
as "already recorded".
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import FinanceAccount, FinanceCategory, FinanceTransaction, Order
from ..models.finance import (
    TRANSACTION_TYPE_EXPENSE,
    TRANSACTION_TYPE_INCOME,
    TRANSACTION_TYPES,
)
from ..money import quantize_money
from ..time_utils import day_bounds, local_now
from .concurrency import lock_for_update, run_with_retry
from .currency_service import from_usd, normalize_currency, rate_for, to_usd
from .errors import DuplicateFinanceEntry, NotFoundError, ValidationError
from .settings_service import SettingsSnapshot

logger = logging.getLogger(__name__)


# =============================================================================
# ACCOUNTS & CATEGORIES
# =============================================================================

def create_account(*, name: str, currency: str = "USD", account_type: str = "bank") -> FinanceAccount:
    if not name or not name.strip():
        raise ValidationError("name is required")
    account = FinanceAccount(
        name=name.strip(),
        currency=normalize_currency(currency),
        type=account_type or "bank",
    )
    db.session.add(account)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Account {name!r} already exists for {normalize_currency(currency)}")
    return account


def list_accounts(*, include_inactive: bool = False) -> list[FinanceAccount]:
    query = db.session.query(FinanceAccount)
    if not include_inactive:
        query = query.filter(FinanceAccount.is_active.is_(True))
    return query.order_by(FinanceAccount.id.asc()).all()


def get_account(account_id: int) -> FinanceAccount:
    account = db.session.get(FinanceAccount, account_id)
    if account is None:
        raise NotFoundError(f"Finance account {account_id} not found", {"account_id": account_id})
    return account


def create_category(*, name: str, category_type: str) -> FinanceCategory:
    if not name or not name.strip():
        raise ValidationError("name is required")
    if category_type not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(TRANSACTION_TYPES)}")
    category = FinanceCategory(name=name.strip(), type=category_type)
    db.session.add(category)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ValidationError(f"Category {name!r} already exists")
    return category


def list_categories(*, category_type: str | None = None) -> list[FinanceCategory]:
    query = db.session.query(FinanceCategory)
    if category_type:
        query = query.filter_by(type=category_type)
    return query.order_by(FinanceCategory.id.asc()).all()


def _get_category(category_id: int | None) -> FinanceCategory | None:
    if category_id is None:
        return None
    category = db.session.get(FinanceCategory, category_id)
    if category is None:
        raise NotFoundError(f"Finance category {category_id} not found", {"category_id": category_id})
    return category


# =============================================================================
# TRANSACTIONS
# =============================================================================

def _record_transaction_inner(
    *,
    account_id: int,
    transaction_type: str,
    amount: Decimal,
    exchange_rate: Decimal,
    category_id: int | None,
    order_id: int | None,
    description: str | None,
    actor_id: int | None,
    transaction_date: datetime | None,
) -> FinanceTransaction:
    """Lock the account, insert the row and move the cached balance. No commit."""
    account = lock_for_update(db.session.query(FinanceAccount).filter_by(id=account_id)).first()
    if account is None:
        raise NotFoundError(f"Finance account {account_id} not found", {"account_id": account_id})

    currency = normalize_currency(account.currency)
    rate = rate_for(currency, exchange_rate)

    tx = FinanceTransaction(
        account_id=account.id,
        category_id=category_id,
        order_id=order_id,
        type=transaction_type,
        amount=amount,
        currency=currency,
        exchange_rate=rate,
        amount_usd_equivalent=to_usd(amount, currency, rate),
        description=description,
        created_by=actor_id,
        transaction_date=transaction_date or local_now(),
    )
    db.session.add(tx)

    delta = amount if transaction_type == TRANSACTION_TYPE_INCOME else -amount
    account.balance = quantize_money(account.balance or 0) + delta
    db.session.flush()
    return tx


def record_transaction(
    *,
    account_id: int,
    transaction_type: str,
    amount,
    settings: SettingsSnapshot,
    category_id: int | None = None,
    order_id: int | None = None,
    description: str | None = None,
    actor_id: int | None = None,
    exchange_rate=None,
    transaction_date: datetime | None = None,
) -> FinanceTransaction:
    """
    Record a manual income/expense entry in the account's native currency.

    exchange_rate defaults to the snapshot rate (ignored for USD accounts).
    An income entry naming an order that already has one raises
    DuplicateFinanceEntry.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(TRANSACTION_TYPES)}")
    try:
        value = quantize_money(amount)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if value <= 0:
        raise ValidationError("amount must be greater than zero")

    category = _get_category(category_id)
    if category is not None and category.type != transaction_type:
        raise ValidationError(
            f"Category {category.name!r} is for {category.type} entries",
            {"category_id": category.id},
        )
    if order_id is not None and db.session.get(Order, order_id) is None:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})

    rate = exchange_rate if exchange_rate is not None else settings.exchange_rate

    def _op():
        tx = _record_transaction_inner(
            account_id=account_id,
            transaction_type=transaction_type,
            amount=value,
            exchange_rate=rate,
            category_id=category_id,
            order_id=order_id,
            description=description,
            actor_id=actor_id,
            transaction_date=transaction_date,
        )
        db.session.commit()
        return tx

    try:
        return run_with_retry(_op)
    except IntegrityError:
        db.session.rollback()
        raise DuplicateFinanceEntry(
            f"Order {order_id} already has an income entry",
            {"order_id": order_id},
        )
    except Exception:
        db.session.rollback()
        raise


def find_order_income(order_id: int) -> FinanceTransaction | None:
    return (
        db.session.query(FinanceTransaction)
        .filter_by(order_id=order_id, type=TRANSACTION_TYPE_INCOME)
        .first()
    )


def record_order_income(
    order: Order,
    *,
    account_id: int,
    settings: SettingsSnapshot,
    category_id: int | None = None,
    description: str | None = None,
    actor_id: int | None = None,
) -> FinanceTransaction:
    """
    Record the income for an order entering processing.

    The order total (USD) is converted into the account's currency at the
    snapshot rate.

    Raises:
        DuplicateFinanceEntry: the order already has an income row
        NotFoundError: account or category missing
    """
    existing = find_order_income(order.id)
    if existing is not None:
        raise DuplicateFinanceEntry(
            f"Order {order.id} already has an income entry",
            {"order_id": order.id, "transaction_id": existing.id},
        )

    account = get_account(account_id)
    _get_category(category_id)

    currency = normalize_currency(account.currency)
    rate = rate_for(currency, settings.exchange_rate)
    amount = from_usd(order.total, currency, rate)
    if amount <= 0:
        raise ValidationError("Order total must be greater than zero to record income", {"order_id": order.id})

    order_id = order.id
    control_id = order.control_id

    def _op():
        tx = _record_transaction_inner(
            account_id=account_id,
            transaction_type=TRANSACTION_TYPE_INCOME,
            amount=amount,
            exchange_rate=rate,
            category_id=category_id,
            order_id=order_id,
            description=description or f"Order {control_id}",
            actor_id=actor_id,
            transaction_date=None,
        )
        db.session.commit()
        return tx

    try:
        return run_with_retry(_op)
    except IntegrityError:
        db.session.rollback()
        raise DuplicateFinanceEntry(
            f"Order {order_id} already has an income entry",
            {"order_id": order_id},
        )
    except Exception:
        db.session.rollback()
        raise


def list_transactions(
    *,
    day: date | None = None,
    account_id: int | None = None,
    order_id: int | None = None,
    transaction_type: str | None = None,
    limit: int = 500,
) -> list[FinanceTransaction]:
    query = db.session.query(FinanceTransaction)
    if day is not None:
        start, end = day_bounds(day)
        query = query.filter(FinanceTransaction.transaction_date.between(start, end))
    if account_id is not None:
        query = query.filter_by(account_id=account_id)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    if transaction_type:
        if transaction_type not in (TRANSACTION_TYPE_INCOME, TRANSACTION_TYPE_EXPENSE):
            raise ValidationError("type must be income or expense")
        query = query.filter_by(type=transaction_type)
    return (
        query.order_by(FinanceTransaction.transaction_date.asc(), FinanceTransaction.id.asc())
        .limit(limit)
        .all()
    )
