"""
Store-credit ledger.

WHY: A profile's store_credit is a cached projection of SUM(history.amount).
Every change is a read-modify-write on the locked profile row plus one
history insert, committed together. Two concurrent debits serialize on the
lock (or, on SQLite, on the profile's version_id), and the second one re-reads
the balance the first one left behind before it is accepted or rejected.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Profile, StoreCreditHistory
from ..models.credit import CREDIT_TYPE_ADJUSTMENT, CREDIT_TYPES
from ..money import ZERO, quantize_money
from .concurrency import lock_for_update, run_with_retry
from .errors import InsufficientCreditError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _adjust_credit_inner(
    *,
    profile_id: int,
    amount: Decimal,
    credit_type: str,
    reason: str | None,
    order_id: int | None,
    actor_id: int | None,
    reverses_history_id: int | None = None,
) -> StoreCreditHistory:
    profile = lock_for_update(db.session.query(Profile).filter_by(id=profile_id)).first()
    if profile is None:
        raise NotFoundError(f"Profile {profile_id} not found", {"profile_id": profile_id})

    current = quantize_money(profile.store_credit or ZERO)
    new_balance = current + amount
    if amount < 0 and new_balance < 0:
        raise InsufficientCreditError(
            "Insufficient store credit",
            {"profile_id": profile_id, "balance": str(current), "requested": str(-amount)},
        )

    entry = StoreCreditHistory(
        profile_id=profile.id,
        amount=amount,
        type=credit_type,
        reason=reason,
        order_id=order_id,
        reverses_history_id=reverses_history_id,
        created_by=actor_id,
    )
    db.session.add(entry)
    profile.store_credit = new_balance
    db.session.flush()
    return entry


def adjust_credit(
    profile_id: int,
    amount,
    credit_type: str,
    *,
    reason: str | None = None,
    order_id: int | None = None,
    actor_id: int | None = None,
    commit: bool = True,
) -> StoreCreditHistory:
    """
    Apply a signed store-credit change and append its history row.

    Args:
        amount: negative debits, positive credits (USD)
        credit_type: purchase | return | adjustment
        commit: False when the caller composes this into its own transaction

    Raises:
        InsufficientCreditError: a debit would make the balance negative
        NotFoundError: profile does not exist
    """
    try:
        value = quantize_money(amount)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if value == 0:
        raise ValidationError("amount must be non-zero")
    if credit_type not in CREDIT_TYPES:
        raise ValidationError(f"type must be one of: {', '.join(CREDIT_TYPES)}")

    kwargs = dict(
        profile_id=profile_id,
        amount=value,
        credit_type=credit_type,
        reason=reason,
        order_id=order_id,
        actor_id=actor_id,
    )

    if not commit:
        return _adjust_credit_inner(**kwargs)

    def _op():
        entry = _adjust_credit_inner(**kwargs)
        db.session.commit()
        return entry

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def reverse_credit_entry(
    history_id: int,
    *,
    reason: str | None = None,
    actor_id: int | None = None,
) -> StoreCreditHistory:
    """
    Undo one history row with an explicit `adjustment` entry of opposite sign.

    The original row is kept. The unique reverses_history_id makes a second
    reversal of the same row fail; in that case the existing reversal is
    returned.
    """
    original = db.session.get(StoreCreditHistory, history_id)
    if original is None:
        raise NotFoundError(f"Credit history entry {history_id} not found", {"history_id": history_id})

    existing = db.session.query(StoreCreditHistory).filter_by(reverses_history_id=history_id).first()
    if existing is not None:
        return existing

    profile_id = original.profile_id
    order_id = original.order_id
    amount = -quantize_money(original.amount)

    def _op():
        entry = _adjust_credit_inner(
            profile_id=profile_id,
            amount=amount,
            credit_type=CREDIT_TYPE_ADJUSTMENT,
            reason=reason or f"Reversal of credit entry {history_id}",
            order_id=order_id,
            actor_id=actor_id,
            reverses_history_id=history_id,
        )
        db.session.commit()
        return entry

    try:
        return run_with_retry(_op)
    except IntegrityError:
        db.session.rollback()
        logger.info("Credit entry %s already reversed", history_id)
        return db.session.query(StoreCreditHistory).filter_by(reverses_history_id=history_id).one()
    except Exception:
        db.session.rollback()
        raise


def get_balance(profile_id: int) -> Decimal:
    profile = db.session.get(Profile, profile_id)
    if profile is None:
        raise NotFoundError(f"Profile {profile_id} not found", {"profile_id": profile_id})
    return quantize_money(profile.store_credit or ZERO)


def get_ledger_balance(profile_id: int) -> Decimal:
    total = (
        db.session.query(func.coalesce(func.sum(StoreCreditHistory.amount), 0))
        .filter(StoreCreditHistory.profile_id == profile_id)
        .scalar()
    )
    return quantize_money(total or ZERO)


def list_history(profile_id: int, *, limit: int = 200) -> list[StoreCreditHistory]:
    return (
        db.session.query(StoreCreditHistory)
        .filter_by(profile_id=profile_id)
        .order_by(StoreCreditHistory.created_at.desc(), StoreCreditHistory.id.desc())
        .limit(limit)
        .all()
    )


def verify_credit_balances() -> list[dict]:
    """Profiles whose cached balance disagrees with their history sum."""
    ledger = (
        db.session.query(
            StoreCreditHistory.profile_id,
            func.sum(StoreCreditHistory.amount).label("total"),
        )
        .group_by(StoreCreditHistory.profile_id)
        .subquery()
    )
    rows = (
        db.session.query(Profile.id, Profile.store_credit, func.coalesce(ledger.c.total, 0))
        .outerjoin(ledger, ledger.c.profile_id == Profile.id)
        .order_by(Profile.id.asc())
        .all()
    )
    mismatches = []
    for profile_id, cached, total in rows:
        cached_value = quantize_money(cached or ZERO)
        ledger_value = quantize_money(total or ZERO)
        if cached_value != ledger_value:
            mismatches.append({
                "profile_id": profile_id,
                "cached_balance": str(cached_value),
                "ledger_balance": str(ledger_value),
            })
    return mismatches
