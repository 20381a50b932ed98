"""
Payment confirmation aggregator.

Customers report payments (often partial, often in the local currency)
against an order. Each report freezes the exchange rate of the moment it was
submitted, so the USD total of an order's reports never moves when the store
rate changes afterwards.

This module never transitions the order: an administrator reviews the
reports and drives the state machine separately.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from ..extensions import db
from ..models import FinanceAccount, Order, PaymentConfirmation
from ..models.payments import (
    CONFIRMATION_STATUS_APPROVED,
    CONFIRMATION_STATUS_PENDING,
    CONFIRMATION_STATUS_REJECTED,
)
from ..money import ZERO, quantize_money
from ..time_utils import utcnow
from .currency_service import normalize_currency, rate_for, to_usd, USD
from .errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from .settings_service import SettingsSnapshot, get_settings_snapshot


@dataclass
class PaymentSummary:
    order_id: int
    order_total: Decimal
    total_reported_usd: Decimal
    is_fully_reported: bool
    confirmations: list[PaymentConfirmation] = field(default_factory=list)

    @property
    def outstanding_usd(self) -> Decimal:
        return max(self.order_total - self.total_reported_usd, ZERO)

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_total": str(self.order_total),
            "total_reported_usd": str(self.total_reported_usd),
            "outstanding_usd": str(self.outstanding_usd),
            "is_fully_reported": self.is_fully_reported,
            "confirmations": [c.to_dict() for c in self.confirmations],
        }


def submit_confirmation(
    *,
    order_id: int,
    reference_number: str,
    amount_paid,
    currency: str | None = None,
    account_id: int | None = None,
    proof_ref: str | None = None,
    actor_id: int | None = None,
    settings: SettingsSnapshot | None = None,
) -> PaymentConfirmation:
    """
    Record one payment report. Currency defaults to the target account's.

    Raises:
        NotFoundError: order or account missing
        ValidationError: bad amount or missing reference number
    """
    settings = settings or get_settings_snapshot()

    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})

    if not reference_number or not str(reference_number).strip():
        raise ValidationError("reference_number is required")

    try:
        amount = quantize_money(amount_paid)
    except ValueError as exc:
        raise ValidationError(str(exc))
    if amount <= 0:
        raise ValidationError("amount_paid must be greater than zero")

    account = None
    if account_id is not None:
        account = db.session.get(FinanceAccount, account_id)
        if account is None:
            raise NotFoundError(f"Finance account {account_id} not found", {"account_id": account_id})

    if currency:
        resolved_currency = normalize_currency(currency)
    elif account is not None:
        resolved_currency = normalize_currency(account.currency)
    else:
        resolved_currency = USD

    rate = rate_for(resolved_currency, settings.exchange_rate)

    confirmation = PaymentConfirmation(
        order_id=order.id,
        user_id=actor_id,
        account_id=account_id,
        reference_number=str(reference_number).strip(),
        amount_paid=amount,
        currency=resolved_currency,
        exchange_rate=rate,
        amount_usd_equivalent=to_usd(amount, resolved_currency, rate),
        proof_ref=proof_ref,
        status=CONFIRMATION_STATUS_PENDING,
    )
    db.session.add(confirmation)
    db.session.commit()
    return confirmation


def list_confirmations(order_id: int) -> list[PaymentConfirmation]:
    return (
        db.session.query(PaymentConfirmation)
        .filter_by(order_id=order_id)
        .order_by(PaymentConfirmation.created_at.asc(), PaymentConfirmation.id.asc())
        .all()
    )


def get_payment_summary(order_id: int) -> PaymentSummary:
    """
    totalReportedUsd over non-rejected reports, recomputed from the frozen
    (amount_paid, currency, exchange_rate) of each row.
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})

    confirmations = list_confirmations(order_id)
    total = ZERO
    for confirmation in confirmations:
        if confirmation.status == CONFIRMATION_STATUS_REJECTED:
            continue
        total += to_usd(confirmation.amount_paid, confirmation.currency, confirmation.exchange_rate)

    order_total = quantize_money(order.total)
    total = quantize_money(total)
    return PaymentSummary(
        order_id=order.id,
        order_total=order_total,
        total_reported_usd=total,
        is_fully_reported=total >= order_total,
        confirmations=confirmations,
    )


def review_confirmation(
    confirmation_id: int,
    status: str,
    *,
    actor_id: int | None = None,
    is_admin: bool = False,
) -> PaymentConfirmation:
    """Approve or reject a pending report. Amounts are never touched."""
    if not is_admin:
        raise ForbiddenError("Administrative capability required to review payments")
    if status not in (CONFIRMATION_STATUS_APPROVED, CONFIRMATION_STATUS_REJECTED):
        raise ValidationError("status must be approved or rejected")

    confirmation = db.session.get(PaymentConfirmation, confirmation_id)
    if confirmation is None:
        raise NotFoundError(f"Payment confirmation {confirmation_id} not found", {"confirmation_id": confirmation_id})

    if confirmation.status == status:
        return confirmation
    if confirmation.status != CONFIRMATION_STATUS_PENDING:
        raise InvalidTransitionError(
            f"Confirmation already {confirmation.status}",
            {"from": confirmation.status, "to": status},
        )

    confirmation.status = status
    confirmation.reviewed_by = actor_id
    confirmation.reviewed_at = utcnow()
    db.session.commit()
    return confirmation
