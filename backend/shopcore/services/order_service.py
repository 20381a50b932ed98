"""
Order checkout and lifecycle.

WHY: An order touches up to three ledgers (stock, store credit, finance) and
the outbound webhook. Those are deliberately NOT one database transaction:
each ledger write commits on its own so that a later failure (a webhook
provider being down, a finance account misconfigured) can never leave an order
half-cancelled. Every side effect that can be re-invoked is therefore guarded:

- finance income: existence check plus the unique (order_id, income) index
- cancellation compensations: only on a genuine change into `cancelled`,
  decided from the status read under the same lock as the status write
- webhooks: one delivery row per "<event>:<order id>"

LIFECYCLE:
    quote -> pending -> evaluating -> processing -> shipped -> completed/delivered
    any non-terminal status -> cancelled
Terminal: completed, delivered, cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from ..customization import normalize_metadata
from ..extensions import db
from ..models import FinanceTransaction, Order, OrderItem, Product, ProductVariant, Profile, StockMovement, StoreCreditHistory
from ..models.credit import CREDIT_TYPE_PURCHASE, CREDIT_TYPE_RETURN
from ..models.inventory import MOVEMENT_TYPE_ORDER, MOVEMENT_TYPE_RETURN
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_QUOTE,
    ORDER_STATUSES,
    TERMINAL_STATUSES,
)
from ..money import ZERO, quantize_money
from . import credit_service, finance_service, notification_service, stock_service
from .concurrency import lock_for_update, run_with_retry
from .errors import (
    DuplicateFinanceEntry,
    ForbiddenError,
    InsufficientCreditError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .sequence_service import ORDER_CONTROL_PREFIX, next_control_id
from .settings_service import SettingsSnapshot, get_settings_snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinanceHint:
    """Where to book the income when an order moves to processing."""
    account_id: int
    category_id: int | None = None
    description: str | None = None


@dataclass
class TransitionResult:
    order: Order
    prior_status: str
    changed: bool
    finance_transaction: FinanceTransaction | None = None
    finance_skipped: bool = False
    stock_movements: list[StockMovement] = field(default_factory=list)
    credit_refund: StoreCreditHistory | None = None
    webhook_event: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "prior_status": self.prior_status,
            "changed": self.changed,
            "finance_transaction": self.finance_transaction.to_dict() if self.finance_transaction else None,
            "finance_skipped": self.finance_skipped,
            "stock_movements": [m.to_dict() for m in self.stock_movements],
            "credit_refund": self.credit_refund.to_dict() if self.credit_refund else None,
            "webhook_event": self.webhook_event,
            "warnings": list(self.warnings),
        }


@dataclass
class _CheckoutLine:
    product_id: int | None
    variant_id: int | None
    product_name: str | None
    quantity: int
    price: Decimal
    custom_metadata: dict | None
    on_request: bool


# =============================================================================
# READS
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})
    return order


def get_order_for_actor(order_id: int, *, actor_id: int | None, is_admin: bool) -> Order:
    """Admins see every order; customers only their own."""
    order = get_order(order_id)
    if not is_admin and (order.is_guest or order.user_id != actor_id):
        raise ForbiddenError("Not allowed to view this order", {"order_id": order_id})
    return order


def list_orders(*, status: str | None = None, user_id: int | None = None, limit: int = 100) -> list[Order]:
    query = db.session.query(Order)
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status {status!r}")
        query = query.filter_by(status=status)
    if user_id is not None:
        query = query.filter_by(user_id=user_id)
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(limit).all()


# =============================================================================
# CHECKOUT
# =============================================================================

def _to_money(value, field_name: str) -> Decimal:
    try:
        return quantize_money(value if value is not None else ZERO)
    except ValueError:
        raise ValidationError(f"{field_name} must be a number")


def _parse_lines(items) -> list[_CheckoutLine]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")

    lines: list[_CheckoutLine] = []
    for idx, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{idx}] must be an object")

        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"items[{idx}].quantity must be a positive integer")

        price = _to_money(raw.get("price"), f"items[{idx}].price")
        if price < 0:
            raise ValidationError(f"items[{idx}].price must be >= 0")

        try:
            metadata = normalize_metadata(raw.get("custom_metadata"))
        except ValueError as exc:
            raise ValidationError(f"items[{idx}].{exc}")

        product_id = raw.get("product_id")
        variant_id = raw.get("variant_id")
        product_name = raw.get("product_name") or raw.get("name")

        if variant_id is not None:
            variant = db.session.get(ProductVariant, variant_id)
            if variant is None:
                raise NotFoundError(f"Variant {variant_id} not found", {"variant_id": variant_id})
            if product_id is not None and variant.product_id != product_id:
                raise ValidationError(f"items[{idx}]: variant {variant_id} does not belong to product {product_id}")
            product_id = variant.product_id
        elif product_id is not None:
            if db.session.get(Product, product_id) is None:
                raise NotFoundError(f"Product {product_id} not found", {"product_id": product_id})
            # Lines without a variant deduct from the product's first variant
            default = stock_service.default_variant_for(product_id)
            if default is not None:
                variant_id = default.id
        else:
            raise ValidationError(f"items[{idx}] needs a product_id or variant_id")

        if not product_name and product_id is not None:
            product = db.session.get(Product, product_id)
            product_name = product.name if product else None

        lines.append(_CheckoutLine(
            product_id=product_id,
            variant_id=variant_id,
            product_name=product_name,
            quantity=quantity,
            price=price,
            custom_metadata=metadata.to_json(),
            on_request=metadata.on_request,
        ))
    return lines


def compute_payment_discount(subtotal: Decimal, credit: Decimal, settings: SettingsSnapshot, payment_method_id) -> Decimal:
    """Percentage discount of the payment method on what is left after credit."""
    method = settings.payment_method(payment_method_id)
    if method is None or not method.is_discount_active or method.discount_percentage <= 0:
        return ZERO
    return quantize_money((subtotal - credit) * method.discount_percentage / Decimal("100"))


def _has_backorder(lines: list[_CheckoutLine]) -> bool:
    for line in lines:
        if line.variant_id is not None:
            variant = db.session.get(ProductVariant, line.variant_id)
            if variant is not None and (variant.stock or 0) < line.quantity:
                return True
        elif line.product_id is not None:
            product = db.session.get(Product, line.product_id)
            if product is not None and (product.stock or 0) < line.quantity:
                return True
    return False


def _deduct_stock(order: Order, actor_id: int | None) -> None:
    """One ledger movement per line, each its own unit. Failures are logged and skipped."""
    for item in order.items:
        try:
            if item.variant_id is not None:
                stock_service.record_movement(
                    item.variant_id,
                    -item.quantity,
                    MOVEMENT_TYPE_ORDER,
                    reason=f"Order {order.control_id}",
                    actor_id=actor_id,
                )
            elif item.product_id is not None:
                stock_service.decrement_legacy_product_stock(item.product_id, item.quantity)
        except Exception:
            logger.exception(
                "Stock deduction failed: order=%s item=%s variant=%s",
                order.control_id, item.id, item.variant_id,
            )


def create_order(
    *,
    user_id: int | None,
    items: list[dict],
    shipping_address: str | None = None,
    credit_to_apply=None,
    payment_method_id: str | None = None,
    payment_discount=None,
    customer: dict | None = None,
    actor_id: int | None = None,
    settings: SettingsSnapshot | None = None,
) -> Order:
    """
    Checkout: debit credit, insert the order, deduct stock, notify.

    The order is created in `quote` when any line is on-request, otherwise
    `pending`. If inserting the order fails after credit was debited, the debit
    is reversed with an explicit adjustment row (saga compensation) and the
    original error is raised.

    Args:
        user_id: profile id, or None for a guest checkout
        items: [{"product_id", "variant_id", "quantity", "price",
                 "product_name", "custom_metadata"}, ...]
        credit_to_apply: USD store credit to spend (registered customers only)
        payment_discount: explicit discount; None derives it from the
            payment method's active percentage
        customer: {"name", "email", "phone"} contact for guests

    Raises:
        ValidationError, NotFoundError, InsufficientCreditError
    """
    settings = settings or get_settings_snapshot()
    customer = customer or {}

    lines = _parse_lines(items)
    credit = _to_money(credit_to_apply, "credit_to_apply")
    if credit < 0:
        raise ValidationError("credit_to_apply must be >= 0")

    profile = None
    if user_id is not None:
        profile = db.session.get(Profile, user_id)
        if profile is None:
            raise NotFoundError(f"Profile {user_id} not found", {"profile_id": user_id})
    elif credit > 0:
        raise ValidationError("Guest orders cannot use store credit")

    if payment_method_id is not None and settings.payment_methods and settings.payment_method(payment_method_id) is None:
        raise ValidationError(f"Unknown payment method {payment_method_id!r}")

    subtotal = quantize_money(sum((line.price * line.quantity for line in lines), ZERO))
    if payment_discount is None:
        discount = compute_payment_discount(subtotal, credit, settings, payment_method_id)
    else:
        discount = _to_money(payment_discount, "payment_discount")
    if discount < 0:
        raise ValidationError("payment_discount must be >= 0")

    total = subtotal - credit - discount
    if total < 0:
        raise ValidationError(
            "Credit and discount exceed the order subtotal",
            {"subtotal": str(subtotal), "credit_to_apply": str(credit), "payment_discount": str(discount)},
        )

    if profile is not None and credit > quantize_money(profile.store_credit or ZERO):
        raise InsufficientCreditError(
            "Insufficient store credit",
            {"profile_id": profile.id, "balance": str(quantize_money(profile.store_credit or ZERO)), "requested": str(credit)},
        )

    has_backorder = _has_backorder(lines)
    status = ORDER_STATUS_QUOTE if any(line.on_request for line in lines) else ORDER_STATUS_PENDING
    control_id = next_control_id(document_type="order", prefix=ORDER_CONTROL_PREFIX)

    # 1) Credit debit, its own unit
    debit_entry = None
    if credit > 0:
        debit_entry = credit_service.adjust_credit(
            user_id,
            -credit,
            CREDIT_TYPE_PURCHASE,
            reason=f"Order {control_id}",
            actor_id=actor_id,
        )

    # 2) Order and items in one transaction
    contact_name = customer.get("name") or (profile.full_name if profile else None)
    contact_email = customer.get("email") or (profile.email if profile else None)
    contact_phone = customer.get("phone") or (profile.phone if profile else None)

    def _insert():
        order = Order(
            control_id=control_id,
            status=status,
            subtotal=subtotal,
            total=total,
            credit_applied=credit,
            payment_method_id=str(payment_method_id) if payment_method_id is not None else None,
            payment_discount_amount=discount,
            shipping_address=shipping_address or (profile.shipping_address if profile else None),
            user_id=user_id,
            customer_name=contact_name,
            customer_email=contact_email,
            customer_phone=contact_phone,
        )
        for line in lines:
            order.items.append(OrderItem(
                product_id=line.product_id,
                variant_id=line.variant_id,
                product_name=line.product_name,
                quantity=line.quantity,
                price=line.price,
                custom_metadata=line.custom_metadata,
                on_request=line.on_request,
            ))
        db.session.add(order)
        db.session.commit()
        return order

    try:
        order = run_with_retry(_insert)
    except Exception:
        db.session.rollback()
        if debit_entry is not None:
            try:
                credit_service.reverse_credit_entry(
                    debit_entry.id,
                    reason=f"Checkout {control_id} failed",
                    actor_id=actor_id,
                )
            except Exception:
                logger.warning(
                    "Credit compensation failed for checkout %s (history %s)",
                    control_id, debit_entry.id, exc_info=True,
                )
        raise

    # 3) Stock, one unit per line
    _deduct_stock(order, actor_id)

    # 4) Notification, best effort
    notification_service.notify_order_created(order, settings, has_backorder=has_backorder)

    logger.info("Order created: %s status=%s total=%s", order.control_id, order.status, order.total)
    return order


# =============================================================================
# STATE MACHINE
# =============================================================================

def _check_transition(prior: str, target: str) -> None:
    if prior == target:
        return
    if prior in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Order is {prior}; no further transitions",
            {"from": prior, "to": target},
        )
    if target == ORDER_STATUS_QUOTE:
        raise InvalidTransitionError(
            "Only a quote can remain a quote",
            {"from": prior, "to": target},
        )


def _restore_stock(order: Order, actor_id: int | None, result: TransitionResult) -> None:
    for item in order.items:
        if item.variant_id is None:
            continue
        try:
            result.stock_movements.append(stock_service.record_movement(
                item.variant_id,
                item.quantity,
                MOVEMENT_TYPE_RETURN,
                reason=f"Order {order.control_id} cancelled",
                actor_id=actor_id,
            ))
        except Exception:
            logger.exception("Stock restoration failed: order=%s item=%s", order.control_id, item.id)
            result.warnings.append(f"stock restoration failed for item {item.id}")


def _refund_credit(order: Order, actor_id: int | None, result: TransitionResult) -> None:
    credit = quantize_money(order.credit_applied or ZERO)
    if credit <= 0 or order.is_guest:
        return
    try:
        result.credit_refund = credit_service.adjust_credit(
            order.user_id,
            credit,
            CREDIT_TYPE_RETURN,
            reason=f"Order {order.control_id} cancelled",
            order_id=order.id,
            actor_id=actor_id,
        )
    except Exception:
        logger.exception("Credit refund failed: order=%s", order.control_id)
        result.warnings.append("store credit refund failed")


def _record_income(order: Order, hint: FinanceHint, settings: SettingsSnapshot, actor_id, result: TransitionResult) -> None:
    try:
        result.finance_transaction = finance_service.record_order_income(
            order,
            account_id=hint.account_id,
            category_id=hint.category_id,
            description=hint.description,
            settings=settings,
            actor_id=actor_id,
        )
    except DuplicateFinanceEntry:
        logger.info("Income for order %s already recorded, skipping", order.control_id)
        result.finance_skipped = True
    except Exception:
        logger.exception("Finance recording failed: order=%s", order.control_id)
        result.warnings.append("finance recording failed")


def transition_order(
    order_id: int,
    target_status: str,
    *,
    actor_id: int | None = None,
    is_admin: bool = False,
    finance_hint: FinanceHint | None = None,
    settings: SettingsSnapshot | None = None,
) -> TransitionResult:
    """
    Move an order to target_status and run the side effects of that move.

    The status write commits first. Side effects then run one by one, each in
    its own unit; a failing one is logged and reported in
    TransitionResult.warnings without undoing the others.

    Re-entering the current status is allowed: it re-runs the idempotent
    finance check for `processing` and nothing else.

    Raises:
        InvalidTransitionError: unknown target, leaving a terminal status,
            or moving back into `quote`
        NotFoundError: order does not exist
        ForbiddenError: non-admin caller with a target other than `quote`
    """
    if target_status not in ORDER_STATUSES:
        raise InvalidTransitionError(
            f"Unknown status {target_status!r}",
            {"to": target_status, "allowed": list(ORDER_STATUSES)},
        )

    settings = settings or get_settings_snapshot()

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})
        if not is_admin and target_status != ORDER_STATUS_QUOTE:
            raise ForbiddenError(
                "Administrative capability required to change order status",
                {"order_id": order_id, "to": target_status},
            )
        prior = order.status
        _check_transition(prior, target_status)
        order.status = target_status
        db.session.commit()
        return order, prior

    try:
        order, prior_status = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    changed = prior_status != target_status
    result = TransitionResult(order=order, prior_status=prior_status, changed=changed)
    if changed:
        logger.info("Order %s: %s -> %s", order.control_id, prior_status, target_status)

    if target_status == ORDER_STATUS_PROCESSING and finance_hint is not None:
        _record_income(order, finance_hint, settings, actor_id, result)

    if target_status == ORDER_STATUS_CANCELLED and changed:
        _restore_stock(order, actor_id, result)
        _refund_credit(order, actor_id, result)

    if changed:
        try:
            result.webhook_event = notification_service.notify_transition(order, prior_status, settings)
        except Exception:
            logger.exception("Webhook dispatch failed: order=%s", order.control_id)

    db.session.refresh(order)
    return result
