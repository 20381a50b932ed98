"""
Return processing.

LIFECYCLE:
1. request_return (requested): customer picks lines from a completed or
   delivered order
2. review_return approved / rejected: admin decision
3. review_return completed: restock each line through the stock ledger and
   credit the refund (sum of price * quantity) as store credit. Guest
   orders have no credit account: they are restocked and amount_credited
   stays 0.00

COMPLETION IS RESUMABLE:
Each line's movement is written in the same transaction as the line's
stock_movement_id link, and the credit row in the same transaction as the
return's credit_history_id. Completing twice, or again after a partial
failure, skips whatever is already linked, so nothing is credited twice.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from sqlalchemy import func

from ..extensions import db
from ..models import Order, OrderItem, Return, ReturnLine
from ..models.credit import CREDIT_TYPE_RETURN
from ..models.inventory import MOVEMENT_TYPE_RETURN
from ..models.orders import ORDER_STATUS_COMPLETED, ORDER_STATUS_DELIVERED
from ..models.returns import (
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_COMPLETED,
    RETURN_STATUS_REJECTED,
    RETURN_STATUS_REQUESTED,
)
from ..money import ZERO, quantize_money
from ..time_utils import utcnow
from . import credit_service, stock_service
from .concurrency import lock_for_update, run_with_retry
from .errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError
from .sequence_service import RETURN_CONTROL_PREFIX, next_control_id

logger = logging.getLogger(__name__)

RETURNABLE_ORDER_STATUSES = (ORDER_STATUS_COMPLETED, ORDER_STATUS_DELIVERED)


# =============================================================================
# READS
# =============================================================================

def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFoundError(f"Return {return_id} not found", {"return_id": return_id})
    return return_doc


def list_returns(*, status: str | None = None, order_id: int | None = None, limit: int = 100) -> list[Return]:
    query = db.session.query(Return)
    if status:
        query = query.filter_by(status=status)
    if order_id is not None:
        query = query.filter_by(order_id=order_id)
    return query.order_by(Return.created_at.desc(), Return.id.desc()).limit(limit).all()


def _already_returned(order_id: int) -> dict[int, int]:
    """order_item_id -> quantity on non-rejected returns of the order."""
    rows = (
        db.session.query(ReturnLine.order_item_id, func.sum(ReturnLine.quantity))
        .join(Return, Return.id == ReturnLine.return_id)
        .filter(Return.order_id == order_id)
        .filter(Return.status != RETURN_STATUS_REJECTED)
        .group_by(ReturnLine.order_item_id)
        .all()
    )
    return {item_id: int(qty or 0) for item_id, qty in rows}


# =============================================================================
# REQUEST
# =============================================================================

def request_return(
    *,
    order_id: int,
    lines: list[dict],
    reason: str | None = None,
    actor_id: int | None = None,
    is_admin: bool = False,
) -> Return:
    """
    Create a return (status: requested).

    Each line is {"variant_id", "quantity"} (optionally "order_item_id").
    The refund price is taken from the order item, never from the request.

    Raises:
        NotFoundError: order missing
        ForbiddenError: customer returning someone else's order
        ValidationError: order not completed/delivered, unknown variant,
            or more units than were bought (minus earlier returns)
    """
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found", {"order_id": order_id})
    if not is_admin and (order.is_guest or order.user_id != actor_id):
        raise ForbiddenError("Not allowed to return this order", {"order_id": order_id})
    if order.status not in RETURNABLE_ORDER_STATUSES:
        raise ValidationError(
            f"Only completed or delivered orders can be returned (order is {order.status})",
            {"order_id": order_id, "status": order.status},
        )
    if not isinstance(lines, list) or not lines:
        raise ValidationError("lines must be a non-empty list")

    returned = _already_returned(order.id)
    requested: dict[int, int] = defaultdict(int)
    parsed: list[tuple[OrderItem, int]] = []

    for idx, raw in enumerate(lines):
        if not isinstance(raw, dict):
            raise ValidationError(f"lines[{idx}] must be an object")
        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError(f"lines[{idx}].quantity must be a positive integer")

        item = _match_order_item(order, raw, idx)
        requested[item.id] += quantity
        available = item.quantity - returned.get(item.id, 0)
        if requested[item.id] > available:
            raise ValidationError(
                f"lines[{idx}]: only {available} unit(s) of item {item.id} can be returned",
                {"order_item_id": item.id, "available": available},
            )
        parsed.append((item, quantity))

    control_id = next_control_id(document_type="return", prefix=RETURN_CONTROL_PREFIX)
    return_doc = Return(
        control_id=control_id,
        order_id=order.id,
        customer_id=order.user_id,
        status=RETURN_STATUS_REQUESTED,
        reason=reason,
        created_by=actor_id,
    )
    db.session.add(return_doc)
    for item, quantity in parsed:
        return_doc.lines.append(ReturnLine(
            order_item_id=item.id,
            variant_id=item.variant_id,
            quantity=quantity,
            price=item.price,
        ))
    db.session.commit()
    return return_doc


def _match_order_item(order: Order, raw: dict, idx: int) -> OrderItem:
    order_item_id = raw.get("order_item_id")
    variant_id = raw.get("variant_id")
    for item in order.items:
        if order_item_id is not None and item.id == order_item_id:
            break
        if order_item_id is None and variant_id is not None and item.variant_id == variant_id:
            break
    else:
        raise ValidationError(
            f"lines[{idx}] does not match any item of order {order.control_id}",
            {"variant_id": variant_id, "order_item_id": order_item_id},
        )
    if item.variant_id is None:
        raise ValidationError(f"lines[{idx}]: item {item.id} has no variant to restock")
    return item


# =============================================================================
# REVIEW / COMPLETION
# =============================================================================

def review_return(
    return_id: int,
    status: str,
    *,
    admin_notes: str | None = None,
    actor_id: int | None = None,
    is_admin: bool = False,
) -> Return:
    """
    Admin decision on a return.

    requested -> approved | rejected; approved -> completed. Completing a
    completed return is a no-op.
    """
    if not is_admin:
        raise ForbiddenError("Administrative capability required to review returns")
    if status not in (RETURN_STATUS_APPROVED, RETURN_STATUS_REJECTED, RETURN_STATUS_COMPLETED):
        raise ValidationError("status must be approved, rejected or completed")

    return_doc = get_return(return_id)

    if status == RETURN_STATUS_COMPLETED:
        return complete_return(return_id, admin_notes=admin_notes, actor_id=actor_id)

    if return_doc.status == status:
        return return_doc
    if return_doc.status != RETURN_STATUS_REQUESTED:
        raise InvalidTransitionError(
            f"Return is {return_doc.status}",
            {"from": return_doc.status, "to": status},
        )

    return_doc.status = status
    if admin_notes is not None:
        return_doc.admin_notes = admin_notes
    return_doc.reviewed_by = actor_id
    return_doc.reviewed_at = utcnow()
    db.session.commit()
    return return_doc


def complete_return(return_id: int, *, admin_notes: str | None = None, actor_id: int | None = None) -> Return:
    return_doc = get_return(return_id)
    if return_doc.status == RETURN_STATUS_COMPLETED:
        return return_doc
    if return_doc.status != RETURN_STATUS_APPROVED:
        raise InvalidTransitionError(
            f"Only approved returns can be completed (return is {return_doc.status})",
            {"from": return_doc.status, "to": RETURN_STATUS_COMPLETED},
        )

    control_id = return_doc.control_id

    # 1) Restock, one unit of work per line
    for line_id in [line.id for line in return_doc.lines]:
        def _restock(line_id=line_id):
            line = lock_for_update(db.session.query(ReturnLine).filter_by(id=line_id)).first()
            if line.stock_movement_id is not None:
                return
            movement = stock_service.record_movement(
                line.variant_id,
                line.quantity,
                MOVEMENT_TYPE_RETURN,
                reason=f"Return {control_id}",
                actor_id=actor_id,
                commit=False,
            )
            line.stock_movement_id = movement.id
            db.session.commit()

        try:
            run_with_retry(_restock)
        except Exception:
            db.session.rollback()
            raise

    # 2) Refund as store credit, linked in the same unit
    def _credit():
        doc = lock_for_update(db.session.query(Return).filter_by(id=return_id)).first()
        refund = quantize_money(doc.refund_total or ZERO)
        if doc.credit_history_id is None and refund > 0:
            if doc.customer_id is None:
                logger.warning("Return %s belongs to a guest order; no store credit issued", control_id)
            else:
                entry = credit_service.adjust_credit(
                    doc.customer_id,
                    refund,
                    CREDIT_TYPE_RETURN,
                    reason=f"Return {control_id}",
                    order_id=doc.order_id,
                    actor_id=actor_id,
                    commit=False,
                )
                doc.credit_history_id = entry.id
        # Only what reached the credit ledger counts as credited
        doc.amount_credited = refund if doc.credit_history_id is not None else ZERO
        doc.status = RETURN_STATUS_COMPLETED
        if admin_notes is not None:
            doc.admin_notes = admin_notes
        doc.completed_at = utcnow()
        if doc.reviewed_by is None:
            doc.reviewed_by = actor_id
        db.session.commit()
        return doc

    try:
        return_doc = run_with_retry(_credit)
    except Exception:
        db.session.rollback()
        raise

    logger.info("Return %s completed: credited %s", control_id, return_doc.amount_credited)
    return return_doc
