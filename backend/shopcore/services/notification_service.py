# Overview: Builds order-event webhook payloads and hands them to the dispatcher.
#
# Each event is sent at most once per order: the idempotency key is
# "<event>:<order id>". Status moves are permissive between non-terminal
# statuses, so an order that goes processing -> evaluating -> processing
# records one payment_confirmed delivery, not two. The CRM is told that a
# milestone was reached, not how many times.

from __future__ import annotations

from ..extensions import db, webhooks
from ..models import Order, Profile
from ..models.orders import ORDER_STATUS_QUOTE
from ..money import money_str
from ..webhooks import (
    EVENT_BUDGET_FINALIZED,
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_CREATED,
    EVENT_ORDER_DELIVERED,
    EVENT_ORDER_SHIPPED,
    EVENT_PAYMENT_CONFIRMED,
)
from .settings_service import SettingsSnapshot

# target status -> event; "pending" only counts when coming from a quote
_STATUS_EVENTS = {
    "processing": EVENT_PAYMENT_CONFIRMED,
    "shipped": EVENT_ORDER_SHIPPED,
    "completed": EVENT_ORDER_DELIVERED,
    "delivered": EVENT_ORDER_DELIVERED,
    "cancelled": EVENT_ORDER_CANCELLED,
}


def event_for_transition(prior_status: str, target_status: str) -> str | None:
    if target_status == "pending":
        return EVENT_BUDGET_FINALIZED if prior_status == ORDER_STATUS_QUOTE else None
    return _STATUS_EVENTS.get(target_status)


def customer_contact(order: Order) -> dict:
    """Profile contact for registered customers, checkout fields for guests."""
    profile = db.session.get(Profile, order.user_id) if order.user_id is not None else None
    if profile is not None:
        return {
            "name": profile.full_name or order.customer_name,
            "email": profile.email or order.customer_email,
            "phone": profile.phone or order.customer_phone,
        }
    return {
        "name": order.customer_name,
        "email": order.customer_email,
        "phone": order.customer_phone,
    }


def _items_payload(order: Order) -> list[dict]:
    return [
        {
            "name": item.product_name,
            "quantity": item.quantity,
            "price": money_str(item.price),
            "on_request": bool(item.on_request),
        }
        for item in order.items
    ]


def order_payload(order: Order, *, prior_status: str | None = None) -> dict:
    return {
        "order_id": order.id,
        "control_id": order.control_id,
        "order_status": order.status,
        "previous_status": prior_status,
        "total": money_str(order.total),
        "shipping_address": order.shipping_address,
        "items": _items_payload(order),
    }


def notify_order_created(order: Order, settings: SettingsSnapshot, *, has_backorder: bool = False):
    method = settings.payment_method(order.payment_method_id)
    data = {
        "order_id": order.id,
        "control_id": order.control_id,
        "order_status": order.status,
        "total_paid": money_str(order.total),
        "credit_applied": money_str(order.credit_applied),
        "payment_method_id": order.payment_method_id,
        "payment_method_name": method.name if method else None,
        "payment_instructions": method.instructions if method else None,
        "has_backorder": has_backorder,
        "shipping_address": order.shipping_address,
        "items": _items_payload(order),
    }
    return webhooks.dispatch(
        EVENT_ORDER_CREATED,
        data=data,
        customer=customer_contact(order),
        idempotency_key=f"{EVENT_ORDER_CREATED}:{order.id}",
        url=settings.webhook_url,
    )


def notify_transition(order: Order, prior_status: str, settings: SettingsSnapshot):
    """Dispatch the event mapped to this transition, if any. Returns the event name."""
    event = event_for_transition(prior_status, order.status)
    if event is None:
        return None
    webhooks.dispatch(
        event,
        data=order_payload(order, prior_status=prior_status),
        customer=customer_contact(order),
        idempotency_key=f"{event}:{order.id}",
        url=settings.webhook_url,
    )
    return event
