# Overview: Flask API routes for checkout and order status changes.

# backend/shopcore/routes/orders.py
"""
Order API Routes

DESIGN:
- Checkout is open to guests; registered customers check out as themselves
- Status changes go through the order state machine, which enforces the
  admin capability for every target other than `quote`
- Side-effect failures are reported in `warnings`, never as an error status
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import optional_actor, require_actor
from ..services import order_service
from ..services.errors import OrderCoreError
from ..services.order_service import FinanceHint

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/")
@optional_actor
def create_order_route():
    """
    Checkout.

    Request body:
    {
        "items": [{"variant_id": 3, "quantity": 2, "price": "10.00",
                   "custom_metadata": {...}}],
        "shipping_address": "...",
        "credit_to_apply": "5.00",      (optional, registered customers)
        "payment_method_id": "zelle",   (optional)
        "payment_discount": "0.00",     (optional)
        "customer": {"name", "email", "phone"},  (guests)
        "user_id": 7                    (admins only: order on behalf)
    }

    Returns:
        201: order created (status pending or quote)
        400/404/409: validation, missing catalog row, insufficient credit
    """
    try:
        data = request.get_json(silent=True) or {}

        user_id = g.actor_id
        if g.is_admin and "user_id" in data:
            user_id = data.get("user_id")

        order = order_service.create_order(
            user_id=user_id,
            items=data.get("items"),
            shipping_address=data.get("shipping_address"),
            credit_to_apply=data.get("credit_to_apply"),
            payment_method_id=data.get("payment_method_id"),
            payment_discount=data.get("payment_discount"),
            customer=data.get("customer"),
            actor_id=g.actor_id,
        )
        return jsonify({"order": order.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/")
@require_actor
def list_orders_route():
    """Admins list every order; customers only their own."""
    try:
        limit = min(request.args.get("limit", 100, type=int), 500)
        orders = order_service.list_orders(
            status=request.args.get("status"),
            user_id=None if g.is_admin else g.actor_id,
            limit=limit,
        )
        return jsonify({"orders": [o.to_dict(include_items=False) for o in orders]}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_actor
def get_order_route(order_id: int):
    try:
        order = order_service.get_order_for_actor(order_id, actor_id=g.actor_id, is_admin=g.is_admin)
        return jsonify({"order": order.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/status")
@require_actor
def transition_order_route(order_id: int):
    """
    Move an order to a new status.

    Request body:
    {
        "status": "processing",
        "finance": {"account_id": 1, "category_id": 2, "description": "..."}  (optional)
    }

    Returns:
        200: transition result (order, prior_status, side-effect outcomes)
        403: caller lacks admin capability
        404: order not found
        409: transition blocked (terminal status, unknown target)
    """
    try:
        data = request.get_json(silent=True) or {}
        target = data.get("status")
        if not target:
            return jsonify({"error": "status is required"}), 400

        hint = None
        finance = data.get("finance")
        if finance:
            if not isinstance(finance, dict) or finance.get("account_id") is None:
                return jsonify({"error": "finance.account_id is required"}), 400
            hint = FinanceHint(
                account_id=finance["account_id"],
                category_id=finance.get("category_id"),
                description=finance.get("description"),
            )

        result = order_service.transition_order(
            order_id,
            target,
            actor_id=g.actor_id,
            is_admin=g.is_admin,
            finance_hint=hint,
        )
        return jsonify(result.to_dict()), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to transition order")
        return jsonify({"error": "Internal server error"}), 500
