# Overview: Flask API routes for customer payment reports and their review.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import optional_actor, require_actor, require_admin
from ..services import order_service, payment_confirmation_service
from ..services.errors import ForbiddenError, OrderCoreError

payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _check_order_access(order_id: int) -> None:
    """Registered orders belong to their customer; guest orders are open by id."""
    order = order_service.get_order(order_id)
    if g.is_admin or order.is_guest:
        return
    if order.user_id != g.actor_id:
        raise ForbiddenError("Not allowed to report payments for this order", {"order_id": order_id})


@payments_bp.post("/")
@optional_actor
def submit_confirmation_route():
    """
    Report one payment.

    Request body:
    {
        "order_id": 12,
        "reference_number": "000123456",
        "amount_paid": "3000.00",
        "currency": "VES",        (optional, defaults to the account currency)
        "account_id": 2,          (optional)
        "proof_ref": "uploads/..." (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("order_id")
        if order_id is None:
            return jsonify({"error": "order_id is required"}), 400

        _check_order_access(order_id)
        confirmation = payment_confirmation_service.submit_confirmation(
            order_id=order_id,
            reference_number=data.get("reference_number"),
            amount_paid=data.get("amount_paid"),
            currency=data.get("currency"),
            account_id=data.get("account_id"),
            proof_ref=data.get("proof_ref"),
            actor_id=g.actor_id,
        )
        summary = payment_confirmation_service.get_payment_summary(order_id)
        return jsonify({
            "confirmation": confirmation.to_dict(),
            "total_reported_usd": str(summary.total_reported_usd),
            "is_fully_reported": summary.is_fully_reported,
        }), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to submit payment confirmation")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/orders/<int:order_id>")
@require_actor
def payment_summary_route(order_id: int):
    try:
        _check_order_access(order_id)
        summary = payment_confirmation_service.get_payment_summary(order_id)
        return jsonify(summary.to_dict()), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get payment summary")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/<int:confirmation_id>/review")
@require_admin
def review_confirmation_route(confirmation_id: int):
    """Request body: {"status": "approved" | "rejected"}"""
    try:
        data = request.get_json(silent=True) or {}
        confirmation = payment_confirmation_service.review_confirmation(
            confirmation_id,
            data.get("status"),
            actor_id=g.actor_id,
            is_admin=g.is_admin,
        )
        return jsonify({"confirmation": confirmation.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to review payment confirmation")
        return jsonify({"error": "Internal server error"}), 500
