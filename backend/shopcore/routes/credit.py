# Overview: Flask API routes for store-credit balances and admin adjustments.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor, require_admin
from ..models.credit import CREDIT_TYPE_ADJUSTMENT
from ..services import credit_service
from ..services.errors import ForbiddenError, OrderCoreError

credit_bp = Blueprint("credit", __name__, url_prefix="/api/credit")


@credit_bp.get("/profiles/<int:profile_id>")
@require_actor
def get_credit_route(profile_id: int):
    """Balance plus recent history; customers may only read their own."""
    try:
        if not g.is_admin and g.actor_id != profile_id:
            raise ForbiddenError("Not allowed to view this profile's credit", {"profile_id": profile_id})
        balance = credit_service.get_balance(profile_id)
        history = credit_service.list_history(profile_id, limit=request.args.get("limit", 200, type=int))
        return jsonify({
            "profile_id": profile_id,
            "balance": str(balance),
            "history": [h.to_dict() for h in history],
        }), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get store credit")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.post("/profiles/<int:profile_id>/adjust")
@require_admin
def adjust_credit_route(profile_id: int):
    """Request body: {"amount": "-5.00", "reason": "Goodwill correction"}"""
    try:
        data = request.get_json(silent=True) or {}
        entry = credit_service.adjust_credit(
            profile_id,
            data.get("amount"),
            CREDIT_TYPE_ADJUSTMENT,
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"entry": entry.to_dict(), "balance": str(credit_service.get_balance(profile_id))}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to adjust store credit")
        return jsonify({"error": "Internal server error"}), 500


@credit_bp.get("/verify")
@require_admin
def verify_route():
    mismatches = credit_service.verify_credit_balances()
    return jsonify({"ok": not mismatches, "mismatches": mismatches}), 200
