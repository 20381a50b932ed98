# Overview: Flask API routes for the stock ledger and its reconciliation.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin
from ..models.inventory import MOVEMENT_TYPE_MANUAL
from ..services import stock_service
from ..services.errors import OrderCoreError

inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("/variants/<int:variant_id>/movements")
@require_admin
def list_movements_route(variant_id: int):
    limit = min(request.args.get("limit", 200, type=int), 1000)
    movements = stock_service.list_movements(variant_id, limit=limit)
    return jsonify({
        "variant_id": variant_id,
        "ledger_stock": stock_service.get_ledger_stock(variant_id),
        "movements": [m.to_dict() for m in movements],
    }), 200


@inventory_bp.post("/variants/<int:variant_id>/movements")
@require_admin
def record_manual_movement_route(variant_id: int):
    """
    Manual stock correction.

    Request body: {"quantity": -2, "reason": "Damaged in storage"}
    """
    try:
        data = request.get_json(silent=True) or {}
        movement = stock_service.record_movement(
            variant_id,
            data.get("quantity"),
            MOVEMENT_TYPE_MANUAL,
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({"movement": movement.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record stock movement")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/verify")
@require_admin
def verify_route():
    """Variants whose cached counter disagrees with the ledger."""
    mismatches = stock_service.verify_stock_counters()
    return jsonify({"ok": not mismatches, "mismatches": mismatches}), 200


@inventory_bp.post("/variants/<int:variant_id>/rebuild")
@require_admin
def rebuild_route(variant_id: int):
    try:
        variant = stock_service.rebuild_stock_counter(variant_id)
        return jsonify({"variant": variant.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
