# Overview: Flask API routes for return requests and their review.

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_actor, require_admin
from ..services import return_service
from ..services.errors import ForbiddenError, OrderCoreError

returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


@returns_bp.post("/")
@require_actor
def request_return_route():
    """
    Request body:
    {
        "order_id": 12,
        "lines": [{"variant_id": 3, "quantity": 1}],
        "reason": "Wrong size"
    }

    Returns:
        201: return created (requested)
        400: order not returnable or quantities exceed what was bought
    """
    try:
        data = request.get_json(silent=True) or {}
        order_id = data.get("order_id")
        if order_id is None:
            return jsonify({"error": "order_id is required"}), 400

        return_doc = return_service.request_return(
            order_id=order_id,
            lines=data.get("lines"),
            reason=data.get("reason"),
            actor_id=g.actor_id,
            is_admin=g.is_admin,
        )
        return jsonify({"return": return_doc.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to request return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/")
@require_admin
def list_returns_route():
    try:
        returns = return_service.list_returns(
            status=request.args.get("status"),
            order_id=request.args.get("order_id", type=int),
        )
        return jsonify({"returns": [r.to_dict(include_lines=False) for r in returns]}), 200

    except Exception:
        current_app.logger.exception("Failed to list returns")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.get("/<int:return_id>")
@require_actor
def get_return_route(return_id: int):
    try:
        return_doc = return_service.get_return(return_id)
        if not g.is_admin and return_doc.customer_id != g.actor_id:
            raise ForbiddenError("Not allowed to view this return", {"return_id": return_id})
        return jsonify({"return": return_doc.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to get return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/review")
@require_admin
def review_return_route(return_id: int):
    """Request body: {"status": "approved" | "rejected" | "completed", "admin_notes": "..."}"""
    try:
        data = request.get_json(silent=True) or {}
        return_doc = return_service.review_return(
            return_id,
            data.get("status"),
            admin_notes=data.get("admin_notes"),
            actor_id=g.actor_id,
            is_admin=g.is_admin,
        )
        return jsonify({"return": return_doc.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to review return")
        return jsonify({"error": "Internal server error"}), 500
