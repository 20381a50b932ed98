# Overview: Flask API routes for finance accounts, entries, cash closings and store settings.

# backend/shopcore/routes/finance.py
"""
Finance API Routes

All endpoints are admin-only. Amounts are returned as decimal strings.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import require_admin
from ..services import cash_closing_service, finance_service, settings_service
from ..services.errors import OrderCoreError, ValidationError
from ..time_utils import parse_iso_date, parse_iso_datetime

finance_bp = Blueprint("finance", __name__, url_prefix="/api/finance")


# =============================================================================
# ACCOUNTS & CATEGORIES
# =============================================================================

@finance_bp.get("/accounts")
@require_admin
def list_accounts_route():
    include_inactive = request.args.get("include_inactive", "").lower() in {"1", "true"}
    accounts = finance_service.list_accounts(include_inactive=include_inactive)
    return jsonify({"accounts": [a.to_dict() for a in accounts]}), 200


@finance_bp.post("/accounts")
@require_admin
def create_account_route():
    """Request body: {"name": "Banesco", "currency": "VES", "type": "bank"}"""
    try:
        data = request.get_json(silent=True) or {}
        account = finance_service.create_account(
            name=data.get("name"),
            currency=data.get("currency") or "USD",
            account_type=data.get("type") or "bank",
        )
        return jsonify({"account": account.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create finance account")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.get("/categories")
@require_admin
def list_categories_route():
    categories = finance_service.list_categories(category_type=request.args.get("type"))
    return jsonify({"categories": [c.to_dict() for c in categories]}), 200


@finance_bp.post("/categories")
@require_admin
def create_category_route():
    """Request body: {"name": "Sales", "type": "income"}"""
    try:
        data = request.get_json(silent=True) or {}
        category = finance_service.create_category(name=data.get("name"), category_type=data.get("type"))
        return jsonify({"category": category.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create finance category")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# TRANSACTIONS
# =============================================================================

@finance_bp.get("/transactions")
@require_admin
def list_transactions_route():
    try:
        day = parse_iso_date(request.args.get("date"))
    except ValueError:
        return jsonify({"error": "date must be YYYY-MM-DD"}), 400
    try:
        transactions = finance_service.list_transactions(
            day=day,
            account_id=request.args.get("account_id", type=int),
            order_id=request.args.get("order_id", type=int),
            transaction_type=request.args.get("type"),
        )
        return jsonify({"transactions": [t.to_dict() for t in transactions]}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code


@finance_bp.post("/transactions")
@require_admin
def record_transaction_route():
    """
    Manual income/expense entry.

    Request body:
    {
        "account_id": 1,
        "type": "expense",
        "amount": "1500.00",          (account currency)
        "category_id": 3,             (optional)
        "order_id": 12,               (optional)
        "description": "Courier",     (optional)
        "exchange_rate": "150",       (optional, defaults to the current rate)
        "transaction_date": "2024-05-01T10:00:00"  (optional, local time)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("account_id") is None:
            return jsonify({"error": "account_id is required"}), 400
        try:
            transaction_date = parse_iso_datetime(data.get("transaction_date"))
        except ValueError:
            raise ValidationError("transaction_date must be ISO-8601")

        tx = finance_service.record_transaction(
            account_id=data["account_id"],
            transaction_type=data.get("type"),
            amount=data.get("amount"),
            category_id=data.get("category_id"),
            order_id=data.get("order_id"),
            description=data.get("description"),
            exchange_rate=data.get("exchange_rate"),
            transaction_date=transaction_date,
            actor_id=g.actor_id,
            settings=settings_service.get_settings_snapshot(),
        )
        return jsonify({"transaction": tx.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to record finance transaction")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# CASH CLOSINGS
# =============================================================================

@finance_bp.post("/closings")
@require_admin
def close_day_route():
    """
    Request body: {"close_date": "2024-05-01", "notes": "..."}

    Returns:
        201: closing snapshot
        409: a closing already exists for the date
    """
    try:
        data = request.get_json(silent=True) or {}
        closing = cash_closing_service.close_day(
            data.get("close_date"),
            notes=data.get("notes"),
            actor_id=g.actor_id,
        )
        return jsonify({"closing": closing.to_dict()}), 201

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to close day")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.get("/closings")
@require_admin
def list_closings_route():
    try:
        closings = cash_closing_service.list_closings(
            start=request.args.get("start"),
            end=request.args.get("end"),
        )
        return jsonify({"closings": [c.to_dict() for c in closings]}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code


@finance_bp.get("/closings/<close_date>")
@require_admin
def get_closing_route(close_date: str):
    try:
        closing = cash_closing_service.get_closing(close_date)
        return jsonify({"closing": closing.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code


# =============================================================================
# SETTINGS
# =============================================================================

@finance_bp.get("/settings")
@require_admin
def get_settings_route():
    snapshot = settings_service.get_settings_snapshot()
    return jsonify({
        "exchange_rate": str(snapshot.exchange_rate),
        "local_currency": snapshot.local_currency,
        "webhook_url_configured": bool(snapshot.webhook_url),
        "payment_methods": [
            {
                "id": m.id,
                "name": m.name,
                "instructions": m.instructions,
                "is_discount_active": m.is_discount_active,
                "discount_percentage": str(m.discount_percentage),
            }
            for m in snapshot.payment_methods
        ],
    }), 200


@finance_bp.put("/settings/exchange-rate")
@require_admin
def set_exchange_rate_route():
    """Request body: {"exchange_rate": "36.5"}"""
    try:
        data = request.get_json(silent=True) or {}
        row = settings_service.set_exchange_rate(
            data.get("exchange_rate"),
            actor_id=g.actor_id,
            is_admin=g.is_admin,
        )
        return jsonify({"settings": row.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to set exchange rate")
        return jsonify({"error": "Internal server error"}), 500


@finance_bp.patch("/settings")
@require_admin
def update_settings_route():
    """Request body: any of {"local_currency", "payment_methods", "crm_webhook_url"}"""
    try:
        data = request.get_json(silent=True) or {}
        row = settings_service.update_settings(
            actor_id=g.actor_id,
            is_admin=g.is_admin,
            local_currency=data.get("local_currency"),
            payment_methods=data.get("payment_methods"),
            crm_webhook_url=data.get("crm_webhook_url"),
        )
        return jsonify({"settings": row.to_dict()}), 200

    except OrderCoreError as e:
        return jsonify({"error": str(e), **e.details}), e.status_code
    except Exception:
        current_app.logger.exception("Failed to update settings")
        return jsonify({"error": "Internal server error"}), 500
