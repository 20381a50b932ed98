# backend/shopcore/routes/system.py
"""
System health and version endpoints.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import Order, WebhookDelivery
from ..models.webhooks import DELIVERY_STATUS_FAILED
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"orders": order_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_webhook_health() -> dict:
    """Degraded (not unhealthy) when deliveries are failing: orders still flow."""
    try:
        failed = db.session.query(WebhookDelivery).filter_by(status=DELIVERY_STATUS_FAILED).count()
    except Exception:
        current_app.logger.exception("Webhook health check failed")
        return {"status": "unhealthy", "error": "Webhook log unavailable"}

    configured = bool(current_app.config.get("WEBHOOK_URL"))
    status = "degraded" if failed else "healthy"
    return {
        "status": status,
        "details": {"url_configured": configured, "failed_deliveries": failed},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    webhook_health = check_webhook_health()

    all_checks = [database_health, webhook_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "webhooks": webhook_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
