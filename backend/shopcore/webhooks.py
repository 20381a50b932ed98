"""
Outbound order-event webhooks.

WHY: The CRM/automation tooling learns about order events through a single
HTTP POST per event. Delivery runs after the order and ledger writes have
committed and can never fail or roll back the caller: failures are logged and
recorded on the delivery row, nothing else.

DESIGN:
- Fixed event vocabulary (WEBHOOK_EVENTS)
- One webhook_deliveries row per idempotency key; a repeated dispatch of the
  same key is skipped
- No automatic retry; failed rows are re-sent with `flask webhooks redeliver`
- Async by default (thread pool); WEBHOOK_ASYNC=false delivers inline.
  The pool is drained at interpreter exit
"""

from __future__ import annotations

import atexit
import logging
from concurrent.futures import ThreadPoolExecutor

import httpx
from sqlalchemy.exc import IntegrityError

from .services.errors import ExternalDispatchFailed
from .time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

EVENT_ORDER_CREATED = "order_created"
EVENT_BUDGET_FINALIZED = "budget_finalized"
EVENT_PAYMENT_CONFIRMED = "payment_confirmed"
EVENT_ORDER_SHIPPED = "order_shipped"
EVENT_ORDER_DELIVERED = "order_delivered"
EVENT_ORDER_CANCELLED = "order_cancelled"

WEBHOOK_EVENTS = frozenset({
    EVENT_ORDER_CREATED,
    EVENT_BUDGET_FINALIZED,
    EVENT_PAYMENT_CONFIRMED,
    EVENT_ORDER_SHIPPED,
    EVENT_ORDER_DELIVERED,
    EVENT_ORDER_CANCELLED,
})


class WebhookDispatcher:
    """Flask extension owning the delivery executor and the HTTP client settings."""

    def __init__(self, app=None):
        self.app = None
        self._executor: ThreadPoolExecutor | None = None
        # Tests swap in an httpx.MockTransport here
        self.transport: httpx.BaseTransport | None = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.app = app
        app.config.setdefault("WEBHOOK_TIMEOUT_SECONDS", 8.0)
        app.config.setdefault("WEBHOOK_ASYNC", True)
        app.config.setdefault("WEBHOOK_MAX_WORKERS", 4)
        if app.config["WEBHOOK_ASYNC"]:
            self.shutdown()
            self._executor = ThreadPoolExecutor(
                max_workers=int(app.config["WEBHOOK_MAX_WORKERS"]),
                thread_name_prefix="webhook",
            )
            # In-flight deliveries finish before the interpreter exits
            atexit.register(self.shutdown)
        app.extensions["webhook_dispatcher"] = self

    def shutdown(self, wait: bool = True) -> None:
        """Stop the delivery pool, by default after queued deliveries are sent."""
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)

    # =========================================================================
    # DISPATCH
    # =========================================================================

    def dispatch(
        self,
        event: str,
        *,
        data: dict,
        customer: dict,
        idempotency_key: str,
        url: str | None,
    ):
        """
        Record and send one event. Never raises.

        Returns the WebhookDelivery row, or None when the key was already
        dispatched or the row could not be written.
        """
        from .extensions import db
        from .models import WebhookDelivery
        from .models.webhooks import DELIVERY_STATUS_PENDING, DELIVERY_STATUS_SKIPPED

        if event not in WEBHOOK_EVENTS:
            logger.error("Refusing to dispatch unknown webhook event %r", event)
            return None

        try:
            if db.session.query(WebhookDelivery.id).filter_by(idempotency_key=idempotency_key).first():
                logger.info("Webhook %s already dispatched, skipping", idempotency_key)
                return None

            payload = {
                "event": event,
                "customer": customer,
                "data": data,
                "timestamp": to_utc_z(utcnow()),
            }
            delivery = WebhookDelivery(
                event=event,
                idempotency_key=idempotency_key,
                url=url,
                payload=payload,
                status=DELIVERY_STATUS_PENDING if url else DELIVERY_STATUS_SKIPPED,
            )
            db.session.add(delivery)
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info("Webhook %s already dispatched, skipping", idempotency_key)
            return None
        except Exception:
            db.session.rollback()
            logger.exception("Failed to record webhook %s", idempotency_key)
            return None

        if not url:
            logger.warning("No webhook URL configured; %s not sent", idempotency_key)
            return delivery

        if self._executor is not None and self.app is not None:
            self._executor.submit(self._deliver_in_context, self.app, delivery.id)
        else:
            self.deliver(delivery.id)
        return delivery

    def _deliver_in_context(self, app, delivery_id: int) -> None:
        with app.app_context():
            try:
                self.deliver(delivery_id)
            except Exception:
                logger.exception("Webhook delivery %s crashed", delivery_id)

    # =========================================================================
    # DELIVERY
    # =========================================================================

    def _post(self, url: str, payload: dict) -> httpx.Response:
        timeout = float(self.app.config["WEBHOOK_TIMEOUT_SECONDS"]) if self.app else 8.0
        try:
            with httpx.Client(timeout=timeout, transport=self.transport) as client:
                response = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise ExternalDispatchFailed(f"{type(exc).__name__}: {exc}")

        if response.status_code >= 400:
            raise ExternalDispatchFailed(
                f"HTTP {response.status_code}",
                {"status_code": response.status_code},
            )
        return response

    def deliver(self, delivery_id: int, *, force: bool = False):
        """
        POST a recorded delivery and store the outcome.

        Sent rows are not re-sent unless force=True. ExternalDispatchFailed is
        caught here and only recorded/logged.
        """
        from .extensions import db
        from .models import WebhookDelivery
        from .models.webhooks import DELIVERY_STATUS_FAILED, DELIVERY_STATUS_SENT

        delivery = db.session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            logger.error("Webhook delivery %s not found", delivery_id)
            return None
        if delivery.status == DELIVERY_STATUS_SENT and not force:
            return delivery
        if not delivery.url:
            logger.warning("Webhook delivery %s has no URL", delivery_id)
            return delivery

        delivery.attempts = (delivery.attempts or 0) + 1
        try:
            response = self._post(delivery.url, delivery.payload)
            delivery.status = DELIVERY_STATUS_SENT
            delivery.response_status = response.status_code
            delivery.last_error = None
            delivery.delivered_at = utcnow()
            logger.info("Webhook %s sent (%s)", delivery.idempotency_key, response.status_code)
        except ExternalDispatchFailed as exc:
            delivery.status = DELIVERY_STATUS_FAILED
            delivery.response_status = exc.details.get("status_code")
            delivery.last_error = str(exc)[:512]
            logger.warning("Webhook %s failed: %s", delivery.idempotency_key, exc)

        db.session.commit()
        return delivery

    def redeliver(self, delivery_id: int, *, url: str | None = None):
        """Re-send a delivery (typically a failed one), optionally to a new URL."""
        from .extensions import db
        from .models import WebhookDelivery

        delivery = db.session.get(WebhookDelivery, delivery_id)
        if delivery is None:
            return None
        if url:
            delivery.url = url
            db.session.commit()
        return self.deliver(delivery_id, force=True)

    def list_deliveries(self, *, status: str | None = None, limit: int = 100):
        from .extensions import db
        from .models import WebhookDelivery

        query = db.session.query(WebhookDelivery)
        if status:
            query = query.filter_by(status=status)
        return query.order_by(WebhookDelivery.id.desc()).limit(limit).all()
