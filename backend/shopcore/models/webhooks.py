from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


DELIVERY_STATUS_PENDING = "pending"
DELIVERY_STATUS_SENT = "sent"
DELIVERY_STATUS_FAILED = "failed"
DELIVERY_STATUS_SKIPPED = "skipped"


class WebhookDelivery(db.Model):
    """
    Outbound notification log.

    idempotency_key is unique ("<event>:<order id>"), so dispatching the same
    logical event twice produces one row and at most one automatic send.
    Failed rows stay failed until someone redelivers them from the CLI.
    """
    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        db.UniqueConstraint("idempotency_key", name="uq_webhook_deliveries_key"),
        db.Index("ix_webhook_deliveries_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    event = db.Column(db.String(32), nullable=False, index=True)
    idempotency_key = db.Column(db.String(128), nullable=False)
    url = db.Column(db.String(512), nullable=True)
    payload = db.Column(db.JSON, nullable=False)

    status = db.Column(db.String(16), nullable=False, default=DELIVERY_STATUS_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    response_status = db.Column(db.Integer, nullable=True)
    last_error = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event": self.event,
            "idempotency_key": self.idempotency_key,
            "url": self.url,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "response_status": self.response_status,
            "last_error": self.last_error,
            "created_at": to_utc_z(self.created_at),
            "delivered_at": to_utc_z(self.delivered_at),
        }
