from __future__ import annotations

from ..extensions import db
from ..money import money_str, rate_str
from ..time_utils import to_utc_z


CONFIRMATION_STATUS_PENDING = "pending"
CONFIRMATION_STATUS_APPROVED = "approved"
CONFIRMATION_STATUS_REJECTED = "rejected"

CONFIRMATION_STATUSES = (
    CONFIRMATION_STATUS_PENDING,
    CONFIRMATION_STATUS_APPROVED,
    CONFIRMATION_STATUS_REJECTED,
)


class PaymentConfirmation(db.Model):
    """
    Customer-reported payment proof (bank transfer, mobile payment, ...).

    Several may exist per order (partial and multi-currency payments). The
    amount fields are frozen at submission; only status and review fields
    change afterwards.
    """
    __tablename__ = "payment_confirmations"
    __table_args__ = (
        db.Index("ix_payment_confirmations_order_status", "order_id", "status"),
        db.CheckConstraint("amount_paid > 0", name="ck_payment_confirmations_amount_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    account_id = db.Column(db.Integer, db.ForeignKey("finance_accounts.id"), nullable=True)

    reference_number = db.Column(db.String(128), nullable=False)
    amount_paid = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="USD")
    exchange_rate = db.Column(db.Numeric(18, 6), nullable=False)
    amount_usd_equivalent = db.Column(db.Numeric(14, 2), nullable=False)
    proof_ref = db.Column(db.String(512), nullable=True)

    status = db.Column(db.String(16), nullable=False, default=CONFIRMATION_STATUS_PENDING, index=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    order = db.relationship("Order", backref=db.backref("payment_confirmations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "account_id": self.account_id,
            "reference_number": self.reference_number,
            "amount_paid": money_str(self.amount_paid),
            "currency": self.currency,
            "exchange_rate": rate_str(self.exchange_rate),
            "amount_usd_equivalent": money_str(self.amount_usd_equivalent),
            "proof_ref": self.proof_ref,
            "status": self.status,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_utc_z(self.reviewed_at),
            "created_at": to_utc_z(self.created_at),
        }
