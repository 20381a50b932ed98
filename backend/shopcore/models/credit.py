from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


CREDIT_TYPE_PURCHASE = "purchase"
CREDIT_TYPE_RETURN = "return"
CREDIT_TYPE_ADJUSTMENT = "adjustment"

CREDIT_TYPES = (CREDIT_TYPE_PURCHASE, CREDIT_TYPE_RETURN, CREDIT_TYPE_ADJUSTMENT)


class StoreCreditHistory(db.Model):
    """
    Append-only store-credit ledger.

    - amount is signed: negative debits (purchase), positive credits.
    - A profile's balance = SUM(amount) over its rows.
    - reverses_history_id links a compensating entry to the row it undoes;
      the unique constraint makes each row reversible at most once.
    """
    __tablename__ = "store_credit_history"
    __table_args__ = (
        db.Index("ix_store_credit_history_profile_created", "profile_id", "created_at"),
        db.UniqueConstraint("reverses_history_id", name="uq_store_credit_history_reverses"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    profile_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(12, 2), nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    reverses_history_id = db.Column(db.Integer, db.ForeignKey("store_credit_history.id"), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    profile = db.relationship("Profile", foreign_keys=[profile_id], backref=db.backref("credit_history", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "profile_id": self.profile_id,
            "amount": money_str(self.amount),
            "type": self.type,
            "reason": self.reason,
            "order_id": self.order_id,
            "reverses_history_id": self.reverses_history_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
