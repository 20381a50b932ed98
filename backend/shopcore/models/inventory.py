from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


MOVEMENT_TYPE_ORDER = "order"
MOVEMENT_TYPE_RETURN = "return"
MOVEMENT_TYPE_MANUAL = "manual"

MOVEMENT_TYPES = (MOVEMENT_TYPE_ORDER, MOVEMENT_TYPE_RETURN, MOVEMENT_TYPE_MANUAL)


class StockMovement(db.Model):
    """
    Append-only stock ledger.

    - quantity is signed: negative deducts, positive restocks/returns.
    - Current stock of a variant = SUM(quantity) over its movements.
    - Rows are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_variant_created", "variant_id", "created_at"),
        db.CheckConstraint("quantity <> 0", name="ck_stock_movements_nonzero"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(16), nullable=False, index=True)
    reason = db.Column(db.String(255), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    variant = db.relationship("ProductVariant", backref=db.backref("movements", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "type": self.type,
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
        }
