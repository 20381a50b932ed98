from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


RETURN_STATUS_REQUESTED = "requested"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_COMPLETED = "completed"
RETURN_STATUS_REJECTED = "rejected"

RETURN_STATUSES = (
    RETURN_STATUS_REQUESTED,
    RETURN_STATUS_APPROVED,
    RETURN_STATUS_COMPLETED,
    RETURN_STATUS_REJECTED,
)


class Return(db.Model):
    """
    Post-delivery return request.

    LIFECYCLE:
    1. requested: customer asked to return lines from a delivered order
    2. approved / rejected: admin decision
    3. completed: stock restored and refund credited as store credit

    COMPLETION GUARDS:
    - each ReturnLine remembers the stock movement it produced
    - credit_history_id remembers the store-credit row for the refund
    A completion that is re-invoked (or resumed after a partial failure)
    skips whatever already has a link.
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("control_id", name="uq_returns_control_id"),
        db.Index("ix_returns_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable identifier (e.g., "RET-000042")
    control_id = db.Column(db.String(32), nullable=False)

    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=RETURN_STATUS_REQUESTED, index=True)
    reason = db.Column(db.Text, nullable=True)
    admin_notes = db.Column(db.Text, nullable=True)

    amount_credited = db.Column(db.Numeric(12, 2), nullable=True)
    credit_history_id = db.Column(db.Integer, db.ForeignKey("store_credit_history.id"), nullable=True)

    created_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("returns", lazy=True))
    lines = db.relationship("ReturnLine", backref="return_doc", lazy=True, order_by="ReturnLine.id")
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def refund_total(self):
        return sum((line.price * line.quantity for line in self.lines), 0)

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "control_id": self.control_id,
            "order_id": self.order_id,
            "customer_id": self.customer_id,
            "status": self.status,
            "reason": self.reason,
            "admin_notes": self.admin_notes,
            "amount_credited": money_str(self.amount_credited),
            "credit_history_id": self.credit_history_id,
            "created_by": self.created_by,
            "reviewed_by": self.reviewed_by,
            "created_at": to_utc_z(self.created_at),
            "reviewed_at": to_utc_z(self.reviewed_at),
            "completed_at": to_utc_z(self.completed_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class ReturnLine(db.Model):
    __tablename__ = "return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    order_item_id = db.Column(db.Integer, db.ForeignKey("order_items.id"), nullable=True)
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    # Set when the restock movement is written (completion guard)
    stock_movement_id = db.Column(db.Integer, db.ForeignKey("stock_movements.id"), nullable=True, unique=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "order_item_id": self.order_item_id,
            "variant_id": self.variant_id,
            "quantity": self.quantity,
            "price": money_str(self.price),
            "stock_movement_id": self.stock_movement_id,
        }
