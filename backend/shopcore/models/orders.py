from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


ORDER_STATUS_QUOTE = "quote"
ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_EVALUATING = "evaluating"
ORDER_STATUS_PROCESSING = "processing"
ORDER_STATUS_SHIPPED = "shipped"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_DELIVERED = "delivered"
ORDER_STATUS_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_STATUS_QUOTE,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_EVALUATING,
    ORDER_STATUS_PROCESSING,
    ORDER_STATUS_SHIPPED,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
)

TERMINAL_STATUSES = frozenset({
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_DELIVERED,
    ORDER_STATUS_CANCELLED,
})


class Order(db.Model):
    """
    Customer order (or staff-drafted quote).

    MONEY (USD):
    - subtotal: gross sum of item price * quantity
    - credit_applied: store credit debited at checkout
    - payment_discount_amount: payment-method discount
    - total = subtotal - credit_applied - payment_discount_amount, never negative

    Status is only changed by order_service.transition_order.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("control_id", name="uq_orders_control_id"),
        db.Index("ix_orders_status_created", "status", "created_at"),
        db.CheckConstraint("total >= 0", name="ck_orders_total_non_negative"),
        db.CheckConstraint("credit_applied >= 0", name="ck_orders_credit_non_negative"),
        db.CheckConstraint("payment_discount_amount >= 0", name="ck_orders_discount_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable identifier (e.g., "ORD-000123")
    control_id = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)

    subtotal = db.Column(db.Numeric(12, 2), nullable=False)
    total = db.Column(db.Numeric(12, 2), nullable=False)
    credit_applied = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    payment_method_id = db.Column(db.String(64), nullable=True)
    payment_discount_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    shipping_address = db.Column(db.Text, nullable=True)

    # NULL user_id denotes a guest order
    user_id = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=True)
    customer_email = db.Column(db.String(255), nullable=True)
    customer_phone = db.Column(db.String(32), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    user = db.relationship("Profile", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @property
    def has_on_request_items(self) -> bool:
        return any(item.on_request for item in self.items)

    def __repr__(self) -> str:
        return f"<Order id={self.id} control_id={self.control_id!r} status={self.status!r}>"

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "control_id": self.control_id,
            "status": self.status,
            "subtotal": money_str(self.subtotal),
            "total": money_str(self.total),
            "credit_applied": money_str(self.credit_applied),
            "payment_method_id": self.payment_method_id,
            "payment_discount_amount": money_str(self.payment_discount_amount),
            "shipping_address": self.shipping_address,
            "user_id": self.user_id,
            "is_guest": self.is_guest,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "customer_phone": self.customer_phone,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
            data["has_on_request_items"] = self.has_on_request_items
        return data


class OrderItem(db.Model):
    """
    Line item on an order. Immutable once the order leaves quote/pending.

    price is the final per-unit USD price including customization surcharges.
    custom_metadata is stored in its normalized form (see shopcore.customization)
    and is never priced or validated by the order core.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    # NULL variant_id means a simple (non-variant) product
    variant_id = db.Column(db.Integer, db.ForeignKey("product_variants.id"), nullable=True, index=True)

    product_name = db.Column(db.String(255), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    price = db.Column(db.Numeric(12, 2), nullable=False)

    custom_metadata = db.Column(db.JSON, nullable=True)
    on_request = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")
    variant = db.relationship("ProductVariant")

    @property
    def line_total(self):
        return self.price * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price": money_str(self.price),
            "line_total": money_str(self.line_total),
            "custom_metadata": self.custom_metadata,
            "on_request": self.on_request,
            "created_at": to_utc_z(self.created_at),
        }


class ControlSequence(db.Model):
    """
    Atomic sequences for human-readable control IDs (orders, returns).

    WHY: Prevent two concurrent checkouts from being handed the same control_id.
    """
    __tablename__ = "control_sequences"
    __table_args__ = (
        db.UniqueConstraint("document_type", name="uq_control_sequences_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
