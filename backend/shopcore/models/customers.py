from __future__ import annotations

from ..extensions import db
from ..money import money_str
from ..time_utils import to_utc_z


class Profile(db.Model):
    """
    Customer profile.

    `store_credit` is a cached projection of SUM(store_credit_history.amount)
    for the profile. It is only changed by credit_service.adjust_credit, which
    reads the locked balance and writes the new one together with the history
    row.
    """
    __tablename__ = "profiles"
    __table_args__ = (
        db.UniqueConstraint("email", name="uq_profiles_email"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(255), nullable=True)
    email = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    shipping_address = db.Column(db.Text, nullable=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)

    store_credit = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "shipping_address": self.shipping_address,
            "is_admin": self.is_admin,
            "store_credit": money_str(self.store_credit),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
