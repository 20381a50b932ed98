from __future__ import annotations

from ..extensions import db
from ..money import rate_str
from ..time_utils import to_utc_z


class StoreSettings(db.Model):
    """
    Store-wide mutable settings (single row, id='global').

    Read through settings_service.get_settings_snapshot(); operations never
    consult this table directly so that each one works from the values it
    captured up front.

    payment_methods is a list of
    {"id", "name", "instructions", "is_discount_active", "discount_percentage"}.
    """
    __tablename__ = "store_settings"

    id = db.Column(db.String(32), primary_key=True, default="global")
    exchange_rate = db.Column(db.Numeric(18, 6), nullable=False, default=1)
    local_currency = db.Column(db.String(8), nullable=False, default="VES")
    payment_methods = db.Column(db.JSON, nullable=False, default=list)
    crm_webhook_url = db.Column(db.String(512), nullable=True)

    updated_by = db.Column(db.Integer, db.ForeignKey("profiles.id"), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "exchange_rate": rate_str(self.exchange_rate),
            "local_currency": self.local_currency,
            "payment_methods": self.payment_methods or [],
            "crm_webhook_url": self.crm_webhook_url,
            "updated_by": self.updated_by,
            "updated_at": to_utc_z(self.updated_at),
        }
