"""
Store settings snapshot.

WHY: The exchange rate and payment methods change while orders are in
flight. Each operation captures one immutable SettingsSnapshot up front and
uses it throughout, so a FinanceTransaction always reflects the rate that was
current when it was recorded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app

from ..extensions import db
from ..models import StoreSettings
from ..money import quantize_rate
from ..time_utils import utcnow
from .currency_service import normalize_currency, validate_rate
from .errors import ForbiddenError, ValidationError

GLOBAL_SETTINGS_ID = "global"


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    name: str
    instructions: str = ""
    is_discount_active: bool = False
    discount_percentage: Decimal = Decimal("0")

    @classmethod
    def from_dict(cls, raw: dict) -> "PaymentMethod":
        return cls(
            id=str(raw.get("id")),
            name=raw.get("name") or "",
            instructions=raw.get("instructions") or "",
            is_discount_active=bool(raw.get("is_discount_active")),
            discount_percentage=Decimal(str(raw.get("discount_percentage") or 0)),
        )


@dataclass(frozen=True)
class SettingsSnapshot:
    exchange_rate: Decimal
    local_currency: str
    webhook_url: str | None
    payment_methods: tuple[PaymentMethod, ...] = field(default_factory=tuple)
    captured_at: datetime | None = None

    def payment_method(self, method_id: str | None) -> PaymentMethod | None:
        if method_id is None:
            return None
        for method in self.payment_methods:
            if method.id == str(method_id):
                return method
        return None


def _load_row() -> StoreSettings | None:
    return db.session.query(StoreSettings).filter_by(id=GLOBAL_SETTINGS_ID).first()


def get_settings_snapshot() -> SettingsSnapshot:
    """Capture current settings; falls back to app config when no row exists."""
    row = _load_row()
    config = current_app.config

    if row is None:
        return SettingsSnapshot(
            exchange_rate=quantize_rate(config.get("DEFAULT_EXCHANGE_RATE", "1")),
            local_currency=normalize_currency(config.get("LOCAL_CURRENCY", "VES")),
            webhook_url=config.get("WEBHOOK_URL"),
            payment_methods=(),
            captured_at=utcnow(),
        )

    return SettingsSnapshot(
        exchange_rate=quantize_rate(row.exchange_rate),
        local_currency=normalize_currency(row.local_currency),
        webhook_url=row.crm_webhook_url or config.get("WEBHOOK_URL"),
        payment_methods=tuple(PaymentMethod.from_dict(m) for m in (row.payment_methods or [])),
        captured_at=utcnow(),
    )


def _ensure_row() -> StoreSettings:
    row = _load_row()
    if row is None:
        config = current_app.config
        row = StoreSettings(
            id=GLOBAL_SETTINGS_ID,
            exchange_rate=quantize_rate(config.get("DEFAULT_EXCHANGE_RATE", "1")),
            local_currency=normalize_currency(config.get("LOCAL_CURRENCY", "VES")),
            payment_methods=[],
        )
        db.session.add(row)
        db.session.flush()
    return row


def set_exchange_rate(rate, *, actor_id: int | None = None, is_admin: bool = False) -> StoreSettings:
    """Set the process-wide USD -> local rate. Existing finance rows keep theirs."""
    if not is_admin:
        raise ForbiddenError("Administrative capability required to change the exchange rate")
    new_rate = validate_rate(rate)

    row = _ensure_row()
    row.exchange_rate = new_rate
    row.updated_by = actor_id
    db.session.commit()
    return row


def update_settings(
    *,
    actor_id: int | None = None,
    is_admin: bool = False,
    local_currency: str | None = None,
    payment_methods: list[dict] | None = None,
    crm_webhook_url: str | None = None,
) -> StoreSettings:
    if not is_admin:
        raise ForbiddenError("Administrative capability required to change settings")

    row = _ensure_row()
    if local_currency is not None:
        row.local_currency = normalize_currency(local_currency)
    if payment_methods is not None:
        if not isinstance(payment_methods, list) or any(not isinstance(m, dict) or not m.get("id") for m in payment_methods):
            raise ValidationError("payment_methods must be a list of objects with an id")
        row.payment_methods = payment_methods
    if crm_webhook_url is not None:
        if crm_webhook_url and not crm_webhook_url.startswith(("http://", "https://")):
            raise ValidationError("crm_webhook_url must be an http(s) URL")
        row.crm_webhook_url = crm_webhook_url or None
    row.updated_by = actor_id
    db.session.commit()
    return row
