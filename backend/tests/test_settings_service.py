"""
Store settings tests.

Verifies:
- Snapshot falls back to app config until a settings row exists
- Exchange rate and settings updates require admin capability
- Payment methods round-trip into the snapshot
- Finance rows keep the rate they were recorded with
"""

from decimal import Decimal

import pytest

from shopcore.models import FinanceTransaction
from shopcore.services import finance_service, settings_service
from shopcore.services.errors import ForbiddenError, ValidationError


# =============================================================================
# SNAPSHOT
# =============================================================================


class TestSnapshot:
    def test_defaults_from_config(self, db_session):
        snapshot = settings_service.get_settings_snapshot()

        assert snapshot.exchange_rate == Decimal("150")
        assert snapshot.local_currency == "VES"
        assert snapshot.webhook_url == "http://hooks.test/orders"
        assert snapshot.payment_methods == ()

    def test_row_overrides_config(self, db_session):
        settings_service.set_exchange_rate("36.5", actor_id=9000, is_admin=True)
        settings_service.update_settings(
            is_admin=True,
            payment_methods=[{"id": "zelle", "name": "Zelle", "is_discount_active": True, "discount_percentage": "5"}],
            crm_webhook_url="https://crm.test/hook",
        )

        snapshot = settings_service.get_settings_snapshot()

        assert snapshot.exchange_rate == Decimal("36.5")
        assert snapshot.webhook_url == "https://crm.test/hook"
        method = snapshot.payment_method("zelle")
        assert method.discount_percentage == Decimal("5")
        assert snapshot.payment_method("cash") is None

    def test_snapshot_is_frozen(self, db_session):
        snapshot = settings_service.get_settings_snapshot()
        with pytest.raises(AttributeError):
            snapshot.exchange_rate = Decimal("1")


# =============================================================================
# UPDATES
# =============================================================================


class TestUpdates:
    def test_rate_requires_admin(self, db_session):
        with pytest.raises(ForbiddenError):
            settings_service.set_exchange_rate("40", actor_id=1, is_admin=False)

    @pytest.mark.parametrize("rate", [0, "-3", "x", None])
    def test_rate_must_be_positive(self, db_session, rate):
        with pytest.raises(ValidationError):
            settings_service.set_exchange_rate(rate, is_admin=True)

    def test_settings_require_admin(self, db_session):
        with pytest.raises(ForbiddenError):
            settings_service.update_settings(local_currency="COP")

    def test_bad_payment_methods(self, db_session):
        with pytest.raises(ValidationError):
            settings_service.update_settings(is_admin=True, payment_methods=[{"name": "No id"}])

    def test_bad_webhook_url(self, db_session):
        with pytest.raises(ValidationError):
            settings_service.update_settings(is_admin=True, crm_webhook_url="ftp://crm.test")

    def test_rate_change_keeps_history(self, db_session, ves_account):
        before = settings_service.get_settings_snapshot()
        tx = finance_service.record_transaction(
            account_id=ves_account.id, transaction_type="income", amount="1500", settings=before,
        )

        settings_service.set_exchange_rate("300", is_admin=True)

        stored = db_session.get(FinanceTransaction, tx.id)
        assert stored.exchange_rate == Decimal("150")
        assert stored.amount_usd_equivalent == Decimal("10.00")
