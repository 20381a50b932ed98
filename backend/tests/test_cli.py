"""
Flask CLI command tests (operator maintenance tasks).
"""

from datetime import datetime
from decimal import Decimal

from shopcore.models import CashClosing, ProductVariant, StoreSettings
from shopcore.services import finance_service, order_service


class TestFinanceCommands:
    def test_close_day(self, app, db_session, usd_account, settings):
        finance_service.record_transaction(
            account_id=usd_account.id, transaction_type="income", amount="12.50",
            settings=settings, transaction_date=datetime(2026, 10, 19, 11, 0),
        )
        runner = app.test_cli_runner()

        result = runner.invoke(args=["finance", "close-day", "--date", "2026-10-19", "--notes", "Turno tarde"])

        assert result.exit_code == 0, result.output
        assert "PASS Closed 2026-10-19" in result.output
        closing = db_session.query(CashClosing).one()
        assert closing.total_income_usd == Decimal("12.50")
        assert closing.notes == "Turno tarde"

    def test_close_day_twice_fails(self, app, db_session):
        runner = app.test_cli_runner()
        runner.invoke(args=["finance", "close-day", "--date", "2026-10-19"])

        result = runner.invoke(args=["finance", "close-day", "--date", "2026-10-19"])

        assert result.exit_code == 1
        assert "FAIL Cash closing for 2026-10-19 already exists" in result.output


class TestReconciliationCommands:
    def test_inventory_verify_and_rebuild(self, app, db_session, make_variant):
        variant = make_variant(stock=4)
        runner = app.test_cli_runner()
        assert runner.invoke(args=["inventory", "verify"]).exit_code == 0

        db_session.get(ProductVariant, variant.id).stock = 99
        db_session.commit()

        drift = runner.invoke(args=["inventory", "verify"])
        assert drift.exit_code == 1
        assert f"variant {variant.id}: cached=99 ledger=4" in drift.output

        fixed = runner.invoke(args=["inventory", "rebuild", "--all"])
        assert fixed.exit_code == 0
        assert db_session.get(ProductVariant, variant.id).stock == 4

    def test_rebuild_needs_a_target(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["inventory", "rebuild"])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_credit_verify(self, app, db_session, make_profile):
        make_profile(credit="7.00")
        result = app.test_cli_runner().invoke(args=["credit", "verify"])
        assert result.exit_code == 0
        assert "PASS" in result.output


class TestOperatorCommands:
    def test_set_rate(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["settings", "set-rate", "36.5"])

        assert result.exit_code == 0, result.output
        assert db_session.query(StoreSettings).one().exchange_rate == Decimal("36.5")

    def test_set_rate_rejects_zero(self, app, db_session):
        result = app.test_cli_runner().invoke(args=["settings", "set-rate", "0"])
        assert result.exit_code == 1
        assert "FAIL" in result.output

    def test_redeliver_failed_webhook(self, app, db_session, make_variant, settings, webhook_capture):
        webhook_capture.status_code = 503
        variant = make_variant()
        order_service.create_order(
            user_id=None, items=[{"variant_id": variant.id, "quantity": 1, "price": "10"}], settings=settings,
        )
        runner = app.test_cli_runner()
        listed = runner.invoke(args=["webhooks", "failed"])
        assert "order_created:" in listed.output

        webhook_capture.status_code = 200
        delivery_id = int(listed.output.split()[0])
        result = runner.invoke(args=["webhooks", "redeliver", str(delivery_id)])

        assert result.exit_code == 0, result.output
        assert "PASS order_created:" in result.output
