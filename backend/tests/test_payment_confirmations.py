"""
Payment confirmation aggregation tests.

Reports freeze their exchange rate; the aggregate is recomputed from the
frozen rows and never moves the order.
"""

from decimal import Decimal

import pytest

from shopcore.models import Order
from shopcore.services import order_service, payment_confirmation_service as payments
from shopcore.services.errors import ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError


@pytest.fixture
def hundred_dollar_order(db_session, make_variant, settings):
    variant = make_variant(stock=20)
    return order_service.create_order(
        user_id=None,
        items=[{"variant_id": variant.id, "quantity": 10, "price": "10.00"}],
        settings=settings,
    )


class TestAggregation:
    def test_scenario_d_partial_mixed_currency(self, db_session, hundred_dollar_order, settings):
        payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="ZL-001",
            amount_paid="60", currency="USD", settings=settings,
        )
        payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="PM-002",
            amount_paid="3000", currency="VES", settings=settings,
        )

        summary = payments.get_payment_summary(hundred_dollar_order.id)

        assert summary.total_reported_usd == Decimal("80.00")
        assert summary.is_fully_reported is False
        assert summary.outstanding_usd == Decimal("20.00")
        assert len(summary.confirmations) == 2

    def test_fully_reported(self, db_session, hundred_dollar_order, settings):
        payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="ZL-1", amount_paid="100", settings=settings,
        )
        summary = payments.get_payment_summary(hundred_dollar_order.id)
        assert summary.is_fully_reported is True
        assert summary.outstanding_usd == Decimal("0.00")

    def test_rate_frozen_at_submission(self, db_session, hundred_dollar_order, settings, snapshot_at):
        payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="PM-1",
            amount_paid="3000", currency="VES", settings=settings,
        )
        late = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="PM-2",
            amount_paid="3000", currency="VES", settings=snapshot_at("300"),
        )

        assert late.amount_usd_equivalent == Decimal("10.00")
        assert payments.get_payment_summary(hundred_dollar_order.id).total_reported_usd == Decimal("30.00")

    def test_rejected_reports_excluded(self, db_session, hundred_dollar_order, settings):
        good = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="A", amount_paid="40", settings=settings,
        )
        bad = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="B", amount_paid="60", settings=settings,
        )
        payments.review_confirmation(bad.id, "rejected", actor_id=9000, is_admin=True)

        summary = payments.get_payment_summary(hundred_dollar_order.id)
        assert summary.total_reported_usd == Decimal("40.00")
        assert [c.id for c in summary.confirmations] == [good.id, bad.id]

    def test_currency_defaults_to_account(self, db_session, hundred_dollar_order, settings, ves_account):
        confirmation = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="PM-9",
            amount_paid="1500", account_id=ves_account.id, settings=settings,
        )
        assert confirmation.currency == "VES"
        assert confirmation.amount_usd_equivalent == Decimal("10.00")

    def test_never_moves_the_order(self, db_session, hundred_dollar_order, settings):
        payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="ZL", amount_paid="100", settings=settings,
        )
        assert db_session.get(Order, hundred_dollar_order.id).status == "pending"


class TestValidation:
    def test_unknown_order(self, db_session, settings):
        with pytest.raises(NotFoundError):
            payments.submit_confirmation(order_id=77, reference_number="X", amount_paid="1", settings=settings)

    @pytest.mark.parametrize("amount", ["0", "-5", "abc"])
    def test_bad_amount(self, db_session, hundred_dollar_order, settings, amount):
        with pytest.raises(ValidationError):
            payments.submit_confirmation(
                order_id=hundred_dollar_order.id, reference_number="X", amount_paid=amount, settings=settings,
            )

    def test_reference_required(self, db_session, hundred_dollar_order, settings):
        with pytest.raises(ValidationError):
            payments.submit_confirmation(
                order_id=hundred_dollar_order.id, reference_number="  ", amount_paid="5", settings=settings,
            )


class TestReview:
    def test_requires_admin(self, db_session, hundred_dollar_order, settings):
        confirmation = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="R", amount_paid="5", settings=settings,
        )
        with pytest.raises(ForbiddenError):
            payments.review_confirmation(confirmation.id, "approved", actor_id=1, is_admin=False)

    def test_approve_then_reject_refused(self, db_session, hundred_dollar_order, settings):
        confirmation = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="R", amount_paid="5", settings=settings,
        )
        approved = payments.review_confirmation(confirmation.id, "approved", actor_id=9000, is_admin=True)
        assert approved.status == "approved"
        assert approved.reviewed_by == 9000

        assert payments.review_confirmation(confirmation.id, "approved", is_admin=True).status == "approved"
        with pytest.raises(InvalidTransitionError):
            payments.review_confirmation(confirmation.id, "rejected", is_admin=True)

    def test_unknown_review_status(self, db_session, hundred_dollar_order, settings):
        confirmation = payments.submit_confirmation(
            order_id=hundred_dollar_order.id, reference_number="R", amount_paid="5", settings=settings,
        )
        with pytest.raises(ValidationError):
            payments.review_confirmation(confirmation.id, "pending", is_admin=True)
