"""
Store-credit ledger tests.

Verifies:
- Balance == SUM(history) after any sequence of adjustments
- Debits cannot drive the balance below zero
- Reversals are explicit, linked, and happen at most once
"""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from shopcore.models import Profile, StoreCreditHistory
from shopcore.models.credit import CREDIT_TYPE_ADJUSTMENT, CREDIT_TYPE_PURCHASE, CREDIT_TYPE_RETURN
from shopcore.services import credit_service
from shopcore.services.errors import InsufficientCreditError, NotFoundError, ValidationError


class TestAdjustCredit:
    def test_sequence_keeps_sum_invariant(self, db_session, make_profile):
        profile = make_profile(credit="20.00")

        credit_service.adjust_credit(profile.id, "-7.50", CREDIT_TYPE_PURCHASE)
        credit_service.adjust_credit(profile.id, "3.25", CREDIT_TYPE_RETURN)
        credit_service.adjust_credit(profile.id, "-15.75", CREDIT_TYPE_PURCHASE)

        assert credit_service.get_balance(profile.id) == Decimal("0.00")
        assert credit_service.get_ledger_balance(profile.id) == Decimal("0.00")
        assert credit_service.verify_credit_balances() == []

    def test_overdraft_rejected_without_side_effects(self, db_session, make_profile):
        profile = make_profile(credit="10.00")

        with pytest.raises(InsufficientCreditError) as exc:
            credit_service.adjust_credit(profile.id, "-10.01", CREDIT_TYPE_PURCHASE)

        assert exc.value.details["balance"] == "10.00"
        assert credit_service.get_balance(profile.id) == Decimal("10.00")
        assert db_session.query(StoreCreditHistory).filter_by(profile_id=profile.id).count() == 1

    def test_exact_balance_can_be_spent(self, db_session, make_profile):
        profile = make_profile(credit="10.00")
        credit_service.adjust_credit(profile.id, "-10.00", CREDIT_TYPE_PURCHASE)
        assert credit_service.get_balance(profile.id) == Decimal("0.00")

    def test_second_debit_sees_first(self, db_session, make_profile):
        profile = make_profile(credit="15.00")
        credit_service.adjust_credit(profile.id, "-10.00", CREDIT_TYPE_PURCHASE)
        with pytest.raises(InsufficientCreditError):
            credit_service.adjust_credit(profile.id, "-10.00", CREDIT_TYPE_PURCHASE)
        assert credit_service.get_balance(profile.id) == Decimal("5.00")

    def test_validation(self, db_session, make_profile):
        profile = make_profile()
        with pytest.raises(ValidationError):
            credit_service.adjust_credit(profile.id, "0", CREDIT_TYPE_ADJUSTMENT)
        with pytest.raises(ValidationError):
            credit_service.adjust_credit(profile.id, "1", "gift")
        with pytest.raises(NotFoundError):
            credit_service.adjust_credit(999, "1", CREDIT_TYPE_ADJUSTMENT)


class TestReversal:
    def test_reversal_is_linked_and_single(self, db_session, make_profile):
        profile = make_profile(credit="20.00")
        debit = credit_service.adjust_credit(profile.id, "-20.00", CREDIT_TYPE_PURCHASE, reason="Order ORD-000001")

        first = credit_service.reverse_credit_entry(debit.id)
        second = credit_service.reverse_credit_entry(debit.id)

        assert first.id == second.id
        assert first.type == CREDIT_TYPE_ADJUSTMENT
        assert first.amount == Decimal("20.00")
        assert first.reverses_history_id == debit.id
        assert credit_service.get_balance(profile.id) == Decimal("20.00")
        # Original debit is kept for the audit trail
        assert db_session.get(StoreCreditHistory, debit.id) is not None
        assert credit_service.verify_credit_balances() == []


class TestVerify:
    def test_detects_drift(self, db_session, make_profile):
        profile = make_profile(credit="5.00")
        row = db_session.get(Profile, profile.id)
        row.store_credit = Decimal("50.00")
        db_session.commit()

        assert credit_service.verify_credit_balances() == [{
            "profile_id": profile.id,
            "cached_balance": "50.00",
            "ledger_balance": "5.00",
        }]


class TestConcurrentWriters:
    """A writer that loses the race is replayed against the winner's committed balance."""

    def _race(self, fail_once, profile_id, amount):
        def concurrent_debit():
            credit_service.adjust_credit(profile_id, amount, CREDIT_TYPE_PURCHASE, reason="Concurrent checkout")

        return fail_once(
            credit_service,
            "_adjust_credit_inner",
            StaleDataError("profiles row version changed"),
            before=concurrent_debit,
        )

    def test_retried_debit_rejected_against_new_balance(self, db_session, make_profile, fail_once, no_backoff):
        profile = make_profile(credit="15.00")
        calls = self._race(fail_once, profile.id, "-10.00")

        with pytest.raises(InsufficientCreditError) as exc:
            credit_service.adjust_credit(profile.id, "-10.00", CREDIT_TYPE_PURCHASE)

        assert len(calls) == 3
        assert exc.value.details["balance"] == "5.00"
        assert credit_service.get_balance(profile.id) == Decimal("5.00")
        assert db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_PURCHASE).count() == 1
        assert credit_service.verify_credit_balances() == []

    def test_retried_debit_applied_once_when_covered(self, db_session, make_profile, fail_once, no_backoff):
        profile = make_profile(credit="30.00")
        self._race(fail_once, profile.id, "-10.00")

        entry = credit_service.adjust_credit(profile.id, "-10.00", CREDIT_TYPE_PURCHASE, reason="Order ORD-000002")

        assert entry.reason == "Order ORD-000002"
        assert credit_service.get_balance(profile.id) == Decimal("10.00")
        assert db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_PURCHASE).count() == 2
        assert credit_service.verify_credit_balances() == []

    def test_gives_up_after_repeated_conflicts(self, db_session, make_profile, monkeypatch, lock_timeout, no_backoff):
        profile = make_profile(credit="10.00")

        def always_locked(**kwargs):
            raise lock_timeout

        monkeypatch.setattr(credit_service, "_adjust_credit_inner", always_locked)
        with pytest.raises(OperationalError):
            credit_service.adjust_credit(profile.id, "-1.00", CREDIT_TYPE_PURCHASE)

        assert credit_service.get_balance(profile.id) == Decimal("10.00")
