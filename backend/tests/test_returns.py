"""
Return workflow tests.

Verifies:
- requested -> approved -> completed restocks and credits exactly once
- completion resumes after a partial failure without double effects
- Quantity, status and ownership rules on request
"""

from decimal import Decimal

import pytest

from shopcore.models import ProductVariant, StockMovement, StoreCreditHistory
from shopcore.models.credit import CREDIT_TYPE_RETURN
from shopcore.models.inventory import MOVEMENT_TYPE_RETURN
from shopcore.services import credit_service, order_service, return_service, stock_service
from shopcore.services.errors import ForbiddenError, InvalidTransitionError, ValidationError


@pytest.fixture
def customer(make_profile):
    return make_profile(name="Maria Gil")


@pytest.fixture
def delivered_order(db_session, make_variant, customer, settings):
    shirt = make_variant(name="Camisa", stock=10)
    jacket = make_variant(name="Chaqueta", stock=10, price="25.00")
    order = order_service.create_order(
        user_id=customer.id,
        items=[
            {"variant_id": shirt.id, "quantity": 3, "price": "10.00"},
            {"variant_id": jacket.id, "quantity": 1, "price": "25.00"},
        ],
        settings=settings,
    )
    order_service.transition_order(order.id, "delivered", is_admin=True, settings=settings)
    return order


def _request(order, customer, lines):
    return return_service.request_return(
        order_id=order.id, lines=lines, reason="Talla incorrecta", actor_id=customer.id,
    )


class TestFullFlow:
    def test_request_approve_complete(self, db_session, delivered_order, customer):
        shirt_id = delivered_order.items[0].variant_id
        return_doc = _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 2}])

        assert return_doc.status == "requested"
        assert return_doc.control_id.startswith("RET-")
        assert return_doc.lines[0].price == Decimal("10.00")

        return_service.review_return(return_doc.id, "approved", actor_id=9000, is_admin=True)
        done = return_service.review_return(return_doc.id, "completed", actor_id=9000, is_admin=True)

        assert done.status == "completed"
        assert done.amount_credited == Decimal("20.00")
        assert done.completed_at is not None
        assert credit_service.get_balance(customer.id) == Decimal("20.00")
        assert db_session.get(ProductVariant, shirt_id).stock == 9
        assert stock_service.verify_stock_counters() == []
        assert credit_service.verify_credit_balances() == []

    def test_completing_twice_is_a_noop(self, db_session, delivered_order, customer):
        return_doc = _request(delivered_order, customer, [{"order_item_id": delivered_order.items[1].id, "quantity": 1}])
        return_service.review_return(return_doc.id, "approved", is_admin=True)

        return_service.complete_return(return_doc.id)
        return_service.complete_return(return_doc.id)

        assert db_session.query(StockMovement).filter_by(type=MOVEMENT_TYPE_RETURN).count() == 1
        assert db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_RETURN).count() == 1
        assert credit_service.get_balance(customer.id) == Decimal("25.00")

    def test_resumes_after_credit_failure(self, db_session, delivered_order, customer, monkeypatch):
        shirt_id = delivered_order.items[0].variant_id
        return_doc = _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 3}])
        return_service.review_return(return_doc.id, "approved", is_admin=True)

        def boom(*args, **kwargs):
            raise RuntimeError("credit ledger down")

        monkeypatch.setattr(credit_service, "adjust_credit", boom)
        with pytest.raises(RuntimeError):
            return_service.complete_return(return_doc.id)
        monkeypatch.undo()

        assert return_service.get_return(return_doc.id).status == "approved"
        assert db_session.get(ProductVariant, shirt_id).stock == 10

        done = return_service.complete_return(return_doc.id)

        assert done.status == "completed"
        assert db_session.get(ProductVariant, shirt_id).stock == 10
        assert db_session.query(StockMovement).filter_by(type=MOVEMENT_TYPE_RETURN).count() == 1
        assert credit_service.get_balance(customer.id) == Decimal("30.00")

    def test_rejected_return_frees_quantity(self, db_session, delivered_order, customer):
        shirt_id = delivered_order.items[0].variant_id
        first = _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 3}])
        return_service.review_return(first.id, "rejected", admin_notes="Usado", is_admin=True)

        second = _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 3}])
        assert second.status == "requested"

        with pytest.raises(InvalidTransitionError):
            return_service.review_return(first.id, "approved", is_admin=True)


class TestRules:
    def test_order_must_be_finished(self, db_session, make_variant, customer, settings):
        variant = make_variant()
        order = order_service.create_order(
            user_id=customer.id, items=[{"variant_id": variant.id, "quantity": 1, "price": "10"}], settings=settings,
        )
        with pytest.raises(ValidationError):
            _request(order, customer, [{"variant_id": variant.id, "quantity": 1}])

    def test_quantity_capped_by_purchase(self, db_session, delivered_order, customer):
        shirt_id = delivered_order.items[0].variant_id
        _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 2}])
        with pytest.raises(ValidationError) as excinfo:
            _request(delivered_order, customer, [{"variant_id": shirt_id, "quantity": 2}])
        assert excinfo.value.details["available"] == 1

    def test_unknown_variant(self, db_session, delivered_order, customer):
        with pytest.raises(ValidationError):
            _request(delivered_order, customer, [{"variant_id": 999, "quantity": 1}])

    def test_other_customer_forbidden(self, db_session, delivered_order, make_profile):
        stranger = make_profile(name="Pedro Diaz")
        with pytest.raises(ForbiddenError):
            _request(delivered_order, stranger, [{"variant_id": delivered_order.items[0].variant_id, "quantity": 1}])

    def test_complete_requires_approval(self, db_session, delivered_order, customer):
        return_doc = _request(delivered_order, customer, [{"variant_id": delivered_order.items[0].variant_id, "quantity": 1}])
        with pytest.raises(InvalidTransitionError):
            return_service.review_return(return_doc.id, "completed", is_admin=True)

    def test_review_requires_admin(self, db_session, delivered_order, customer):
        return_doc = _request(delivered_order, customer, [{"variant_id": delivered_order.items[0].variant_id, "quantity": 1}])
        with pytest.raises(ForbiddenError):
            return_service.review_return(return_doc.id, "approved", actor_id=customer.id)


class TestGuestOrders:
    def test_guest_return_restocks_without_credit(self, db_session, make_variant, settings):
        shirt = make_variant(name="Camisa", stock=10)
        order = order_service.create_order(
            user_id=None,
            items=[{"variant_id": shirt.id, "quantity": 2, "price": "10.00"}],
            customer={"name": "Luis Rojas", "email": "luis.rojas@shop.test"},
            settings=settings,
        )
        order_service.transition_order(order.id, "delivered", is_admin=True, settings=settings)

        return_doc = return_service.request_return(
            order_id=order.id, lines=[{"variant_id": shirt.id, "quantity": 2}], actor_id=9000, is_admin=True,
        )
        return_service.review_return(return_doc.id, "approved", actor_id=9000, is_admin=True)
        done = return_service.review_return(return_doc.id, "completed", actor_id=9000, is_admin=True)

        assert done.status == "completed"
        assert done.refund_total == Decimal("20.00")
        assert done.amount_credited == Decimal("0.00")
        assert done.credit_history_id is None
        assert db_session.get(ProductVariant, shirt.id).stock == 10
        assert db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_RETURN).count() == 0
        assert stock_service.verify_stock_counters() == []
