"""
Checkout tests.

Verifies:
- Totals: total = subtotal - credit_applied - payment_discount, never negative
- Quote vs pending initial status
- Credit is debited first and compensated with a linked reversal on failure
- Stock is deducted through the ledger (with default-variant and legacy fallbacks)
- order_created webhook never blocks checkout
"""

from decimal import Decimal

import pytest

from shopcore.models import Order, Product, ProductVariant, StockMovement, StoreCreditHistory, WebhookDelivery
from shopcore.models.credit import CREDIT_TYPE_ADJUSTMENT, CREDIT_TYPE_PURCHASE
from shopcore.models.inventory import MOVEMENT_TYPE_ORDER
from shopcore.models.webhooks import DELIVERY_STATUS_FAILED, DELIVERY_STATUS_SENT, DELIVERY_STATUS_SKIPPED
from shopcore.services import credit_service, order_service, stock_service
from shopcore.services.errors import InsufficientCreditError, NotFoundError, ValidationError


@pytest.fixture
def shirts(make_variant):
    return make_variant(name="Camisa", stock=10), make_variant(name="Chaqueta", stock=10, price="25.00")


def _items(shirts):
    shirt, jacket = shirts
    return [
        {"variant_id": shirt.id, "quantity": 3, "price": "10.00"},
        {"variant_id": jacket.id, "quantity": 1, "price": "25.00"},
    ]


class TestTotals:
    def test_scenario_a_totals_and_stock(self, db_session, shirts, settings):
        order = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)

        assert order.control_id == "ORD-000001"
        assert order.status == "pending"
        assert order.subtotal == Decimal("55.00")
        assert order.total == Decimal("55.00")
        assert order.credit_applied == Decimal("0.00")
        assert [i.product_name for i in order.items] == ["Camisa", "Chaqueta"]

        shirt, jacket = shirts
        assert db_session.get(ProductVariant, shirt.id).stock == 7
        assert db_session.get(ProductVariant, jacket.id).stock == 9
        movements = db_session.query(StockMovement).filter_by(type=MOVEMENT_TYPE_ORDER).all()
        assert sorted(m.quantity for m in movements) == [-3, -1]
        assert stock_service.verify_stock_counters() == []

    def test_control_ids_increment(self, db_session, shirts, settings):
        first = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)
        second = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)
        assert (first.control_id, second.control_id) == ("ORD-000001", "ORD-000002")

    def test_payment_method_discount(self, db_session, shirts, settings):
        order = order_service.create_order(
            user_id=None, items=_items(shirts), payment_method_id="cash", settings=settings,
        )
        assert order.payment_discount_amount == Decimal("5.50")
        assert order.total == Decimal("49.50")

    def test_explicit_discount_wins(self, db_session, shirts, settings):
        order = order_service.create_order(
            user_id=None, items=_items(shirts), payment_method_id="cash", payment_discount="2.00", settings=settings,
        )
        assert order.total == Decimal("53.00")

    def test_negative_total_rejected(self, db_session, shirts, settings, make_profile):
        profile = make_profile(credit="50.00")
        with pytest.raises(ValidationError):
            order_service.create_order(
                user_id=profile.id, items=_items(shirts), credit_to_apply="50.00",
                payment_discount="10.00", settings=settings,
            )
        assert db_session.query(Order).count() == 0
        assert credit_service.get_balance(profile.id) == Decimal("50.00")

    @pytest.mark.parametrize("items", [
        [],
        None,
        [{"variant_id": 1, "quantity": 0, "price": "1"}],
        [{"variant_id": 1, "quantity": 1, "price": "-1"}],
        [{"quantity": 1, "price": "1"}],
    ])
    def test_invalid_items(self, db_session, settings, items):
        with pytest.raises(ValidationError):
            order_service.create_order(user_id=None, items=items, settings=settings)

    def test_unknown_variant(self, db_session, settings):
        with pytest.raises(NotFoundError):
            order_service.create_order(
                user_id=None, items=[{"variant_id": 404, "quantity": 1, "price": "1"}], settings=settings,
            )

    def test_unknown_payment_method(self, db_session, shirts, settings):
        with pytest.raises(ValidationError):
            order_service.create_order(
                user_id=None, items=_items(shirts), payment_method_id="bitcoin", settings=settings,
            )


class TestStatus:
    def test_on_request_item_creates_quote(self, db_session, shirts, settings):
        items = _items(shirts)
        items[1]["custom_metadata"] = {"designs": [{"name": "Escudo"}], "on_request": True}

        order = order_service.create_order(user_id=None, items=items, settings=settings)

        assert order.status == "quote"
        assert order.items[1].on_request is True
        assert order.items[1].custom_metadata["format"] == "customization_v2"

    def test_legacy_metadata_normalized(self, db_session, shirts, settings):
        items = _items(shirts)
        items[0]["custom_metadata"] = [{"name": "Logo", "location": "pecho"}]

        order = order_service.create_order(user_id=None, items=items, settings=settings)

        assert order.status == "pending"
        assert order.items[0].custom_metadata["format"] == "legacy_designs"
        assert order.items[0].custom_metadata["designs"] == [{"name": "Logo", "location": "pecho"}]


class TestStoreCredit:
    def test_scenario_c_credit_debited(self, db_session, shirts, settings, make_profile):
        profile = make_profile(credit="20.00")

        order = order_service.create_order(
            user_id=profile.id, items=_items(shirts), credit_to_apply="20.00", settings=settings,
        )

        assert order.credit_applied == Decimal("20.00")
        assert order.total == Decimal("35.00")
        assert credit_service.get_balance(profile.id) == Decimal("0.00")
        debit = db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_PURCHASE).one()
        assert debit.amount == Decimal("-20.00")
        assert debit.reason == f"Order {order.control_id}"

    def test_insufficient_credit(self, db_session, shirts, settings, make_profile):
        profile = make_profile(credit="5.00")
        with pytest.raises(InsufficientCreditError):
            order_service.create_order(
                user_id=profile.id, items=_items(shirts), credit_to_apply="20.00", settings=settings,
            )
        assert db_session.query(Order).count() == 0
        assert credit_service.get_balance(profile.id) == Decimal("5.00")

    def test_guest_cannot_use_credit(self, db_session, shirts, settings):
        with pytest.raises(ValidationError):
            order_service.create_order(
                user_id=None, items=_items(shirts), credit_to_apply="1.00", settings=settings,
            )

    def test_failed_insert_reverses_debit(self, db_session, shirts, settings, make_profile, monkeypatch):
        profile = make_profile(credit="20.00")

        def boom(**kwargs):
            raise RuntimeError("order_items insert failed")

        monkeypatch.setattr(order_service, "OrderItem", boom)

        with pytest.raises(RuntimeError, match="order_items insert failed"):
            order_service.create_order(
                user_id=profile.id, items=_items(shirts), credit_to_apply="20.00", settings=settings,
            )

        assert db_session.query(Order).count() == 0
        assert credit_service.get_balance(profile.id) == Decimal("20.00")
        debit = db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_PURCHASE).one()
        reversal = db_session.query(StoreCreditHistory).filter_by(reverses_history_id=debit.id).one()
        assert reversal.type == CREDIT_TYPE_ADJUSTMENT
        assert reversal.amount == Decimal("20.00")
        assert credit_service.verify_credit_balances() == []
        # No stock was touched
        assert stock_service.verify_stock_counters() == []
        assert db_session.query(StockMovement).filter_by(type=MOVEMENT_TYPE_ORDER).count() == 0


class TestStockFallbacks:
    def test_product_line_uses_first_variant(self, db_session, make_variant, settings):
        first = make_variant(name="Franela", stock=5, size="S")
        make_variant(stock=5, size="M", product=first.product)

        order = order_service.create_order(
            user_id=None,
            items=[{"product_id": first.product_id, "quantity": 2, "price": "8.00"}],
            settings=settings,
        )

        assert order.items[0].variant_id == first.id
        assert db_session.get(ProductVariant, first.id).stock == 3

    def test_legacy_product_stock(self, db_session, settings):
        product = Product(name="Taza", price=Decimal("6.00"), stock=4)
        db_session.add(product)
        db_session.commit()

        order = order_service.create_order(
            user_id=None,
            items=[{"product_id": product.id, "quantity": 3, "price": "6.00"}],
            settings=settings,
        )

        assert order.items[0].variant_id is None
        assert db_session.get(Product, product.id).stock == 1
        assert db_session.query(StockMovement).filter_by(type=MOVEMENT_TYPE_ORDER).count() == 0


class TestOrderCreatedWebhook:
    def test_payload(self, db_session, shirts, settings, make_profile, webhook_capture):
        profile = make_profile(name="Luis Rojas", credit="5.00")

        order = order_service.create_order(
            user_id=profile.id, items=_items(shirts), credit_to_apply="5.00",
            payment_method_id="zelle", shipping_address="Calle 2, Valencia", settings=settings,
        )

        assert webhook_capture.events == ["order_created"]
        body = webhook_capture.requests[0]["body"]
        assert body["customer"] == {"name": "Luis Rojas", "email": "luis.rojas@shop.test", "phone": "+58 412 0000000"}
        data = body["data"]
        assert data["control_id"] == order.control_id
        assert data["total_paid"] == "50.00"
        assert data["credit_applied"] == "5.00"
        assert data["payment_method_name"] == "Zelle"
        assert data["payment_instructions"] == "Send to pay@shop.test"
        assert data["shipping_address"] == "Calle 2, Valencia"
        assert data["has_backorder"] is False
        assert data["items"][0] == {"name": "Camisa", "quantity": 3, "price": "10.00", "on_request": False}

    def test_backorder_flag(self, db_session, make_variant, settings, webhook_capture):
        variant = make_variant(stock=1)
        order_service.create_order(
            user_id=None, items=[{"variant_id": variant.id, "quantity": 2, "price": "10"}], settings=settings,
        )
        assert webhook_capture.requests[0]["body"]["data"]["has_backorder"] is True

    def test_guest_contact_from_checkout(self, db_session, shirts, settings, webhook_capture):
        order_service.create_order(
            user_id=None, items=_items(shirts), settings=settings,
            customer={"name": "Invitado", "email": "guest@shop.test", "phone": "0414"},
        )
        assert webhook_capture.requests[0]["body"]["customer"]["email"] == "guest@shop.test"

    def test_failing_endpoint_does_not_block(self, db_session, shirts, settings, webhook_capture):
        webhook_capture.status_code = 503

        order = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)

        assert order.id is not None
        delivery = db_session.query(WebhookDelivery).one()
        assert delivery.status == DELIVERY_STATUS_FAILED
        assert delivery.response_status == 503

    def test_no_url_skips(self, db_session, shirts, snapshot_at, webhook_capture):
        order_service.create_order(user_id=None, items=_items(shirts), settings=snapshot_at(webhook_url=None))

        assert webhook_capture.requests == []
        assert db_session.query(WebhookDelivery).one().status == DELIVERY_STATUS_SKIPPED

    def test_sent_delivery_recorded(self, db_session, shirts, settings):
        order = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)
        delivery = db_session.query(WebhookDelivery).one()
        assert delivery.status == DELIVERY_STATUS_SENT
        assert delivery.idempotency_key == f"order_created:{order.id}"


class TestRetriedCheckout:
    def test_retried_credit_debit_keeps_control_ids_unique(
        self, db_session, shirts, settings, make_profile, fail_once, lock_timeout, no_backoff,
    ):
        profile = make_profile(credit="30.00")
        calls = fail_once(credit_service, "_adjust_credit_inner", lock_timeout)

        first = order_service.create_order(
            user_id=profile.id, items=_items(shirts), credit_to_apply="10.00", settings=settings,
        )
        second = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)

        assert len(calls) == 2
        assert (first.control_id, second.control_id) == ("ORD-000001", "ORD-000002")
        assert credit_service.get_balance(profile.id) == Decimal("20.00")
        assert db_session.query(StoreCreditHistory).filter_by(type=CREDIT_TYPE_PURCHASE).count() == 1

    def test_retried_order_insert_keeps_control_ids_unique(
        self, db_session, shirts, settings, fail_once, lock_timeout, no_backoff,
    ):
        fail_once(order_service, "OrderItem", lock_timeout)

        first = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)
        second = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)

        assert (first.control_id, second.control_id) == ("ORD-000001", "ORD-000002")
        assert db_session.query(Order).count() == 2
        assert len(first.items) == 2

    def test_failed_checkout_leaves_a_gap(self, db_session, shirts, settings, make_profile, monkeypatch):
        profile = make_profile(credit="20.00")

        def boom(**kwargs):
            raise RuntimeError("items table unavailable")

        monkeypatch.setattr(order_service, "OrderItem", boom)
        with pytest.raises(RuntimeError):
            order_service.create_order(
                user_id=profile.id, items=_items(shirts), credit_to_apply="5.00", settings=settings,
            )
        monkeypatch.undo()

        order = order_service.create_order(user_id=None, items=_items(shirts), settings=settings)
        assert order.control_id == "ORD-000002"
