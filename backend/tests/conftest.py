"""
Pytest fixtures for shopcore backend tests.

Provides an in-memory application, a clean database per test, catalog and
profile factories, and a captured webhook endpoint (httpx.MockTransport).
"""

import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from shopcore import create_app
from shopcore.extensions import db, webhooks
from shopcore.models import FinanceAccount, FinanceCategory, Product, ProductVariant, Profile
from shopcore.models.credit import CREDIT_TYPE_ADJUSTMENT
from shopcore.models.inventory import MOVEMENT_TYPE_MANUAL
from shopcore.services import concurrency, credit_service, stock_service
from shopcore.services.settings_service import PaymentMethod, SettingsSnapshot

WEBHOOK_URL = "http://hooks.test/orders"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'WEBHOOK_ASYNC': False,
        'WEBHOOK_URL': WEBHOOK_URL,
        'LOCAL_CURRENCY': 'VES',
        'DEFAULT_EXCHANGE_RATE': '150',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


class WebhookCapture:
    """Records every webhook POST; status_code controls the fake response."""

    def __init__(self):
        self.requests = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"url": str(request.url), "body": json.loads(request.content)})
        return httpx.Response(self.status_code, json={"ok": self.status_code < 400})

    @property
    def events(self) -> list[str]:
        return [r["body"]["event"] for r in self.requests]


@pytest.fixture(scope='function')
def webhook_capture():
    capture = WebhookCapture()
    webhooks.transport = httpx.MockTransport(capture.handler)
    yield capture
    webhooks.transport = None


@pytest.fixture(scope='function')
def db_session(app, webhook_capture):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# FACTORIES
# =============================================================================

def make_snapshot(rate="150", *, webhook_url=WEBHOOK_URL, payment_methods=()) -> SettingsSnapshot:
    return SettingsSnapshot(
        exchange_rate=Decimal(str(rate)),
        local_currency="VES",
        webhook_url=webhook_url,
        payment_methods=tuple(payment_methods),
    )


@pytest.fixture(scope='function')
def settings():
    """Snapshot at 150 VES/USD with one discounted payment method."""
    return make_snapshot(payment_methods=[
        PaymentMethod(id="zelle", name="Zelle", instructions="Send to pay@shop.test"),
        PaymentMethod(
            id="cash",
            name="Cash USD",
            instructions="Pay on pickup",
            is_discount_active=True,
            discount_percentage=Decimal("10"),
        ),
    ])


@pytest.fixture(scope='function')
def make_profile(db_session):
    def _make(name="Ana Perez", email=None, credit=None, phone="+58 412 0000000"):
        profile = Profile(
            full_name=name,
            email=email or f"{name.lower().replace(' ', '.')}@shop.test",
            phone=phone,
            shipping_address="Av. Principal 1, Caracas",
        )
        db_session.add(profile)
        db_session.commit()
        if credit:
            credit_service.adjust_credit(profile.id, credit, CREDIT_TYPE_ADJUSTMENT, reason="Opening balance")
        return profile
    return _make


@pytest.fixture(scope='function')
def make_variant(db_session):
    """Product + variant with opening stock recorded through the ledger."""
    def _make(name="Camisa", stock=10, size="M", color="Negro", price="10.00", product=None):
        if product is None:
            product = Product(name=name, price=Decimal(price))
            db_session.add(product)
            db_session.commit()
        variant = ProductVariant(product_id=product.id, size=size, color=color)
        db_session.add(variant)
        db_session.commit()
        if stock:
            stock_service.record_movement(variant.id, stock, MOVEMENT_TYPE_MANUAL, reason="Opening stock")
        return variant
    return _make


@pytest.fixture(scope='function')
def usd_account(db_session):
    account = FinanceAccount(name="Caja USD", currency="USD", type="cash")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope='function')
def ves_account(db_session):
    account = FinanceAccount(name="Banco VES", currency="VES", type="bank")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture(scope='function')
def sales_category(db_session):
    category = FinanceCategory(name="Ventas", type="income")
    db_session.add(category)
    db_session.commit()
    return category


def _actor_headers(actor_id: int, admin: bool) -> dict:
    return {"X-Actor-Id": str(actor_id), "X-Actor-Admin": "true" if admin else "false"}


@pytest.fixture(scope='function')
def admin_headers():
    """Headers the upstream gateway forwards for an admin actor."""
    return _actor_headers(9000, True)


@pytest.fixture(scope='function')
def customer_headers():
    """Factory: headers for a customer acting as the given profile."""
    def _headers(profile):
        return _actor_headers(profile.id, False)
    return _headers


@pytest.fixture(scope='function')
def snapshot_at():
    return make_snapshot


# =============================================================================
# CONCURRENCY
# =============================================================================

@pytest.fixture(scope='function')
def no_backoff(monkeypatch):
    """run_with_retry replays immediately instead of sleeping."""
    monkeypatch.setattr(concurrency, "_backoff", lambda attempt, base: None)


@pytest.fixture(scope='function')
def lock_timeout():
    """A lock timeout as the driver reports it; retryable."""
    return OperationalError("UPDATE", {}, Exception("database is locked"))


@pytest.fixture(scope='function')
def fail_once(monkeypatch):
    """
    Patch module.name so its first call runs `before` (if any), then raises
    `error`; later calls go to the real function.
    """
    def _patch(module, name, error, before=None):
        real = getattr(module, name)
        calls = []

        def wrapper(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                if before is not None:
                    before()
                raise error
            return real(*args, **kwargs)

        monkeypatch.setattr(module, name, wrapper)
        return calls
    return _patch
