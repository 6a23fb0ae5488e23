"""Pytest fixtures for storefront tests."""

import os
import tempfile
from decimal import Decimal
from unittest.mock import MagicMock

# Configuration is read at import time, so the environment is set up first
_DB_DIR = tempfile.mkdtemp(prefix="storefront-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'storefront.db')}"
os.environ["OTEL_ENABLED"] = "false"
os.environ["PROFILING_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["PAYMENT_PROVIDER_URL"] = "http://payments.test"
os.environ["NOTIFICATION_SERVICE_URL"] = "http://notifications.test"
os.environ["PAYMENT_WEBHOOK_SECRET"] = "whsec_test"

import httpx
import pytest

from database import SessionLocal, engine
from models import Account, Base, Product
from services.cart_service import CartService
from services.external_service import ExternalServiceClient
from services.inventory_ledger import InventoryLedger
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine
from services.payment_reconciler import PaymentReconciler


@pytest.fixture(autouse=True)
def reset_database():
    """Start every test from empty tables."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    """A database session, closed after the test."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_account():
    """Create an account in its own transaction and return its id."""
    def _make(account_id="user_alice", token=None, role="user", banned=False):
        with SessionLocal() as session:
            session.add(Account(
                id=account_id,
                email=f"{account_id}@example.com",
                role=role,
                banned=banned,
                api_token=token or f"{account_id}-token"
            ))
            session.commit()
        return account_id
    return _make


@pytest.fixture
def make_product():
    """Create a product in its own transaction and return its id."""
    def _make(name="Product", price="10.00", stock=10, sizes=None, colors=None, low_stock_threshold=5):
        with SessionLocal() as session:
            product = Product(
                name=name,
                sku=f"SKU-{name.upper().replace(' ', '-')}",
                category="Tops",
                price=Decimal(price),
                stock=stock,
                low_stock_threshold=low_stock_threshold,
                sizes=sizes or [],
                colors=colors or []
            )
            session.add(product)
            session.commit()
            return product.id
    return _make


@pytest.fixture
def stock_of():
    """Read committed stock with a short-lived session."""
    def _stock(product_id):
        with SessionLocal() as session:
            return session.query(Product.stock).filter(Product.id == product_id).scalar()
    return _stock


@pytest.fixture
def redis_client():
    """Redis stand-in for the cart cache."""
    return MagicMock()


class ProviderStub:
    """Records outbound HTTP calls and answers like the payment and notification services."""

    def __init__(self):
        self.requests = []
        self.fail_intents = False
        self.fail_refunds = False
        self.fail_notifications = False
        self._intent_counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/payment_intents":
            if self.fail_intents:
                return httpx.Response(503, json={"error": "unavailable"})
            self._intent_counter += 1
            return httpx.Response(200, json={
                "id": f"pi_{self._intent_counter}",
                "client_secret": f"pi_{self._intent_counter}_secret"
            })
        if path == "/v1/refunds":
            if self.fail_refunds:
                return httpx.Response(502, json={"error": "refund rejected"})
            return httpx.Response(200, json={"id": "re_1", "status": "succeeded"})
        if path.startswith("/api/notifications"):
            if self.fail_notifications:
                raise httpx.ConnectError("notification service down", request=request)
            return httpx.Response(202, json={"queued": True})
        return httpx.Response(404)

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def provider():
    return ProviderStub()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider))


@pytest.fixture
def ledger():
    return InventoryLedger()


@pytest.fixture
def state_machine(ledger):
    return OrderStateMachine(ledger)


@pytest.fixture
def cart_service(redis_client, ledger):
    return CartService(redis_client, ledger)


@pytest.fixture
def order_service(cart_service, ledger, state_machine, http_client):
    return OrderService(cart_service, ledger, state_machine, ExternalServiceClient(http_client))


@pytest.fixture
def reconciler(state_machine):
    return PaymentReconciler(state_machine)


@pytest.fixture
def pickup():
    return {"method": "pickup", "pickup_location": "Store 12", "delivery_address": None}


@pytest.fixture
def api_client(redis_client, http_client):
    """Test client with Redis and outbound HTTP replaced."""
    from fastapi.testclient import TestClient

    import dependencies
    from main import app

    app.dependency_overrides[dependencies.get_redis_client] = lambda: redis_client
    app.dependency_overrides[dependencies.get_http_client] = lambda: http_client
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Build an Authorization header for a token."""
    return lambda token: {"Authorization": f"Bearer {token}"}
