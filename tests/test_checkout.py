"""Tests for turning carts into orders."""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from database import SessionLocal
from errors import CartChanged, InsufficientStock, InvalidSelection, PaymentProviderError, Unauthorized
from models import CartLine, Order, Product
from services.cart_service import CartService
from services.external_service import ExternalServiceClient
from services.inventory_ledger import InventoryLedger
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine


class FailingLedger(InventoryLedger):
    """Ledger whose n-th reservation fails."""

    def __init__(self, fail_on_call, error):
        super().__init__()
        self.fail_on_call = fail_on_call
        self.error = error
        self.calls = 0

    def reserve(self, db, product_id, quantity):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise self.error
        return super().reserve(db, product_id, quantity)


@pytest.fixture
def alice(make_account):
    return make_account("user_alice")


class TestCreateOrder:
    def test_end_to_end_totals(self, db, order_service, cart_service, ledger, alice, make_product, pickup):
        pid = make_product(name="Product X", price="10.00", stock=10)
        cart_service.upsert_line(db, alice, pid, 3)

        order = order_service.create_order(db, alice, pickup, "cash_on_delivery")

        assert order.status == "pending"
        assert order.items_subtotal == Decimal("30.00")
        assert order.tax == Decimal("6.00")
        assert order.shipping == Decimal("10.00")
        assert order.total == Decimal("46.00")
        assert order.currency == "EUR"
        assert [(i.product_id, i.quantity, i.unit_price) for i in order.items] == [(pid, 3, Decimal("10.00"))]
        assert cart_service.get_cart(db, alice)["items"] == []
        assert ledger.available(db, pid) == 7

    def test_items_are_value_copies(self, db, order_service, cart_service, alice, make_product, pickup):
        pid = make_product(name="Hoodie", price="49.00", stock=10, sizes=["M"])
        cart_service.upsert_line(db, alice, pid, 1, size="M")
        order = order_service.create_order(db, alice, pickup, "bank_transfer")

        db.query(Product).filter(Product.id == pid).update({Product.price: Decimal("99.00"), Product.name: "Renamed"})
        db.commit()
        db.refresh(order)

        assert order.items[0].name == "Hoodie"
        assert order.items[0].unit_price == Decimal("49.00")
        assert order.items[0].size == "M"
        assert order.total == Decimal("68.80")

    def test_cart_discount_is_frozen_on_the_order(self, db, order_service, cart_service, alice, make_product, pickup):
        pid = make_product(price="100.00", stock=10)
        cart_service.upsert_line(db, alice, pid, 2)
        cart_service.apply_discount(db, alice, "ETE2023")

        order = order_service.create_order(db, alice, pickup, "cash_on_delivery")

        assert order.discount_code == "ETE2023"
        assert order.discount_type == "percentage"
        assert order.discount_amount == Decimal("20.00")
        # 200 + 40 tax + free shipping - 20
        assert order.total == Decimal("220.00")

    def test_empty_cart(self, db, order_service, alice, pickup):
        with pytest.raises(InvalidSelection, match="Cart is empty"):
            order_service.create_order(db, alice, pickup, "cash_on_delivery")

    def test_banned_account(self, db, order_service, make_account, pickup):
        make_account("user_banned", banned=True)

        with pytest.raises(Unauthorized):
            order_service.create_order(db, "user_banned", pickup, "cash_on_delivery")

    def test_unknown_account(self, db, order_service, pickup):
        with pytest.raises(Unauthorized):
            order_service.create_order(db, "user_ghost", pickup, "cash_on_delivery")

    @pytest.mark.parametrize("fulfillment", [
        {"method": "delivery", "pickup_location": None, "delivery_address": None},
        {"method": "pickup", "pickup_location": None, "delivery_address": None},
        {"method": "pickup", "pickup_location": "Store 1", "delivery_address": {"city": "Paris"}},
        {"method": "drone"},
    ])
    def test_inconsistent_fulfillment(self, db, order_service, cart_service, alice, make_product, fulfillment):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 1)

        with pytest.raises(InvalidSelection):
            order_service.create_order(db, alice, fulfillment, "cash_on_delivery")

    def test_unknown_payment_method(self, db, order_service, cart_service, alice, make_product, pickup):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 1)

        with pytest.raises(InvalidSelection):
            order_service.create_order(db, alice, pickup, "gold_bars")

    def test_stock_dropped_since_add_makes_no_mutation(
        self, db, order_service, cart_service, ledger, alice, make_product, pickup
    ):
        a = make_product(name="A", stock=10)
        b = make_product(name="B", stock=10)
        cart_service.upsert_line(db, alice, a, 2)
        cart_service.upsert_line(db, alice, b, 5)
        db.query(Product).filter(Product.id == b).update({Product.stock: 1})
        db.commit()

        with pytest.raises(InsufficientStock) as exc_info:
            order_service.create_order(db, alice, pickup, "cash_on_delivery")

        assert exc_info.value.product_id == b
        db.rollback()
        assert ledger.available(db, a) == 10
        assert ledger.available(db, b) == 1
        assert db.query(Order).count() == 0
        assert len(cart_service.get_cart(db, alice)["items"]) == 2


class TestCheckoutAtomicity:
    @pytest.mark.parametrize("error", [
        RuntimeError("storage failure"),
        InsufficientStock(0, 1, 0),
    ])
    def test_failure_on_second_reservation_rolls_back_everything(
        self, db, redis_client, state_machine, http_client, alice, make_product, pickup, error
    ):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=5)
        ledger = FailingLedger(fail_on_call=2, error=error)
        cart_service = CartService(redis_client, ledger)
        service = OrderService(cart_service, ledger, state_machine, ExternalServiceClient(http_client))
        cart_service.upsert_line(db, alice, a, 2)
        cart_service.upsert_line(db, alice, b, 1)

        with pytest.raises(type(error)):
            service.create_order(db, alice, pickup, "cash_on_delivery")

        assert ledger.calls == 2
        assert ledger.available(db, a) == 5
        assert ledger.available(db, b) == 5
        assert db.query(Order).count() == 0
        assert [item["quantity"] for item in cart_service.get_cart(db, alice)["items"]] == [2, 1]


class TestConcurrentCheckouts:
    def test_exactly_stock_many_checkouts_succeed(self, make_account, make_product, pickup, stock_of):
        pid = make_product(stock=3)
        accounts = [make_account(f"user_{n}") for n in range(6)]

        def build_service():
            ledger = InventoryLedger()
            cart_service = CartService(MagicMock(), ledger)
            return cart_service, OrderService(
                cart_service, ledger, OrderStateMachine(ledger), ExternalServiceClient(MagicMock())
            )

        for account_id in accounts:
            cart_service, _ = build_service()
            with SessionLocal() as session:
                cart_service.upsert_line(session, account_id, pid, 1)

        def attempt(account_id):
            _, service = build_service()
            with SessionLocal() as session:
                try:
                    service.create_order(session, account_id, pickup, "cash_on_delivery")
                    return "ok"
                except InsufficientStock:
                    return "insufficient"

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(attempt, accounts))

        assert results.count("ok") == 3
        assert results.count("insufficient") == 3
        assert stock_of(pid) == 0
        with SessionLocal() as session:
            assert session.query(Order).count() == 3


class TestCheckoutFlow:
    def test_online_payment_creates_intent(
        self, db, order_service, cart_service, provider, alice, make_product, pickup
    ):
        pid = make_product(price="10.00", stock=10)
        cart_service.upsert_line(db, alice, pid, 3)

        result = asyncio.run(order_service.checkout(db, alice, pickup, "credit_card"))

        assert result["payment_correlation_id"] == "pi_1"
        assert result["client_secret"] == "pi_1_secret"
        assert result["total"] == Decimal("46.00")
        assert provider.paths() == ["/v1/payment_intents", "/api/notifications/order-confirmation"]
        intent_request = provider.requests[0]
        assert b'"amount":4600' in intent_request.content.replace(b" ", b"")
        assert db.query(Order).one().payment_correlation_id == "pi_1"

    def test_offline_payment_skips_provider(
        self, db, order_service, cart_service, provider, alice, make_product, pickup
    ):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 1)

        result = asyncio.run(order_service.checkout(db, alice, pickup, "cash_on_delivery"))

        assert result["payment_correlation_id"] is None
        assert result["client_secret"] is None
        assert provider.paths() == ["/api/notifications/order-confirmation"]

    def test_intent_failure_cancels_order_and_releases_stock(
        self, db, order_service, cart_service, ledger, provider, alice, make_product, pickup
    ):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 4)
        provider.fail_intents = True

        with pytest.raises(PaymentProviderError):
            asyncio.run(order_service.checkout(db, alice, pickup, "paypal"))

        order = db.query(Order).one()
        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert ledger.available(db, pid) == 10
        assert "/api/notifications/order-confirmation" not in provider.paths()

    def test_notification_failure_does_not_fail_checkout(
        self, db, order_service, cart_service, provider, alice, make_product, pickup
    ):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 1)
        provider.fail_notifications = True

        result = asyncio.run(order_service.checkout(db, alice, pickup, "cash_on_delivery"))

        assert result["status"] == "pending"
        assert db.query(Order).count() == 1


class RacingCartService(CartService):
    """Cart service whose lines are removed by another checkout just before they are claimed."""

    def claim_lines(self, db, cart, line_ids):
        db.query(CartLine).filter(CartLine.id == line_ids[0]).delete(synchronize_session=False)
        return super().claim_lines(db, cart, line_ids)


class TestCartClaim:
    def test_checkout_reads_the_cart_for_update(self, db, order_service, cart_service, alice, make_product, pickup):
        pid = make_product(stock=10)
        cart_service.upsert_line(db, alice, pid, 1)
        cart_service.find_cart = MagicMock(wraps=cart_service.find_cart)

        order_service.create_order(db, alice, pickup, "cash_on_delivery")

        cart_service.find_cart.assert_any_call(db, alice, for_update=True)

    def test_lines_claimed_elsewhere_abort_the_checkout(
        self, db, redis_client, ledger, state_machine, http_client, alice, make_product, pickup
    ):
        a = make_product(name="A", stock=5)
        b = make_product(name="B", stock=5)
        cart_service = RacingCartService(redis_client, ledger)
        service = OrderService(cart_service, ledger, state_machine, ExternalServiceClient(http_client))
        cart_service.upsert_line(db, alice, a, 2)
        cart_service.upsert_line(db, alice, b, 1)

        with pytest.raises(CartChanged) as exc_info:
            service.create_order(db, alice, pickup, "cash_on_delivery")

        assert exc_info.value.status_code == 409
        assert (exc_info.value.expected, exc_info.value.claimed) == (2, 1)
        assert db.query(Order).count() == 0
        assert (ledger.available(db, a), ledger.available(db, b)) == (5, 5)
        assert len(cart_service.get_cart(db, alice)["items"]) == 2
