"""Tests for the HTTP API."""

import json

import pytest

from services.payment_reconciler import sign_payload


ALICE = "alice-token"
BOB = "bob-token"
ADMIN = "admin-token"

PICKUP = {"method": "pickup", "pickup_location": "Store 12"}


@pytest.fixture
def shop(make_account, make_product):
    """Accounts and two products; returns product ids."""
    make_account("user_alice", token=ALICE)
    make_account("user_bob", token=BOB)
    make_account("user_admin", token=ADMIN, role="admin")
    make_account("user_banned", token="banned-token", banned=True)
    return {
        "x": make_product(name="Product X", price="10.00", stock=10),
        "tee": make_product(name="Tee", price="19.90", stock=3, sizes=["S", "M"], low_stock_threshold=5),
    }


def signed(event):
    body = json.dumps(event).encode()
    return body, {"X-Payment-Signature": sign_payload(body), "Content-Type": "application/json"}


def checkout(client, auth, token=ALICE, payment_method="cash_on_delivery", path="/checkout"):
    return client.post(path, json={"payment_method": payment_method, "fulfillment": PICKUP}, headers=auth(token))


class TestHealth:
    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestProducts:
    def test_list_includes_stock_status(self, api_client, shop):
        response = api_client.get("/products")

        assert response.status_code == 200
        statuses = {p["name"]: p["stock_status"] for p in response.json()}
        assert statuses == {"Product X": "in-stock", "Tee": "low-stock"}

    def test_unknown_product_uses_error_envelope(self, api_client, shop):
        response = api_client.get("/products/999")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "Product with ID 999 not found"


class TestAuth:
    def test_missing_header(self, api_client, shop):
        response = api_client.get("/cart")
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_unknown_token(self, api_client, shop, auth):
        assert api_client.get("/cart", headers=auth("nope")).status_code == 401

    def test_banned_account(self, api_client, shop, auth):
        assert api_client.get("/cart", headers=auth("banned-token")).status_code == 401

    def test_admin_routes_require_admin(self, api_client, shop, auth):
        assert api_client.get("/admin/orders", headers=auth(ALICE)).status_code == 403
        assert api_client.get("/admin/orders", headers=auth(ADMIN)).status_code == 200


class TestCart:
    def test_add_update_remove(self, api_client, shop, auth):
        response = api_client.post(
            "/cart/items", json={"product_id": shop["tee"], "quantity": 1, "size": "M"}, headers=auth(ALICE)
        )
        assert response.status_code == 201
        line_id = response.json()["items"][0]["id"]

        response = api_client.patch(f"/cart/items/{line_id}", json={"quantity": 3}, headers=auth(ALICE))
        assert response.status_code == 200
        assert response.json()["item_count"] == 3

        response = api_client.delete(f"/cart/items/{line_id}", headers=auth(ALICE))
        assert response.status_code == 200
        assert response.json()["items"] == []

    def test_quantity_over_stock(self, api_client, shop, auth):
        response = api_client.post(
            "/cart/items", json={"product_id": shop["tee"], "quantity": 4, "size": "S"}, headers=auth(ALICE)
        )

        assert response.status_code == 400
        assert response.json()["details"]["available"] == 3

    def test_zero_quantity_rejected(self, api_client, shop, auth):
        response = api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 0}, headers=auth(ALICE))
        assert response.status_code == 400

    def test_discount(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 5}, headers=auth(ALICE))

        response = api_client.post("/cart/discount", json={"code": "ETE2023"}, headers=auth(ALICE))
        assert response.status_code == 200
        assert response.json()["discount"] == "5.00"

        assert api_client.post("/cart/discount", json={"code": "BOGUS"}, headers=auth(ALICE)).status_code == 400

        response = api_client.delete("/cart/discount", headers=auth(ALICE))
        assert response.json()["discount_code"] is None

    def test_carts_are_per_account(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 2}, headers=auth(ALICE))

        assert api_client.get("/cart", headers=auth(BOB)).json()["items"] == []


class TestCheckout:
    def test_end_to_end(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 3}, headers=auth(ALICE))

        response = checkout(api_client, auth)

        assert response.status_code == 201
        order = response.json()
        assert order["items_subtotal"] == "30.00"
        assert order["tax"] == "6.00"
        assert order["shipping"] == "10.00"
        assert order["total"] == "46.00"
        assert order["status"] == "pending"
        assert api_client.get("/cart", headers=auth(ALICE)).json()["items"] == []
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 7

    def test_orders_path_alias(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 1}, headers=auth(ALICE))

        response = checkout(api_client, auth, path="/orders/checkout")

        assert response.status_code == 201

    def test_empty_cart(self, api_client, shop, auth):
        response = checkout(api_client, auth)

        assert response.status_code == 400
        assert response.json()["error"] == "Cart is empty"

    def test_inconsistent_fulfillment_rejected(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 1}, headers=auth(ALICE))

        response = api_client.post(
            "/checkout",
            json={"payment_method": "paypal", "fulfillment": {"method": "delivery", "pickup_location": "Store 1"}},
            headers=auth(ALICE)
        )

        assert response.status_code == 400

    def test_insufficient_stock_has_no_side_effects(self, api_client, shop, auth):
        api_client.post(
            "/cart/items", json={"product_id": shop["tee"], "quantity": 3, "size": "S"}, headers=auth(ALICE)
        )
        api_client.post(
            "/cart/items", json={"product_id": shop["tee"], "quantity": 2, "size": "M"}, headers=auth(BOB)
        )
        assert checkout(api_client, auth, token=BOB).status_code == 201

        response = checkout(api_client, auth, token=ALICE)

        assert response.status_code == 409
        assert response.json()["details"]["product_id"] == shop["tee"]
        assert api_client.get(f"/products/{shop['tee']}").json()["stock"] == 1
        assert api_client.get("/orders", headers=auth(ALICE)).json()["orders"] == []
        assert len(api_client.get("/cart", headers=auth(ALICE)).json()["items"]) == 1

    def test_payment_provider_down_returns_502(self, api_client, shop, auth, provider):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 2}, headers=auth(ALICE))
        provider.fail_intents = True

        response = checkout(api_client, auth, payment_method="credit_card")

        assert response.status_code == 502
        orders = api_client.get("/orders", headers=auth(ALICE)).json()["orders"]
        assert [o["status"] for o in orders] == ["cancelled"]
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 10


class TestPaymentWebhook:
    def _place_card_order(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 3}, headers=auth(ALICE))
        order = checkout(api_client, auth, payment_method="credit_card").json()
        assert order["payment_correlation_id"] == "pi_1"
        assert order["client_secret"] == "pi_1_secret"
        return order["id"]

    def test_success_is_applied_once(self, api_client, shop, auth):
        order_id = self._place_card_order(api_client, shop, auth)
        body, headers = signed({"id": "evt_1", "type": "succeeded", "correlation_id": "pi_1", "amount": "46.00"})

        first = api_client.post("/webhooks/payment", content=body, headers=headers)
        second = api_client.post("/webhooks/payment", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"received": True, "outcome": "applied", "order_id": order_id}
        assert second.json()["outcome"] == "duplicate"
        order = api_client.get(f"/orders/{order_id}", headers=auth(ALICE)).json()
        assert order["status"] == "processing"
        assert order["is_paid"] is True

    def test_failure_releases_stock(self, api_client, shop, auth):
        order_id = self._place_card_order(api_client, shop, auth)
        body, headers = signed({"type": "failed", "correlation_id": "pi_1"})

        response = api_client.post("/webhooks/payment", content=body, headers=headers)

        assert response.json()["outcome"] == "applied"
        assert api_client.get(f"/orders/{order_id}", headers=auth(ALICE)).json()["status"] == "cancelled"
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 10

    def test_capture_on_cancelled_order_is_listed_for_follow_up(self, api_client, shop, auth):
        order_id = self._place_card_order(api_client, shop, auth)
        for event in ({"id": "evt_f", "type": "failed", "correlation_id": "pi_1"},
                      {"id": "evt_s", "type": "succeeded", "correlation_id": "pi_1", "amount": "46.00"}):
            body, headers = signed(event)
            response = api_client.post("/webhooks/payment", content=body, headers=headers)

        assert response.json() == {"received": True, "outcome": "captured_on_cancelled", "order_id": order_id}
        events = api_client.get(
            "/admin/payment-events?outcome=captured_on_cancelled", headers=auth(ADMIN)
        ).json()["events"]
        assert [(e["event_key"], e["amount"]) for e in events] == [("evt_s", "46.00")]

    def test_bad_signature(self, api_client, shop):
        body = json.dumps({"type": "succeeded", "correlation_id": "pi_1"}).encode()

        response = api_client.post(
            "/webhooks/payment", content=body,
            headers={"X-Payment-Signature": "forged", "Content-Type": "application/json"}
        )

        assert response.status_code == 401

    def test_orphan_is_acknowledged_and_listed(self, api_client, shop, auth):
        body, headers = signed({"id": "evt_o", "type": "succeeded", "correlation_id": "pi_nobody", "amount": "5"})

        response = api_client.post("/webhooks/payment", content=body, headers=headers)

        assert response.status_code == 202
        events = api_client.get("/admin/payment-events?outcome=orphan", headers=auth(ADMIN)).json()["events"]
        assert [e["correlation_id"] for e in events] == ["pi_nobody"]

    def test_malformed_event(self, api_client, shop):
        body, headers = signed({"type": "chargeback", "correlation_id": "pi_1"})

        assert api_client.post("/webhooks/payment", content=body, headers=headers).status_code == 400


class TestOrders:
    def _place_order(self, api_client, shop, auth):
        api_client.post("/cart/items", json={"product_id": shop["x"], "quantity": 2}, headers=auth(ALICE))
        return checkout(api_client, auth).json()["id"]

    def test_visibility(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)

        assert api_client.get(f"/orders/{order_id}", headers=auth(ALICE)).status_code == 200
        assert api_client.get(f"/orders/{order_id}", headers=auth(BOB)).status_code == 403
        assert api_client.get(f"/orders/{order_id}", headers=auth(ADMIN)).status_code == 200
        assert api_client.get("/orders/999", headers=auth(ALICE)).status_code == 404

    def test_owner_cancel_releases_stock(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)

        response = api_client.post(f"/orders/{order_id}/cancel", headers=auth(ALICE))

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 10

    def test_cancel_shipped_order_is_rejected(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)
        for status in ("processing", "shipped"):
            response = api_client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=auth(ADMIN))
            assert response.status_code == 200

        response = api_client.post(f"/orders/{order_id}/cancel", headers=auth(ALICE))

        assert response.status_code == 409
        assert response.json()["details"] == {"from": "shipped", "to": "cancelled"}
        assert api_client.get(f"/orders/{order_id}", headers=auth(ALICE)).json()["status"] == "shipped"

    def test_status_change_requires_admin(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)

        response = api_client.patch(f"/orders/{order_id}/status", json={"status": "processing"}, headers=auth(ALICE))

        assert response.status_code == 403

    def test_refund_of_unpaid_order_is_rejected(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)

        assert api_client.post(f"/orders/{order_id}/refund", headers=auth(ALICE)).status_code == 409

    def test_admin_delete_returns_stock(self, api_client, shop, auth):
        order_id = self._place_order(api_client, shop, auth)

        response = api_client.delete(f"/admin/orders/{order_id}", headers=auth(ADMIN))

        assert response.status_code == 204
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 10
        assert api_client.get("/admin/orders", headers=auth(ADMIN)).json()["orders"] == []


class TestStockAdmin:
    def test_restock_sold_out_product(self, api_client, shop, auth):
        api_client.patch(f"/admin/products/{shop['tee']}/stock", json={"operation": "set", "quantity": 0},
                         headers=auth(ADMIN))

        response = api_client.patch(
            f"/admin/products/{shop['tee']}/stock", json={"operation": "increment", "quantity": 20}, headers=auth(ADMIN)
        )

        assert response.status_code == 200
        product = response.json()
        assert product["stock"] == 20
        assert product["stock_status"] == "in-stock"
        assert product["price"] == "19.90"

    def test_decrement_below_zero_is_rejected(self, api_client, shop, auth):
        response = api_client.patch(
            f"/admin/products/{shop['tee']}/stock", json={"operation": "decrement", "quantity": 4}, headers=auth(ADMIN)
        )

        assert response.status_code == 409
        assert api_client.get(f"/products/{shop['tee']}").json()["stock"] == 3

    def test_negative_quantity_is_rejected(self, api_client, shop, auth):
        response = api_client.patch(
            f"/admin/products/{shop['x']}/stock", json={"operation": "set", "quantity": -5}, headers=auth(ADMIN)
        )

        assert response.status_code == 400

    def test_requires_admin(self, api_client, shop, auth):
        response = api_client.patch(
            f"/admin/products/{shop['x']}/stock", json={"operation": "increment", "quantity": 1}, headers=auth(ALICE)
        )

        assert response.status_code == 403
        assert api_client.get(f"/products/{shop['x']}").json()["stock"] == 10

    def test_unknown_product(self, api_client, shop, auth):
        response = api_client.patch(
            "/admin/products/999/stock", json={"operation": "set", "quantity": 1}, headers=auth(ADMIN)
        )

        assert response.status_code == 404
