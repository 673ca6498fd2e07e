"""Tests for the HTTP API."""

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from config import get_settings
from database import get_db
from main import app, get_gateway


@pytest.fixture
def client(db, gateway, settings):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user):
    return {"Authorization": f"Bearer {user['token']}"}


class TestHealth:
    def test_root(self, client):
        assert client.get("/").status_code == 200

    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "healthy"}

    def test_database_diagnostics(self, client, buyer, make_product):
        make_product()

        response = client.get("/test")

        assert response.status_code == 200
        body = response.json()
        assert body["backend"] == "✅ Running"
        assert body["database"] == "✅ Connected & Working"
        assert body["connection_status"] == "Connected"
        assert body["database_name"] == "crop_connect_test"
        assert {"user", "product"} <= set(body["collections"])


class TestAuth:
    def test_missing_token(self, client):
        response = client.get("/api/orders/my-orders")
        assert response.status_code == 401
        assert response.json()["code"] == "NOT_AUTHENTICATED"

    def test_unknown_token(self, client, buyer):
        response = client.get("/api/orders/my-orders", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401


class TestCheckoutFlow:
    def test_cash_on_delivery(self, client, buyer, make_product, shipping, stock):
        product_id = make_product(price=250.0, quantity=5)
        added = client.post("/api/cart/add", json={"product_id": product_id, "quantity": 3}, headers=auth(buyer))
        assert added.status_code == 200
        assert added.json()["items"][0]["quantity"] == 3

        response = client.post(
            "/api/orders",
            json={"shipping_info": shipping, "payment_method": "cash-on-delivery"},
            headers=auth(buyer),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["order"]["status"] == "processing"
        assert body["order"]["order_number"] == f"ORD-{body['order']['id'][-6:].upper()}"
        assert stock(product_id) == 2
        assert client.get("/api/cart", headers=auth(buyer)).json()["items"] == []

    def test_gateway_then_verify(self, client, gateway, buyer, make_product, shipping, stock, db):
        product_id = make_product(price=500.0, quantity=5)
        client.post("/api/cart/add", json={"product_id": product_id, "quantity": 2}, headers=auth(buyer))

        created = client.post(
            "/api/orders", json={"shipping_info": shipping, "payment_method": "paystack"}, headers=auth(buyer)
        ).json()
        assert created["redirect_url"].startswith("https://pay.test/")

        order = db["order"].find_one({"_id": ObjectId(created["order"]["id"])})
        reference = gateway.pays(order)
        response = client.get(f"/api/orders/verify-payment/{reference}", headers=auth(buyer))

        assert response.status_code == 200
        assert response.json()["order"]["payment_status"] == "completed"
        assert stock(product_id) == 3

        again = client.get(f"/api/orders/verify-payment/{reference}", headers=auth(buyer))
        assert again.status_code == 200
        assert stock(product_id) == 3

    def test_underpaid_verification(self, client, gateway, buyer, make_product, shipping, db):
        product_id = make_product(price=500.0, quantity=5)
        client.post("/api/cart/add", json={"product_id": product_id, "quantity": 2}, headers=auth(buyer))
        created = client.post(
            "/api/orders", json={"shipping_info": shipping, "payment_method": "gateway"}, headers=auth(buyer)
        ).json()
        order = db["order"].find_one({"_id": ObjectId(created["order"]["id"])})

        response = client.get(f"/api/orders/verify-payment/{gateway.pays(order, amount_minor=50000)}",
                              headers=auth(buyer))

        assert response.status_code == 400
        assert response.json()["code"] == "AMOUNT_MISMATCH"

    def test_out_of_stock(self, client, buyer, make_product, shipping, db):
        product_id = make_product(quantity=5)
        client.post("/api/cart/add", json={"product_id": product_id, "quantity": 4}, headers=auth(buyer))
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"quantity": 2}})

        response = client.post(
            "/api/orders",
            json={"shipping_info": shipping, "payment_method": "cash_on_delivery"},
            headers=auth(buyer),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["code"] == "OUT_OF_STOCK"
        assert body["details"]["available"] == 2

    def test_missing_shipping_field(self, client, buyer, shipping):
        del shipping["address"]
        response = client.post(
            "/api/orders",
            json={"shipping_info": shipping, "payment_method": "cash_on_delivery"},
            headers=auth(buyer),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_payment_method(self, client, buyer, shipping):
        response = client.post(
            "/api/orders", json={"shipping_info": shipping, "payment_method": "barter"}, headers=auth(buyer)
        )
        assert response.status_code == 400

    def test_empty_cart(self, client, buyer, shipping):
        response = client.post(
            "/api/orders",
            json={"shipping_info": shipping, "payment_method": "cash_on_delivery"},
            headers=auth(buyer),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CART_EMPTY"


class TestOrderEndpoints:
    @pytest.fixture
    def order_id(self, client, buyer, make_product, shipping):
        product_id = make_product(price=100.0, quantity=10)
        client.post("/api/cart/add", json={"product_id": product_id, "quantity": 1}, headers=auth(buyer))
        response = client.post(
            "/api/orders",
            json={"shipping_info": shipping, "payment_method": "cash_on_delivery"},
            headers=auth(buyer),
        )
        return response.json()["order"]["id"]

    def test_get_order(self, client, buyer, other_buyer, order_id):
        assert client.get(f"/api/orders/{order_id}", headers=auth(buyer)).status_code == 200
        assert client.get(f"/api/orders/{order_id}", headers=auth(other_buyer)).status_code == 403

    def test_get_missing_order(self, client, buyer):
        assert client.get(f"/api/orders/{ObjectId()}", headers=auth(buyer)).status_code == 404
        assert client.get("/api/orders/not-an-id", headers=auth(buyer)).status_code == 400

    def test_lists(self, client, buyer, farmer, order_id):
        mine = client.get("/api/orders/my-orders", headers=auth(buyer)).json()
        assert [o["id"] for o in mine] == [order_id]

        farmer_view = client.get("/api/orders/farmer-orders", headers=auth(farmer)).json()
        assert [o["id"] for o in farmer_view] == [order_id]
        assert client.get("/api/orders/farmer-orders", headers=auth(buyer)).status_code == 403

        recent = client.get("/api/orders/recent", headers=auth(buyer)).json()
        assert recent == {"success": True, "count": 1, "total_spent": 100.0}

    def test_status_update(self, client, farmer, other_farmer, order_id):
        response = client.patch(f"/api/orders/{order_id}/status", json={"status": "shipped"}, headers=auth(farmer))
        assert response.status_code == 200
        assert response.json()["status"] == "shipped"

        forbidden = client.patch(
            f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=auth(other_farmer)
        )
        assert forbidden.status_code == 403

        invalid = client.patch(f"/api/orders/{order_id}/status", json={"status": "lost"}, headers=auth(farmer))
        assert invalid.status_code == 400

    def test_notifications(self, client, farmer, order_id):
        notes = client.get("/api/notifications", headers=auth(farmer)).json()
        assert [n["type"] for n in notes] == ["new-order"]

        marked = client.patch(f"/api/notifications/{notes[0]['id']}/read", headers=auth(farmer))
        assert marked.json()["read"] is True
        assert client.get("/api/notifications?unread=true", headers=auth(farmer)).json() == []


class TestCartEndpoints:
    def test_update_remove_clear(self, client, buyer, make_product):
        product_id = make_product(quantity=10)
        cart = client.post("/api/cart/add", json={"product_id": product_id}, headers=auth(buyer)).json()
        item_id = cart["items"][0]["item_id"]

        updated = client.put(f"/api/cart/update/{item_id}", json={"quantity": 5}, headers=auth(buyer))
        assert updated.json()["items"][0]["quantity"] == 5

        too_many = client.put(f"/api/cart/update/{item_id}", json={"quantity": 101}, headers=auth(buyer))
        assert too_many.status_code == 400

        removed = client.delete(f"/api/cart/remove/{item_id}", headers=auth(buyer))
        assert removed.json()["items"] == []

        cleared = client.delete("/api/cart/clear", headers=auth(buyer))
        assert cleared.json() == {"message": "Cart cleared successfully"}
