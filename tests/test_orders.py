"""Tests for the order service API and the order creation saga."""

from datetime import datetime, timedelta, timezone

import pytest
from bson import ObjectId

from conftest import PRODUCT_URL, USER_URL


@pytest.fixture
def seeded(registered_user, create_product):
    return {"user_id": registered_user["id"], "product_id": create_product(price=10.0, stock=50)}


def place(order_client, user_id, items, **extra):
    return order_client.post("/api/orders", json={"userId": user_id, "items": items, **extra})


class TestCreateOrder:
    def test_end_to_end(self, order_client, seeded, db, peer_session, payments, order_metrics):
        response = place(order_client, seeded["user_id"],
                         [{"productId": seeded["product_id"], "quantity": 3}])
        assert response.status_code == 201, response.text
        body = response.json()
        order = body["order"]
        assert order["totalAmount"] == 30.0
        assert order["status"] == "pending"
        assert order["currency"] == "USD"
        assert order["paymentMethod"] == "credit_card"
        assert order["items"] == [{
            "productId": seeded["product_id"],
            "name": "Laptop",
            "price": 10.0,
            "quantity": 3,
            "subtotal": 30.0,
        }]
        assert body["orderId"] == order["_id"]

        stored = db["orders"].find_one({"_id": ObjectId(body["orderId"])})
        assert stored["userId"] == ObjectId(seeded["user_id"])
        assert stored["totalAmount"] == sum(i["subtotal"] for i in stored["items"])

        stock_call = ("PUT", f"{PRODUCT_URL}/api/products/{seeded['product_id']}/stock", {"quantity": -3})
        assert stock_call in peer_session.calls
        assert db["products"].find_one({"_id": ObjectId(seeded["product_id"])})["stock"] == 47
        assert payments.charges == [(30.0, "USD")]

        assert order_metrics.sample("orders_created_total", {"status": "pending"}) == 1
        assert order_metrics.sample("revenue_total", {"currency": "USD"}) == 30.0
        assert order_metrics.sample("order_processing_time_seconds", {"type": "creation"}, "_count") == 1
        latency = order_metrics.sample(
            "external_api_latency_seconds", {"service": "user-service", "endpoint": "get_user"}, "_count"
        )
        assert latency == 1

    def test_total_is_sum_of_lines(self, order_client, registered_user, create_product):
        first = create_product(name="Pen", price=1.25, stock=10)
        second = create_product(name="Book", price=12.5, stock=10)
        response = place(order_client, registered_user["id"],
                         [{"productId": first, "quantity": 4}, {"productId": second, "quantity": 2}])
        order = response.json()["order"]
        assert order["totalAmount"] == 30.0
        assert [i["subtotal"] for i in order["items"]] == [5.0, 25.0]

    @pytest.mark.parametrize("payload", [
        {"items": [{"productId": "x", "quantity": 1}]},
        {"userId": "abc"},
        {"userId": "abc", "items": []},
        {"userId": "abc", "items": [{"productId": "x", "quantity": 0}]},
    ])
    def test_invalid_payload(self, order_client, payload, db):
        response = order_client.post("/api/orders", json=payload)
        assert response.status_code == 400
        assert db["orders"].count_documents({}) == 0

    def test_unknown_user(self, order_client, seeded, order_metrics):
        response = place(order_client, str(ObjectId()), [{"productId": seeded["product_id"], "quantity": 1}])
        assert response.status_code == 400
        assert response.json() == {"error": "User not found"}
        latency = order_metrics.sample(
            "external_api_latency_seconds", {"service": "user-service", "endpoint": "get_user"}, "_count"
        )
        assert latency == 1

    def test_user_service_down(self, order_client, seeded, peer_session):
        peer_session.down.add(USER_URL)
        response = place(order_client, seeded["user_id"], [{"productId": seeded["product_id"], "quantity": 1}])
        assert response.status_code == 400
        assert response.json() == {"error": "User not found"}

    def test_insufficient_stock(self, order_client, seeded, db, payments):
        response = place(order_client, seeded["user_id"], [{"productId": seeded["product_id"], "quantity": 51}])
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Insufficient stock for product Laptop"
        assert body["available"] == 50
        assert body["requested"] == 51
        assert body["productId"] == seeded["product_id"]
        assert payments.charges == []
        assert db["orders"].count_documents({}) == 0

    def test_one_bad_product_aborts_whole_order(self, order_client, seeded, db):
        missing = str(ObjectId())
        response = place(order_client, seeded["user_id"], [
            {"productId": seeded["product_id"], "quantity": 1},
            {"productId": missing, "quantity": 1},
        ])
        assert response.status_code == 400
        assert response.json() == {"error": f"Product {missing} not found"}
        assert db["orders"].count_documents({}) == 0
        assert db["products"].find_one({"_id": ObjectId(seeded["product_id"])})["stock"] == 50

    def test_payment_declined(self, order_client, seeded, db, payments, order_metrics):
        payments.approve = False
        response = place(order_client, seeded["user_id"], [{"productId": seeded["product_id"], "quantity": 1}])
        assert response.status_code == 400
        assert response.json() == {"error": "Payment processing failed"}
        assert db["orders"].count_documents({}) == 0
        assert order_metrics.sample("orders_failed_total") == 1

    def test_stock_update_failure_keeps_order(self, order_client, seeded, db, peer_session, monkeypatch):
        products = order_client.app.state.orders.products
        original = products.adjust_stock

        def flaky(product_id, delta):
            peer_session.down.add(PRODUCT_URL)
            try:
                return original(product_id, delta)
            finally:
                peer_session.down.discard(PRODUCT_URL)

        monkeypatch.setattr(products, "adjust_stock", flaky)
        response = place(order_client, seeded["user_id"], [{"productId": seeded["product_id"], "quantity": 2}])
        assert response.status_code == 201
        assert db["orders"].count_documents({}) == 1
        assert db["products"].find_one({"_id": ObjectId(seeded["product_id"])})["stock"] == 50


def insert_order(db, user_id, total, status="pending", created_at=None, items=None):
    created_at = created_at or datetime.now(timezone.utc)
    items = items or [{"productId": "p1", "name": "Laptop", "price": total, "quantity": 1, "subtotal": total}]
    return db["orders"].insert_one({
        "userId": user_id,
        "items": items,
        "totalAmount": total,
        "currency": "USD",
        "status": status,
        "createdAt": created_at,
        "updatedAt": created_at,
    }).inserted_id


class TestListOrders:
    def test_filters_and_pagination(self, order_client, db):
        alice, bob = ObjectId(), ObjectId()
        base = datetime.now(timezone.utc) - timedelta(hours=1)
        for i in range(7):
            insert_order(db, alice, 10 + i, created_at=base + timedelta(minutes=i))
        insert_order(db, bob, 99, status="shipped")

        body = order_client.get("/api/orders", params={"userId": str(alice), "page": 2, "limit": 5}).json()
        assert body["pagination"] == {"page": 2, "limit": 5, "total": 7, "pages": 2}
        # newest first
        assert [o["totalAmount"] for o in body["data"]] == [11, 10]

        shipped = order_client.get("/api/orders", params={"status": "shipped"}).json()
        assert [o["userId"] for o in shipped["data"]] == [str(bob)]

    def test_invalid_user_filter(self, order_client):
        assert order_client.get("/api/orders", params={"userId": "nope"}).status_code == 400


class TestGetOrder:
    def test_found_and_missing(self, order_client, db):
        oid = insert_order(db, ObjectId(), 12.5)
        assert order_client.get(f"/api/orders/{oid}").json()["data"]["totalAmount"] == 12.5
        assert order_client.get(f"/api/orders/{ObjectId()}").status_code == 404
        assert order_client.get("/api/orders/garbage").status_code == 404


class TestUpdateStatus:
    def test_any_listed_status_accepted(self, order_client, db, order_metrics):
        oid = insert_order(db, ObjectId(), 10)
        for status in ["cancelled", "pending", "delivered"]:
            response = order_client.put(f"/api/orders/{oid}/status", json={"status": status})
            assert response.status_code == 200
            assert response.json()["message"] == f"Order status updated to {status}"
        assert db["orders"].find_one({"_id": oid})["status"] == "delivered"
        assert order_metrics.sample("orders_completed_total") == 1

    def test_invalid_status(self, order_client, db):
        oid = insert_order(db, ObjectId(), 10)
        response = order_client.put(f"/api/orders/{oid}/status", json={"status": "lost"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid status"
        assert body["validStatuses"] == ["pending", "processing", "shipped", "delivered", "cancelled"]

    def test_unknown_order(self, order_client):
        response = order_client.put(f"/api/orders/{ObjectId()}/status", json={"status": "shipped"})
        assert response.status_code == 404


class TestAnalytics:
    def test_revenue_matches_manual_sum(self, order_client, db):
        now = datetime.now(timezone.utc)
        fixtures = [
            (120.0, "delivered", now - timedelta(days=1)),
            (80.5, "shipped", now - timedelta(days=1)),
            (42.0, "shipped", now - timedelta(days=3)),
            (500.0, "pending", now - timedelta(days=1)),
            (300.0, "cancelled", now - timedelta(days=2)),
            (999.0, "delivered", now - timedelta(days=40)),
        ]
        for total, status, created in fixtures:
            insert_order(db, ObjectId(), total, status=status, created_at=created)

        body = order_client.get("/api/orders/analytics/revenue", params={"days": 30}).json()
        expected = sum(t for t, s, c in fixtures if s in ("delivered", "shipped") and c >= now - timedelta(days=30))
        assert sum(day["totalRevenue"] for day in body["data"]) == pytest.approx(expected)
        assert sum(day["orderCount"] for day in body["data"]) == 3
        assert body["period"] == "30 days"
        dates = [day["_id"]["date"] for day in body["data"]]
        assert dates == sorted(dates)

    def test_top_products(self, order_client, db):
        insert_order(db, ObjectId(), 30, items=[
            {"productId": "a", "name": "A", "price": 10, "quantity": 3, "subtotal": 30},
            {"productId": "b", "name": "B", "price": 5, "quantity": 1, "subtotal": 5},
        ])
        insert_order(db, ObjectId(), 10, items=[
            {"productId": "b", "name": "B", "price": 5, "quantity": 2, "subtotal": 10},
        ])
        data = order_client.get("/api/orders/analytics/top-products").json()["data"]
        assert [p["_id"] for p in data] == ["a", "b"]
        assert data[1]["totalQuantity"] == 3
        assert data[1]["orderCount"] == 2
        assert data[1]["productName"] == "B"
