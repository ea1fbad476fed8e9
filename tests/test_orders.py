import re

import pytest
from bson import ObjectId

import orders
from conftest import bearer
from database import db
from orders import OrderConflict, OrderStateError, check_transition, transition_order
from schemas import OrderStatus
from stock import reserve_stock


def product_stock(product):
    return db["product"].find_one({"_id": ObjectId(product["id"])})["stock"]


def test_checkout_empty_cart(client, customer_headers):
    res = client.post("/api/orders/checkout", json={"payment_type": "CASH"}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cart is empty"


def test_checkout_creates_pending_order(client, customer_headers, make_product, place_order):
    crisps = make_product("Crisps", price=0.8, stock=10)
    order = place_order(crisps, quantity=3)

    assert re.match(r"^ORD-[0-9A-Z]+-[0-9A-Z]{4}$", order["order_number"])
    assert order["status"] == "PENDING"
    assert order["payment_type"] == "CASH"
    assert order["total_amount"] == 2.4
    assert order["total_items"] == 3
    assert order["items"][0]["name"] == "Crisps"
    assert order["items"][0]["subtotal"] == 2.4
    assert order["next_step"]["url"] == f"/api/orders/generate-qr/{order['id']}"

    assert product_stock(crisps) == 7
    cart = client.get("/api/cart", headers=customer_headers).json()["data"]
    assert cart["items"] == []


def test_checkout_defaults_to_cash(client, customer_headers, make_product):
    crisps = make_product()
    client.post("/api/cart/add", json={"product_id": crisps["id"]}, headers=customer_headers)
    res = client.post("/api/orders/checkout", headers=customer_headers)
    assert res.status_code == 201
    assert res.json()["data"]["payment_type"] == "CASH"


def test_paynow_checkout_points_to_payment(make_product, place_order):
    order = place_order(make_product(), payment_type="PAYNOW")
    assert order["next_step"]["url"] == f"/api/orders/pay/paynow/{order['id']}"


def test_checkout_rechecks_stock(client, admin_headers, customer_headers, make_product):
    crisps = make_product("Crisps", stock=5)
    cola = make_product("Cola", stock=5)
    client.post("/api/cart/add", json={"product_id": crisps["id"], "quantity": 2}, headers=customer_headers)
    client.post("/api/cart/add", json={"product_id": cola["id"], "quantity": 4}, headers=customer_headers)
    client.patch(f"/api/products/{cola['id']}/stock", json={"stock": 3}, headers=admin_headers)

    res = client.post("/api/orders/checkout", json={"payment_type": "CASH"}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Insufficient stock for Cola"
    assert product_stock(crisps) == 5
    assert product_stock(cola) == 3
    assert db["order"].count_documents({}) == 0
    assert len(client.get("/api/cart", headers=customer_headers).json()["data"]["items"]) == 2


def test_checkout_with_deleted_product(client, admin_headers, customer_headers, make_product):
    crisps = make_product()
    client.post("/api/cart/add", json={"product_id": crisps["id"]}, headers=customer_headers)
    client.delete(f"/api/products/{crisps['id']}", headers=admin_headers)
    res = client.post("/api/orders/checkout", headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == f"Product {crisps['id']} is no longer available"


def test_list_and_get_own_orders(client, register, customer_headers, make_product, place_order):
    order = place_order(make_product())
    orders = client.get("/api/orders", headers=customer_headers).json()["data"]
    assert [o["id"] for o in orders] == [order["id"]]
    assert orders[0]["payment_qr"] is None

    res = client.get(f"/api/orders/{order['id']}", headers=customer_headers)
    assert res.status_code == 200

    other = bearer(register("bob@example.com", "Bob")["access_token"])
    assert client.get(f"/api/orders/{order['id']}", headers=other).status_code == 404
    assert client.get("/api/orders", headers=other).json()["data"] == []


def test_customer_cancel_releases_stock(client, customer_headers, make_product, place_order):
    crisps = make_product(stock=5)
    order = place_order(crisps, quantity=2)
    assert product_stock(crisps) == 3

    res = client.post(f"/api/orders/cancel/{order['id']}", headers=customer_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "CANCELLED"
    assert data["cancel_reason"] == "Cancelled by customer"
    assert data["cancelled_at"]
    assert product_stock(crisps) == 5

    res = client.post(f"/api/orders/cancel/{order['id']}", headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Only pending orders can be cancelled"
    assert product_stock(crisps) == 5


def test_admin_completes_cash_order(client, admin_headers, make_product, place_order):
    order = place_order(make_product())
    res = client.patch(f"/api/orders/admin/complete/{order['id']}", headers=admin_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "COMPLETED"
    assert data["completed_at"]
    assert data["paid_at"]
    assert data["qr_status"] == "EXPIRED"

    res = client.patch(f"/api/orders/admin/complete/{order['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Order already completed"

    res = client.patch(f"/api/orders/admin/reject/{order['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot reject completed order"


def test_unpaid_paynow_order_cannot_be_completed(client, admin_headers, make_product, place_order):
    order = place_order(make_product(), payment_type="PAYNOW")
    res = client.patch(f"/api/orders/admin/complete/{order['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "PayNow order must be paid first"


def test_admin_reject_releases_stock(client, admin_headers, make_product, place_order):
    crisps = make_product(stock=5)
    order = place_order(crisps, quantity=5)
    assert product_stock(crisps) == 0

    res = client.patch(
        f"/api/orders/admin/reject/{order['id']}", json={"reason": "Out of crisps"}, headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["data"]["status"] == "CANCELLED"
    assert res.json()["data"]["cancel_reason"] == "Out of crisps"
    assert product_stock(crisps) == 5

    res = client.patch(f"/api/orders/admin/reject/{order['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Order already cancelled"
    assert product_stock(crisps) == 5


def test_reject_without_reason(client, admin_headers, make_product, place_order):
    order = place_order(make_product())
    res = client.patch(f"/api/orders/admin/reject/{order['id']}", headers=admin_headers)
    assert res.json()["data"]["cancel_reason"] == "Rejected by admin"


def test_admin_order_list_and_stats(client, admin_headers, make_product, place_order):
    crisps = make_product(price=2.0, stock=20)
    first = place_order(crisps)
    place_order(crisps, payment_type="PAYNOW")
    place_order(crisps)
    client.patch(f"/api/orders/admin/complete/{first['id']}", headers=admin_headers)

    res = client.get("/api/orders/admin/all", params={"limit": 2}, headers=admin_headers)
    data = res.json()["data"]
    assert len(data["orders"]) == 2
    assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
    assert data["orders"][0]["user"]["email"] == "alice@example.com"

    res = client.get("/api/orders/admin/all", params={"payment_type": "PAYNOW"}, headers=admin_headers)
    assert res.json()["data"]["pagination"]["total"] == 1
    res = client.get("/api/orders/admin/all", params={"status": "COMPLETED"}, headers=admin_headers)
    assert [o["id"] for o in res.json()["data"]["orders"]] == [first["id"]]

    stats = client.get("/api/orders/admin/stats", headers=admin_headers).json()["data"]
    assert stats["orders"] == {"pending": 2, "paid": 0, "completed": 1, "cancelled": 0, "total": 3}
    assert stats["revenue"] == 2.0


@pytest.mark.parametrize("status, payment_type, target, allowed", [
    ("PENDING", "CASH", OrderStatus.COMPLETED, True),
    ("PENDING", "CASH", OrderStatus.CANCELLED, True),
    ("PENDING", "CASH", OrderStatus.PAID, False),
    ("PENDING", "PAYNOW", OrderStatus.PAID, True),
    ("PENDING", "PAYNOW", OrderStatus.COMPLETED, False),
    ("PAID", "PAYNOW", OrderStatus.COMPLETED, True),
    ("PAID", "PAYNOW", OrderStatus.CANCELLED, True),
    ("COMPLETED", "CASH", OrderStatus.CANCELLED, False),
    ("COMPLETED", "PAYNOW", OrderStatus.PAID, False),
    ("CANCELLED", "CASH", OrderStatus.COMPLETED, False),
    ("CANCELLED", "PAYNOW", OrderStatus.PENDING, False),
])
def test_transition_table(status, payment_type, target, allowed):
    order = {"status": status, "payment_type": payment_type}
    if allowed:
        check_transition(order, target)
    else:
        with pytest.raises(OrderStateError):
            check_transition(order, target)


def test_stale_transition_is_a_conflict(make_product, place_order):
    crisps = make_product(stock=5)
    order = place_order(crisps, quantity=2)
    stale = db["order"].find_one({"_id": ObjectId(order["id"])})

    transition_order(stale, OrderStatus.CANCELLED)
    assert product_stock(crisps) == 5

    with pytest.raises(OrderConflict):
        transition_order(stale, OrderStatus.COMPLETED)
    assert db["order"].find_one({"_id": stale["_id"]})["status"] == "CANCELLED"
    assert product_stock(crisps) == 5


def test_complete_after_concurrent_cancel_returns_409(
    client, admin_headers, customer_headers, make_product, place_order, monkeypatch,
):
    crisps = make_product(stock=5)
    order = place_order(crisps, quantity=2)
    stale = db["order"].find_one({"_id": ObjectId(order["id"])})
    client.post(f"/api/orders/cancel/{order['id']}", headers=customer_headers)

    monkeypatch.setattr(orders, "get_order_or_404", lambda order_id, user_id=None: stale)
    res = client.patch(f"/api/orders/admin/complete/{order['id']}", headers=admin_headers)
    assert res.status_code == 409
    assert res.json() == {"success": False, "message": "Order status changed concurrently. Reload and try again."}
    assert db["order"].find_one({"_id": stale["_id"]})["status"] == "CANCELLED"
    assert product_stock(crisps) == 5


def test_checkout_reports_stock_sold_during_checkout(client, customer_headers, make_product, monkeypatch):
    crisps = make_product("Crisps", stock=5)
    client.post("/api/cart/add", json={"product_id": crisps["id"], "quantity": 2}, headers=customer_headers)

    def reserve_after_rival_sale(items):
        db["product"].update_one({"_id": ObjectId(crisps["id"])}, {"$set": {"stock": 1}})
        reserve_stock(items)

    monkeypatch.setattr(orders, "reserve_stock", reserve_after_rival_sale)
    res = client.post("/api/orders/checkout", headers=customer_headers)
    assert res.status_code == 400
    assert res.json() == {
        "success": False,
        "message": "Insufficient stock for Crisps",
        "data": {"available": 1, "requested": 2},
    }
    assert product_stock(crisps) == 1
    assert db["order"].count_documents({}) == 0
    cart = client.get("/api/cart", headers=customer_headers).json()["data"]
    assert cart["total_items"] == 2
