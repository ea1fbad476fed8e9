from conftest import bearer


def test_list_customers_excludes_admins(client, admin_headers, register):
    register("alice@example.com", "Alice")
    register("bob@example.com", "Bob")

    data = client.get("/api/customers", headers=admin_headers).json()["data"]
    assert sorted(c["email"] for c in data["customers"]) == ["alice@example.com", "bob@example.com"]
    assert data["pagination"]["total"] == 2
    assert all("password_hash" not in c for c in data["customers"])

    data = client.get("/api/customers", params={"search": "BOB"}, headers=admin_headers).json()["data"]
    assert [c["name"] for c in data["customers"]] == ["Bob"]


def test_customer_details_and_stats(client, admin_headers, customer_headers, make_product, place_order):
    crisps = make_product(price=2.0, stock=10)
    completed = place_order(crisps, quantity=2)
    place_order(crisps)
    client.patch(f"/api/orders/admin/complete/{completed['id']}", headers=admin_headers)
    customer_id = completed["user_id"]

    res = client.get(f"/api/customers/{customer_id}", headers=admin_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["customer"]["email"] == "alice@example.com"
    assert data["stats"]["total_orders"] == 2
    assert data["stats"]["total_spent"] == 4.0
    assert data["stats"]["average_order_value"] == 4.0
    assert data["stats"]["status_breakdown"]["completed"] == 1
    assert data["stats"]["status_breakdown"]["pending"] == 1
    assert len(data["recent_orders"]) == 2

    listed = client.get("/api/customers", headers=admin_headers).json()["data"]["customers"][0]
    assert listed["total_orders"] == 2
    assert listed["total_spent"] == 4.0
    assert listed["last_order"]["order_number"]

    stats = client.get("/api/customers/stats", headers=admin_headers).json()["data"]
    assert stats["total_customers"] == 1
    assert stats["active_customers"] == 1
    assert stats["inactive_customers"] == 0
    assert stats["new_customers_this_month"] == 1
    assert stats["top_customers"][0]["total_spent"] == 4.0


def test_customer_lookup_errors(client, admin_headers, admin_user):
    res = client.get("/api/customers/507f1f77bcf86cd799439011", headers=admin_headers)
    assert res.status_code == 404
    assert res.json()["message"] == "Customer not found"

    res = client.get(f"/api/customers/{admin_user['_id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "User is not a customer"


def test_delete_customer(client, admin_headers, admin_user, register, make_product, place_order):
    carol = register("carol@example.com", "Carol")
    bob = register("bob@example.com", "Bob")
    place_order(make_product(), headers=bearer(carol["access_token"]))

    res = client.delete(f"/api/customers/{carol['user']['id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot delete customer. They have 1 order(s)."

    res = client.delete(f"/api/customers/{admin_user['_id']}", headers=admin_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot delete admin users"

    res = client.delete(f"/api/customers/{bob['user']['id']}", headers=admin_headers)
    assert res.status_code == 200
    assert client.get(f"/api/customers/{bob['user']['id']}", headers=admin_headers).status_code == 404
