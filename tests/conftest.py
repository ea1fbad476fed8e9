import os

import mongomock
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "mongodb://localhost:27017")
os.environ.setdefault("DATABASE_NAME", "etuckshop_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("REFRESH_TOKEN_SECRET", "test-refresh-secret")

with mongomock.patch(servers=(("localhost", 27017),)):
    import main

import auth
from database import db
from helpers import analytics_cache
from schemas import Role


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(autouse=True)
def clean_db():
    yield
    analytics_cache.clear()
    for name in db.list_collection_names():
        db.drop_collection(name)


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def admin_user():
    return auth.create_user("Admin", "admin@example.com", "adminpass", role=Role.ADMIN)


@pytest.fixture
def admin_headers(admin_user):
    return bearer(auth.create_access_token(admin_user))


@pytest.fixture
def register(client):
    def _register(email="alice@example.com", name="Alice", password="secret123"):
        res = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _register


@pytest.fixture
def customer_headers(register):
    return bearer(register()["access_token"])


@pytest.fixture
def make_category(client, admin_headers):
    def _make(name="Snacks", description=None):
        res = client.post("/api/categories", json={"name": name, "description": description}, headers=admin_headers)
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _make


@pytest.fixture
def make_product(client, admin_headers, make_category):
    default_category = {}

    def _make(name="Crisps", price=1.5, stock=10, category_id=None, description=""):
        if category_id is None:
            if not default_category:
                default_category.update(make_category("General"))
            category_id = default_category["id"]
        res = client.post(
            "/api/products",
            json={"name": name, "price": price, "stock": stock, "category_id": category_id, "description": description},
            headers=admin_headers,
        )
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _make


@pytest.fixture
def place_order(client, customer_headers):
    def _place(product, quantity=1, payment_type="CASH", headers=None):
        headers = headers or customer_headers
        res = client.post("/api/cart/add", json={"product_id": product["id"], "quantity": quantity}, headers=headers)
        assert res.status_code == 200, res.json()
        res = client.post("/api/orders/checkout", json={"payment_type": payment_type}, headers=headers)
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _place
