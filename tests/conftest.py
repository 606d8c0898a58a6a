import mongomock
import pytest
from fastapi.testclient import TestClient

import accounts
import addresses
import catalog
import database
import main
import orders
import payments
import promotions
import security

DB_MODULES = (database, security, accounts, catalog, addresses, orders, payments, promotions, main)


@pytest.fixture
def db(monkeypatch):
    mock_db = mongomock.MongoClient()["ecommerce_test"]
    for module in DB_MODULES:
        monkeypatch.setattr(module, "db", mock_db)
    security.login_attempts.clear()
    security.pending_registrations.clear()
    database.ensure_indexes()
    return mock_db


@pytest.fixture
def client(db):
    return TestClient(main.app)


def auth_headers(user: dict) -> dict:
    access_token, _ = security.create_tokens(user["_id"])
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def customer(db):
    return accounts.create_user("jane_doe", "jane@example.com", "secret123", "Jane", "Doe", "+61400111222")


@pytest.fixture
def other_customer(db):
    return accounts.create_user("john_roe", "john@example.com", "secret123", "John", "Roe", "+61400333444")


@pytest.fixture
def admin(db):
    return accounts.create_user("admin", "admin@example.com", "adminpass", "Ada", "Admin", role="admin")


@pytest.fixture
def customer_headers(customer):
    return auth_headers(customer)


@pytest.fixture
def other_headers(other_customer):
    return auth_headers(other_customer)


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def brand(client, admin_headers):
    resp = client.post("/api/brands", json={"name": "Acme"}, headers=admin_headers)
    assert resp.status_code == 201
    return resp.json()["data"]


@pytest.fixture
def category(client, admin_headers):
    resp = client.post("/api/categories", json={"name": "Power Tools", "image": "https://img.example.com/p.png"},
                       headers=admin_headers)
    assert resp.status_code == 201
    return resp.json()["data"]


@pytest.fixture
def make_product(client, admin_headers, brand, category):
    def _make(**overrides):
        body = {
            "product_name": "Cordless Drill",
            "sku": "drl-001",
            "categories": [category["id"]],
            "brand_id": brand["id"],
            "price": 100.0,
            "stock": 25,
            "tax_rate": 10,
            "is_published": True,
        }
        body.update(overrides)
        resp = client.post("/api/products", json=body, headers=admin_headers)
        assert resp.status_code == 201, resp.json()
        return resp.json()["data"]

    return _make


@pytest.fixture
def shipping_address():
    return {
        "first_name": "Jane",
        "last_name": "Doe",
        "address_line1": "1 George St",
        "city": "Sydney",
        "state": "NSW",
        "country": "Australia",
        "postal_code": "2000",
        "phone": "+61400111222",
    }


@pytest.fixture
def make_order(client, customer_headers, make_product, shipping_address):
    def _make(headers=None, product=None, **overrides):
        product = product or make_product()
        body = {"items": [{"product": product["id"], "quantity": 2}], "shipping_address": shipping_address}
        body.update(overrides)
        resp = client.post("/api/orders", json=body, headers=headers or customer_headers)
        assert resp.status_code == 201, resp.json()
        return resp.json()["data"]

    return _make
