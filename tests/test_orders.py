import re

import pytest

import notifications
import orders


@pytest.fixture(autouse=True)
def quiet_notifications(monkeypatch):
    sent = []
    for name in ("notify_new_order", "notify_status_update", "notify_cancellation"):
        monkeypatch.setattr(notifications, name, lambda *args, _name=name: sent.append((_name, args)))
    return sent


def test_price_line_discount_then_tax():
    line = orders.price_line(50.0, 4, discount=10, tax_rate=10)
    assert line["gross"] == 200
    assert line["discount_amount"] == pytest.approx(20)
    assert line["subtotal"] == pytest.approx(180)
    assert line["tax_amount"] == pytest.approx(18)
    assert line["total_price"] == pytest.approx(198)


@pytest.mark.parametrize("discount,tax,total", [(0, 0, 200), (100, 10, 0), (0, 10, 220)])
def test_price_line_bounds(discount, tax, total):
    assert orders.price_line(100.0, 2, discount, tax)["total_price"] == pytest.approx(total)


def test_order_totals_do_not_discount_twice():
    items = [
        {"unit_price": 100.0, "quantity": 2, **orders.price_line(100.0, 2, 10, 10)},
        {"unit_price": 25.0, "quantity": 1, **orders.price_line(25.0, 1)},
    ]
    totals = orders.order_totals(items, shipping_cost=15)
    assert totals["subtotal"] == 225
    assert totals["total_discount"] == pytest.approx(20)
    assert totals["total_tax"] == pytest.approx(18)
    assert totals["total_amount"] == pytest.approx(225 - 20 + 18 + 15)


def test_create_order_prices_from_catalog(client, make_order, quiet_notifications):
    order = make_order(shipping_cost=10)
    assert re.match(r"^ORD-\d{8}-0001$", order["order_number"])
    item = order["items"][0]
    assert item["unit_price"] == 100
    assert item["tax_rate"] == 10
    assert item["sku"] == "DRL-001"
    assert order["total_amount"] == pytest.approx(230)
    assert order["status"] == "pending"
    assert order["payment_info"]["payment_status"] == "pending"
    assert order["tracking_history"][0]["notes"] == "Order created"
    assert quiet_notifications[0][0] == "notify_new_order"


def test_order_numbers_increment(client, make_order, make_product):
    product = make_product()
    first = make_order(product=product)
    second = make_order(product=product)
    assert int(second["order_number"][-4:]) == int(first["order_number"][-4:]) + 1


def test_unknown_product_rejected(client, customer_headers, shipping_address):
    resp = client.post("/api/orders", headers=customer_headers, json={
        "items": [{"product": "5f0c1b2a3d4e5f6a7b8c9d0e", "quantity": 1}], "shipping_address": shipping_address})
    assert resp.status_code == 400
    assert "not found" in resp.json()["message"]


def test_shipping_falls_back_to_default_address(client, customer_headers, make_product):
    product = make_product()
    body = {"items": [{"product": product["id"], "quantity": 1}]}
    resp = client.post("/api/orders", headers=customer_headers, json=body)
    assert resp.status_code == 400
    assert "no default address" in resp.json()["message"]

    client.post("/api/addresses", headers=customer_headers,
                json={"street": "5 Pitt St", "city": "Sydney", "state": "NSW", "country": "Australia"})
    resp = client.post("/api/orders", headers=customer_headers, json=body)
    assert resp.status_code == 201
    shipping = resp.json()["data"]["shipping_address"]
    assert shipping["address_line1"] == "5 Pitt St"
    assert shipping["first_name"] == "Jane"


def test_default_address_with_long_street(client, customer_headers, make_product):
    product = make_product()
    street = "S" * 150
    resp = client.post("/api/addresses", headers=customer_headers,
                       json={"street": street, "city": "Sydney", "country": "Australia"})
    assert resp.status_code == 201
    resp = client.post("/api/orders", headers=customer_headers,
                       json={"items": [{"product": product["id"], "quantity": 1}]})
    assert resp.status_code == 201
    assert resp.json()["data"]["shipping_address"]["address_line1"] == street


def test_orders_are_scoped_to_owner(client, make_order, other_headers, customer_headers, admin_headers):
    order = make_order()
    assert client.get(f"/api/orders/{order['id']}", headers=other_headers).status_code == 403
    assert client.get(f"/api/orders/{order['id']}", headers=customer_headers).status_code == 200
    assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200

    assert client.get("/api/orders", headers=other_headers).json()["meta"]["pagination"]["total"] == 0
    assert client.get("/api/orders", headers=admin_headers).json()["meta"]["pagination"]["total"] == 1
    mine = client.get("/api/orders/my-orders", headers=customer_headers).json()
    assert mine["meta"]["count"] == 1


def test_owner_update_limited_to_addresses_and_notes(client, make_order, customer_headers, admin_headers):
    order = make_order()
    resp = client.put(f"/api/orders/{order['id']}", headers=customer_headers,
                      json={"notes": "Leave at door", "status": "delivered", "shipping_cost": 0})
    data = resp.json()["data"]
    assert data["notes"] == "Leave at door"
    assert data["status"] == "pending"

    resp = client.put(f"/api/orders/{order['id']}", headers=admin_headers, json={"shipping_cost": 20})
    assert resp.json()["data"]["total_amount"] == pytest.approx(240)


def test_status_update_tracks_history(client, make_order, customer_headers, admin_headers, quiet_notifications):
    order = make_order()
    assert client.patch(f"/api/orders/{order['id']}/status", headers=customer_headers,
                        json={"status": "shipped"}).status_code == 403

    resp = client.patch(f"/api/orders/{order['id']}/status", headers=admin_headers,
                        json={"status": "shipped", "tracking_number": "TRK123"})
    assert resp.json()["data"]["tracking_number"] == "TRK123"
    resp = client.patch(f"/api/orders/{order['id']}/status", headers=admin_headers, json={"status": "delivered"})
    data = resp.json()["data"]
    assert data["actual_delivery_date"]
    assert [t["status"] for t in data["tracking_history"]] == ["pending", "shipped", "delivered"]
    assert quiet_notifications[-1][0] == "notify_status_update"


def test_admin_put_status_stamps_lifecycle_fields(client, make_order, make_product, admin, admin_headers):
    product = make_product()
    delivered = make_order(product=product)
    data = client.put(f"/api/orders/{delivered['id']}", headers=admin_headers,
                      json={"status": "delivered"}).json()["data"]
    assert data["actual_delivery_date"]
    assert data["tracking_history"][-1]["status"] == "delivered"

    cancelled = make_order(product=product)
    data = client.put(f"/api/orders/{cancelled['id']}", headers=admin_headers,
                      json={"status": "cancelled"}).json()["data"]
    assert data["cancelled_at"]
    assert data["cancelled_by"] == str(admin["_id"])
    assert "actual_delivery_date" not in data


def test_cancel_rules(client, make_order, make_product, customer_headers, other_headers, admin_headers):
    product = make_product()
    order = make_order(product=product)
    assert client.patch(f"/api/orders/{order['id']}/cancel", headers=other_headers).status_code == 403
    resp = client.patch(f"/api/orders/{order['id']}/cancel", headers=customer_headers,
                        json={"reason": "Changed my mind"})
    assert resp.status_code == 200
    assert resp.json()["data"]["cancellation_reason"] == "Changed my mind"

    shipped = make_order(product=product)
    client.patch(f"/api/orders/{shipped['id']}/status", headers=admin_headers, json={"status": "shipped"})
    resp = client.patch(f"/api/orders/{shipped['id']}/cancel", headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order cannot be cancelled when status is shipped"


def test_delete_hides_order_and_stats(client, make_order, make_product, customer_headers, admin_headers):
    product = make_product()
    kept = make_order(product=product)
    cancelled = make_order(product=product)
    deleted = make_order(product=product)
    client.patch(f"/api/orders/{cancelled['id']}/cancel", headers=customer_headers)
    assert client.delete(f"/api/orders/{deleted['id']}", headers=customer_headers).status_code == 403
    assert client.delete(f"/api/orders/{deleted['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/orders/{deleted['id']}", headers=customer_headers).status_code == 403

    stats = client.get("/api/orders/admin/stats", headers=admin_headers).json()["data"]
    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == pytest.approx(kept["total_amount"])
    counts = {s["status"]: s["count"] for s in stats["status_stats"]}
    assert counts == {"pending": 2, "cancelled": 1}
