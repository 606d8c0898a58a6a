import re

import pytest

import notifications


@pytest.fixture(autouse=True)
def quiet_notifications(monkeypatch):
    monkeypatch.setattr(notifications, "notify_new_order", lambda *args: None)


@pytest.fixture
def order(make_order):
    return make_order()


@pytest.fixture
def make_transaction(client, customer_headers):
    def _make(order, headers=None, **overrides):
        body = {"order_id": order["order_number"], "fees": 20, "payment_method": "Credit Card"}
        body.update(overrides)
        resp = client.post("/api/transactions", json=body, headers=headers or customer_headers)
        assert resp.status_code == 201, resp.json()
        return resp.json()["data"]

    return _make


def test_create_defaults_to_order_total(make_transaction, order):
    transaction = make_transaction(order)
    assert re.match(r"^TXN-\d{8}-001$", transaction["transaction_id"])
    assert re.match(r"^INV-\d{8}-001$", transaction["invoice"]["invoice_number"])
    assert transaction["amount"] == pytest.approx(220)
    assert transaction["net_amount"] == pytest.approx(200)
    assert transaction["status"] == "Pending"
    assert transaction["invoice"]["status"] == "Pending"
    assert transaction["customer"]["email"] == "jane@example.com"
    assert transaction["customer"]["name"] == "Jane Doe"


def test_customer_name_at_full_length(client, make_transaction, make_order, customer_headers):
    resp = client.put("/api/auth/update-profile", headers=customer_headers,
                      json={"first_name": "A" * 50, "last_name": "B" * 50})
    assert resp.status_code == 200
    transaction = make_transaction(make_order())
    assert transaction["customer"]["name"] == "A" * 50 + " " + "B" * 50


def test_ids_increment_per_day(make_transaction, make_order, make_product):
    product = make_product()
    first = make_transaction(make_order(product=product))
    second = make_transaction(make_order(product=product))
    assert second["transaction_id"].endswith("-002")
    assert second["invoice"]["invoice_number"].endswith("-002")
    assert first["transaction_id"] != second["transaction_id"]


def test_create_rejections(client, make_transaction, order, customer_headers, other_headers):
    resp = client.post("/api/transactions", json={"order_id": "ORD-19990101-0001"}, headers=customer_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order not found"

    resp = client.post("/api/transactions", json={"order_id": order["order_number"]}, headers=other_headers)
    assert resp.status_code == 403

    resp = client.post("/api/transactions", json={"order_id": order["order_number"], "fees": 500},
                       headers=customer_headers)
    assert resp.status_code == 400

    make_transaction(order)
    resp = client.post("/api/transactions", json={"order_id": order["order_number"]}, headers=customer_headers)
    assert resp.status_code == 409
    assert resp.json()["message"] == "Transaction already exists for this order"


def test_complete_marks_order_paid(client, db, make_transaction, order, admin_headers, customer_headers):
    transaction = make_transaction(order)
    url = f"/api/transactions/{transaction['id']}/complete"
    assert client.patch(url, headers=customer_headers).status_code == 403

    resp = client.patch(url, headers=admin_headers, json={"gateway_transaction_id": "gw_123"})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "Completed"
    assert data["invoice"]["status"] == "Paid"
    assert data["gateway_transaction_id"] == "gw_123"

    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["payment_info"]["payment_status"] == "paid"
    assert stored["payment_info"]["transaction_id"] == transaction["transaction_id"]

    assert client.patch(url, headers=admin_headers).status_code == 400


def test_refund_partial_then_full(client, db, make_transaction, order, admin_headers):
    transaction = make_transaction(order)
    base = f"/api/transactions/{transaction['id']}"
    resp = client.patch(f"{base}/refund", headers=admin_headers, json={"amount": 50})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Only completed or partially refunded transactions can be refunded"

    client.patch(f"{base}/complete", headers=admin_headers)
    resp = client.patch(f"{base}/refund", headers=admin_headers, json={"amount": 50, "reason": "Damaged box"})
    assert resp.json()["data"]["status"] == "Partially Refunded"
    assert resp.json()["data"]["refund_amount"] == pytest.approx(50)

    resp = client.patch(f"{base}/refund", headers=admin_headers, json={"amount": 151})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Refund amount cannot exceed net amount"

    resp = client.patch(f"{base}/refund", headers=admin_headers, json={"amount": 150})
    assert resp.json()["data"]["status"] == "Refunded"
    stored = db["order"].find_one({"order_number": order["order_number"]})
    assert stored["payment_info"]["payment_status"] == "refunded"
    assert stored["refund_amount"] == pytest.approx(200)

    assert client.patch(f"{base}/refund", headers=admin_headers, json={"amount": 1}).status_code == 400


def test_fail_and_void_only_from_pending(client, db, make_transaction, make_order, make_product, admin_headers):
    product = make_product()
    failed_order = make_order(product=product)
    failing = make_transaction(failed_order)
    resp = client.patch(f"/api/transactions/{failing['id']}/fail", headers=admin_headers,
                        json={"reason": "Card declined"})
    assert resp.json()["data"]["status"] == "Failed"
    assert resp.json()["data"]["failure_reason"] == "Card declined"
    stored = db["order"].find_one({"order_number": failed_order["order_number"]})
    assert stored["payment_info"]["payment_status"] == "failed"
    assert client.patch(f"/api/transactions/{failing['id']}/void", headers=admin_headers).status_code == 400

    voiding = make_transaction(make_order(product=product))
    resp = client.patch(f"/api/transactions/{voiding['id']}/void", headers=admin_headers)
    assert resp.json()["data"]["status"] == "Cancelled"
    assert resp.json()["data"]["invoice"]["status"] == "Cancelled"
    assert client.patch(f"/api/transactions/{voiding['id']}/fail", headers=admin_headers).status_code == 400


def test_visibility_is_scoped_to_order_owner(client, make_transaction, order, customer_headers, other_headers,
                                             admin_headers):
    transaction = make_transaction(order)
    assert client.get(f"/api/transactions/{transaction['id']}", headers=customer_headers).status_code == 200
    resp = client.get(f"/api/transactions/{transaction['id']}", headers=other_headers)
    assert resp.status_code == 403
    assert resp.json()["message"] == "You do not have permission to view this transaction"

    assert client.get("/api/transactions/my-transactions", headers=customer_headers).json()["meta"]["count"] == 1
    assert client.get("/api/transactions/my-transactions", headers=other_headers).json()["meta"]["count"] == 0
    assert client.get("/api/transactions/admin/all", headers=other_headers).status_code == 403
    listed = client.get("/api/transactions/admin/all", headers=admin_headers,
                        params={"customer": "JANE@example.com"}).json()
    assert listed["meta"]["count"] == 1


def test_update_recomputes_net_and_invoice_status(client, make_transaction, order, admin_headers):
    transaction = make_transaction(order)
    resp = client.put(f"/api/transactions/{transaction['id']}", headers=admin_headers,
                      json={"fees": 5, "invoice_status": "Overdue"})
    data = resp.json()["data"]
    assert data["net_amount"] == pytest.approx(215)
    assert data["invoice"]["status"] == "Overdue"


def test_delete_and_stats(client, make_transaction, make_order, make_product, admin_headers):
    product = make_product()
    completed = make_transaction(make_order(product=product))
    client.patch(f"/api/transactions/{completed['id']}/complete", headers=admin_headers)
    removed = make_transaction(make_order(product=product))
    assert client.delete(f"/api/transactions/{removed['id']}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/transactions/{removed['id']}", headers=admin_headers).status_code == 404

    stats = client.get("/api/transactions/admin/stats", headers=admin_headers).json()["data"]
    assert stats["total_transactions"] == 1
    summary = stats["revenue_summary"]
    assert summary["total_transactions"] == 1
    assert summary["total_amount"] == pytest.approx(220)
    assert summary["total_fees"] == pytest.approx(20)
    assert summary["average_transaction_value"] == pytest.approx(220)
    assert len(stats["recent_transactions"]) == 1
