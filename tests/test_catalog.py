from datetime import datetime, timedelta, timezone

import pytest

import catalog

IMAGE = "https://img.example.com/c.png"


def create_category(client, headers, name, parent=None):
    body = {"name": name, "image": IMAGE}
    if parent:
        body["parent"] = parent
    resp = client.post("/api/categories", json=body, headers=headers)
    assert resp.status_code == 201, resp.json()
    return resp.json()["data"]


# ----------------------- Brands -----------------------
def test_brand_name_unique_case_insensitive(client, admin_headers, brand):
    resp = client.post("/api/brands", json={"name": "ACME"}, headers=admin_headers)
    assert resp.status_code == 409


def test_brand_requires_admin(client, customer_headers):
    assert client.post("/api/brands", json={"name": "Nope"}, headers=customer_headers).status_code == 403
    assert client.post("/api/brands", json={"name": "Nope"}).status_code == 401


def test_brand_status_and_listing(client, admin_headers, brand):
    resp = client.patch(f"/api/brands/{brand['id']}/status", json={"is_active": False}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["message"] == "Brand deactivated successfully"
    assert client.get("/api/brands", params={"is_active": True}).json()["data"] == []


def test_brand_delete_refused_while_referenced(client, admin_headers, brand, make_product):
    product = make_product()
    assert client.delete(f"/api/brands/{brand['id']}", headers=admin_headers).status_code == 409
    client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    assert client.delete(f"/api/brands/{brand['id']}", headers=admin_headers).status_code == 200


def test_invalid_id_is_400(client):
    resp = client.get("/api/brands/not-an-id")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid brand ID format"


# ----------------------- Categories -----------------------
def test_category_slug_and_order(client, admin_headers, category):
    assert category["slug"] == "power-tools"
    assert category["order"] == 1
    second = create_category(client, admin_headers, "Hand Tools & Kits")
    assert second["slug"] == "hand-tools-kits"
    assert second["order"] == 2
    child = create_category(client, admin_headers, "Drills", parent=category["id"])
    assert child["order"] == 0


def test_category_duplicate_slug_conflicts(client, admin_headers, category):
    resp = client.post("/api/categories", json={"name": "Power  Tools", "image": IMAGE}, headers=admin_headers)
    assert resp.status_code == 409


def test_category_missing_parent_is_400(client, admin_headers):
    resp = client.post("/api/categories", json={"name": "Orphan", "image": IMAGE, "parent": "5f0c1b2a3d4e5f6a7b8c9d0e"},
                       headers=admin_headers)
    assert resp.status_code == 400


def test_deactivation_cascades_through_three_levels(client, db, admin_headers):
    root = create_category(client, admin_headers, "Garden")
    child = create_category(client, admin_headers, "Mowers", parent=root["id"])
    grandchild = create_category(client, admin_headers, "Ride-on Mowers", parent=child["id"])

    resp = client.patch(f"/api/categories/{root['id']}/status", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False
    states = {c["slug"]: c["is_active"] for c in db["category"].find()}
    assert states == {"garden": False, "mowers": False, "ride-on-mowers": False}

    resp = client.patch(f"/api/categories/{grandchild['id']}/status", headers=admin_headers)
    assert resp.status_code == 400

    client.patch(f"/api/categories/{root['id']}/status", headers=admin_headers)
    assert all(c["is_active"] for c in db["category"].find())


def test_put_is_active_follows_the_cascade(client, admin_headers):
    parent = create_category(client, admin_headers, "Lighting")
    child = create_category(client, admin_headers, "Lamps", parent=parent["id"])

    resp = client.put(f"/api/categories/{parent['id']}", json={"is_active": False}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["is_active"] is False
    assert client.get(f"/api/categories/{child['id']}").json()["data"]["is_active"] is False

    resp = client.put(f"/api/categories/{child['id']}", json={"is_active": True}, headers=admin_headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot activate category because its parent is inactive"

    resp = client.put(f"/api/categories/{parent['id']}", json={"is_active": True, "description": "Indoor"},
                      headers=admin_headers)
    assert resp.json()["data"]["description"] == "Indoor"
    assert client.get(f"/api/categories/{child['id']}").json()["data"]["is_active"] is True


def test_parent_categories_lists_roots_in_order(client, admin_headers, category):
    create_category(client, admin_headers, "Hand Tools")
    create_category(client, admin_headers, "Drills", parent=category["id"])
    names = [c["name"] for c in client.get("/api/categories/parents").json()["data"]]
    assert names == ["Power Tools", "Hand Tools"]


def test_category_cannot_move_under_descendant(client, admin_headers):
    root = create_category(client, admin_headers, "Kitchen")
    child = create_category(client, admin_headers, "Cookware", parent=root["id"])
    resp = client.put(f"/api/categories/{root['id']}", json={"parent": child["id"]}, headers=admin_headers)
    assert resp.status_code == 400
    resp = client.put(f"/api/categories/{root['id']}", json={"parent": root["id"]}, headers=admin_headers)
    assert resp.status_code == 400


def test_category_tree_and_delete_guard(client, admin_headers):
    root = create_category(client, admin_headers, "Outdoor")
    create_category(client, admin_headers, "Camping", parent=root["id"])
    tree = client.get("/api/categories/tree").json()["data"]
    assert tree[0]["label"] == "Outdoor"
    assert len(tree[0]["children"]) == 1
    assert client.delete(f"/api/categories/{root['id']}", headers=admin_headers).status_code == 400


def test_build_tree_nests_by_parent():
    a, b = {"_id": 1, "name": "a", "parent": None}, {"_id": 2, "name": "b", "parent": 1}
    c = {"_id": 3, "name": "c", "parent": 2}
    tree = catalog.build_tree([a, b, c])
    assert tree[0]["children"][0]["children"][0]["_id"] == 3


# ----------------------- Products -----------------------
@pytest.mark.parametrize("stock,expected", [(0, "out_of_stock"), (5, "low_stock"), (10, "low_stock"),
                                            (11, "in_stock")])
def test_derive_stock_status(stock, expected):
    product = catalog.derive_stock_status({"stock": stock, "track_quantity": True, "low_stock_threshold": 10})
    assert product["stock_status"] == expected


def test_untracked_stock_keeps_given_status():
    product = catalog.derive_stock_status({"stock": 0, "track_quantity": False, "stock_status": "pre_order"})
    assert product["stock_status"] == "pre_order"


def test_create_product_normalises_and_derives(client, make_product):
    product = make_product(stock=0, compare_price=125.0, cost_price=60.0)
    assert product["sku"] == "DRL-001"
    assert product["stock_status"] == "out_of_stock"
    assert product["discount_percentage"] == 20
    assert product["profit_margin"] == 40
    assert product["published_at"]


def test_sku_unique_case_insensitive(client, admin_headers, make_product, brand, category):
    make_product()
    resp = client.post("/api/products", headers=admin_headers, json={
        "product_name": "Other", "sku": "DRL-001", "categories": [category["id"]], "brand_id": brand["id"],
        "price": 10})
    assert resp.status_code == 409


def test_inactive_category_rejected(client, admin_headers, brand, category):
    client.patch(f"/api/categories/{category['id']}/status", headers=admin_headers)
    resp = client.post("/api/products", headers=admin_headers, json={
        "product_name": "Other", "sku": "X1", "categories": [category["id"]],
        "brand_id": brand["id"], "price": 10})
    assert resp.status_code == 400


def test_stock_update_rederives_status(client, admin_headers, make_product):
    product = make_product()
    resp = client.patch(f"/api/products/{product['id']}/stock", json={"stock": 0}, headers=admin_headers)
    assert resp.json()["data"]["stock_status"] == "out_of_stock"
    resp = client.put(f"/api/products/{product['id']}", json={"stock": 50}, headers=admin_headers)
    assert resp.json()["data"]["stock_status"] == "in_stock"


def test_product_detail_has_related(client, make_product):
    first = make_product()
    make_product(sku="drl-002", product_name="Hammer Drill")
    detail = client.get(f"/api/products/{first['id']}").json()["data"]
    assert [p["sku"] for p in detail["related_products"]] == ["DRL-002"]
    assert detail["brand"]["name"] == "Acme"


def test_soft_delete_is_idempotent_and_hidden(client, admin_headers, make_product):
    product = make_product()
    resp = client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    assert resp.json()["data"]["already_deleted"] is False
    resp = client.delete(f"/api/products/{product['id']}", headers=admin_headers)
    assert resp.json()["data"]["already_deleted"] is True
    assert client.get(f"/api/products/{product['id']}").status_code == 404
    assert client.get("/api/products").json()["data"] == []
    deleted = client.get("/api/products/admin", params={"deleted_only": True}, headers=admin_headers).json()
    assert deleted["data"][0]["status"] == "archived"


def test_list_filters(client, make_product):
    make_product(price=50)
    make_product(sku="drl-002", product_name="Impact Driver", price=150)
    resp = client.get("/api/products", params={"min_price": 100})
    assert [p["sku"] for p in resp.json()["data"]] == ["DRL-002"]
    resp = client.get("/api/products", params={"search": "impact"})
    assert len(resp.json()["data"]) == 1


def test_products_by_category_includes_subcategories(client, admin_headers, make_product, category):
    child = create_category(client, admin_headers, "Drills", parent=category["id"])
    make_product(categories=[child["id"]])
    resp = client.get(f"/api/products/category/{category['id']}")
    assert len(resp.json()["data"]) == 1
    resp = client.get(f"/api/category-products/{category['slug']}")
    assert resp.json()["data"]["category"]["slug"] == "power-tools"
    assert len(resp.json()["data"]["products"]) == 1


def test_duplicate_product(client, admin_headers, make_product):
    product = make_product()
    resp = client.post(f"/api/products/{product['id']}/duplicate", headers=admin_headers)
    assert resp.status_code == 201
    copy = resp.json()["data"]
    assert copy["sku"].startswith("DRL-001-COPY-")
    assert copy["product_name"] == "Cordless Drill (Copy)"


def test_bulk_update_reports_failures(client, admin_headers, make_product):
    product = make_product()
    resp = client.put("/api/products/bulk", headers=admin_headers, json={"updates": [
        {"id": product["id"], "data": {"price": 80}},
        {"id": "5f0c1b2a3d4e5f6a7b8c9d0e", "data": {"price": 80}},
    ]})
    result = resp.json()["data"]
    assert len(result["successful"]) == 1
    assert result["failed"][0]["error"] == "Product not found"


def test_featured_excludes_expired(client, admin_headers, make_product):
    current = make_product()
    expired = make_product(sku="drl-002", product_name="Old Drill")
    future = (datetime.now(timezone.utc) + timedelta(days=3)).isoformat()
    past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
    client.patch(f"/api/products/{current['id']}/feature", json={"order": 1, "featured_until": future},
                 headers=admin_headers)
    client.patch(f"/api/products/{expired['id']}/feature", json={"order": 0, "featured_until": past},
                 headers=admin_headers)

    featured = client.get("/api/products/featured").json()["data"]
    assert [p["sku"] for p in featured] == ["DRL-001"]
    admin_view = client.get("/api/products/admin/featured", headers=admin_headers).json()["data"]
    assert len(admin_view) == 2

    client.patch(f"/api/products/{current['id']}/unfeature", headers=admin_headers)
    assert client.get("/api/products/featured").json()["data"] == []


def test_statistics(client, admin_headers, make_product):
    make_product(stock=0)
    make_product(sku="drl-002", stock=3)
    stats = client.get("/api/products/statistics", headers=admin_headers).json()["data"]
    assert stats["total_products"] == 2
    assert stats["out_of_stock_products"] == 1
    assert stats["low_stock_products"] == 1
    low = client.get("/api/products/low-stock", headers=admin_headers).json()["data"]
    assert [p["stock"] for p in low] == [0, 3]
