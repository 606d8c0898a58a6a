import logging
import math
import re
import time
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

import storage
from database import as_utc, create_document, db, get_documents, to_object_id, utcnow
from errors import ConflictError, NotFoundError, ValidationError
from schemas import (
    Brand as BrandSchema,
    BrandCreateBody,
    BrandUpdateBody,
    Category as CategorySchema,
    CategoryCreateBody,
    CategoryOrderItem,
    CategoryUpdateBody,
    ProductCreateBody,
    ProductUpdateBody,
)

logger = logging.getLogger(__name__)

NOT_DELETED = {"deleted_at": None}
RELATED_LIMIT = 5


def _regex(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


def parse_sort(sort: Optional[str], default: str = "-created_at") -> list:
    fields = []
    for part in (sort or default).split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("-"):
            fields.append((part[1:], -1))
        else:
            fields.append((part, 1))
    return fields or [("created_at", -1)]


# ----------------------- Brands -----------------------
def _brand_name_filter(name: str) -> dict:
    return {"name": {"$regex": f"^{re.escape(name.strip())}$", "$options": "i"}}


def get_brand(brand_id: str) -> dict:
    brand = db["brand"].find_one({"_id": to_object_id(brand_id, "brand")})
    if not brand:
        raise NotFoundError("Brand")
    return brand


def create_brand(body: BrandCreateBody) -> dict:
    if db["brand"].find_one(_brand_name_filter(body.name)):
        raise ConflictError("Brand with this name already exists")
    brand = BrandSchema(name=body.name.strip(), logo=body.logo, is_active=body.is_active)
    brand_id = create_document("brand", brand)
    logger.info("Brand created: %s", brand.name)
    return db["brand"].find_one({"_id": ObjectId(brand_id)})


def list_brands(is_active: Optional[bool] = None, search: Optional[str] = None) -> list:
    filt = {}
    if is_active is not None:
        filt["is_active"] = is_active
    if search:
        filt["name"] = _regex(search)
    return list(db["brand"].find(filt).sort("name", 1))


def update_brand(brand_id: str, body: BrandUpdateBody) -> dict:
    brand = get_brand(brand_id)
    data = body.model_dump(exclude_none=True)
    if "name" in data:
        data["name"] = data["name"].strip()
        clash = db["brand"].find_one({**_brand_name_filter(data["name"]), "_id": {"$ne": brand["_id"]}})
        if clash:
            raise ConflictError("Brand with this name already exists")
    if data.get("logo") and brand.get("logo") and data["logo"] != brand["logo"]:
        storage.delete_file(brand["logo"])
    data["updated_at"] = utcnow()
    return db["brand"].find_one_and_update({"_id": brand["_id"]}, {"$set": data},
                                           return_document=ReturnDocument.AFTER)


def set_brand_status(brand_id: str, is_active: bool) -> dict:
    brand = get_brand(brand_id)
    return db["brand"].find_one_and_update({"_id": brand["_id"]},
                                           {"$set": {"is_active": is_active, "updated_at": utcnow()}},
                                           return_document=ReturnDocument.AFTER)


def delete_brand(brand_id: str) -> dict:
    brand = get_brand(brand_id)
    in_use = db["product"].count_documents({"brand_id": brand["_id"], **NOT_DELETED})
    if in_use:
        raise ConflictError(f"Cannot delete brand: {in_use} product(s) still reference it")
    db["brand"].delete_one({"_id": brand["_id"]})
    storage.delete_file(brand.get("logo"))
    logger.info("Brand deleted: %s", brand["name"])
    return brand


# ----------------------- Categories -----------------------
def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def _category(category_id) -> dict:
    category = db["category"].find_one({"_id": to_object_id(category_id, "category")})
    if not category:
        raise NotFoundError("Category")
    return category


def get_category(category_id: str) -> dict:
    category = _category(category_id)
    category["children"] = list(db["category"].find({"parent": category["_id"]}).sort([("order", 1), ("name", 1)]))
    return category


def descendant_ids(category_id: ObjectId) -> List[ObjectId]:
    seen = {category_id}
    found = []
    frontier = [category_id]
    while frontier:
        children = db["category"].find({"parent": {"$in": frontier}}, {"_id": 1})
        frontier = []
        for child in children:
            if child["_id"] in seen:
                continue
            seen.add(child["_id"])
            found.append(child["_id"])
            frontier.append(child["_id"])
    return found


def _check_slug(slug: str, exclude_id: Optional[ObjectId] = None):
    query = {"slug": slug}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["category"].find_one(query):
        raise ConflictError("Category with this slug already exists")


def create_category(body: CategoryCreateBody) -> dict:
    parent_id = None
    if body.parent:
        parent_id = to_object_id(body.parent, "parent category")
        if not db["category"].find_one({"_id": parent_id}):
            raise ValidationError("Parent category not found")
    slug = slugify(body.slug or body.name)
    if not slug:
        raise ValidationError("Category name must contain letters or numbers")
    _check_slug(slug)
    if parent_id is None:
        last = db["category"].find_one({"parent": None}, sort=[("order", -1)])
        order = (last.get("order", 0) + 1) if last else 1
    else:
        order = 0
    category = CategorySchema(
        name=body.name,
        description=body.description,
        parent=parent_id,
        image=body.image,
        is_active=body.is_active,
        order=order,
        slug=slug,
        meta_title=body.meta_title,
        meta_description=body.meta_description,
    )
    doc = category.model_dump()
    category_id = create_document("category", doc)
    logger.info("Category created: %s", body.name)
    return db["category"].find_one({"_id": ObjectId(category_id)})


def build_tree(categories: list, parent_id=None) -> list:
    children = {}
    for category in categories:
        children.setdefault(category.get("parent"), []).append(category)

    def nodes(key, seen):
        out = []
        for category in sorted(children.get(key, []), key=lambda c: (c.get("order", 0), c.get("name", ""))):
            if category["_id"] in seen:
                continue
            out.append({**category, "children": nodes(category["_id"], seen | {category["_id"]})})
        return out

    return nodes(parent_id, frozenset())


def tree_node(category: dict) -> dict:
    return {
        "key": str(category["_id"]),
        "label": category["name"],
        "data": {"image": category.get("image"), "description": category.get("description"),
                 "slug": category.get("slug")},
        "is_active": category.get("is_active", True),
        "children": [tree_node(c) for c in category.get("children", [])],
    }


def list_categories(fmt: str = "list", is_active: Optional[bool] = None, skip: int = 0,
                    limit: int = 0) -> tuple:
    filt = {}
    if is_active is not None:
        filt["is_active"] = is_active
    total = db["category"].count_documents(filt)
    cursor = db["category"].find(filt).sort([("order", 1), ("name", 1)])
    if fmt == "tree":
        return build_tree(list(cursor)), total
    if limit:
        cursor = cursor.skip(skip).limit(limit)
    return list(cursor), total


def category_tree() -> list:
    categories = get_documents("category", {"is_active": True})
    return [tree_node(c) for c in build_tree(categories)]


def parent_categories(is_active: Optional[bool] = True) -> list:
    filt = {"parent": None}
    if is_active is not None:
        filt["is_active"] = is_active
    return get_documents("category", filt, sort=[("order", 1), ("name", 1)])


def update_category(category_id: str, body: CategoryUpdateBody) -> dict:
    category = _category(category_id)
    data = body.model_dump(exclude_unset=True)
    active = data.pop("is_active", None)
    if "parent" in data:
        if data["parent"]:
            parent_id = to_object_id(data["parent"], "parent category")
            if parent_id == category["_id"]:
                raise ValidationError("Category cannot be its own parent")
            if parent_id in descendant_ids(category["_id"]):
                raise ValidationError("Category cannot be moved under one of its descendants")
            if not db["category"].find_one({"_id": parent_id}):
                raise ValidationError("Parent category not found")
            data["parent"] = parent_id
        else:
            data["parent"] = None
    if data.get("slug") or ("name" in data and not category.get("slug")):
        data["slug"] = slugify(data.get("slug") or data["name"])
        _check_slug(data["slug"], category["_id"])
    elif "slug" in data:
        del data["slug"]
    for key in ("name", "image"):
        if key in data and not data[key]:
            raise ValidationError(f"Category {key} cannot be empty")
    changes_status = active is not None and active != category.get("is_active", True)
    if changes_status and active:
        _check_parent_active(data.get("parent", category.get("parent")))
    if data.get("image") and category.get("image") and data["image"] != category["image"]:
        storage.delete_file(category["image"])
    data["updated_at"] = utcnow()
    updated = db["category"].find_one_and_update({"_id": category["_id"]}, {"$set": data},
                                                 return_document=ReturnDocument.AFTER)
    if changes_status:
        set_category_active(updated, active)
        updated = db["category"].find_one({"_id": category["_id"]})
    return updated


def delete_category(category_id: str) -> dict:
    category = _category(category_id)
    if db["category"].count_documents({"parent": category["_id"]}):
        raise ValidationError("Cannot delete category with subcategories. Delete or move them first.")
    db["category"].delete_one({"_id": category["_id"]})
    storage.delete_file(category.get("image"))
    logger.info("Category deleted: %s", category["name"])
    return category


def _check_parent_active(parent_id):
    if parent_id:
        parent = db["category"].find_one({"_id": parent_id})
        if parent and not parent.get("is_active", True):
            raise ValidationError("Cannot activate category because its parent is inactive")


def set_category_active(category: dict, active: bool):
    """Apply an activation change to the category and its whole subtree."""
    descendants = descendant_ids(category["_id"])
    ids = [category["_id"]] + descendants
    db["category"].update_many({"_id": {"$in": ids}}, {"$set": {"is_active": active, "updated_at": utcnow()}})
    logger.info("Category %s %s with %d descendant(s)", category["name"], "activated" if active else "deactivated",
                len(descendants))


def toggle_category_status(category_id: str) -> dict:
    category = _category(category_id)
    active = not category.get("is_active", True)
    if active:
        _check_parent_active(category.get("parent"))
    set_category_active(category, active)
    return db["category"].find_one({"_id": category["_id"]})


def update_category_order(items: List[CategoryOrderItem]) -> list:
    updated = []
    for item in items:
        category = db["category"].find_one_and_update(
            {"_id": to_object_id(item.id, "category")},
            {"$set": {"order": item.order, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not category:
            raise NotFoundError("Category")
        updated.append(category)
    return updated


# ----------------------- Products -----------------------
def derive_stock_status(product: dict) -> dict:
    if product.get("track_quantity", True):
        stock = product.get("stock") or 0
        if stock == 0:
            product["stock_status"] = "out_of_stock"
        elif stock <= product.get("low_stock_threshold", 10):
            product["stock_status"] = "low_stock"
        else:
            product["stock_status"] = "in_stock"
    if product.get("is_published") and not product.get("published_at"):
        product["published_at"] = utcnow()
    return product


def _percent(numerator: float, denominator: float) -> int:
    return math.floor(numerator / denominator * 100 + 0.5)


def with_virtuals(product: dict) -> dict:
    product = dict(product)
    price = product.get("price") or 0
    compare_price = product.get("compare_price")
    cost_price = product.get("cost_price")
    product["is_low_stock"] = bool(product.get("track_quantity", True)
                                   and (product.get("stock") or 0) <= product.get("low_stock_threshold", 10))
    product["discount_percentage"] = _percent(compare_price - price, compare_price) \
        if compare_price and compare_price > price else 0
    product["profit_margin"] = _percent(price - cost_price, price) if cost_price and price > cost_price else 0
    return product


def validate_categories_and_brand(category_ids: Optional[list], brand_id=None) -> tuple:
    oids = []
    if category_ids:
        oids = [to_object_id(c, "category") for c in category_ids]
        unique_ids = list(dict.fromkeys(oids))
        categories = list(db["category"].find({"_id": {"$in": unique_ids}}))
        found = {c["_id"] for c in categories}
        missing = [str(c) for c in unique_ids if c not in found]
        if missing:
            raise ValidationError(f"Categories not found in database: {', '.join(missing)}. "
                                  f"Please check if these category IDs exist.")
        inactive = [f"{c['name']} ({c['_id']})" for c in categories if not c.get("is_active", True)]
        if inactive:
            raise ValidationError(f"Inactive categories: {', '.join(inactive)}. Please use active categories only.")
        parent_ids = [c["parent"] for c in categories if c.get("parent")]
        parents = {p["_id"]: p for p in db["category"].find({"_id": {"$in": parent_ids}})}
        orphaned = [f"{c['name']} (parent: {parents[c['parent']]['name']} is inactive)"
                    for c in categories
                    if c.get("parent") in parents and not parents[c["parent"]].get("is_active", True)]
        if orphaned:
            raise ValidationError(f"Categories with inactive parents: {', '.join(orphaned)}. "
                                  f"Parent categories must be active.")
        oids = unique_ids
    brand_oid = None
    if brand_id:
        brand_oid = to_object_id(brand_id, "brand")
        brand = db["brand"].find_one({"_id": brand_oid})
        if not brand:
            raise ValidationError(f"Brand not found in database: {brand_id}. Please check if this brand ID exists.")
        if not brand.get("is_active", True):
            raise ValidationError(f"Inactive brand: {brand_id}. Please use an active brand.")
    return oids, brand_oid


def check_sku_unique(sku: str, exclude_id: Optional[ObjectId] = None):
    query = {"sku": sku.upper()}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["product"].find_one(query):
        raise ConflictError(f"Product with SKU '{sku}' already exists")


def _product(product_id: str, include_deleted: bool = False) -> dict:
    filt = {"_id": to_object_id(product_id, "product")}
    if not include_deleted:
        filt.update(NOT_DELETED)
    product = db["product"].find_one(filt)
    if not product:
        raise NotFoundError("Product")
    return product


def _insert_product(data: dict, user: dict) -> dict:
    data["sku"] = data["sku"].upper()
    check_sku_unique(data["sku"])
    data["categories"], data["brand_id"] = validate_categories_and_brand(data.get("categories"), data.get("brand_id"))
    if data.get("featured_until"):
        data["featured_until"] = as_utc(data["featured_until"])
    data["created_by"] = user["_id"]
    data["updated_by"] = user["_id"]
    derive_stock_status(data)
    product_id = create_document("product", data)
    logger.info("Product created: %s (%s) by %s", data["product_name"], data["sku"], user.get("username"))
    return db["product"].find_one({"_id": ObjectId(product_id)})


def create_product(body: ProductCreateBody, user: dict) -> dict:
    return _insert_product(body.model_dump(exclude_none=True), user)


def list_products(status: Optional[str] = "active", categories: Optional[List[str]] = None,
                  brand_id: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, stock_status: Optional[str] = None,
                  is_published: Optional[bool] = None, is_low_stock: bool = False, search: Optional[str] = None,
                  include_deleted: bool = False, deleted_only: bool = False, sort: Optional[str] = None) -> list:
    filt = {}
    if deleted_only:
        filt["deleted_at"] = {"$ne": None}
    elif not include_deleted:
        filt.update(NOT_DELETED)
    if status and status != "all":
        filt["status"] = status
    if categories:
        filt["categories"] = {"$in": [to_object_id(c, "category") for c in categories]}
    if brand_id:
        filt["brand_id"] = to_object_id(brand_id, "brand")
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if stock_status:
        filt["stock_status"] = stock_status
    if is_published is not None:
        filt["is_published"] = is_published
    if is_low_stock:
        filt["track_quantity"] = True
        filt["stock_status"] = {"$in": ["low_stock", "out_of_stock"]}
    if search:
        pattern = _regex(search)
        filt["$or"] = [{"product_name": pattern}, {"short_description": pattern},
                       {"long_description": pattern}, {"sku": pattern}, {"seller": pattern}]
    return [with_virtuals(p) for p in db["product"].find(filt).sort(parse_sort(sort))]


def populate_product(product: dict) -> dict:
    product = with_virtuals(product)
    if product.get("brand_id"):
        product["brand"] = db["brand"].find_one({"_id": product["brand_id"]}, {"name": 1, "logo": 1})
    if product.get("categories"):
        product["category_details"] = list(db["category"].find({"_id": {"$in": product["categories"]}},
                                                               {"name": 1, "slug": 1}))
    return product


def get_product(product_id: str, include_deleted: bool = False) -> dict:
    product = populate_product(_product(product_id, include_deleted))
    related = []
    if product.get("categories"):
        related = db["product"].find({
            "_id": {"$ne": product["_id"]},
            "categories": {"$in": product["categories"]},
            "status": "active",
            "is_published": True,
            **NOT_DELETED,
        }).sort("created_at", -1).limit(RELATED_LIMIT)
    product["related_products"] = [with_virtuals(p) for p in related]
    return product


def _apply_product_update(product: dict, data: dict, user: dict) -> dict:
    if data.get("sku"):
        data["sku"] = data["sku"].upper()
        if data["sku"] != product.get("sku"):
            check_sku_unique(data["sku"], product["_id"])
    if "categories" in data or "brand_id" in data:
        data["categories"], data["brand_id"] = validate_categories_and_brand(
            data.get("categories", product.get("categories")), data.get("brand_id", product.get("brand_id")))
    merged = derive_stock_status({**product, **data})
    for key in ("stock_status", "published_at"):
        if merged.get(key) is not None:
            data[key] = merged[key]
    data["updated_by"] = user["_id"]
    data["updated_at"] = utcnow()
    return db["product"].find_one_and_update({"_id": product["_id"]}, {"$set": data},
                                             return_document=ReturnDocument.AFTER)


def update_product(product_id: str, body: ProductUpdateBody, user: dict) -> dict:
    product = _product(product_id)
    updated = _apply_product_update(product, body.model_dump(exclude_none=True), user)
    logger.info("Product updated: %s by %s", updated["sku"], user.get("username"))
    return with_virtuals(updated)


def delete_product(product_id: str, user: dict) -> dict:
    product = _product(product_id, include_deleted=True)
    result = {"product_id": product["_id"], "product_name": product["product_name"], "sku": product["sku"]}
    if product.get("deleted_at"):
        logger.info("Product delete noop - already deleted: %s", product["sku"])
        return {**result, "already_deleted": True}
    now = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": {
        "status": "archived",
        "deleted_at": now,
        "deleted_by": user["_id"],
        "updated_at": now,
    }})
    logger.info("Product deleted: %s by %s", product["sku"], user.get("username"))
    return {**result, "already_deleted": False}


def bulk_update_products(updates: list, user: dict) -> dict:
    results = {"successful": [], "failed": []}
    for update in updates:
        try:
            product = update_product(update.id, update.data, user)
        except (ValidationError, NotFoundError, ConflictError) as e:
            results["failed"].append({"id": update.id, "error": e.message})
        else:
            results["successful"].append({"id": update.id, "product": product})
    logger.info("Bulk product update: %d successful, %d failed",
                len(results["successful"]), len(results["failed"]))
    return results


def product_statistics() -> dict:
    products = db["product"]
    total = products.count_documents(NOT_DELETED)
    active = products.count_documents({"status": "active", **NOT_DELETED})
    return {
        "total_products": total,
        "active_products": active,
        "inactive_products": total - active,
        "low_stock_products": products.count_documents(
            {"track_quantity": True, "stock_status": "low_stock", **NOT_DELETED}),
        "out_of_stock_products": products.count_documents({"track_quantity": True, "stock": 0, **NOT_DELETED}),
        "featured_products": products.count_documents({"is_featured": True, **NOT_DELETED}),
        "published_products": products.count_documents({"is_published": True, **NOT_DELETED}),
    }


def duplicate_product(product_id: str, user: dict, sku: Optional[str] = None,
                      product_name: Optional[str] = None) -> dict:
    original = _product(product_id)
    data = {k: v for k, v in original.items() if k not in (
        "_id", "created_at", "updated_at", "created_by", "updated_by", "published_at", "deleted_at", "deleted_by")}
    data["sku"] = sku or f"{original['sku']}-COPY-{str(int(time.time() * 1000))[-6:]}"
    data["product_name"] = product_name or f"{original['product_name']} (Copy)"
    return with_virtuals(_insert_product(data, user))


def update_stock(product_id: str, stock: int, user: dict) -> dict:
    product = _product(product_id)
    updated = _apply_product_update(product, {"stock": stock}, user)
    logger.info("Product stock updated: %s -> %d", updated["sku"], stock)
    return with_virtuals(updated)


def low_stock_products() -> list:
    filt = {"track_quantity": True, "stock_status": {"$in": ["low_stock", "out_of_stock"]}, **NOT_DELETED}
    return [with_virtuals(p) for p in db["product"].find(filt).sort("stock", 1)]


def out_of_stock_products() -> list:
    filt = {"track_quantity": True, "stock": 0, **NOT_DELETED}
    return [with_virtuals(p) for p in db["product"].find(filt).sort("updated_at", -1)]


def products_by_category(category_id: str, sort: Optional[str] = None) -> list:
    category = _category(category_id)
    ids = [category["_id"]] + descendant_ids(category["_id"])
    filt = {"categories": {"$in": ids}, "status": "active", **NOT_DELETED}
    return [with_virtuals(p) for p in db["product"].find(filt).sort(parse_sort(sort))]


def products_by_category_slug(slug: str, sort: Optional[str] = None) -> dict:
    category = db["category"].find_one({"slug": slug, "is_active": True})
    if not category:
        raise NotFoundError("Category")
    return {"category": category, "products": products_by_category(category["_id"], sort)}


def products_by_brand(brand_id: str, sort: Optional[str] = None) -> list:
    brand = get_brand(brand_id)
    filt = {"brand_id": brand["_id"], "status": "active", **NOT_DELETED}
    return [with_virtuals(p) for p in db["product"].find(filt).sort(parse_sort(sort))]


def featured_products(category: Optional[str] = None, brand: Optional[str] = None,
                      min_price: Optional[float] = None, max_price: Optional[float] = None,
                      search: Optional[str] = None, sort: str = "featured_order") -> list:
    conditions = [
        {"is_featured": True, "status": "active", "is_published": True, **NOT_DELETED},
        {"$or": [{"featured_until": None}, {"featured_until": {"$gte": utcnow()}}]},
    ]
    if category:
        conditions.append({"categories": to_object_id(category, "category")})
    if brand:
        conditions.append({"brand_id": to_object_id(brand, "brand")})
    if min_price is not None:
        conditions.append({"price": {"$gte": min_price}})
    if max_price is not None:
        conditions.append({"price": {"$lte": max_price}})
    if search:
        conditions.append({"$or": [{"product_name": _regex(search)}, {"short_description": _regex(search)}]})
    if sort == "featured_order":
        order = [("featured_order", 1), ("created_at", -1)]
    elif sort == "price":
        order = [("price", 1)]
    else:
        order = parse_sort(sort)
    return [with_virtuals(p) for p in db["product"].find({"$and": conditions}).sort(order)]


def admin_featured_products() -> list:
    filt = {"is_featured": True, **NOT_DELETED}
    return [with_virtuals(p) for p in db["product"].find(filt).sort([("featured_order", 1), ("created_at", -1)])]


def _set_product_fields(product_id: str, fields: dict, user: dict) -> dict:
    product = _product(product_id)
    fields.update({"updated_by": user["_id"], "updated_at": utcnow()})
    updated = db["product"].find_one_and_update({"_id": product["_id"]}, {"$set": fields},
                                                return_document=ReturnDocument.AFTER)
    return with_virtuals(updated)


def set_featured(product_id: str, user: dict, order: int = 0, featured_until=None) -> dict:
    fields = {"is_featured": True, "featured_order": order}
    if featured_until:
        fields["featured_until"] = as_utc(featured_until)
    product = _set_product_fields(product_id, fields, user)
    logger.info("Product set as featured: %s (order %d)", product["sku"], order)
    return product


def unset_featured(product_id: str, user: dict) -> dict:
    product = _set_product_fields(product_id, {"is_featured": False, "featured_order": 0, "featured_until": None},
                                  user)
    logger.info("Product removed from featured: %s", product["sku"])
    return product


def update_featured_order(product_id: str, order: int, user: dict) -> dict:
    return _set_product_fields(product_id, {"featured_order": order}, user)
