import logging
import re
import secrets
import string
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument

from database import as_utc, create_document, db, is_object_id, to_object_id, utcnow
from errors import AppError, ConflictError, NotFoundError, ValidationError
from schemas import (
    PromoCode as PromoCodeSchema,
    PromoCodeCreateBody,
    PromoCodeUpdateBody,
    PromoCodeUsage as PromoCodeUsageSchema,
)

logger = logging.getLogger(__name__)

CODE_CHARS = string.ascii_uppercase + string.digits
CODE_RE = re.compile(r"^[A-Z0-9]{3,20}$")
MAX_CODE_ATTEMPTS = 100
TOP_CUSTOMERS = 10


# ----------------------- Rules -----------------------
def normalize_code(code: str) -> str:
    code = code.strip().upper()
    if not CODE_RE.match(code):
        raise ValidationError("Promo code must be 3-20 uppercase letters or digits")
    return code


def check_rules(promo: dict):
    """Cross-field checks shared by create, update and duplicate."""
    if promo["end_date"] <= promo["start_date"]:
        raise ValidationError("End date must be after start date")
    if promo["discount_type"] == "percentage" and promo["discount_value"] > 100:
        raise ValidationError("Percentage discount cannot exceed 100")
    limit, per_customer = promo.get("usage_limit"), promo.get("usage_per_customer")
    if limit and per_customer and per_customer > limit:
        raise ValidationError("Usage per customer cannot exceed the total usage limit")
    if promo.get("all_products") and promo.get("applicable_products"):
        raise ValidationError("Choose either all products or specific applicable products, not both")
    if not promo.get("all_products") and not promo.get("applicable_products"):
        raise ValidationError("Either select all products or specify applicable products")


def _product_ids(ids: List[str]) -> list:
    object_ids = [to_object_id(i, "product") for i in ids]
    if db["product"].count_documents({"_id": {"$in": object_ids}}) != len(set(object_ids)):
        raise ValidationError("One or more specified products do not exist")
    return object_ids


def can_be_used(promo: dict, order_value: float = 0, product_ids: Optional[List[str]] = None) -> tuple:
    now = utcnow()
    if not promo.get("is_active"):
        return False, "Promo code is not active"
    if now < promo["start_date"]:
        return False, "Promo code is not yet valid"
    if now > promo["end_date"]:
        return False, "Promo code has expired"
    if promo.get("usage_limit") and promo.get("usage_count", 0) >= promo["usage_limit"]:
        return False, "Promo code usage limit exceeded"
    if order_value < promo.get("minimum_order_value", 0):
        return False, f"Minimum order value of ${promo['minimum_order_value']:g} required"
    if not promo.get("all_products") and product_ids:
        applicable = {str(p) for p in promo.get("applicable_products", [])}
        if not any(str(p) in applicable for p in product_ids):
            return False, "Promo code not applicable to selected products"
    return True, None


def calculate_discount(promo: dict, order_value: float) -> float:
    if promo["discount_type"] == "percentage":
        return order_value * promo["discount_value"] / 100
    return min(promo["discount_value"], order_value)


def with_virtuals(promo: Optional[dict]) -> Optional[dict]:
    if promo is None:
        return None
    promo = dict(promo)
    now = utcnow()
    limit = promo.get("usage_limit")
    promo["remaining_usage"] = max(0, limit - promo.get("usage_count", 0)) if limit else None
    promo["is_expired"] = now > promo["end_date"]
    promo["is_currently_valid"] = bool(
        promo.get("is_active") and promo["start_date"] <= now <= promo["end_date"]
        and (not limit or promo.get("usage_count", 0) < limit)
    )
    return promo


# ----------------------- Admin -----------------------
def _promo(promo_id: str) -> dict:
    promo = db["promo_code"].find_one({"_id": to_object_id(promo_id, "promo code")})
    if not promo:
        raise NotFoundError("Promo code")
    return promo


def _status_filter(status: Optional[str]) -> dict:
    now = utcnow()
    if status == "active":
        return {"is_active": True, "start_date": {"$lte": now}, "end_date": {"$gte": now}}
    if status == "inactive":
        return {"$or": [{"is_active": False}, {"end_date": {"$lt": now}}]}
    if status == "expired":
        return {"end_date": {"$lt": now}}
    if status == "upcoming":
        return {"start_date": {"$gt": now}}
    return {}


def list_promo_codes(skip: int = 0, limit: int = 10, search: Optional[str] = None, status: str = "all",
                     sort_by: str = "created_at", sort_order: str = "desc") -> tuple:
    filt = _status_filter(status)
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        search_filter = {"$or": [{"code": pattern}, {"description": pattern}]}
        filt = {"$and": [filt, search_filter]} if filt else search_filter
    total = db["promo_code"].count_documents(filt)
    cursor = db["promo_code"].find(filt).sort(sort_by, 1 if sort_order == "asc" else -1).skip(skip).limit(limit)
    return [with_virtuals(p) for p in cursor], total


def get_promo_code(promo_id: str) -> dict:
    return with_virtuals(_promo(promo_id))


def _ensure_code_free(code: str, exclude_id=None, message: str = "Promo code already exists"):
    filt = {"code": code}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    if db["promo_code"].find_one(filt):
        raise ConflictError(message)


def create_promo_code(body: PromoCodeCreateBody, user: dict) -> dict:
    code = normalize_code(body.code)
    _ensure_code_free(code)
    data = body.model_dump()
    data.update(
        code=code,
        start_date=as_utc(body.start_date),
        end_date=as_utc(body.end_date),
        applicable_products=[] if body.all_products else _product_ids(body.applicable_products),
        created_by=user["_id"],
    )
    check_rules(data)
    new_id = create_document("promo_code", PromoCodeSchema(**data))
    logger.info("Promo code %s created by %s", code, user.get("username"))
    return with_virtuals(db["promo_code"].find_one({"_id": to_object_id(new_id, "promo code")}))


def update_promo_code(promo_id: str, body: PromoCodeUpdateBody, user: dict) -> dict:
    promo = _promo(promo_id)
    data = body.model_dump(exclude_unset=True)
    if data.get("code"):
        data["code"] = normalize_code(data["code"])
        if data["code"] != promo["code"]:
            _ensure_code_free(data["code"], exclude_id=promo["_id"])
    for field in ("start_date", "end_date"):
        if data.get(field):
            data[field] = as_utc(data[field])
    if data.get("all_products"):
        data["applicable_products"] = []
    elif data.get("applicable_products") is not None:
        data["applicable_products"] = _product_ids(data["applicable_products"])
    data = {k: v for k, v in data.items() if v is not None or k in ("usage_limit", "usage_per_customer")}
    check_rules({**promo, **data})
    data.update(updated_by=user["_id"], updated_at=utcnow())
    updated = db["promo_code"].find_one_and_update({"_id": promo["_id"]}, {"$set": data},
                                                   return_document=ReturnDocument.AFTER)
    logger.info("Promo code %s updated", updated["code"])
    return with_virtuals(updated)


def delete_promo_code(promo_id: str) -> dict:
    promo = _promo(promo_id)
    usage_count = db["promo_code_usage"].count_documents({"promo_code": promo["_id"]})
    if usage_count:
        raise ConflictError("Cannot delete promo code that has been used. Consider deactivating it instead.")
    db["promo_code"].delete_one({"_id": promo["_id"]})
    logger.info("Promo code %s deleted", promo["code"])
    return promo


def toggle_status(promo_id: str, user: dict) -> dict:
    promo = _promo(promo_id)
    updated = db["promo_code"].find_one_and_update(
        {"_id": promo["_id"]},
        {"$set": {"is_active": not promo.get("is_active"), "updated_by": user["_id"], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return with_virtuals(updated)


def duplicate_promo_code(promo_id: str, new_code: str, user: dict, start_date: Optional[datetime] = None,
                         end_date: Optional[datetime] = None) -> dict:
    original = _promo(promo_id)
    code = normalize_code(new_code)
    _ensure_code_free(code, message="New promo code already exists")
    data = {k: v for k, v in original.items() if k not in ("_id", "created_at", "updated_at", "updated_by")}
    data.update(
        code=code,
        start_date=as_utc(start_date) if start_date else original["start_date"],
        end_date=as_utc(end_date) if end_date else original["end_date"],
        usage_count=0,
        created_by=user["_id"],
    )
    check_rules(data)
    new_id = create_document("promo_code", PromoCodeSchema(**data))
    logger.info("Promo code %s duplicated as %s", original["code"], code)
    return with_virtuals(db["promo_code"].find_one({"_id": to_object_id(new_id, "promo code")}))


def generate_unique_code(prefix: str = "", length: int = 8) -> str:
    prefix = prefix.strip().upper()
    if len(prefix) >= length:
        raise ValidationError("Prefix length must be less than total code length")
    if prefix and not prefix.isalnum():
        raise ValidationError("Prefix may only contain letters and digits")
    for _ in range(MAX_CODE_ATTEMPTS):
        code = prefix + "".join(secrets.choice(CODE_CHARS) for _ in range(length - len(prefix)))
        if not db["promo_code"].find_one({"code": code}):
            return code
    raise AppError("Unable to generate unique promo code after maximum attempts", status_code=500)


def usage_statistics(promo_id: str, start_date: Optional[datetime] = None,
                     end_date: Optional[datetime] = None) -> dict:
    promo = _promo(promo_id)
    filt = {"promo_code": promo["_id"]}
    if start_date or end_date:
        filt["used_at"] = {}
        if start_date:
            filt["used_at"]["$gte"] = as_utc(start_date)
        if end_date:
            filt["used_at"]["$lte"] = as_utc(end_date)

    usages = list(db["promo_code_usage"].find(filt))
    total_usage = len(usages)
    total_discount = sum(u["discount_amount"] for u in usages)
    total_order_value = sum(u["order_value"] for u in usages)

    by_date, by_customer = {}, {}
    for u in usages:
        day = u["used_at"].date().isoformat()
        entry = by_date.setdefault(day, {"date": day, "count": 0, "total_discount": 0})
        entry["count"] += 1
        entry["total_discount"] += u["discount_amount"]
        customer = by_customer.setdefault(u["customer_id"], {"customer_id": u["customer_id"], "usage_count": 0,
                                                             "total_discount": 0, "total_order_value": 0,
                                                             "last_used": u["used_at"]})
        customer["usage_count"] += 1
        customer["total_discount"] += u["discount_amount"]
        customer["total_order_value"] += u["order_value"]
        customer["last_used"] = max(customer["last_used"], u["used_at"])

    top_customers = sorted(by_customer.values(), key=lambda c: (c["usage_count"], c["total_order_value"]),
                           reverse=True)[:TOP_CUSTOMERS]
    limit = promo.get("usage_limit")
    return {
        "total_usage": total_usage,
        "remaining_usage": max(0, limit - promo.get("usage_count", 0)) if limit else None,
        "total_discount_given": total_discount,
        "total_order_value": total_order_value,
        "unique_customer_count": len(by_customer),
        "avg_discount_amount": total_discount / total_usage if total_usage else 0,
        "avg_order_value": total_order_value / total_usage if total_usage else 0,
        "usage_by_date": sorted(by_date.values(), key=lambda d: d["date"]) if start_date and end_date else [],
        "top_customers": top_customers,
    }


# ----------------------- Checkout -----------------------
def customer_usage_count(promo: dict, customer_id: str) -> int:
    return db["promo_code_usage"].count_documents({"promo_code": promo["_id"], "customer_id": customer_id})


def validate_code(code: str, customer_id: str, order_value: float = 0,
                  product_ids: Optional[List[str]] = None) -> dict:
    promo = db["promo_code"].find_one({"code": code.strip().upper()})
    if not promo:
        return {"is_valid": False, "reason": "Promo code not found"}
    valid, reason = can_be_used(promo, order_value, product_ids)
    if valid and promo.get("usage_per_customer") and \
            customer_usage_count(promo, customer_id) >= promo["usage_per_customer"]:
        valid, reason = False, "Customer usage limit exceeded"
    if not valid:
        return {"is_valid": False, "promo_code": with_virtuals(promo), "reason": reason}
    return {"is_valid": True, "promo_code": with_virtuals(promo),
            "discount_amount": calculate_discount(promo, order_value)}


def apply_code(code: str, customer_id: str, order_id: str, order_value: float,
               product_ids: Optional[List[str]] = None, ip_address: Optional[str] = None,
               user_agent: Optional[str] = None) -> dict:
    promo = db["promo_code"].find_one({"code": code.strip().upper()})
    if not promo:
        raise NotFoundError("Promo code")
    if db["promo_code_usage"].find_one({"order_id": order_id}):
        raise ConflictError("This order has already used a promo code")
    valid, reason = can_be_used(promo, order_value, product_ids)
    if not valid:
        raise ConflictError(reason)
    if promo.get("usage_per_customer") and customer_usage_count(promo, customer_id) >= promo["usage_per_customer"]:
        raise ConflictError("Customer usage limit exceeded")

    # atomic claim against usage_limit
    claim = {"_id": promo["_id"]}
    if promo.get("usage_limit"):
        claim["usage_count"] = {"$lt": promo["usage_limit"]}
    claimed = db["promo_code"].find_one_and_update(claim, {"$inc": {"usage_count": 1}},
                                                   return_document=ReturnDocument.AFTER)
    if not claimed:
        raise ConflictError("Promo code usage limit exceeded")

    discount = calculate_discount(promo, order_value)
    usage = PromoCodeUsageSchema(
        promo_code=promo["_id"],
        customer_id=customer_id,
        order_id=order_id,
        order_value=order_value,
        discount_amount=discount,
        discount_type=promo["discount_type"],
        discount_value=promo["discount_value"],
        product_ids=[to_object_id(p, "product") for p in (product_ids or []) if is_object_id(p)],
        used_at=utcnow(),
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        usage_id = create_document("promo_code_usage", usage)
    except Exception:
        db["promo_code"].update_one({"_id": promo["_id"]}, {"$inc": {"usage_count": -1}})
        raise
    logger.info("Promo code %s applied to order %s (discount %.2f)", promo["code"], order_id, discount)
    return {
        "promo_code": with_virtuals(claimed),
        "discount_amount": discount,
        "usage": db["promo_code_usage"].find_one({"_id": to_object_id(usage_id, "usage")}),
    }
