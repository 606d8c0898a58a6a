import logging
import re
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import addresses
from database import as_utc, db, to_object_id, utcnow
from errors import AuthorizationError, NotFoundError, ValidationError
from schemas import (
    OrderCreateBody,
    OrderItem as OrderItemSchema,
    OrderItemBody,
    OrderUpdateBody,
    PaymentInfo,
    ShippingAddress,
)
from security import is_admin

logger = logging.getLogger(__name__)

OWNER_FIELDS = ("shipping_address", "billing_address", "notes")
NON_CANCELLABLE = ("shipped", "delivered", "cancelled")
ORDER_NUMBER_RETRIES = 3


# ----------------------- Pricing -----------------------
def price_line(unit_price: float, quantity: int, discount: float = 0, tax_rate: float = 0) -> dict:
    """Price one order line: percentage discount first, then tax on the discounted amount."""
    gross = unit_price * quantity
    discount_amount = gross * discount / 100
    subtotal = gross - discount_amount
    tax_amount = subtotal * tax_rate / 100
    return {
        "gross": gross,
        "discount_amount": discount_amount,
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total_price": subtotal + tax_amount,
    }


def order_totals(items: List[dict], shipping_cost: float = 0) -> dict:
    subtotal = sum(i["unit_price"] * i["quantity"] for i in items)
    total_discount = sum(i.get("discount_amount", 0) for i in items)
    total_tax = sum(i.get("tax_amount", 0) for i in items)
    return {
        "subtotal": subtotal,
        "total_discount": total_discount,
        "total_tax": total_tax,
        "shipping_cost": shipping_cost,
        "total_amount": subtotal - total_discount + total_tax + shipping_cost,
    }


def build_item(item: OrderItemBody) -> dict:
    product = db["product"].find_one({"_id": to_object_id(item.product, "product")})
    if not product:
        raise ValidationError(f"Product with ID {item.product} not found")
    unit_price = item.unit_price if item.unit_price is not None else float(product.get("price") or 0)
    tax_rate = item.tax_rate if item.tax_rate is not None else float(product.get("tax_rate") or 0)
    line = price_line(unit_price, item.quantity, item.discount, tax_rate)
    return OrderItemSchema(
        product=product["_id"],
        product_name=product["product_name"],
        sku=product.get("sku"),
        quantity=item.quantity,
        unit_price=unit_price,
        discount=item.discount,
        discount_amount=line["discount_amount"],
        subtotal=line["subtotal"],
        tax_rate=tax_rate,
        tax_amount=line["tax_amount"],
        total_price=line["total_price"],
    ).model_dump()


def next_order_number(now: Optional[datetime] = None) -> str:
    prefix = f"ORD-{(now or utcnow()).strftime('%Y%m%d')}-"
    last = db["order"].find_one({"order_number": {"$regex": f"^{re.escape(prefix)}"}},
                                sort=[("order_number", -1)])
    sequence = int(last["order_number"].rsplit("-", 1)[1]) + 1 if last else 1
    return f"{prefix}{sequence:04d}"


def tracking_entry(status: str, notes: Optional[str], by) -> dict:
    return {"status": status, "timestamp": utcnow(), "notes": notes, "updated_by": by}


def shipping_from_default(user: dict) -> dict:
    address = addresses.default_address(user["_id"])
    if not address:
        raise ValidationError("No shipping address provided and no default address found. "
                              "Please add an address first.")
    return ShippingAddress(
        first_name=user.get("first_name") or user.get("username"),
        last_name=user.get("last_name") or "",
        address_line1=address.get("street") or "",
        address_line2=address.get("street2") or "",
        city=address["city"],
        state=address.get("state") or "",
        country=address.get("country") or "Australia",
        postal_code=address.get("postal_code") or "",
        phone=user.get("phone_number") or "",
    ).model_dump()


# ----------------------- Orders -----------------------
def create_order(body: OrderCreateBody, user: dict) -> dict:
    items = [build_item(i) for i in body.items]
    if body.shipping_address:
        shipping = body.shipping_address.model_dump()
    elif body.billing_address:
        shipping = body.billing_address.model_dump()
    else:
        shipping = shipping_from_default(user)
    now = utcnow()
    order = {
        "customer": user["_id"],
        "customer_email": user["email"],
        "customer_phone": user.get("phone_number") or body.customer_phone,
        "items": items,
        **order_totals(items, body.shipping_cost),
        "currency": body.currency.upper(),
        "status": "pending",
        "priority": body.priority,
        "shipping_address": shipping,
        "billing_address": body.billing_address.model_dump() if body.billing_address else None,
        "payment_info": (body.payment_info or PaymentInfo()).model_dump(),
        "shipping_method": body.shipping_method,
        "estimated_delivery_date": as_utc(body.estimated_delivery_date),
        "tracking_history": [tracking_entry("pending", "Order created", user["_id"])],
        "notes": body.notes,
        "tags": body.tags,
        "is_active": True,
        "refund_amount": 0,
        "created_at": now,
        "updated_at": now,
    }
    for _ in range(ORDER_NUMBER_RETRIES):
        order["order_number"] = next_order_number(now)
        order.pop("_id", None)
        try:
            db["order"].insert_one(order)
            break
        except DuplicateKeyError:
            logger.warning("Order number %s taken, retrying", order["order_number"])
    else:
        raise ValidationError("Could not allocate an order number, please retry")
    logger.info("Order created: %s for %s (total %.2f)", order["order_number"], user["email"],
                order["total_amount"])
    return order


def order_customer(order: dict) -> dict:
    return db["user"].find_one({"_id": order["customer"]}) or {"_id": order["customer"],
                                                              "email": order.get("customer_email")}


def _order(order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise NotFoundError("Order")
    return order


def _check_access(order: dict, user: dict, action: str = "view"):
    if is_admin(user):
        return
    if order["customer"] != user["_id"] or not order.get("is_active", True):
        raise AuthorizationError(f"You do not have permission to {action} this order")


def get_order(order_id: str, user: dict) -> dict:
    order = _order(order_id)
    _check_access(order, user)
    return order


def list_orders(user: dict, skip: int = 0, limit: int = 0, status: Optional[str] = None,
                payment_status: Optional[str] = None, customer: Optional[str] = None,
                date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                search: Optional[str] = None, sort_by: str = "created_at", sort_order: str = "desc") -> tuple:
    filt = {"is_active": True}
    if not is_admin(user):
        filt["customer"] = user["_id"]
    elif customer:
        filt["customer"] = to_object_id(customer, "customer")
    if status:
        filt["status"] = status
    if payment_status:
        filt["payment_info.payment_status"] = payment_status
    if date_from or date_to:
        filt["created_at"] = {}
        if date_from:
            filt["created_at"]["$gte"] = as_utc(date_from)
        if date_to:
            filt["created_at"]["$lte"] = as_utc(date_to)
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"order_number": pattern}, {"customer_email": pattern},
                       {"shipping_address.first_name": pattern}, {"shipping_address.last_name": pattern}]
    total = db["order"].count_documents(filt)
    cursor = db["order"].find(filt).sort(sort_by, -1 if sort_order == "desc" else 1)
    if limit:
        cursor = cursor.skip(skip).limit(limit)
    return list(cursor), total


def my_orders(user: dict, status: Optional[str] = None, date_from: Optional[datetime] = None,
              date_to: Optional[datetime] = None) -> list:
    orders, _ = list_orders({**user, "role": "user"}, status=status, date_from=date_from, date_to=date_to)
    return orders


def status_fields(order: dict, status: str, by, now: datetime, notes: Optional[str] = None) -> dict:
    fields = {"status": status}
    if status == "delivered" and not order.get("actual_delivery_date"):
        fields["actual_delivery_date"] = now
    if status == "cancelled":
        fields["cancelled_at"] = now
        fields["cancelled_by"] = by
        if notes:
            fields["cancellation_reason"] = notes
    return fields


def update_order(order_id: str, body: OrderUpdateBody, user: dict) -> dict:
    order = _order(order_id)
    _check_access(order, user, "update")
    data = body.model_dump(exclude_none=True)
    if not is_admin(user):
        data = {k: v for k, v in data.items() if k in OWNER_FIELDS}
    update = {"$set": {**data, "updated_at": utcnow()}}
    if "estimated_delivery_date" in data:
        update["$set"]["estimated_delivery_date"] = as_utc(data["estimated_delivery_date"])
    if data.get("shipping_cost") is not None:
        update["$set"].update(order_totals(order["items"], data["shipping_cost"]))
    if data.get("status") and data["status"] != order.get("status"):
        update["$set"].update(status_fields(order, data["status"], user["_id"], update["$set"]["updated_at"]))
        update["$push"] = {"tracking_history": tracking_entry(data["status"], "Status updated", user["_id"])}
    return db["order"].find_one_and_update({"_id": order["_id"]}, update, return_document=ReturnDocument.AFTER)


def update_status(order_id: str, status: str, user: dict, notes: Optional[str] = None,
                  tracking_number: Optional[str] = None) -> dict:
    order = _order(order_id)
    now = utcnow()
    fields = {"updated_at": now, **status_fields(order, status, user["_id"], now, notes)}
    if tracking_number:
        fields["tracking_number"] = tracking_number
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {"$set": fields, "$push": {"tracking_history": tracking_entry(status, notes, user["_id"])}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Order %s status %s -> %s", order["order_number"], order.get("status"), status)
    return updated


def cancel_order(order_id: str, user: dict, reason: Optional[str] = None) -> dict:
    order = _order(order_id)
    _check_access(order, user, "cancel")
    if order.get("status") in NON_CANCELLABLE:
        raise ValidationError(f"Order cannot be cancelled when status is {order['status']}")
    now = utcnow()
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"]},
        {
            "$set": {
                "status": "cancelled",
                "cancelled_at": now,
                "cancelled_by": user["_id"],
                "cancellation_reason": reason or "Order cancelled by user",
                "updated_at": now,
            },
            "$push": {"tracking_history": tracking_entry("cancelled", reason or "Order cancelled", user["_id"])},
        },
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Order %s cancelled by %s", order["order_number"], user.get("username"))
    return updated


def delete_order(order_id: str) -> dict:
    order = _order(order_id)
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"is_active": False, "updated_at": utcnow()}})
    logger.info("Order %s deleted", order["order_number"])
    return order


def order_stats() -> dict:
    status_stats = {}
    total_revenue = 0
    total_orders = 0
    for order in db["order"].find({}, {"status": 1, "total_amount": 1, "is_active": 1}):
        entry = status_stats.setdefault(order.get("status"), {"status": order.get("status"), "count": 0,
                                                               "total_amount": 0})
        entry["count"] += 1
        entry["total_amount"] += order.get("total_amount", 0)
        if order.get("is_active", True):
            total_orders += 1
            if order.get("status") != "cancelled":
                total_revenue += order.get("total_amount", 0)
    recent = db["order"].find({"is_active": True}).sort("created_at", -1).limit(5)
    return {
        "status_stats": list(status_stats.values()),
        "total_orders": total_orders,
        "total_revenue": total_revenue,
        "recent_orders": list(recent),
    }


def find_by_number(order_number: str) -> Optional[dict]:
    return db["order"].find_one({"order_number": order_number})


def mark_payment(order: dict, payment_status: str, transaction_id: Optional[str] = None,
                 notes: Optional[str] = None) -> None:
    fields = {"payment_info.payment_status": payment_status, "updated_at": utcnow()}
    if transaction_id:
        fields["payment_info.transaction_id"] = transaction_id
    if payment_status == "paid":
        fields["payment_info.payment_date"] = utcnow()
    if notes:
        fields["payment_info.payment_notes"] = notes
    db["order"].update_one({"_id": order["_id"]}, {"$set": fields})
    logger.info("Order %s payment status -> %s", order["order_number"], payment_status)


def record_refund(order: dict, amount: float, reason: Optional[str], full: bool) -> None:
    fields = {"refund_amount": amount, "refund_date": utcnow(), "refund_reason": reason, "updated_at": utcnow()}
    if full:
        fields["payment_info.payment_status"] = "refunded"
    db["order"].update_one({"_id": order["_id"]}, {"$set": fields})
