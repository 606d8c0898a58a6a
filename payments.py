import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from pymongo import ReturnDocument

import orders
from database import as_utc, create_document, db, to_object_id, utcnow
from errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from schemas import (
    CustomerInfo,
    Invoice,
    RefundBody,
    Transaction as TransactionSchema,
    TransactionCreateBody,
    TransactionUpdateBody,
)
from security import is_admin

logger = logging.getLogger(__name__)

REFUNDABLE = ("Completed", "Partially Refunded")


def _next_id(prefix: str, collection: str, field: str, now: datetime) -> str:
    stem = f"{prefix}-{now.strftime('%Y%m%d')}-"
    last = db[collection].find_one({field: {"$regex": f"^{re.escape(stem)}"}}, sort=[(field, -1)])
    sequence = 1
    if last:
        value = last
        for part in field.split("."):
            value = value[part]
        sequence = int(value.rsplit("-", 1)[1]) + 1
    return f"{stem}{sequence:03d}"


def next_transaction_id(now: Optional[datetime] = None) -> str:
    return _next_id("TXN", "transaction", "transaction_id", now or utcnow())


def next_invoice_number(now: Optional[datetime] = None) -> str:
    return _next_id("INV", "transaction", "invoice.invoice_number", now or utcnow())


def _owned_order_numbers(user: dict) -> list:
    return [o["order_number"] for o in db["order"].find({"customer": user["_id"]}, {"order_number": 1})]


def _transaction(transaction_id: str) -> dict:
    transaction = db["transaction"].find_one({"_id": to_object_id(transaction_id, "transaction"),
                                              "is_active": True})
    if not transaction:
        raise NotFoundError("Transaction")
    return transaction


def _update(transaction: dict, fields: dict) -> dict:
    fields["updated_at"] = utcnow()
    return db["transaction"].find_one_and_update({"_id": transaction["_id"]}, {"$set": fields},
                                                 return_document=ReturnDocument.AFTER)


def create_transaction(body: TransactionCreateBody, user: dict) -> dict:
    order = orders.find_by_number(body.order_id)
    if not order or not order.get("is_active", True):
        raise ValidationError("Order not found")
    if not is_admin(user) and order["customer"] != user["_id"]:
        raise AuthorizationError("You do not have permission to pay for this order")
    if db["transaction"].find_one({"order_id": order["order_number"], "is_active": True}):
        raise ConflictError("Transaction already exists for this order")

    customer = orders.order_customer(order)
    name = " ".join(p for p in (customer.get("first_name"), customer.get("last_name")) if p)
    amount = body.amount if body.amount is not None else float(order.get("total_amount") or 0)
    if body.fees > amount:
        raise ValidationError("Fees cannot exceed the transaction amount")
    now = utcnow()
    transaction = TransactionSchema(
        transaction_id=next_transaction_id(now),
        order_id=order["order_number"],
        customer=CustomerInfo(id=str(customer["_id"]), name=name or customer.get("username") or "Customer",
                              email=customer.get("email") or order["customer_email"]),
        amount=amount,
        payment_method=body.payment_method,
        transaction_date=now,
        description=body.description or f"Payment for order {order['order_number']}",
        currency=body.currency.upper(),
        fees=body.fees,
        net_amount=amount - body.fees,
        reference=body.reference,
        notes=body.notes,
        invoice=Invoice(invoice_number=next_invoice_number(now), invoice_date=now,
                        due_date=now + timedelta(days=body.due_days), total_amount=amount),
        processed_by=user["_id"],
    )
    new_id = create_document("transaction", transaction)
    logger.info("Transaction %s created for order %s (%.2f)", transaction.transaction_id,
                order["order_number"], amount)
    return db["transaction"].find_one({"_id": to_object_id(new_id, "transaction")})


def _filter(status: Optional[str], payment_method: Optional[str], date_from: Optional[datetime],
            date_to: Optional[datetime]) -> dict:
    filt = {"is_active": True}
    if status:
        filt["status"] = status
    if payment_method:
        filt["payment_method"] = payment_method
    if date_from or date_to:
        filt["transaction_date"] = {}
        if date_from:
            filt["transaction_date"]["$gte"] = as_utc(date_from)
        if date_to:
            filt["transaction_date"]["$lte"] = as_utc(date_to)
    return filt


def list_transactions(user: dict, status: Optional[str] = None, payment_method: Optional[str] = None,
                      customer: Optional[str] = None, date_from: Optional[datetime] = None,
                      date_to: Optional[datetime] = None, search: Optional[str] = None,
                      sort_by: str = "transaction_date", sort_order: str = "desc") -> list:
    filt = _filter(status, payment_method, date_from, date_to)
    if not is_admin(user):
        filt["order_id"] = {"$in": _owned_order_numbers(user)}
    elif customer:
        filt["customer.email"] = customer.lower()
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"transaction_id": pattern}, {"order_id": pattern}, {"customer.name": pattern},
                       {"customer.email": pattern}, {"description": pattern}]
    return list(db["transaction"].find(filt).sort(sort_by, -1 if sort_order == "desc" else 1))


def my_transactions(user: dict, status: Optional[str] = None, date_from: Optional[datetime] = None,
                    date_to: Optional[datetime] = None) -> list:
    filt = _filter(status, None, date_from, date_to)
    filt["order_id"] = {"$in": _owned_order_numbers(user)}
    return list(db["transaction"].find(filt).sort("transaction_date", -1))


def get_transaction(transaction_id: str, user: dict) -> dict:
    transaction = _transaction(transaction_id)
    if not is_admin(user):
        order = orders.find_by_number(transaction["order_id"])
        if not order or order["customer"] != user["_id"]:
            raise AuthorizationError("You do not have permission to view this transaction")
    return transaction


def update_transaction(transaction_id: str, body: TransactionUpdateBody) -> dict:
    transaction = _transaction(transaction_id)
    data = body.model_dump(exclude_none=True)
    if "invoice_status" in data:
        data["invoice.status"] = data.pop("invoice_status")
    if "fees" in data:
        if data["fees"] > transaction["amount"]:
            raise ValidationError("Fees cannot exceed the transaction amount")
        data["net_amount"] = transaction["amount"] - data["fees"]
    return _update(transaction, data)


def _require_pending(transaction: dict, action: str):
    if transaction["status"] != "Pending":
        raise ValidationError(f"Only pending transactions can be {action}")


def complete_transaction(transaction_id: str, user: dict, gateway_transaction_id: Optional[str] = None,
                         gateway_response: Optional[dict] = None) -> dict:
    transaction = _transaction(transaction_id)
    _require_pending(transaction, "marked as completed")
    updated = _update(transaction, {
        "status": "Completed",
        "gateway_transaction_id": gateway_transaction_id,
        "gateway_response": gateway_response,
        "processed_by": user["_id"],
        "processed_at": utcnow(),
        "invoice.status": "Paid",
    })
    order = orders.find_by_number(transaction["order_id"])
    if order:
        orders.mark_payment(order, "paid", transaction_id=transaction["transaction_id"])
    logger.info("Transaction %s completed", transaction["transaction_id"])
    return updated


def fail_transaction(transaction_id: str, user: dict, gateway_response: Optional[dict] = None,
                     reason: Optional[str] = None) -> dict:
    transaction = _transaction(transaction_id)
    _require_pending(transaction, "marked as failed")
    fields = {
        "status": "Failed",
        "gateway_response": gateway_response,
        "processed_by": user["_id"],
        "processed_at": utcnow(),
    }
    if reason:
        fields["failure_reason"] = reason
    updated = _update(transaction, fields)
    order = orders.find_by_number(transaction["order_id"])
    if order:
        orders.mark_payment(order, "failed", notes=reason)
    logger.warning("Transaction %s failed: %s", transaction["transaction_id"], reason or "no reason given")
    return updated


def void_transaction(transaction_id: str, user: dict) -> dict:
    transaction = _transaction(transaction_id)
    _require_pending(transaction, "voided")
    logger.info("Transaction %s voided", transaction["transaction_id"])
    return _update(transaction, {"status": "Cancelled", "processed_by": user["_id"], "processed_at": utcnow(),
                                 "invoice.status": "Cancelled"})


def refund_transaction(transaction_id: str, body: RefundBody, user: dict) -> dict:
    transaction = _transaction(transaction_id)
    if transaction["status"] not in REFUNDABLE:
        raise ValidationError("Only completed or partially refunded transactions can be refunded")
    refunded = transaction.get("refund_amount", 0) + body.amount
    net_amount = transaction["net_amount"]
    # float tolerance on the cap
    if refunded > net_amount + 1e-9:
        raise ValidationError("Refund amount cannot exceed net amount")
    full = abs(refunded - net_amount) < 1e-9
    updated = _update(transaction, {
        "refund_amount": refunded,
        "refund_date": utcnow(),
        "refund_reason": body.reason,
        "processed_by": user["_id"],
        "status": "Refunded" if full else "Partially Refunded",
    })
    order = orders.find_by_number(transaction["order_id"])
    if order:
        orders.record_refund(order, refunded, body.reason, full)
    logger.info("Refund of %.2f on %s (total refunded %.2f)", body.amount, transaction["transaction_id"], refunded)
    return updated


def delete_transaction(transaction_id: str) -> dict:
    transaction = _transaction(transaction_id)
    _update(transaction, {"is_active": False})
    logger.info("Transaction %s deleted", transaction["transaction_id"])
    return transaction


def transaction_stats(start_date: Optional[datetime] = None, end_date: Optional[datetime] = None) -> dict:
    status_stats = {}
    for t in db["transaction"].find({}, {"status": 1, "amount": 1, "net_amount": 1, "fees": 1}):
        entry = status_stats.setdefault(t["status"], {"status": t["status"], "count": 0, "total_amount": 0,
                                                      "total_net_amount": 0, "total_fees": 0})
        entry["count"] += 1
        entry["total_amount"] += t.get("amount", 0)
        entry["total_net_amount"] += t.get("net_amount", 0)
        entry["total_fees"] += t.get("fees", 0)

    completed = {"status": "Completed"}
    if start_date and end_date:
        completed["transaction_date"] = {"$gte": as_utc(start_date), "$lte": as_utc(end_date)}
    summary = {"total_transactions": 0, "total_amount": 0, "total_net_amount": 0, "total_fees": 0}
    for t in db["transaction"].find(completed):
        summary["total_transactions"] += 1
        summary["total_amount"] += t.get("amount", 0)
        summary["total_net_amount"] += t.get("net_amount", 0)
        summary["total_fees"] += t.get("fees", 0)
    count = summary["total_transactions"]
    summary["average_transaction_value"] = summary["total_amount"] / count if count else 0

    recent = db["transaction"].find({"is_active": True}).sort("transaction_date", -1).limit(5)
    return {
        "status_stats": list(status_stats.values()),
        "total_transactions": db["transaction"].count_documents({"is_active": True}),
        "revenue_summary": summary,
        "recent_transactions": list(recent),
    }
