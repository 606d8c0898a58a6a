"""
MongoDB access helpers.

`db` is the shared database handle (None when DATABASE_URL / DATABASE_NAME
are not configured). Collection names are the lowercase singular of the
record they hold, e.g. "product", "order", "promo_code_usage".
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

db = None
if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so everything stored is naive UTC too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str, name: str = "resource") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {name} ID format")


def is_object_id(value) -> bool:
    return isinstance(value, ObjectId) or ObjectId.is_valid(str(value))


def serialize_doc(doc):
    if doc is None:
        return doc
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v) if isinstance(v, ObjectId) else v
        else:
            out[k] = serialize_doc(v)
    return out


def create_document(collection_name: str, data) -> str:
    if isinstance(data, BaseModel):
        # unset optionals stay absent so sparse unique indexes ignore them
        data = data.model_dump(exclude_none=True)
    doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort=None) -> list:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes():
    if db is None:
        logger.warning("Database not configured, skipping index creation")
        return
    db["user"].create_index("email", unique=True)
    db["user"].create_index("username", unique=True)
    db["user"].create_index("phone_number", unique=True, sparse=True)
    db["product"].create_index("sku", unique=True)
    db["product"].create_index([("is_featured", ASCENDING), ("featured_order", ASCENDING)])
    db["category"].create_index("slug", unique=True, sparse=True)
    db["category"].create_index([("parent", ASCENDING), ("order", ASCENDING)])
    db["address"].create_index([("user", ASCENDING), ("is_default", ASCENDING)])
    db["order"].create_index("order_number", unique=True)
    db["order"].create_index("customer")
    db["transaction"].create_index("transaction_id", unique=True)
    db["transaction"].create_index("order_id")
    db["promo_code"].create_index("code", unique=True)
    db["promo_code_usage"].create_index("order_id", unique=True)
    logger.info("Database indexes ensured")
