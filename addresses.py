import logging
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import create_document, db, to_object_id, utcnow
from errors import NotFoundError, ValidationError
from schemas import Address as AddressSchema, AddressCreateBody, AddressUpdateBody
from security import is_admin

logger = logging.getLogger(__name__)


def _join(*parts) -> str:
    return ", ".join(p.strip() for p in parts if p and p.strip())


def with_virtuals(address: Optional[dict]) -> Optional[dict]:
    if address is None:
        return None
    address = dict(address)
    address["full_address"] = _join(address.get("street"), address.get("street2"), address.get("city"),
                                    address.get("state"), address.get("postal_code"), address.get("country"))
    address["short_address"] = _join(address.get("city"), address.get("state"), address.get("country"))
    return address


def unset_defaults(user_id: ObjectId, exclude_id: Optional[ObjectId] = None):
    filt = {"user": user_id, "is_default": True}
    if exclude_id is not None:
        filt["_id"] = {"$ne": exclude_id}
    db["address"].update_many(filt, {"$set": {"is_default": False, "updated_at": utcnow()}})


def _owned(address_id: str, user: dict) -> dict:
    address = db["address"].find_one({"_id": to_object_id(address_id, "address"), "user": user["_id"],
                                      "is_active": True})
    if not address:
        raise NotFoundError("Address")
    return address


def list_addresses(user: dict, address_type: Optional[str] = None, is_default: Optional[bool] = None) -> list:
    filt = {"user": user["_id"], "is_active": True}
    if address_type:
        filt["address_type"] = address_type
    if is_default is not None:
        filt["is_default"] = is_default
    cursor = db["address"].find(filt).sort([("is_default", -1), ("created_at", -1)])
    return [with_virtuals(a) for a in cursor]


def default_address(user_id: ObjectId) -> Optional[dict]:
    return db["address"].find_one({"user": user_id, "is_default": True, "is_active": True})


def get_default(user: dict) -> dict:
    address = default_address(user["_id"])
    if not address:
        raise NotFoundError("Default address")
    return with_virtuals(address)


def addresses_by_type(user: dict, address_type: str) -> list:
    cursor = db["address"].find({"user": user["_id"], "address_type": address_type, "is_active": True}) \
        .sort("created_at", -1)
    return [with_virtuals(a) for a in cursor]


def get_address(address_id: str, user: dict) -> dict:
    return with_virtuals(_owned(address_id, user))


def create_address(body: AddressCreateBody, user: dict) -> dict:
    owner_id = user["_id"]
    if body.customer_id and is_admin(user):
        customer = db["user"].find_one({"_id": to_object_id(body.customer_id, "customer"), "is_active": True})
        if not customer:
            raise ValidationError("Customer not found or inactive")
        owner_id = customer["_id"]
    data = body.model_dump(exclude={"customer_id"})
    address = AddressSchema(user=owner_id, **data)
    if db["address"].count_documents({"user": owner_id, "is_active": True}) == 0:
        address.is_default = True
    if address.is_default:
        unset_defaults(owner_id)
    address_id = create_document("address", address)
    logger.info("Address created for user %s", owner_id)
    return with_virtuals(db["address"].find_one({"_id": ObjectId(address_id)}))


def update_address(address_id: str, body: AddressUpdateBody, user: dict) -> dict:
    address = _owned(address_id, user)
    data = body.model_dump(exclude_none=True)
    if data.get("is_default"):
        unset_defaults(address["user"], exclude_id=address["_id"])
    data["updated_at"] = utcnow()
    updated = db["address"].find_one_and_update({"_id": address["_id"]}, {"$set": data},
                                                return_document=ReturnDocument.AFTER)
    return with_virtuals(updated)


def set_default(address_id: str, user: dict) -> dict:
    address = _owned(address_id, user)
    unset_defaults(address["user"])
    updated = db["address"].find_one_and_update(
        {"_id": address["_id"], "user": address["user"], "is_active": True},
        {"$set": {"is_default": True, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Default address set to %s for user %s", address["_id"], address["user"])
    return with_virtuals(updated)


def delete_address(address_id: str, user: dict) -> dict:
    address = _owned(address_id, user)
    db["address"].update_one({"_id": address["_id"]},
                             {"$set": {"is_active": False, "is_default": False, "updated_at": utcnow()}})
    if address.get("is_default"):
        successor = db["address"].find_one({"user": address["user"], "is_active": True},
                                           sort=[("created_at", 1)])
        if successor:
            db["address"].update_one({"_id": successor["_id"]}, {"$set": {"is_default": True}})
    logger.info("Address %s deleted for user %s", address["_id"], address["user"])
    return address
