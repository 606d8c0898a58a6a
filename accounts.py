import logging
import re
import secrets
import time
from datetime import timedelta
from typing import Optional, Tuple

from pymongo import ReturnDocument

import notifications
from database import create_document, db, to_object_id, utcnow
from errors import AppError, AuthenticationError, ConflictError, NotFoundError, ValidationError
from schemas import (
    CreateAdminBody,
    CustomerCreateBody,
    OtpRequestBody,
    OtpVerifyBody,
    ProfileUpdateBody,
    RegisterBody,
    User as UserSchema,
)
from security import (
    PHONE_RE,
    PendingRegistrations,
    create_tokens,
    decode_token,
    generate_otp,
    hash_password,
    hash_token,
    login_attempts,
    normalize_phone,
    pending_registrations,
    verify_password,
)

logger = logging.getLogger(__name__)

PRIVATE_FIELDS = (
    "password_hash",
    "salt",
    "password_reset_token",
    "password_reset_expires",
    "login_otp_code",
    "login_otp_expires",
    "login_otp_attempts",
)
LOGIN_OTP_TTL = timedelta(minutes=5)
LOGIN_OTP_MAX_ATTEMPTS = 5
RESET_TOKEN_TTL = timedelta(minutes=10)
NAME_MAX_LENGTH = 50


def public_user(user: Optional[dict]) -> Optional[dict]:
    if user is None:
        return None
    return {k: v for k, v in user.items() if k not in PRIVATE_FIELDS}


def token_payload(user: dict) -> dict:
    access_token, refresh_token = create_tokens(user["_id"])
    return {"user": public_user(user), "access_token": access_token, "refresh_token": refresh_token}


# ----------------------- Lookups -----------------------
def identifier_conditions(identifier: str) -> Tuple[list, bool, Optional[str]]:
    is_phone = bool(PHONE_RE.match(identifier))
    phone = normalize_phone(identifier) if is_phone else None
    conditions = [{"email": identifier.lower()}, {"username": identifier}]
    if is_phone:
        conditions.append({"phone_number": phone})
    return conditions, is_phone, phone


def find_by_identifier(identifier: str) -> Tuple[Optional[dict], bool, Optional[str]]:
    conditions, is_phone, phone = identifier_conditions(identifier)
    return db["user"].find_one({"$or": conditions}), is_phone, phone


def conflict_message(existing: dict, email=None, username=None, phone=None, verb: str = "registered") -> str:
    if email and existing.get("email") == email:
        return f"Email already {verb}"
    if username and existing.get("username") == username:
        return "Username already taken"
    if phone and existing.get("phone_number") == phone:
        return f"Phone number already {verb}"
    return "User already exists"


def ensure_unique(email=None, username=None, phone=None, exclude_id=None, verb: str = "registered"):
    conditions = []
    if email:
        conditions.append({"email": email})
    if username:
        conditions.append({"username": username})
    if phone:
        conditions.append({"phone_number": phone})
    if not conditions:
        return
    query = {"$or": conditions}
    if exclude_id is not None:
        query = {"$and": [{"_id": {"$ne": exclude_id}}, query]}
    existing = db["user"].find_one(query)
    if existing:
        raise ConflictError(conflict_message(existing, email, username, phone, verb))


def generate_username(email: str) -> str:
    email_prefix = re.sub(r"[^a-z0-9]", "", email.split("@")[0].lower())[:20]
    for _ in range(10):
        suffix = f"{str(int(time.time() * 1000))[-6:]}{secrets.randbelow(1000):03d}"
        prefix = email_prefix[:min(20, 30 - len(suffix) - 1)]
        username = f"{prefix}_{suffix}" if len(prefix) >= 3 else f"user_{suffix}"
        if not db["user"].find_one({"username": username}):
            return username
    raise AppError("Unable to generate unique username. Please try again.")


def create_user(username: str, email: str, password: str, first_name: str, last_name: str,
                phone_number: Optional[str] = None, role: str = "user") -> dict:
    password_hash, salt = hash_password(password)
    user = UserSchema(
        username=username,
        email=email.lower(),
        password_hash=password_hash,
        salt=salt,
        first_name=first_name,
        last_name=last_name,
        phone_number=phone_number,
        role=role,
    )
    user_id = create_document("user", user)
    logger.info("User created: %s (%s)", username, role)
    return db["user"].find_one({"_id": to_object_id(user_id)})


def get_user(user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise NotFoundError("User")
    return user


# ----------------------- Registration & login -----------------------
def register_user(body: RegisterBody) -> dict:
    phone = normalize_phone(body.phone_number)
    parts = body.full_name.strip().split()
    if not parts:
        raise ValidationError("Full name must contain at least a first name")
    first_name, last_name = parts[0], " ".join(parts[1:])
    if len(first_name) > NAME_MAX_LENGTH or len(last_name) > NAME_MAX_LENGTH:
        raise ValidationError(f"First and last name must each be at most {NAME_MAX_LENGTH} characters")
    email = body.email.lower()
    ensure_unique(email=email, phone=phone)
    return create_user(generate_username(email), email, body.password, first_name, last_name, phone)


def validate_credentials(identifier: str, password: str, role: Optional[str] = None) -> Tuple[dict, bool]:
    login_attempts.check(identifier)
    user, is_phone, _ = find_by_identifier(identifier)
    if not user or not verify_password(password, user.get("salt", ""), user.get("password_hash")):
        login_attempts.record(identifier, False)
        raise AuthenticationError("Incorrect identifier or password")
    if not user.get("is_active", True):
        raise AuthenticationError("Your account has been deactivated. Please contact support.")
    if role and user.get("role") != role:
        login_attempts.record(identifier, False)
        raise AuthenticationError(f"Access denied. You don't have {role} privileges.")
    login_attempts.record(identifier, True)
    return user, is_phone


def login(identifier: str, password: str, role: Optional[str] = None) -> Tuple[dict, bool]:
    user, is_phone = validate_credentials(identifier, password, role)
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now}})
    user["last_login"] = now
    logger.info("User logged in: %s", user["username"])
    return user, is_phone


def send_login_sms(user: dict, is_phone: bool) -> bool:
    if not (is_phone and user.get("phone_number") and user.get("role") == "user"):
        return False
    message = (f"Hi {user.get('first_name') or user.get('username')}, you have successfully logged in at "
               f"{utcnow().strftime('%Y-%m-%d %H:%M:%S')} UTC. If this wasn't you, please secure your account.")
    return notifications.send_sms(user["phone_number"], message)


def create_admin(body: CreateAdminBody) -> dict:
    if db["user"].find_one({"role": "admin"}):
        raise ConflictError("Admin user already exists")
    phone = normalize_phone(body.phone_number)
    email = body.email.lower()
    ensure_unique(email=email, username=body.username, phone=phone)
    return create_user(body.username, email, body.password, body.first_name, body.last_name, phone, role="admin")


# ----------------------- OTP -----------------------
def is_registration_request(body: OtpRequestBody) -> bool:
    return bool(body.username and body.email and body.password)


def request_registration_otp(body: OtpRequestBody) -> dict:
    phone = normalize_phone(body.phone_number)
    if not phone:
        raise ValidationError("Phone number is required for OTP registration")
    email = body.email.lower()
    ensure_unique(email=email, username=body.username, phone=phone)
    otp = generate_otp()
    key = PendingRegistrations.key(email, phone)
    pending_registrations.add(key, {
        "username": body.username,
        "email": email,
        "password": body.password,
        "first_name": body.first_name or body.username,
        "last_name": body.last_name or "",
        "phone_number": phone,
    }, otp)
    if not notifications.send_sms(phone, f"Your registration code is {otp}. It expires in 10 minutes."):
        logger.warning("Failed to send registration OTP SMS for %s", email)
        pending_registrations.discard(key)
    return {"to": phone, "via": "sms"}


def request_login_otp(identifier: str) -> dict:
    user, _, phone = find_by_identifier(identifier)
    if not user:
        raise NotFoundError("User")
    if user.get("role") != "user":
        raise AuthenticationError("OTP login is only available for customers")
    if not user.get("is_active", True):
        raise AuthenticationError("Your account has been deactivated. Please contact support.")
    target = phone or user.get("phone_number")
    if not target:
        raise ValidationError("A verified phone number is required for OTP login")
    otp = generate_otp()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "login_otp_code": otp,
        "login_otp_expires": utcnow() + LOGIN_OTP_TTL,
        "login_otp_attempts": 0,
    }})
    if not notifications.send_sms(target, f"Your login code is {otp}. It expires in 5 minutes."):
        logger.warning("Failed to send OTP SMS for user %s", user["_id"])
    return {"to": target, "via": "sms"}


def request_customer_otp(body: OtpRequestBody) -> dict:
    if is_registration_request(body):
        return request_registration_otp(body)
    if not body.identifier:
        raise ValidationError("Identifier is required")
    return request_login_otp(body.identifier)


def verify_registration_otp(body: OtpVerifyBody) -> dict:
    phone = normalize_phone(body.phone_number)
    if not phone:
        raise ValidationError("Phone number is required")
    key = PendingRegistrations.key(body.email, phone)
    pending = pending_registrations.verify(key, body.otp)
    ensure_unique(email=pending["email"], username=pending["username"], phone=phone)
    return create_user(pending["username"], pending["email"], pending["password"], pending["first_name"],
                       pending["last_name"], phone)


def verify_login_otp(identifier: str, otp: str) -> dict:
    user, _, _ = find_by_identifier(identifier)
    if not user:
        raise AuthenticationError("Invalid code")
    if user.get("role") != "user":
        raise AuthenticationError("OTP login is only available for customers")
    if not user.get("is_active", True):
        raise AuthenticationError("Your account has been deactivated. Please contact support.")
    expires = user.get("login_otp_expires")
    if not user.get("login_otp_code") or not expires or utcnow() > expires:
        raise AuthenticationError("Code expired. Please request a new one.")
    if user.get("login_otp_attempts", 0) >= LOGIN_OTP_MAX_ATTEMPTS:
        raise AuthenticationError("Too many invalid attempts. Request a new code.")
    if not secrets.compare_digest(str(otp), str(user["login_otp_code"])):
        db["user"].update_one({"_id": user["_id"]}, {"$inc": {"login_otp_attempts": 1}})
        raise AuthenticationError("Invalid code")
    return db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"last_login": utcnow(), "login_otp_attempts": 0},
         "$unset": {"login_otp_code": "", "login_otp_expires": ""}},
        return_document=ReturnDocument.AFTER,
    )


def verify_customer_otp(body: OtpVerifyBody) -> dict:
    if body.email and body.phone_number:
        return verify_registration_otp(body)
    if not body.identifier:
        raise ValidationError("Identifier is required")
    return verify_login_otp(body.identifier, body.otp)


# ----------------------- Tokens & passwords -----------------------
def refresh_tokens(refresh_token: Optional[str]) -> Tuple[str, str]:
    if not refresh_token:
        raise AuthenticationError("Refresh token not provided")
    payload = decode_token(refresh_token, refresh=True)
    user = db["user"].find_one({"_id": to_object_id(payload["id"], "user")})
    if not user or not user.get("is_active", True):
        raise AuthenticationError("User not found or inactive")
    return create_tokens(user["_id"])


def forgot_password(email: str) -> bool:
    user = db["user"].find_one({"email": email.lower()})
    if not user:
        logger.info("Password reset requested for unknown email")
        return False
    reset_token = secrets.token_hex(32)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "password_reset_token": hash_token(reset_token),
        "password_reset_expires": utcnow() + RESET_TOKEN_TTL,
    }})
    return notifications.send_password_reset_email(user["email"], reset_token)


def _set_password(user_id, password: str, extra_unset: Optional[dict] = None) -> dict:
    password_hash, salt = hash_password(password)
    update = {"$set": {
        "password_hash": password_hash,
        "salt": salt,
        # one second back so tokens issued right after still pass the check
        "password_changed_at": utcnow() - timedelta(seconds=1),
        "updated_at": utcnow(),
    }}
    if extra_unset:
        update["$unset"] = extra_unset
    return db["user"].find_one_and_update({"_id": user_id}, update, return_document=ReturnDocument.AFTER)


def reset_password(token: str, password: str) -> dict:
    user = db["user"].find_one({
        "password_reset_token": hash_token(token),
        "password_reset_expires": {"$gt": utcnow()},
    })
    if not user:
        raise AuthenticationError("Invalid or expired reset token")
    return _set_password(user["_id"], password, {"password_reset_token": "", "password_reset_expires": ""})


def change_password(user: dict, current_password: str, new_password: str) -> dict:
    if not verify_password(current_password, user.get("salt", ""), user.get("password_hash")):
        raise AuthenticationError("Current password is incorrect")
    return _set_password(user["_id"], new_password)


# ----------------------- Profile & admin -----------------------
def update_profile(user: dict, body: ProfileUpdateBody) -> dict:
    data = body.model_dump(exclude_none=True)
    if "email" in data:
        data["email"] = data["email"].lower()
    if "phone_number" in data:
        data["phone_number"] = normalize_phone(data["phone_number"])
    ensure_unique(data.get("email"), data.get("username"), data.get("phone_number"),
                  exclude_id=user["_id"], verb="taken")
    if not data:
        return user
    data["updated_at"] = utcnow()
    return db["user"].find_one_and_update({"_id": user["_id"]}, {"$set": data},
                                          return_document=ReturnDocument.AFTER)


def deactivate_account(user_id, reason: Optional[str] = None, by=None) -> dict:
    user = get_user(user_id)
    if not user.get("is_active", True):
        raise ValidationError("User account is already deactivated")
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "is_active": False,
        "deactivated_at": now,
        "deactivated_by": by or user["_id"],
        "deactivation_reason": reason,
        "updated_at": now,
    }})
    logger.info("User deactivated: %s", user["username"])
    return {"user_id": user["_id"], "username": user["username"], "email": user["email"], "deactivated_at": now}


def reactivate_account(user_id: str, admin: dict, reason: Optional[str] = None) -> dict:
    user = get_user(user_id)
    if user.get("is_active", True):
        raise ValidationError("User account is already active")
    reason = reason or "Account reactivated by administrator"
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {
        "$set": {
            "is_active": True,
            "reactivated_by": admin["_id"],
            "reactivated_at": now,
            "reactivation_reason": reason,
            "updated_at": now,
        },
        "$unset": {"deactivated_by": "", "deactivated_at": "", "deactivation_reason": ""},
    })
    logger.info("User reactivated: %s by %s", user["username"], admin["username"])
    return {
        "user_id": user["_id"],
        "username": user["username"],
        "email": user["email"],
        "reactivated_at": now,
        "reactivated_by": admin["username"],
        "reason": reason,
    }


def list_users(skip: int, limit: int, search: Optional[str] = None, role: Optional[str] = None,
               is_active: Optional[bool] = None) -> Tuple[list, int]:
    filt = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"username": pattern}, {"email": pattern}, {"first_name": pattern},
                       {"last_name": pattern}, {"phone_number": pattern}]
    if role:
        filt["role"] = role
    if is_active is not None:
        filt["is_active"] = is_active
    total = db["user"].count_documents(filt)
    users = db["user"].find(filt).sort("created_at", -1).skip(skip).limit(limit)
    return [public_user(u) for u in users], total


def user_stats() -> dict:
    since = utcnow() - timedelta(days=30)
    users = db["user"]
    return {
        "total_users": users.count_documents({}),
        "active_users": users.count_documents({"is_active": True}),
        "inactive_users": users.count_documents({"is_active": False}),
        "admin_users": users.count_documents({"role": "admin"}),
        "regular_users": users.count_documents({"role": "user"}),
        "recent_registrations": users.count_documents({"created_at": {"$gte": since}}),
        "recent_deactivations": users.count_documents({"deactivated_at": {"$gte": since}}),
        "last_updated": utcnow(),
    }


# ----------------------- Customers -----------------------
def get_customer(user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "customer")})
    if not user or user.get("role") != "user":
        raise NotFoundError("Customer")
    return user


def create_customer(body: CustomerCreateBody) -> dict:
    phone = normalize_phone(body.phone_number)
    email = body.email.lower()
    ensure_unique(email=email, username=body.username, phone=phone)
    return create_user(body.username, email, body.password, body.first_name, body.last_name, phone)


def update_customer(user_id: str, body: ProfileUpdateBody) -> dict:
    return update_profile(get_customer(user_id), body)


def deactivate_customer(user_id: str, admin: dict, reason: Optional[str] = None) -> dict:
    customer = get_customer(user_id)
    result = deactivate_account(customer["_id"], reason or "Account deactivated by administrator", by=admin["_id"])
    result["deactivated_by"] = admin["username"]
    return result


def reactivate_customer(user_id: str, admin: dict, reason: Optional[str] = None) -> dict:
    return reactivate_account(get_customer(user_id)["_id"], admin, reason)


def customer_stats() -> dict:
    since = utcnow() - timedelta(days=30)
    customers = {"role": "user"}
    users = db["user"]
    return {
        "total_customers": users.count_documents(customers),
        "active_customers": users.count_documents({**customers, "is_active": True}),
        "inactive_customers": users.count_documents({**customers, "is_active": False}),
        "recent_registrations": users.count_documents({**customers, "created_at": {"$gte": since}}),
        "recent_deactivations": users.count_documents({**customers, "deactivated_at": {"$gte": since}}),
        "last_updated": utcnow(),
    }
