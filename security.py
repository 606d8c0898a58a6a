import hashlib
import logging
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

import config
from database import db, to_object_id
from errors import AuthenticationError, AuthorizationError, RateLimitError

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

PHONE_RE = re.compile(r"^\+?[1-9]\d{7,14}$")


# ----------------------- Passwords -----------------------
def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return secrets.compare_digest(h, expected_hash or "")


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone or not phone.strip():
        return None
    phone = phone.strip()
    return phone if phone.startswith("+") else f"+{phone}"


# ----------------------- Tokens -----------------------
def create_token(user_id: str, refresh: bool = False) -> str:
    now = datetime.now(timezone.utc)
    if refresh:
        exp = now + timedelta(days=config.JWT_REFRESH_EXPIRE_DAYS)
        secret = config.JWT_REFRESH_SECRET
    else:
        exp = now + timedelta(minutes=config.JWT_EXPIRE_MINUTES)
        secret = config.JWT_SECRET
    payload = {"id": str(user_id), "type": "refresh" if refresh else "access", "iat": now, "exp": exp}
    return jwt.encode(payload, secret, algorithm=config.JWT_ALGO)


def create_tokens(user_id) -> Tuple[str, str]:
    return create_token(user_id), create_token(user_id, refresh=True)


def decode_token(token: str, refresh: bool = False) -> dict:
    secret = config.JWT_REFRESH_SECRET if refresh else config.JWT_SECRET
    try:
        payload = jwt.decode(token, secret, algorithms=[config.JWT_ALGO])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Your token has expired. Please log in again.")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token. Please log in again.")
    expected = "refresh" if refresh else "access"
    if payload.get("type", expected) != expected or not payload.get("id"):
        raise AuthenticationError("Invalid token. Please log in again.")
    return payload


def changed_password_after(user: dict, iat: int) -> bool:
    changed_at = user.get("password_changed_at")
    if not changed_at:
        return False
    return int(changed_at.replace(tzinfo=timezone.utc).timestamp()) > int(iat)


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> dict:
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("You are not logged in. Please log in to get access.")
    payload = decode_token(credentials.credentials)
    user = db["user"].find_one({"_id": to_object_id(payload["id"], "user")})
    if not user:
        raise AuthenticationError("The user belonging to this token no longer exists.")
    if changed_password_after(user, payload.get("iat", 0)):
        raise AuthenticationError("User recently changed password! Please log in again.")
    if not user.get("is_active", True):
        raise AuthenticationError("Your account has been deactivated. Please contact support.")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise AuthorizationError("You do not have permission to perform this action.")
    return user


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


# ----------------------- In-process stores -----------------------
class LoginAttempts:
    """Failed login counter per identifier, reset after the lockout window."""

    def __init__(self, max_attempts: int = 3, lockout_seconds: int = 15 * 60):
        self.max_attempts = max_attempts
        self.lockout_seconds = lockout_seconds
        self._entries = {}

    def check(self, identifier: str):
        entry = self._entries.get(identifier, {"count": 0, "last_attempt": 0.0})
        elapsed = time.time() - entry["last_attempt"]
        if elapsed > self.lockout_seconds:
            entry["count"] = 0
        if entry["count"] >= self.max_attempts:
            minutes = max(1, -(-int(self.lockout_seconds - elapsed) // 60))
            raise RateLimitError(f"Too many failed attempts. Please try again in {minutes} minutes.")

    def record(self, identifier: str, success: bool):
        entry = self._entries.get(identifier, {"count": 0, "last_attempt": 0.0})
        entry["count"] = 0 if success else entry["count"] + 1
        entry["last_attempt"] = time.time()
        self._entries[identifier] = entry

    def clear(self):
        self._entries.clear()


class PendingRegistrations:
    """Registration data parked until the SMS code is confirmed."""

    def __init__(self, otp_ttl: int = 10 * 60, max_age: int = 15 * 60, max_attempts: int = 5):
        self.otp_ttl = otp_ttl
        self.max_age = max_age
        self.max_attempts = max_attempts
        self._entries = {}

    @staticmethod
    def key(email: str, phone: str) -> str:
        return f"{email.lower()}_{phone}"

    def add(self, key: str, data: dict, otp: str):
        now = time.time()
        self._entries[key] = {**data, "otp": otp, "otp_expires": now + self.otp_ttl, "otp_attempts": 0,
                              "created_at": now}
        self.cleanup()

    def discard(self, key: str):
        self._entries.pop(key, None)

    def get(self, key: str) -> Optional[dict]:
        return self._entries.get(key)

    def verify(self, key: str, otp: str) -> dict:
        entry = self._entries.get(key)
        if not entry:
            raise AuthenticationError("No pending registration found. Please request a new OTP.")
        if time.time() > entry["otp_expires"]:
            self.discard(key)
            raise AuthenticationError("OTP expired. Please request a new one.")
        if entry["otp_attempts"] >= self.max_attempts:
            self.discard(key)
            raise AuthenticationError("Too many invalid attempts. Please request a new OTP.")
        if not secrets.compare_digest(str(otp), entry["otp"]):
            entry["otp_attempts"] += 1
            raise AuthenticationError("Invalid OTP code")
        self.discard(key)
        return entry

    def cleanup(self):
        now = time.time()
        for key, entry in list(self._entries.items()):
            if now - entry["created_at"] > self.max_age or now > entry["otp_expires"]:
                del self._entries[key]

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


login_attempts = LoginAttempts()
pending_registrations = PendingRegistrations()
