import time

import jwt
import pytest

import config
import security
from errors import AuthenticationError, RateLimitError
from security import LoginAttempts, PendingRegistrations


def test_password_hash_is_salted_and_verifiable():
    h1, salt1 = security.hash_password("secret123")
    h2, salt2 = security.hash_password("secret123")
    assert salt1 != salt2
    assert h1 != h2
    assert security.verify_password("secret123", salt1, h1)
    assert not security.verify_password("wrong", salt1, h1)


def test_access_and_refresh_tokens_are_not_interchangeable():
    access, refresh = security.create_tokens("5f0c1b2a3d4e5f6a7b8c9d0e")
    assert security.decode_token(access)["type"] == "access"
    assert security.decode_token(refresh, refresh=True)["id"] == "5f0c1b2a3d4e5f6a7b8c9d0e"
    with pytest.raises(AuthenticationError):
        security.decode_token(refresh)


def test_expired_token_rejected():
    token = jwt.encode({"id": "abc", "type": "access", "exp": int(time.time()) - 10}, config.JWT_SECRET,
                       algorithm=config.JWT_ALGO)
    with pytest.raises(AuthenticationError, match="expired"):
        security.decode_token(token)


def test_normalize_phone_and_otp():
    assert security.normalize_phone("61400111222") == "+61400111222"
    assert security.normalize_phone("+61400111222") == "+61400111222"
    assert security.normalize_phone("  ") is None
    otp = security.generate_otp()
    assert len(otp) == 6 and otp.isdigit()


def test_login_attempts_lock_after_three_failures():
    attempts = LoginAttempts(max_attempts=3, lockout_seconds=900)
    for _ in range(3):
        attempts.check("jane@example.com")
        attempts.record("jane@example.com", False)
    with pytest.raises(RateLimitError, match="15 minutes"):
        attempts.check("jane@example.com")
    attempts.check("someone@else.com")


def test_login_attempts_success_resets_counter():
    attempts = LoginAttempts(max_attempts=3)
    attempts.record("jane", False)
    attempts.record("jane", False)
    attempts.record("jane", True)
    attempts.record("jane", False)
    attempts.check("jane")


def test_login_attempts_expire_after_window():
    attempts = LoginAttempts(max_attempts=1, lockout_seconds=0)
    attempts.record("jane", False)
    time.sleep(0.01)
    attempts.check("jane")


def test_pending_registration_verify_and_attempt_limit():
    pending = PendingRegistrations(max_attempts=2)
    key = PendingRegistrations.key("Jane@Example.com", "+61400111222")
    assert key == "jane@example.com_+61400111222"
    pending.add(key, {"email": "jane@example.com"}, "123456")
    with pytest.raises(AuthenticationError, match="Invalid OTP"):
        pending.verify(key, "000000")
    with pytest.raises(AuthenticationError, match="Invalid OTP"):
        pending.verify(key, "000000")
    with pytest.raises(AuthenticationError, match="Too many"):
        pending.verify(key, "123456")
    assert pending.get(key) is None


def test_pending_registration_expired_entries_are_cleaned():
    pending = PendingRegistrations(otp_ttl=0)
    pending.add("a_+61400111222", {}, "123456")
    time.sleep(0.01)
    pending.add("b_+61400111333", {}, "654321")
    assert pending.get("a_+61400111222") is None
    with pytest.raises(AuthenticationError, match="No pending registration|OTP expired"):
        pending.verify("b_+61400111333", "654321")
