import re

import pytest

import accounts
import notifications

REGISTER = {
    "full_name": "Sam Taylor Smith",
    "email": "Sam@Example.com",
    "password": "secret123",
    "phone_number": "+61400555666",
}


@pytest.fixture
def sent_sms(monkeypatch):
    messages = []

    def fake_send(phone, message):
        messages.append((phone, message))
        return True

    monkeypatch.setattr(notifications, "send_sms", fake_send)
    return messages


def test_register_returns_user_tokens_and_cookie(client):
    resp = client.post("/api/auth/register", json=REGISTER)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    user = body["data"]["user"]
    assert user["email"] == "sam@example.com"
    assert user["first_name"] == "Sam"
    assert user["last_name"] == "Taylor Smith"
    assert user["username"].startswith("sam_")
    assert "password_hash" not in user and "salt" not in user
    assert body["data"]["access_token"] and body["data"]["refresh_token"]
    assert "refresh_token=" in resp.headers["set-cookie"]


def test_register_duplicate_email_conflicts(client):
    assert client.post("/api/auth/register", json=REGISTER).status_code == 201
    resp = client.post("/api/auth/register", json={**REGISTER, "phone_number": "+61400999888"})
    assert resp.status_code == 409
    assert resp.json() == {"success": False, "message": "Email already registered"}


def test_register_validation_error_shape(client):
    resp = client.post("/api/auth/register", json={**REGISTER, "email": "not-an-email"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation failed"
    assert any(e["field"] == "email" for e in body["errors"])


def test_register_rejects_overlong_first_name(client):
    resp = client.post("/api/auth/register", json={**REGISTER, "full_name": "A" * 60})
    assert resp.status_code == 400
    assert resp.json()["message"] == "First and last name must each be at most 50 characters"


def test_invalid_stored_record_is_a_400(client, monkeypatch):
    monkeypatch.setattr(accounts, "generate_username", lambda email: "x")
    resp = client.post("/api/auth/register", json=REGISTER)
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Validation failed"
    assert body["errors"][0]["field"] == "username"
    assert body["errors"][0]["value"] == "x"


def test_login_by_email_username_and_phone(client, customer):
    for identifier in ("JANE@example.com", "jane_doe", "61400111222"):
        resp = client.post("/api/auth/login", json={"identifier": identifier, "password": "secret123"})
        assert resp.status_code == 200, identifier
        assert resp.json()["data"]["user"]["username"] == "jane_doe"


def test_login_role_mismatch_is_rejected(client, customer):
    resp = client.post("/api/auth/admin/login", json={"identifier": "jane_doe", "password": "secret123"})
    assert resp.status_code == 401


def test_login_lockout_after_three_failures(client, customer):
    for _ in range(3):
        resp = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "nope"})
        assert resp.status_code == 401
    resp = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "secret123"})
    assert resp.status_code == 429
    assert resp.headers["Retry-After"] == "900"


def test_inactive_user_cannot_log_in(client, db, customer):
    db["user"].update_one({"_id": customer["_id"]}, {"$set": {"is_active": False}})
    resp = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "secret123"})
    assert resp.status_code == 401
    assert "deactivated" in resp.json()["message"]


def test_me_requires_token(client):
    resp = client.get("/api/auth/me")
    assert resp.status_code == 401
    assert resp.json()["message"] == "You are not logged in. Please log in to get access."


def test_me_returns_public_profile(client, customer_headers):
    resp = client.get("/api/auth/me", headers=customer_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["email"] == "jane@example.com"


def test_refresh_token_from_body_and_cookie(client, customer):
    login = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "secret123"}).json()
    resp = client.post("/api/auth/refresh-token", json={"refresh_token": login["data"]["refresh_token"]})
    assert resp.status_code == 200
    assert resp.json()["data"]["access_token"]
    client.cookies.set("refresh_token", resp.json()["data"]["refresh_token"])
    resp = client.post("/api/auth/refresh-token")
    assert resp.status_code == 200
    client.cookies.clear()
    assert client.post("/api/auth/refresh-token").status_code == 401


def test_refresh_rejects_access_token(client, customer):
    client.cookies.clear()
    login = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "secret123"}).json()
    client.cookies.clear()
    resp = client.post("/api/auth/refresh-token", json={"refresh_token": login["data"]["access_token"]})
    assert resp.status_code == 401


def test_change_password_checks_current(client, customer_headers):
    resp = client.put("/api/auth/change-password", headers=customer_headers,
                      json={"current_password": "wrong", "new_password": "newsecret"})
    assert resp.status_code == 401
    resp = client.put("/api/auth/change-password", headers=customer_headers,
                      json={"current_password": "secret123", "new_password": "newsecret"})
    assert resp.status_code == 200
    resp = client.post("/api/auth/login", json={"identifier": "jane_doe", "password": "newsecret"})
    assert resp.status_code == 200


def test_update_profile_conflict(client, customer_headers, other_customer):
    resp = client.put("/api/auth/update-profile", headers=customer_headers, json={"email": "john@example.com"})
    assert resp.status_code == 409
    resp = client.put("/api/auth/update-profile", headers=customer_headers, json={"first_name": "Janet"})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["first_name"] == "Janet"


def test_create_admin_only_once(client):
    body = {"username": "root", "email": "root@example.com", "password": "rootpass", "first_name": "Root",
            "last_name": "User"}
    assert client.post("/api/auth/create-admin", json=body).status_code == 201
    resp = client.post("/api/auth/create-admin", json={**body, "username": "root2", "email": "r2@example.com"})
    assert resp.status_code == 409


def test_admin_user_listing_and_reactivation(client, admin_headers, customer_headers, customer):
    assert client.get("/api/auth/admin/users", headers=customer_headers).status_code == 403

    resp = client.get("/api/auth/admin/users", headers=admin_headers, params={"role": "user"})
    assert resp.status_code == 200
    assert resp.json()["meta"]["pagination"]["total"] == 1

    assert client.put("/api/auth/deactivate", headers=customer_headers, json={"reason": "moving"}).status_code == 200
    assert client.get("/api/auth/me", headers=customer_headers).status_code == 401

    resp = client.put(f"/api/auth/admin/reactivate/{customer['_id']}", headers=admin_headers, json={})
    assert resp.status_code == 200
    assert resp.json()["data"]["reason"] == "Account reactivated by administrator"

    stats = client.get("/api/auth/admin/users/stats", headers=admin_headers).json()["data"]
    assert stats["total_users"] == 2
    assert stats["admin_users"] == 1


def test_forgot_and_reset_password(client, monkeypatch, customer):
    captured = {}

    def fake_reset_email(to, token):
        captured["token"] = token
        return True

    monkeypatch.setattr(notifications, "send_password_reset_email", fake_reset_email)
    resp = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert resp.status_code == 200
    assert "token" not in captured

    client.post("/api/auth/forgot-password", json={"email": "jane@example.com"})
    resp = client.put("/api/auth/reset-password", json={"token": captured["token"], "password": "brandnew"})
    assert resp.status_code == 200
    resp = client.put("/api/auth/reset-password", json={"token": captured["token"], "password": "again1"})
    assert resp.status_code == 401


def test_otp_registration_flow(client, sent_sms):
    body = {"username": "otpuser", "email": "otp@example.com", "password": "secret123",
            "first_name": "Otto", "phone_number": "+61400777888"}
    resp = client.post("/api/auth/customer/request-otp", json=body)
    assert resp.status_code == 200
    assert resp.json()["data"] == {"to": "+61400777888", "via": "sms"}
    otp = re.search(r"\d{6}", sent_sms[-1][1]).group()

    resp = client.post("/api/auth/customer/verify-otp",
                       json={"otp": otp, "email": "otp@example.com", "phone_number": "+61400777888"})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["username"] == "otpuser"


def test_otp_login_flow(client, sent_sms, customer):
    resp = client.post("/api/auth/customer/request-otp", json={"identifier": "+61400111222"})
    assert resp.status_code == 200
    otp = re.search(r"\d{6}", sent_sms[-1][1]).group()
    wrong = "000000" if otp != "000000" else "111111"

    resp = client.post("/api/auth/customer/verify-otp", json={"otp": wrong, "identifier": "+61400111222"})
    assert resp.status_code == 401
    resp = client.post("/api/auth/customer/verify-otp", json={"otp": otp, "identifier": "+61400111222"})
    assert resp.status_code == 200
    assert resp.json()["data"]["user"]["email"] == "jane@example.com"


def test_otp_login_refused_for_admins(client, sent_sms, admin):
    resp = client.post("/api/auth/customer/request-otp", json={"identifier": "admin@example.com"})
    assert resp.status_code == 401


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/api/nowhere")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Route /api/nowhere not found"}
