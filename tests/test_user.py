from datetime import datetime, timedelta, timezone

import auth
from database import db


def _onboard(client, monkeypatch, phone="9876501234", otp="4321"):
    monkeypatch.setattr(auth, "generate_otp", lambda: otp)
    return client.post("/api/v1/user/onboarding", json={"phone": phone})


def test_onboarding_creates_user_and_hides_otp(client, monkeypatch):
    resp = _onboard(client, monkeypatch)
    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["user"]["phone"] == "+919876501234"
    assert "otp_hash" not in body["user"]

    stored = db["user"].find_one({"phone": "+919876501234"})
    assert stored["otp_hash"] != "4321"
    assert auth.verify_otp("4321", stored["otp_hash"])


def test_onboarding_existing_user_returns_200(client, monkeypatch):
    _onboard(client, monkeypatch)
    resp = _onboard(client, monkeypatch, otp="1111")
    assert resp.status_code == 200
    assert resp.json()["message"] == "OTP sent successfully to your phone."


def test_onboarding_rejects_bad_phone(client):
    resp = client.post("/api/v1/user/onboarding", json={"phone": "12345-abcde"})
    assert resp.status_code == 400
    assert resp.json() == {"success": False, "message": "Please provide a valid phone number"}


def test_onboarding_reports_sms_failure(client, monkeypatch):
    import sms
    monkeypatch.setattr(sms, "send_phone_otp", lambda phone, otp: False)
    resp = client.post("/api/v1/user/onboarding", json={"phone": "9876501234"})
    assert resp.status_code == 400
    assert db["user"].count_documents({}) == 0


def test_verify_otp_issues_token(client, monkeypatch):
    _onboard(client, monkeypatch)
    resp = client.post("/api/v1/user/verify-otp", json={"phone": "9876501234", "otp": "4321"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["token"]
    assert body["is_profile_complete"] is False

    stored = db["user"].find_one({"phone": "+919876501234"})
    assert stored["is_phone_verified"] is True
    assert "otp_hash" not in stored

    profile = client.get("/api/v1/user/profile", headers={"Authorization": f"Bearer {body['token']}"})
    assert profile.status_code == 200
    assert profile.json()["user"]["phone"] == "+919876501234"


def test_verify_otp_wrong_code(client, monkeypatch):
    _onboard(client, monkeypatch)
    resp = client.post("/api/v1/user/verify-otp", json={"phone": "9876501234", "otp": "0000"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Incorrect OTP. Please try again."


def test_verify_otp_expired(client, monkeypatch):
    _onboard(client, monkeypatch)
    db["user"].update_one(
        {"phone": "+919876501234"},
        {"$set": {"otp_expiry": datetime.now(timezone.utc) - timedelta(minutes=1)}},
    )
    resp = client.post("/api/v1/user/verify-otp", json={"phone": "9876501234", "otp": "4321"})
    assert resp.status_code == 400
    assert "expired" in resp.json()["message"]


def test_verify_otp_format_is_validated(client):
    resp = client.post("/api/v1/user/verify-otp", json={"phone": "9876501234", "otp": "12"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["message"] == "Invalid input data"
    assert body["errors"][0]["field"] == "otp"


def test_missing_and_invalid_tokens(client):
    assert client.get("/api/v1/user/profile").json()["message"] == "No token provided"
    resp = client.get("/api/v1/user/profile", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Invalid token"


def test_unverified_and_inactive_users_are_refused(client, make_user):
    _, headers = make_user(is_phone_verified=False)
    assert client.get("/api/v1/user/profile", headers=headers).json()["message"] == "Phone number not verified"
    _, headers = make_user(is_active=False)
    assert client.get("/api/v1/user/profile", headers=headers).json()["message"] == "Account is deactivated"


def test_role_guard_message(client, customer):
    _, headers = customer
    resp = client.get("/api/v1/store/details", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["message"] == "Access denied. Required roles: Merchant. Your role: User"


def test_complete_profile_roles(client, make_user):
    user, headers = make_user(is_profile_complete=False)
    resp = client.post("/api/v1/user/complete-profile", headers=headers, json={"name": "Mira", "role": "merchant"})
    assert resp.status_code == 200
    assert resp.json()["user"]["role"] == "Merchant"
    assert resp.json()["user"]["is_profile_complete"] is False

    partner, headers = make_user(is_profile_complete=False)
    resp = client.post("/api/v1/user/complete-profile", headers=headers, json={"name": "Dev", "role": "Delivery"})
    assert resp.json()["user"]["is_profile_complete"] is True
    assert db["user"].find_one({"_id": partner["_id"]})["is_online"] is True

    resp = client.post("/api/v1/user/complete-profile", headers=headers, json={"name": "Dev", "role": "user"})
    assert resp.status_code == 400


def test_complete_profile_rejects_unknown_role(client, make_user):
    _, headers = make_user(is_profile_complete=False)
    resp = client.post("/api/v1/user/complete-profile", headers=headers, json={"name": "Mira", "role": "admin"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Role must be one of: user, merchant, delivery"


def test_update_addresses(client, customer):
    user, headers = customer
    resp = client.put("/api/v1/user/addresses", headers=headers, json={
        "addresses": [{"label": "Home", "line": "14 Residency Road", "city": "Bengaluru"}],
    })
    assert resp.status_code == 200
    assert db["user"].find_one({"_id": user["_id"]})["addresses"][0]["line"] == "14 Residency Road"
