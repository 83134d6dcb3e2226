"""
Tests for registration, login, profile and the code-based email flows.
"""
from datetime import timedelta

from fastapi import HTTPException

from database import utc_now
from errors import ConflictError, NotFoundError


def register(client, **overrides):
    body = {"name": "Huda", "email": "Huda@Example.com", "password": "secret123", "role": "parent"}
    body.update(overrides)
    return client.post("/api/auth/register", json=body)


def test_register_login_and_me(client, db, email_sender):
    res = register(client)
    assert res.status_code == 201
    user = res.json()["user"]
    assert user["email"] == "huda@example.com"
    assert user["staffId"] == "PT-0001"
    assert user["emailVerified"] is False
    assert [m["to"] for m in email_sender.outbox] == ["huda@example.com"]

    res = client.post("/api/auth/login", json={"email": "HUDA@example.com", "password": "secret123"})
    assert res.status_code == 200
    token = res.json()["token"]

    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    me = res.json()["user"]
    assert me["name"] == "Huda"
    assert "passwordHash" not in me
    assert "verificationToken" not in me


def test_duplicate_email_conflicts(client):
    register(client)
    res = register(client, email="huda@example.com", name="Other")
    assert res.status_code == 400
    assert res.json() == {"success": False, "message": "User with this email already exists"}


def test_specialist_fields_only_kept_for_specialists(client, db):
    register(client, specialization="Speech", licenseNumber="L-1")
    assert db["user"].find_one({"email": "huda@example.com"})["specialization"] is None

    res = register(client, email="sp@example.com", role="specialist", specialization="Speech")
    assert res.json()["user"]["staffId"] == "SP-0001"
    assert db["user"].find_one({"email": "sp@example.com"})["specialization"] == "Speech"


def test_login_failures(client, make_user):
    user = make_user("parent")
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "wrong-pass"})
    assert res.status_code == 401
    assert res.json()["message"] == "Invalid credentials"
    res = client.post("/api/auth/login", json={"email": user["email"]})
    assert res.status_code == 400


def test_missing_or_bad_token(client):
    assert client.get("/api/auth/me").status_code == 401
    res = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert res.status_code == 401
    assert res.json()["success"] is False


def test_verify_email(client, db):
    register(client)
    code = db["user"].find_one({"email": "huda@example.com"})["verificationToken"]

    assert client.post("/api/auth/verify-email", json={"token": "000000"}).status_code == 400
    res = client.post("/api/auth/verify-email", json={"token": code})
    assert res.status_code == 200
    stored = db["user"].find_one({"email": "huda@example.com"})
    assert stored["emailVerified"] is True
    assert "verificationToken" not in stored


def test_password_reset_flow(client, db, make_user, email_sender):
    user = make_user("parent")
    res = client.post("/api/auth/forgot-password", json={"email": user["email"]})
    assert res.status_code == 200
    code = db["user"].find_one({"_id": user["_id"]})["resetPasswordToken"]
    assert code in email_sender.outbox[-1]["html"]

    assert client.post("/api/auth/verify-reset-token", json={"token": code}).status_code == 200
    res = client.put("/api/auth/reset-password", json={"token": code, "newPassword": "brandnew1"})
    assert res.status_code == 200

    stored = db["user"].find_one({"_id": user["_id"]})
    assert "resetPasswordToken" not in stored
    res = client.post("/api/auth/login", json={"email": user["email"], "password": "brandnew1"})
    assert res.status_code == 200


def test_unknown_email_gets_same_answer(client, email_sender):
    res = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert res.status_code == 200
    assert email_sender.outbox == []


def test_reset_code_withdrawn_when_delivery_fails(client, db, make_user, email_sender):
    user = make_user("parent")
    email_sender.fail = True

    res = client.post("/api/auth/forgot-password", json={"email": user["email"]})
    assert res.status_code == 500
    assert res.json()["success"] is False
    stored = db["user"].find_one({"_id": user["_id"]})
    assert "resetPasswordToken" not in stored
    assert "resetPasswordExpire" not in stored


def test_expired_reset_code(client, db, make_user):
    user = make_user("parent")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {
        "resetPasswordToken": "123456", "resetPasswordExpire": utc_now() - timedelta(minutes=1),
    }})
    res = client.post("/api/auth/verify-reset-token", json={"token": "123456"})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid or expired code"


def test_change_password(client, make_user, headers):
    user = make_user("parent")
    res = client.put("/api/auth/change-password", headers=headers(user),
                     json={"currentPassword": "nope", "newPassword": "another1"})
    assert res.status_code == 400
    res = client.put("/api/auth/change-password", headers=headers(user),
                     json={"currentPassword": "secret123", "newPassword": "another1"})
    assert res.status_code == 200


def test_profile_update_with_photo(client, db, make_user, headers):
    user = make_user("parent")
    res = client.put(
        "/api/auth/profile",
        headers=headers(user),
        data={"name": "New Name", "phone": "0911"},
        files={"photo": ("me.jpg", b"\xff\xd8\xff\xe0fake", "image/jpeg")},
    )
    assert res.status_code == 200
    body = res.json()["user"]
    assert body["name"] == "New Name"
    assert body["profilePhoto"].startswith("/uploads/profile-")


def test_upload_endpoint(client, make_user, headers):
    user = make_user("parent")
    res = client.post("/api/upload", headers=headers(user), files={"photo": ("a.gif", b"GIF89a", "image/gif")})
    assert res.status_code == 200
    assert res.json()["filePath"].endswith(".gif")


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["success"] is True


def test_service_errors_carry_http_status():
    conflict = ConflictError("User with this email already exists")
    assert isinstance(conflict, HTTPException)
    assert (conflict.status_code, conflict.detail) == (400, "User with this email already exists")
    assert NotFoundError("Child not found").status_code == 404
