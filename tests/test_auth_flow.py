from __future__ import annotations

from sqlalchemy import select

import app as app_module
from db import SessionLocal
from models import RefreshToken, User


def _post(client, path: str, body: dict | None = None, token: str | None = None):
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return client.post(path, json=body or {}, headers=headers)


def _register(client, *, email: str, role: str = "user", fcm_token: str = "device-123"):
    return _post(
        client,
        "/api/auth/register",
        {
            "name": "Priya Nair",
            "email": email,
            "password": "s3cret-pass",
            "role": role,
            "department": "Engineering",
            "phone": "9876543210",
            "fcmToken": fcm_token,
        },
    )


def _admin_token(client) -> str:
    res = _post(client, "/api/auth/admin/login", {"email": "admin@tracker.test", "password": "admin-pass-123"})
    assert res.status_code == 200
    return res.get_json()["accessToken"]


def test_register_creates_unapproved_user_and_sends_welcome(app_client):
    app, client = app_client

    res = _register(client, email="Priya@Example.com")
    assert res.status_code == 201
    body = res.get_json()
    assert body["success"] is True
    assert body["message"] == "Registration successful. Please wait for admin approval."
    assert body["data"]["email"] == "priya@example.com"
    assert body["data"]["approved"] is False
    assert body["accessToken"].startswith("ST-")
    assert body["refreshToken"].startswith("RT-")

    sent = app.config["NOTIFIER"].sent
    assert [n["data"]["type"] for n in sent] == ["welcome"]

    res = _register(client, email="priya@example.com")
    assert res.status_code == 400
    assert res.get_json()["message"] == "User already exists with this email"


def test_register_rejects_admin_role(app_client):
    _app, client = app_client
    res = _register(client, email="root@example.com", role="admin")
    assert res.status_code == 400
    assert res.get_json()["success"] is False


def test_unapproved_user_cannot_login_or_use_registration_token(app_client):
    _app, client = app_client

    token = _register(client, email="new@example.com").get_json()["accessToken"]

    res = _post(client, "/api/auth/login", {"email": "new@example.com", "password": "s3cret-pass"})
    assert res.status_code == 403
    assert res.get_json()["code"] == "PENDING_APPROVAL"

    res = client.get("/api/projects", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 403
    assert res.get_json()["message"] == "Your account is pending approval"

    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["email"] == "new@example.com"


def test_admin_approval_notifies_and_unlocks_login(app_client):
    app, client = app_client

    user_id = _register(client, email="dev@example.com").get_json()["data"]["id"]
    admin = _admin_token(client)

    res = client.patch(f"/api/users/{user_id}/approve", headers={"Authorization": f"Bearer {admin}"})
    assert res.status_code == 200
    assert res.get_json()["data"]["approved"] is True
    assert app.config["NOTIFIER"].sent[-1]["title"] == "Account Approved"

    res = client.patch(f"/api/users/{user_id}/approve", headers={"Authorization": f"Bearer {admin}"})
    assert res.status_code == 400
    assert res.get_json()["message"] == "User is already approved"

    res = _post(client, "/api/auth/login", {"email": "dev@example.com", "password": "s3cret-pass"})
    assert res.status_code == 200
    assert res.get_json()["message"] == "Login successful"


def test_wrong_password_is_unauthenticated(app_client):
    _app, client = app_client
    res = _post(client, "/api/auth/login", {"email": "nobody@example.com", "password": "whatever1"})
    assert res.status_code == 401
    body = res.get_json()
    assert body["success"] is False
    assert body["code"] == "AUTH_INVALID"
    assert body["message"] == "Invalid credentials"


def test_refresh_and_logout_revoke_tokens(app_client):
    _app, client = app_client

    user_id = _register(client, email="rt@example.com").get_json()["data"]["id"]
    admin = _admin_token(client)
    client.patch(f"/api/users/{user_id}/approve", headers={"Authorization": f"Bearer {admin}"})

    login = _post(client, "/api/auth/login", {"email": "rt@example.com", "password": "s3cret-pass"}).get_json()
    refresh_token = login["refreshToken"]

    res = _post(client, "/api/auth/refresh", {"refreshToken": refresh_token})
    assert res.status_code == 200
    new_access = res.get_json()["accessToken"]
    assert new_access != login["accessToken"]

    res = _post(client, "/api/auth/logout", {"refreshToken": refresh_token}, token=new_access)
    assert res.status_code == 200

    res = _post(client, "/api/auth/refresh", {"refreshToken": refresh_token})
    assert res.status_code == 401
    assert res.get_json()["message"] == "Refresh token is invalid or has been revoked"

    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {new_access}"})
    assert res.status_code == 401

    with SessionLocal() as db:
        rows = db.execute(select(RefreshToken).where(RefreshToken.userId == user_id)).scalars().all()
        assert rows
        login_row = [r for r in rows if r.isRevoked]
        assert len(login_row) == 1


def test_deactivated_user_token_stops_working(app_client):
    _app, client = app_client

    user_id = _register(client, email="gone@example.com").get_json()["data"]["id"]
    admin = _admin_token(client)
    client.patch(f"/api/users/{user_id}/approve", headers={"Authorization": f"Bearer {admin}"})
    token = _post(client, "/api/auth/login", {"email": "gone@example.com", "password": "s3cret-pass"}).get_json()["accessToken"]

    with SessionLocal() as db:
        user = db.execute(select(User).where(User.userId == user_id)).scalar_one()
        user.isActive = False
        db.commit()

    res = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 403
    assert res.get_json()["message"] == "Your account has been deactivated"


def test_missing_token_and_unknown_route(app_client):
    _app, client = app_client

    res = client.get("/api/projects")
    assert res.status_code == 401
    assert res.get_json()["code"] == "AUTH_INVALID"

    res = client.get("/api/nope")
    assert res.status_code == 404
    assert res.get_json()["success"] is False

    res = client.get("/health")
    assert res.status_code == 200
    assert res.get_json()["status"] == "ok"


def test_approval_notification_waits_for_commit(app_client, monkeypatch):
    app, client = app_client

    user_id = _register(client, email="dev@example.com").get_json()["data"]["id"]
    admin = _admin_token(client)

    real_append_audit = app_module.append_audit

    def _failing_append_audit(db, **kwargs):
        if kwargs.get("stageTag") == "API_CALL" and kwargs.get("action") == "USER_APPROVE":
            raise RuntimeError("audit store unavailable")
        return real_append_audit(db, **kwargs)

    monkeypatch.setattr(app_module, "append_audit", _failing_append_audit)

    res = client.patch(f"/api/users/{user_id}/approve", headers={"Authorization": f"Bearer {admin}"})
    assert res.status_code == 500
    assert [item["title"] for item in app.config["NOTIFIER"].sent] == ["Welcome!"]

    with SessionLocal() as db:
        user = db.execute(select(User).where(User.userId == user_id)).scalar_one()
        assert user.approved is False
