from __future__ import annotations

import re

from sqlalchemy import func, select

from actions.helpers import append_audit, require_str
from actions.serializers import user_public
from auth import (
    find_active_refresh_token,
    issue_refresh_token,
    issue_session_token,
    revoke_refresh_token,
    revoke_session,
    revoke_user_refresh_tokens,
    revoke_user_sessions,
)
from models import Admin, User
from passwords import constant_time_equals, hash_password, verify_password
from services.notifications import notify_welcome
from utils import ApiError, AuthContext, iso_utc_now, new_id


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_PHONE_RE = re.compile(r"^[0-9]{10,15}$")

REGISTRABLE_ROLES = {"user", "lead"}


def _find_user_by_email(db, email: str):
    email_lc = str(email or "").strip().lower()
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _issue_pair(db, cfg, data, *, user_id: str, email: str, role: str, department: str, user_model: str) -> dict:
    ses = issue_session_token(
        db,
        user_id=user_id,
        email=email,
        role=role,
        department=department,
        user_model=user_model,
        ttl_minutes=cfg.ACCESS_TOKEN_TTL_MINUTES,
    )
    rt = issue_refresh_token(
        db,
        user_id=user_id,
        user_model=user_model,
        ttl_days=cfg.REFRESH_TOKEN_TTL_DAYS,
        ip_address=str((data or {}).get("clientIp") or ""),
        user_agent=str((data or {}).get("userAgent") or ""),
    )
    return {**ses, **rt}


def validate_profile_fields(data: dict, *, partial: bool) -> dict:
    out: dict = {}
    if not partial or data.get("name"):
        name = require_str(data, "name", label="Name")
        if len(name) < 2:
            raise ApiError("BAD_REQUEST", "Name must be at least 2 characters")
        if len(name) > 50:
            raise ApiError("BAD_REQUEST", "Name cannot exceed 50 characters")
        out["name"] = name
    if data.get("phone"):
        phone = str(data.get("phone") or "").strip()
        if not _PHONE_RE.match(phone):
            raise ApiError("BAD_REQUEST", "Please provide a valid phone number")
        out["phone"] = phone
    if not partial or data.get("department"):
        out["department"] = require_str(data, "department", label="Department", max_len=100)
    return out


def register(data, auth: AuthContext | None, db, cfg, notifier=None):
    email = str((data or {}).get("email") or "").strip().lower()
    if not email or not _EMAIL_RE.match(email):
        raise ApiError("BAD_REQUEST", "Please provide a valid email")

    role = str((data or {}).get("role") or "user").strip().lower()
    if role not in REGISTRABLE_ROLES:
        raise ApiError("BAD_REQUEST", 'Invalid role. Must be either "user" or "lead"')

    fields = validate_profile_fields(data or {}, partial=False)
    password_hash = hash_password((data or {}).get("password"))

    if _find_user_by_email(db, email):
        raise ApiError("BAD_REQUEST", "User already exists with this email")

    now = iso_utc_now()
    fcm_token = str((data or {}).get("fcmToken") or "").strip()
    user = User(
        userId=new_id("USR"),
        name=fields["name"],
        email=email,
        password_hash=password_hash,
        role=role,
        phone=fields.get("phone", ""),
        department=fields["department"],
        approved=False,
        fcmToken=fcm_token,
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(user)
    db.flush()

    tokens = _issue_pair(
        db, cfg, data, user_id=user.userId, email=user.email, role=role, department=user.department, user_model="User"
    )
    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="AUTH_REGISTER",
        stageTag="AUTH_REGISTER",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=role, expiresAt=tokens["expiresAt"]),
        meta={"role": role, "department": user.department},
    )

    if fcm_token:
        notify_welcome(notifier, fcm_token, user.name)

    return {
        "message": "Registration successful. Please wait for admin approval.",
        **tokens,
        "data": user_public(user),
    }


def login(data, auth: AuthContext | None, db, cfg):
    email = str((data or {}).get("email") or "").strip().lower()
    password = str((data or {}).get("password") or "")
    if not email or not password:
        raise ApiError("BAD_REQUEST", "Please provide email and password")

    user = _find_user_by_email(db, email)
    if not user:
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if not user.isActive:
        raise ApiError("AUTH_INVALID", "Your account has been deactivated")
    if not verify_password(password, user.password_hash):
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if not user.approved:
        raise ApiError(
            "PENDING_APPROVAL",
            "Your account is pending approval. Please wait for admin to activate your account.",
            http_status=403,
        )

    fcm_token = str((data or {}).get("fcmToken") or "").strip()
    if fcm_token and fcm_token != user.fcmToken:
        user.fcmToken = fcm_token
    user.lastLoginAt = iso_utc_now()

    tokens = _issue_pair(
        db, cfg, data, user_id=user.userId, email=user.email, role=user.role, department=user.department, user_model="User"
    )
    append_audit(
        db,
        entityType="AUTH",
        entityId=user.userId,
        action="AUTH_LOGIN",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=user.userId, email=user.email, role=user.role, expiresAt=tokens["expiresAt"]),
    )
    return {"message": "Login successful", **tokens, "data": user_public(user)}


def admin_login(data, auth: AuthContext | None, db, cfg):
    email = str((data or {}).get("email") or "").strip().lower()
    password = str((data or {}).get("password") or "")
    if not email or not password:
        raise ApiError("BAD_REQUEST", "Please provide email and password")

    email_ok = constant_time_equals(email, cfg.ADMIN_EMAIL)
    password_ok = constant_time_equals(password, cfg.ADMIN_PASSWORD)
    if not (email_ok and password_ok):
        raise ApiError("AUTH_INVALID", "Invalid credentials")

    admin = db.execute(select(Admin).where(Admin.email == cfg.ADMIN_EMAIL)).scalar_one_or_none()
    now = iso_utc_now()
    if not admin:
        admin = Admin(
            adminId=new_id("ADM"),
            email=cfg.ADMIN_EMAIL,
            password_hash=hash_password(cfg.ADMIN_PASSWORD),
            role="admin",
            createdAt=now,
        )
        db.add(admin)
        db.flush()
    admin.lastLoginAt = now

    tokens = _issue_pair(db, cfg, data, user_id=admin.adminId, email=admin.email, role="admin", department="", user_model="Admin")
    append_audit(
        db,
        entityType="AUTH",
        entityId=admin.adminId,
        action="AUTH_ADMIN_LOGIN",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(valid=True, userId=admin.adminId, email=admin.email, role="admin", expiresAt=tokens["expiresAt"]),
    )
    return {
        "message": "Admin login successful",
        **tokens,
        "data": {"id": admin.adminId, "email": admin.email, "role": "admin"},
    }


def refresh(data, auth: AuthContext | None, db, cfg):
    token = (data or {}).get("refreshToken")
    if not token:
        raise ApiError("BAD_REQUEST", "Refresh token is required")

    row = find_active_refresh_token(db, token)
    if not row:
        raise ApiError("AUTH_INVALID", "Refresh token is invalid or has been revoked")

    if row.userModel == "Admin":
        admin = db.execute(select(Admin).where(Admin.adminId == row.userId)).scalar_one_or_none()
        if not admin:
            raise ApiError("AUTH_INVALID", "User no longer exists")
        subject = {"user_id": admin.adminId, "email": admin.email, "role": "admin", "department": ""}
    else:
        user = db.execute(select(User).where(User.userId == row.userId)).scalar_one_or_none()
        if not user:
            raise ApiError("AUTH_INVALID", "User no longer exists")
        if not user.isActive:
            raise ApiError("AUTH_INVALID", "Your account has been deactivated")
        subject = {"user_id": user.userId, "email": user.email, "role": user.role, "department": user.department}

    ses = issue_session_token(db, user_model=row.userModel, ttl_minutes=cfg.ACCESS_TOKEN_TTL_MINUTES, **subject)
    return {"message": "Access token refreshed successfully", **ses}


def logout(data, auth: AuthContext, db, cfg):
    token = (data or {}).get("refreshToken")
    if not token:
        raise ApiError("BAD_REQUEST", "Refresh token is required")
    revoke_refresh_token(db, token)
    if auth.sessionId:
        revoke_session(db, auth.sessionId)
    return {"message": "Logged out successfully"}


def logout_all(data, auth: AuthContext, db, cfg):
    user_model = "Admin" if auth.role == "admin" else "User"
    tokens = revoke_user_refresh_tokens(db, user_id=auth.userId, user_model=user_model)
    sessions = revoke_user_sessions(db, user_id=auth.userId, user_model=user_model)
    append_audit(
        db,
        entityType="AUTH",
        entityId=auth.userId,
        action="AUTH_LOGOUT_ALL",
        stageTag="AUTH_LOGOUT",
        actor=auth,
        meta={"refreshTokens": tokens, "sessions": sessions},
    )
    return {"message": "Logged out from all devices successfully"}


def me(data, auth: AuthContext, db, cfg):
    if auth.role == "admin":
        admin = db.execute(select(Admin).where(Admin.adminId == auth.userId)).scalar_one_or_none()
        if not admin:
            raise ApiError("AUTH_INVALID", "User no longer exists")
        return {"data": {"id": admin.adminId, "email": admin.email, "role": "admin", "lastLoginAt": admin.lastLoginAt or ""}}

    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("AUTH_INVALID", "User no longer exists")
    return {"data": user_public(user)}


def update_fcm_token(data, auth: AuthContext, db, cfg):
    fcm_token = str((data or {}).get("fcmToken") or "").strip()
    if not fcm_token:
        raise ApiError("BAD_REQUEST", "FCM token is required")
    user = db.execute(select(User).where(User.userId == auth.userId)).scalar_one_or_none()
    if not user:
        raise ApiError("NOT_FOUND", "User not found")
    user.fcmToken = fcm_token
    user.updatedAt = iso_utc_now()
    return {"message": "FCM token updated successfully"}
