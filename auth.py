from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import delete, select, update

from models import Admin, RefreshToken, Session as DbSession, User
from utils import ApiError, AuthContext, iso_utc_now, new_uuid, normalize_role, parse_datetime_maybe, sha256_hex, to_iso_utc


PUBLIC_ACTIONS = {
    "AUTH_REGISTER",
    "AUTH_LOGIN",
    "AUTH_ADMIN_LOGIN",
    "AUTH_REFRESH",
}

ALL_ROLES = ["admin", "lead", "user"]


STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    "AUTH_REGISTER": ["PUBLIC"],
    "AUTH_LOGIN": ["PUBLIC"],
    "AUTH_ADMIN_LOGIN": ["PUBLIC"],
    "AUTH_REFRESH": ["PUBLIC"],
    "AUTH_LOGOUT": ALL_ROLES,
    "AUTH_LOGOUT_ALL": ALL_ROLES,
    "AUTH_ME": ALL_ROLES,
    "AUTH_FCM_TOKEN": ["lead", "user"],
    # Users
    "USERS_LIST": ["admin", "lead"],
    "USERS_PENDING": ["admin", "lead"],
    "USER_GET": ALL_ROLES,
    "USER_UPDATE": ALL_ROLES,
    "USER_DELETE": ["admin"],
    "USER_APPROVE": ["admin"],
    "USER_REJECT": ["admin"],
    "USER_TOGGLE_STATUS": ["admin"],
    # Admin dashboard
    "ADMIN_DASHBOARD": ["admin"],
    "ADMIN_USERS_BY_DEPARTMENT": ["admin"],
    # Projects
    "PROJECT_LIST": ALL_ROLES,
    "PROJECT_CREATE": ["admin"],
    "PROJECT_AVAILABLE_LEADS": ["admin"],
    "PROJECT_GET": ALL_ROLES,
    "PROJECT_UPDATE": ["admin"],
    "PROJECT_DELETE": ["admin"],
    "PROJECT_ASSIGN_USERS": ["lead"],
    "PROJECT_REMOVE_USER": ["lead"],
    "PROJECT_AVAILABLE_USERS": ["lead"],
    # Modules
    "MODULE_LIST": ALL_ROLES,
    "MODULE_CREATE": ["lead"],
    "MODULE_GET": ALL_ROLES,
    "MODULE_UPDATE": ["lead", "user"],
    "MODULE_DELETE": ["lead"],
    "MODULE_PROGRESS_UPDATE": ["lead", "user"],
    # Daily updates
    "DAILY_UPDATE_CREATE": ["user"],
    "DAILY_UPDATE_MINE": ["lead", "user"],
    "DAILY_UPDATE_EDIT": ["user"],
    "DAILY_UPDATE_BY_PROJECT": ["admin", "lead"],
    "DAILY_UPDATE_TEAM_SUMMARY": ["lead"],
    # Stats
    "STATS_MINE": ["lead", "user"],
    "STATS_LEADERBOARD": ALL_ROLES,
    "STATS_DEPARTMENT_LEADERBOARD": ALL_ROLES,
    "STATS_USER": ALL_ROLES,
    "STATS_TEAM": ["lead"],
    "STATS_PROJECT": ["admin", "lead"],
    "STATS_SYSTEM": ["admin"],
}

# Actions an account still awaiting approval may call with a valid token.
PENDING_APPROVAL_ACTIONS = {"AUTH_ME", "AUTH_LOGOUT", "AUTH_LOGOUT_ALL", "AUTH_FCM_TOKEN"}


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def _invalid() -> AuthContext:
    return AuthContext(valid=False, userId="", email="", role="", expiresAt="")


def uuid_hex_32() -> str:
    return new_uuid().replace("-", "")


def issue_session_token(
    db,
    *,
    user_id: str,
    email: str,
    role: str,
    department: str = "",
    user_model: str = "User",
    ttl_minutes: int,
) -> dict[str, str]:
    token = "ST-" + uuid_hex_32() + uuid_hex_32()
    now = datetime.now(timezone.utc)
    issued_at = to_iso_utc(now)
    expires_at = to_iso_utc(now + timedelta(minutes=ttl_minutes))

    db.add(
        DbSession(
            sessionId="SES-" + new_uuid(),
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            userModel=user_model,
            email=str(email or ""),
            role=normalize_role(role),
            department=str(department or ""),
            issuedAt=issued_at,
            expiresAt=expires_at,
            lastSeenAt=issued_at,
            revokedAt="",
        )
    )
    return {"accessToken": token, "expiresAt": expires_at}


def issue_refresh_token(
    db,
    *,
    user_id: str,
    user_model: str,
    ttl_days: int,
    ip_address: str = "",
    user_agent: str = "",
) -> dict[str, str]:
    token = "RT-" + uuid_hex_32() + uuid_hex_32()
    now = datetime.now(timezone.utc)
    expires_at = to_iso_utc(now + timedelta(days=ttl_days))
    db.add(
        RefreshToken(
            tokenHash=sha256_hex(token),
            tokenPrefix=token[:12],
            userId=str(user_id or ""),
            userModel=user_model,
            expiresAt=expires_at,
            isRevoked=False,
            ipAddress=str(ip_address or "")[:64],
            userAgent=str(user_agent or "")[:500],
            createdAt=to_iso_utc(now),
        )
    )
    return {"refreshToken": token, "refreshExpiresAt": expires_at}


def find_active_refresh_token(db, token: Any) -> Optional[RefreshToken]:
    if not token or not isinstance(token, str):
        return None
    row = db.execute(select(RefreshToken).where(RefreshToken.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not row or row.isRevoked:
        return None
    exp_dt = parse_datetime_maybe(row.expiresAt)
    if exp_dt is None or exp_dt <= datetime.now(timezone.utc):
        return None
    return row


def revoke_refresh_token(db, token: Any) -> int:
    if not token or not isinstance(token, str):
        return 0
    res = db.execute(
        update(RefreshToken)
        .where(RefreshToken.tokenHash == sha256_hex(token))
        .where(RefreshToken.isRevoked == False)  # noqa: E712
        .values(isRevoked=True)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)


def revoke_user_refresh_tokens(db, *, user_id: str, user_model: str) -> int:
    res = db.execute(
        update(RefreshToken)
        .where(RefreshToken.userId == str(user_id or ""))
        .where(RefreshToken.userModel == user_model)
        .where(RefreshToken.isRevoked == False)  # noqa: E712
        .values(isRevoked=True)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)


def purge_expired_refresh_tokens(db, *, now: Optional[datetime] = None) -> int:
    """Deletes refresh tokens past their expiry. ISO-8601 UTC strings compare lexically."""
    cutoff = to_iso_utc(now or datetime.now(timezone.utc))
    res = db.execute(
        delete(RefreshToken).where(RefreshToken.expiresAt < cutoff).execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0)


def revoke_user_sessions(db, *, user_id: str, user_model: str = "") -> int:
    """
    Revoke all active access tokens for a subject.

    Used on deactivation, rejection and logout-all so that tokens already
    handed out stop working immediately instead of at expiry.
    """
    uid = str(user_id or "").strip()
    if not uid:
        return 0

    now = iso_utc_now()
    q = select(DbSession).where(DbSession.userId == uid).where(DbSession.revokedAt == "")
    if user_model:
        q = q.where(DbSession.userModel == user_model)
    rows = db.execute(q).scalars().all()
    for s in rows:
        s.revokedAt = now
    return len(rows)


def revoke_session(db, session_id: str) -> bool:
    ses = db.execute(select(DbSession).where(DbSession.sessionId == str(session_id or ""))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return False
    ses.revokedAt = iso_utc_now()
    return True


def validate_session_token(db, token: Any, *, action: str | None = None) -> AuthContext:
    if not token or not isinstance(token, str):
        return _invalid()

    ses = db.execute(select(DbSession).where(DbSession.tokenHash == sha256_hex(token))).scalar_one_or_none()
    if not ses or ses.revokedAt:
        return _invalid()

    exp_dt = parse_datetime_maybe(ses.expiresAt)
    if exp_dt is None or exp_dt < datetime.now(timezone.utc):
        return _invalid()

    user_id = str(ses.userId or "").strip()
    if ses.userModel == "Admin":
        admin = db.execute(select(Admin).where(Admin.adminId == user_id)).scalar_one_or_none()
        if not admin:
            return _invalid()
        role, email, department = "admin", admin.email, ""
    else:
        usr = db.execute(select(User).where(User.userId == user_id)).scalar_one_or_none()
        if not usr:
            return _invalid()
        if not usr.isActive:
            raise ApiError("FORBIDDEN", "Your account has been deactivated")
        if not usr.approved:
            action_u = str(action or "").upper().strip()
            if action_u and action_u not in PENDING_APPROVAL_ACTIONS:
                raise ApiError("FORBIDDEN", "Your account is pending approval")
        # Role and department come from the user row so admin edits apply at once.
        role, email, department = normalize_role(usr.role), usr.email, usr.department

    # Avoid writing on every request: update lastSeenAt at most once per interval.
    try:
        interval_s = int(str(os.getenv("SESSION_LAST_SEEN_UPDATE_SECONDS", "300") or "300"))
    except ValueError:
        interval_s = 300

    last_dt = parse_datetime_maybe(ses.lastSeenAt)
    if interval_s <= 0 or not last_dt or (datetime.now(timezone.utc) - last_dt).total_seconds() >= interval_s:
        ses.lastSeenAt = iso_utc_now()

    return AuthContext(
        valid=True,
        userId=user_id,
        email=str(email or ""),
        role=role,
        expiresAt=str(ses.expiresAt or ""),
        department=str(department or ""),
        userModel=str(ses.userModel or "User"),
        sessionId=str(ses.sessionId or ""),
    )


def assert_permission(role: str, action: str) -> None:
    role_l = normalize_role(role)
    action_u = str(action or "").upper().strip()

    allowed = STATIC_RBAC_PERMISSIONS.get(action_u)
    if allowed is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    if "PUBLIC" in allowed:
        return
    if not role_l:
        raise ApiError("AUTH_INVALID", "Not authorized to access this route")
    if role_l not in allowed:
        raise ApiError("FORBIDDEN", f"Role '{role_l}' is not authorized to access this route")


def role_or_public(auth: Optional[AuthContext]) -> str:
    if not auth or not auth.valid:
        return "PUBLIC"
    return normalize_role(auth.role) or "PUBLIC"
