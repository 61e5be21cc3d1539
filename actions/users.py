from __future__ import annotations

from sqlalchemy import func, select

from actions.auth_actions import validate_profile_fields
from actions.helpers import append_audit, get_user_or_404
from actions.serializers import user_public
from auth import revoke_user_refresh_tokens, revoke_user_sessions
from models import User
from passwords import hash_password
from services.notifications import notify_account_approved, notify_account_rejected
from utils import ApiError, AuthContext, iso_utc_now, parse_bool_maybe


def _assert_self_or_staff(auth: AuthContext, user: User, verb: str) -> None:
    if auth.role in {"admin", "lead"} or auth.userId == user.userId:
        return
    raise ApiError("FORBIDDEN", f"Not authorized to {verb} this user")


def users_list(data, auth: AuthContext, db, cfg):
    q = select(User)
    role = str((data or {}).get("role") or "").strip().lower()
    if role:
        q = q.where(User.role == role)
    department = str((data or {}).get("department") or "").strip()
    if department:
        q = q.where(User.department == department)
    is_active = parse_bool_maybe((data or {}).get("isActive"))
    if is_active is not None:
        q = q.where(User.isActive == is_active)
    approved = parse_bool_maybe((data or {}).get("approved"))
    if approved is not None:
        q = q.where(User.approved == approved)

    rows = db.execute(q.order_by(User.createdAt.desc(), User.userId.desc())).scalars().all()
    return {"count": len(rows), "data": [user_public(u) for u in rows]}


def users_pending(data, auth: AuthContext, db, cfg):
    rows = (
        db.execute(
            select(User).where(User.approved == False).order_by(User.createdAt.desc(), User.userId.desc())  # noqa: E712
        )
        .scalars()
        .all()
    )
    return {"count": len(rows), "data": [user_public(u) for u in rows]}


def user_get(data, auth: AuthContext, db, cfg):
    user = get_user_or_404(db, (data or {}).get("userId"))
    _assert_self_or_staff(auth, user, "view")
    return {"data": user_public(user)}


def user_update(data, auth: AuthContext, db, cfg):
    user = get_user_or_404(db, (data or {}).get("userId"))
    _assert_self_or_staff(auth, user, "update")

    fields = validate_profile_fields(data or {}, partial=True)
    for key, value in fields.items():
        setattr(user, key, value)
    if (data or {}).get("password"):
        user.password_hash = hash_password(data.get("password"))
    if (data or {}).get("fcmToken"):
        user.fcmToken = str(data.get("fcmToken")).strip()
    user.updatedAt = iso_utc_now()

    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="USER_UPDATE",
        stageTag="USER_PROFILE",
        actor=auth,
        meta={"fields": sorted(list(fields.keys()) + [k for k in ("password", "fcmToken") if (data or {}).get(k)])},
    )
    return {"message": "User updated successfully", "data": user_public(user)}


def user_delete(data, auth: AuthContext, db, cfg):
    user = get_user_or_404(db, (data or {}).get("userId"))
    revoke_user_sessions(db, user_id=user.userId, user_model="User")
    revoke_user_refresh_tokens(db, user_id=user.userId, user_model="User")
    append_audit(db, entityType="USER", entityId=user.userId, action="USER_DELETE", stageTag="USER_ADMIN", actor=auth)
    db.delete(user)
    return {"message": "User deleted successfully"}


def user_approve(data, auth: AuthContext, db, cfg, notifier=None):
    user = get_user_or_404(db, (data or {}).get("userId"))
    if user.approved:
        raise ApiError("BAD_REQUEST", "User is already approved")

    now = iso_utc_now()
    user.approved = True
    user.approvedAt = now
    user.approvedBy = auth.userId
    user.updatedAt = now
    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="USER_APPROVE",
        stageTag="USER_ADMIN",
        actor=auth,
        fromState="PENDING",
        toState="APPROVED",
    )

    if user.fcmToken:
        notify_account_approved(notifier, user.fcmToken, user.name)
    return {"message": "User approved successfully and notification sent", "data": user_public(user)}


def user_reject(data, auth: AuthContext, db, cfg, notifier=None):
    user = get_user_or_404(db, (data or {}).get("userId"))
    reason = str((data or {}).get("reason") or "").strip()

    user.isActive = False
    user.updatedAt = iso_utc_now()
    revoke_user_sessions(db, user_id=user.userId, user_model="User")
    revoke_user_refresh_tokens(db, user_id=user.userId, user_model="User")
    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="USER_REJECT",
        stageTag="USER_ADMIN",
        actor=auth,
        toState="INACTIVE",
        remark=reason,
    )
    if user.fcmToken:
        notify_account_rejected(notifier, user.fcmToken, user.name, reason)
    return {"message": "User rejected and notification sent"}


def user_toggle_status(data, auth: AuthContext, db, cfg):
    user = get_user_or_404(db, (data or {}).get("userId"))
    user.isActive = not bool(user.isActive)
    user.updatedAt = iso_utc_now()
    if not user.isActive:
        revoke_user_sessions(db, user_id=user.userId, user_model="User")
    append_audit(
        db,
        entityType="USER",
        entityId=user.userId,
        action="USER_TOGGLE_STATUS",
        stageTag="USER_ADMIN",
        actor=auth,
        toState="ACTIVE" if user.isActive else "INACTIVE",
    )
    state = "activated" if user.isActive else "deactivated"
    return {"message": f"User {state} successfully", "data": user_public(user)}


def admin_dashboard(data, auth: AuthContext, db, cfg):
    def _count(*conds) -> int:
        q = select(func.count()).select_from(User)
        for c in conds:
            q = q.where(c)
        return int(db.execute(q).scalar() or 0)

    total_users = _count(User.role == "user")
    total_leads = _count(User.role == "lead")
    recent = db.execute(select(User).order_by(User.createdAt.desc(), User.userId.desc()).limit(5)).scalars().all()
    return {
        "data": {
            "totalUsers": total_users,
            "totalLeads": total_leads,
            "activeUsers": _count(User.isActive == True),  # noqa: E712
            "inactiveUsers": _count(User.isActive == False),  # noqa: E712
            "pendingApproval": _count(User.approved == False),  # noqa: E712
            "totalAccounts": total_users + total_leads,
            "recentUsers": [
                {"id": u.userId, "name": u.name, "email": u.email, "role": u.role, "createdAt": u.createdAt} for u in recent
            ],
        }
    }


def admin_users_by_department(data, auth: AuthContext, db, cfg):
    rows = db.execute(select(User).order_by(User.department.asc(), User.name.asc())).scalars().all()
    groups: dict[str, list[dict]] = {}
    for u in rows:
        groups.setdefault(u.department or "", []).append({"name": u.name, "email": u.email, "role": u.role})
    out = [{"department": dept, "count": len(users), "users": users} for dept, users in groups.items()]
    out.sort(key=lambda g: (-g["count"], g["department"]))
    return {"data": out}
