from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select

from actions.helpers import append_audit, get_project_or_404, optional_str, require_choice, require_str
from actions.serializers import daily_update_out, daily_updates_out, user_brief, users_by_id
from models import DailyUpdate, Module
from services.access_policy import assert_project_lead, is_admin, is_project_lead, is_project_member
from services.progress import run_progress_cascade
from utils import ApiError, AuthContext, day_key, new_id, parse_datetime_maybe, parse_number, round_half_up, to_iso_utc


DAILY_UPDATE_STATUSES = {"on_track", "delayed", "blocked", "completed"}


def _day_param(value, label: str, tz_name: str) -> str:
    dt = parse_datetime_maybe(value)
    if dt is None:
        raise ApiError("BAD_REQUEST", f"Invalid {label}")
    # Bare dates are already day keys; only timestamps need shifting into the app timezone.
    s = str(value).strip()
    if len(s) == 10:
        return s
    return day_key(dt, tz_name)


def _hours(value) -> float:
    return parse_number(value, field="Hours worked", minimum=0, maximum=24)


def _progress(value) -> int:
    num = parse_number(value, field="Progress percentage", minimum=0, maximum=100)
    return round_half_up(num)


def create(data, auth: AuthContext, db, cfg):
    data = data or {}
    project = get_project_or_404(db, data.get("projectId") or data.get("project"))
    if not is_project_member(db, project.projectId, auth.userId):
        raise ApiError("FORBIDDEN", "You are not assigned to this project")

    module_id = str(data.get("moduleId") or data.get("module") or "").strip()
    module = (
        db.execute(select(Module).where(Module.moduleId == module_id).where(Module.projectId == project.projectId))
        .scalar_one_or_none()
        if module_id
        else None
    )
    if not module:
        raise ApiError("NOT_FOUND", "Module not found in this project")

    if data.get("hoursWorked") in (None, ""):
        raise ApiError("BAD_REQUEST", "Hours worked is required")
    if data.get("progressPercentage") in (None, ""):
        raise ApiError("BAD_REQUEST", "Progress percentage is required")
    hours = _hours(data.get("hoursWorked"))
    progress = _progress(data.get("progressPercentage"))
    description = require_str(data, "description", label="Description", max_len=500)
    blockers = optional_str(data, "blockers", label="Blockers", max_len=300) or ""
    status = require_choice(data.get("status") or "on_track", DAILY_UPDATE_STATUSES, label="status")

    now = datetime.now(timezone.utc)
    today = day_key(now, cfg.APP_TIMEZONE)
    existing = db.execute(
        select(DailyUpdate.updateId)
        .where(DailyUpdate.userId == auth.userId)
        .where(DailyUpdate.moduleId == module.moduleId)
        .where(DailyUpdate.date == today)
    ).first()
    if existing:
        raise ApiError("BAD_REQUEST", "You have already submitted an update for this module today")

    now_iso = to_iso_utc(now)
    row = DailyUpdate(
        updateId=new_id("DU"),
        userId=auth.userId,
        projectId=project.projectId,
        moduleId=module.moduleId,
        date=today,
        hoursWorked=hours,
        progressPercentage=progress,
        description=description,
        blockers=blockers,
        status=status,
        createdAt=now_iso,
        updatedAt=now_iso,
    )
    db.add(row)
    db.flush()

    result = run_progress_cascade(db, module_id=module.moduleId, now=now, actor=auth)
    append_audit(
        db,
        entityType="DAILY_UPDATE",
        entityId=row.updateId,
        action="DAILY_UPDATE_CREATE",
        stageTag="DAILY_UPDATE",
        actor=auth,
        meta={"moduleId": module.moduleId, "hoursWorked": hours, "progressPercentage": progress},
    )

    out = daily_updates_out(db, [row])[0]
    out["cascade"] = result.to_dict()
    return {"message": "Daily update submitted successfully", "data": out}


def mine(data, auth: AuthContext, db, cfg):
    data = data or {}
    q = select(DailyUpdate).where(DailyUpdate.userId == auth.userId)
    project_id = str(data.get("projectId") or "").strip()
    if project_id:
        q = q.where(DailyUpdate.projectId == project_id)
    if data.get("startDate") and data.get("endDate"):
        q = q.where(DailyUpdate.date >= _day_param(data["startDate"], "startDate", cfg.APP_TIMEZONE))
        q = q.where(DailyUpdate.date <= _day_param(data["endDate"], "endDate", cfg.APP_TIMEZONE))

    rows = db.execute(q.order_by(DailyUpdate.date.desc(), DailyUpdate.seq.desc())).scalars().all()
    return {"count": len(rows), "data": daily_updates_out(db, rows)}


def edit(data, auth: AuthContext, db, cfg):
    data = data or {}
    update_id = str(data.get("updateId") or "").strip()
    row = db.execute(select(DailyUpdate).where(DailyUpdate.updateId == update_id)).scalar_one_or_none() if update_id else None
    if not row:
        raise ApiError("NOT_FOUND", "Daily update not found")
    if row.userId != auth.userId:
        raise ApiError("FORBIDDEN", "Not authorized to update this entry")

    now = datetime.now(timezone.utc)
    if row.date != day_key(now, cfg.APP_TIMEZONE):
        raise ApiError("BAD_REQUEST", "Can only edit today's updates")

    if data.get("hoursWorked") not in (None, ""):
        row.hoursWorked = _hours(data["hoursWorked"])
    if data.get("progressPercentage") not in (None, ""):
        row.progressPercentage = _progress(data["progressPercentage"])
    if data.get("description"):
        row.description = require_str(data, "description", label="Description", max_len=500)
    if data.get("blockers") is not None:
        row.blockers = optional_str(data, "blockers", label="Blockers", max_len=300) or ""
    if data.get("status"):
        row.status = require_choice(data["status"], DAILY_UPDATE_STATUSES, label="status")
    row.updatedAt = to_iso_utc(now)
    db.flush()

    result = run_progress_cascade(db, module_id=row.moduleId, now=now, actor=auth)
    append_audit(
        db,
        entityType="DAILY_UPDATE",
        entityId=row.updateId,
        action="DAILY_UPDATE_EDIT",
        stageTag="DAILY_UPDATE",
        actor=auth,
    )

    out = daily_updates_out(db, [row])[0]
    out["cascade"] = result.to_dict()
    return {"message": "Daily update updated successfully", "data": out}


def by_project(data, auth: AuthContext, db, cfg):
    data = data or {}
    project = get_project_or_404(db, data.get("projectId"), active_only=False)
    if not (is_admin(auth) or is_project_lead(auth, project)):
        raise ApiError("FORBIDDEN", "Not authorized to view these updates")

    q = select(DailyUpdate).where(DailyUpdate.projectId == project.projectId)
    if data.get("date"):
        q = q.where(DailyUpdate.date == _day_param(data["date"], "date", cfg.APP_TIMEZONE))
    for key in ("userId", "moduleId"):
        value = str(data.get(key) or "").strip()
        if value:
            q = q.where(getattr(DailyUpdate, key) == value)

    rows = db.execute(q.order_by(DailyUpdate.date.desc(), DailyUpdate.createdAt.desc(), DailyUpdate.seq.desc())).scalars().all()
    return {"count": len(rows), "data": daily_updates_out(db, rows)}


def team_summary(data, auth: AuthContext, db, cfg):
    data = data or {}
    project = get_project_or_404(db, data.get("projectId"), active_only=False)
    assert_project_lead(auth, project, message="Not authorized to view this summary")

    if data.get("date"):
        target = _day_param(data["date"], "date", cfg.APP_TIMEZONE)
    else:
        target = day_key(datetime.now(timezone.utc), cfg.APP_TIMEZONE)

    rows = (
        db.execute(
            select(DailyUpdate)
            .where(DailyUpdate.projectId == project.projectId)
            .where(DailyUpdate.date == target)
            .order_by(DailyUpdate.seq.asc())
        )
        .scalars()
        .all()
    )
    users = users_by_id(db, [r.userId for r in rows])
    module_ids = sorted({r.moduleId for r in rows})
    modules = {}
    if module_ids:
        modules = {m.moduleId: m for m in db.execute(select(Module).where(Module.moduleId.in_(module_ids))).scalars().all()}

    grouped: dict[str, dict] = {}
    total_hours = 0.0
    for r in rows:
        entry = grouped.setdefault(r.userId, {"user": user_brief(users.get(r.userId)) or {"id": r.userId}, "totalHours": 0.0, "updates": []})
        entry["totalHours"] += float(r.hoursWorked or 0.0)
        entry["updates"].append(daily_update_out(r, users=users, modules=modules))
        total_hours += float(r.hoursWorked or 0.0)

    return {
        "date": target,
        "totalHours": total_hours,
        "teamMembers": len(grouped),
        "summary": list(grouped.values()),
    }
