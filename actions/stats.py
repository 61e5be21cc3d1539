from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from actions.helpers import get_project_or_404, get_user_or_404
from actions.serializers import daily_updates_out, project_member_ids, user_brief, users_by_id
from cache_layer import cache_get_or_set, make_cache_key
from models import DailyUpdate, Module, MonthlyStat, Project, ProjectHistory, ProjectMember, User, UserStats
from services.access_policy import assert_can_view_user_stats
from services.points import LEADERBOARD_CACHE_PREFIX
from services.user_stats import get_or_create_stats, load_history, load_monthly, serialize_history, serialize_monthly, serialize_stats
from utils import ApiError, AuthContext, month_key, parse_number, round_half_up, to_iso_utc


TIMEFRAMES = {"all", "month", "week"}
ONGOING_PROJECT_STATUSES = ("pending", "in_progress", "on_hold")


def _timeframe(data) -> str:
    tf = str((data or {}).get("timeframe") or "all").strip().lower()
    if tf not in TIMEFRAMES:
        raise ApiError("BAD_REQUEST", f"Invalid timeframe: {tf}")
    return tf


def _period_totals(db, user_ids: list[str], timeframe: str, now: datetime) -> dict[str, dict]:
    """
    Per-user points/projects/hours for a timeframe. Only users with a stats
    row appear in the result.
    """
    if not user_ids:
        return {}
    stats = db.execute(select(UserStats).where(UserStats.userId.in_(user_ids))).scalars().all()
    out = {
        s.userId: {
            "totalPoints": int(s.totalPoints or 0),
            "projectsCompleted": int(s.completedProjects or 0),
            "hoursWorked": float(s.totalHoursWorked or 0.0),
            "totalProjects": int(s.totalProjects or 0),
        }
        for s in stats
    }
    if timeframe == "all":
        return out

    for uid in out:
        out[uid] = {"totalPoints": 0, "projectsCompleted": 0, "hoursWorked": 0.0}

    if timeframe == "month":
        rows = db.execute(
            select(MonthlyStat).where(MonthlyStat.userId.in_(list(out))).where(MonthlyStat.month == month_key(now))
        ).scalars().all()
        for m in rows:
            out[m.userId] = {
                "totalPoints": int(m.pointsEarned or 0),
                "projectsCompleted": int(m.projectsCompleted or 0),
                "hoursWorked": float(m.hoursWorked or 0.0),
            }
        return out

    since = to_iso_utc(now - timedelta(days=7))
    rows = db.execute(
        select(ProjectHistory)
        .where(ProjectHistory.userId.in_(list(out)))
        .where(ProjectHistory.completedAt != "")
        .where(ProjectHistory.completedAt >= since)
    ).scalars().all()
    for h in rows:
        entry = out[h.userId]
        entry["totalPoints"] += int(h.pointsEarned or 0)
        entry["projectsCompleted"] += 1
        entry["hoursWorked"] += float(h.hoursWorked or 0.0)
    return out


def my_stats(data, auth: AuthContext, db, cfg):
    user = get_user_or_404(db, auth.userId)
    stats = get_or_create_stats(db, user.userId)

    member_of = select(ProjectMember.projectId).where(ProjectMember.userId == user.userId)
    ongoing = (
        db.execute(
            select(Project)
            .where((Project.assignedLead == user.userId) | Project.projectId.in_(member_of))
            .where(Project.status.in_(ONGOING_PROJECT_STATUSES))
            .where(Project.isActive == True)  # noqa: E712
            .order_by(Project.createdAt.desc())
        )
        .scalars()
        .all()
    )

    total = int(stats.totalProjects or 0)
    completion_rate = round_half_up(int(stats.completedProjects or 0) / total * 100) if total > 0 else 0

    summary = serialize_stats(stats)
    summary["ongoingProjects"] = len(ongoing)
    summary["completionRate"] = completion_rate
    return {
        "data": {
            "user": {"id": user.userId, "name": user.name, "email": user.email, "role": user.role, "department": user.department},
            "stats": summary,
            "projectHistory": serialize_history(load_history(db, user.userId)),
            "monthlyStats": serialize_monthly(load_monthly(db, user.userId)),
            "currentProjects": [
                {"id": p.projectId, "name": p.name, "department": p.department, "status": p.status, "progress": int(p.progress or 0)}
                for p in ongoing
            ],
        }
    }


def _leaderboard_rows(db, *, department: str, role: str, timeframe: str, limit: int) -> list[dict]:
    q = select(User).where(User.approved == True).where(User.isActive == True)  # noqa: E712
    if department:
        q = q.where(User.department == department)
    if role:
        q = q.where(User.role == role)
    users = {u.userId: u for u in db.execute(q).scalars().all()}

    totals = _period_totals(db, list(users), timeframe, datetime.now(timezone.utc))
    rows = []
    for uid, t in totals.items():
        u = users[uid]
        rows.append(
            {
                "user": {"id": u.userId, "name": u.name, "email": u.email, "department": u.department, "role": u.role},
                **t,
                "timeframe": timeframe,
            }
        )
    rows.sort(key=lambda r: (-r["totalPoints"], r["user"]["name"] or "", r["user"]["id"]))
    rows = rows[:limit]
    for i, r in enumerate(rows):
        r["rank"] = i + 1
    return rows


def leaderboard(data, auth: AuthContext, db, cfg):
    data = data or {}
    timeframe = _timeframe(data)
    department = str(data.get("department") or "").strip()
    role = str(data.get("role") or "").strip().lower()
    limit = 10
    if data.get("limit") not in (None, ""):
        limit = int(parse_number(data.get("limit"), field="limit", minimum=1, maximum=cfg.LEADERBOARD_MAX_LIMIT))

    params = {"department": department, "role": role, "timeframe": timeframe, "limit": limit}
    if timeframe != "all":
        params["month"] = month_key(datetime.now(timezone.utc))
    key = make_cache_key(LEADERBOARD_CACHE_PREFIX, scope=["USERS"], params=params)
    rows = cache_get_or_set(
        key, lambda: _leaderboard_rows(db, department=department, role=role, timeframe=timeframe, limit=limit)
    )
    return {"timeframe": timeframe, "count": len(rows), "data": rows}


def _department_rows(db, timeframe: str) -> list[dict]:
    users = (
        db.execute(select(User.userId, User.department).where(User.approved == True).where(User.isActive == True))  # noqa: E712
        .all()
    )
    by_dept: dict[str, list[str]] = {}
    for uid, dept in users:
        if dept:
            by_dept.setdefault(dept, []).append(uid)

    now = datetime.now(timezone.utc)
    rows = []
    for dept, ids in by_dept.items():
        totals = _period_totals(db, ids, timeframe, now)
        points = sum(t["totalPoints"] for t in totals.values())
        members = len(totals)
        rows.append(
            {
                "department": dept,
                "totalPoints": points,
                "totalProjects": sum(t["projectsCompleted"] for t in totals.values()),
                "totalHours": sum(t["hoursWorked"] for t in totals.values()),
                "memberCount": members,
                "averagePointsPerMember": round_half_up(points / members) if members > 0 else 0,
            }
        )
    rows.sort(key=lambda r: (-r["totalPoints"], r["department"]))
    for i, r in enumerate(rows):
        r["rank"] = i + 1
    return rows


def department_leaderboard(data, auth: AuthContext, db, cfg):
    timeframe = _timeframe(data)
    params = {"timeframe": timeframe}
    if timeframe != "all":
        params["month"] = month_key(datetime.now(timezone.utc))
    key = make_cache_key(LEADERBOARD_CACHE_PREFIX, scope=["DEPARTMENTS"], params=params)
    rows = cache_get_or_set(key, lambda: _department_rows(db, timeframe))
    return {"timeframe": timeframe, "count": len(rows), "data": rows}


def user_stats(data, auth: AuthContext, db, cfg):
    user_id = str((data or {}).get("userId") or "").strip()
    assert_can_view_user_stats(auth, user_id)
    user = get_user_or_404(db, user_id)
    stats = get_or_create_stats(db, user.userId)

    recent = (
        db.execute(
            select(DailyUpdate)
            .where(DailyUpdate.userId == user.userId)
            .order_by(DailyUpdate.date.desc(), DailyUpdate.seq.desc())
            .limit(10)
        )
        .scalars()
        .all()
    )
    return {
        "data": {
            "user": {"id": user.userId, "name": user.name, "email": user.email, "department": user.department, "role": user.role},
            "stats": {
                **serialize_stats(stats),
                "projectHistory": serialize_history(load_history(db, user.userId)),
                "monthlyStats": serialize_monthly(load_monthly(db, user.userId)),
            },
            "recentUpdates": daily_updates_out(db, recent),
        }
    }


def team_stats(data, auth: AuthContext, db, cfg):
    projects = (
        db.execute(
            select(Project)
            .where(Project.assignedLead == auth.userId)
            .where(Project.isActive == True)  # noqa: E712
            .order_by(Project.createdAt.desc())
        )
        .scalars()
        .all()
    )

    team: list[str] = []
    project_rows = []
    for p in projects:
        members = project_member_ids(db, p.projectId)
        for uid in members:
            if uid not in team:
                team.append(uid)
        project_rows.append(
            {
                "id": p.projectId,
                "name": p.name,
                "status": p.status,
                "progress": int(p.progress or 0),
                "assignedUsers": members,
                "totalEstimatedHours": float(p.totalEstimatedHours or 0.0),
                "totalActualHours": float(p.totalActualHours or 0.0),
            }
        )

    stats = db.execute(select(UserStats).where(UserStats.userId.in_(team))).scalars().all() if team else []
    users = users_by_id(db, team)
    members_out = [{"user": user_brief(users.get(s.userId)) or {"id": s.userId}, **serialize_stats(s)} for s in stats]
    ranked = sorted(members_out, key=lambda m: -m["totalPoints"])

    return {
        "data": {
            "summary": {
                "totalProjects": len(projects),
                "completedProjects": sum(1 for p in projects if p.status == "completed"),
                "ongoingProjects": sum(1 for p in projects if p.status == "in_progress"),
                "teamSize": len(team),
                "totalPoints": sum(m["totalPoints"] for m in members_out),
                "totalHours": sum(m["totalHoursWorked"] for m in members_out),
                "totalCompleted": sum(m["completedProjects"] for m in members_out),
            },
            "projects": project_rows,
            "topPerformers": [
                {
                    "user": m["user"],
                    "points": m["totalPoints"],
                    "projectsCompleted": m["completedProjects"],
                    "hoursWorked": m["totalHoursWorked"],
                }
                for m in ranked[:5]
            ],
            "teamMembers": members_out,
        }
    }


def _efficiency_pct(estimated: float, actual: float) -> int:
    return round_half_up(float(estimated or 0.0) / float(actual) * 100) if float(actual or 0.0) > 0 else 0


def project_stats(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"), active_only=False)
    if auth.role == "lead" and project.assignedLead != auth.userId:
        raise ApiError("FORBIDDEN", "Not authorized to view this project")

    modules = db.execute(select(Module).where(Module.projectId == project.projectId).order_by(Module.createdAt.asc())).scalars().all()
    contrib_rows = db.execute(
        select(DailyUpdate.userId, func.sum(DailyUpdate.hoursWorked), func.count(DailyUpdate.seq))
        .where(DailyUpdate.projectId == project.projectId)
        .group_by(DailyUpdate.userId)
    ).all()
    members = project_member_ids(db, project.projectId)
    users = users_by_id(db, members + [project.assignedLead] + [r[0] for r in contrib_rows])

    return {
        "data": {
            "project": {
                "id": project.projectId,
                "name": project.name,
                "department": project.department,
                "status": project.status,
                "progress": int(project.progress or 0),
                "priority": project.priority,
                "assignedLead": user_brief(users.get(project.assignedLead)) or {"id": project.assignedLead},
                "assignedUsers": [user_brief(users.get(uid)) or {"id": uid} for uid in members],
            },
            "stats": {
                "totalEstimatedHours": float(project.totalEstimatedHours or 0.0),
                "totalActualHours": float(project.totalActualHours or 0.0),
                "efficiency": _efficiency_pct(project.totalEstimatedHours, project.totalActualHours),
                "totalModules": len(modules),
                "completedModules": sum(1 for m in modules if m.status == "completed"),
                "startDate": project.startDate or None,
                "deadline": project.deadline or None,
                "completedAt": project.completedAt or None,
                "pointsDistributed": bool(project.pointsDistributed),
            },
            "moduleStats": [
                {
                    "id": m.moduleId,
                    "name": m.name,
                    "progress": int(m.progress or 0),
                    "estimatedTime": float(m.estimatedTime or 0.0),
                    "actualTime": float(m.actualTime or 0.0),
                    "status": m.status,
                    "efficiency": _efficiency_pct(m.estimatedTime, m.actualTime),
                }
                for m in modules
            ],
            "userContributions": [
                {"user": user_brief(users.get(uid)) or {"id": uid}, "totalHours": float(hours or 0.0), "updates": int(n or 0)}
                for uid, hours, n in contrib_rows
            ],
            "totalUpdates": sum(int(r[2] or 0) for r in contrib_rows),
        }
    }


def system_stats(data, auth: AuthContext, db, cfg):
    def _count(model, *conds) -> int:
        q = select(func.count()).select_from(model)
        for c in conds:
            q = q.where(c)
        return int(db.execute(q).scalar() or 0)

    active = Project.isActive == True  # noqa: E712
    totals = db.execute(select(func.coalesce(func.sum(UserStats.totalPoints), 0), func.coalesce(func.sum(UserStats.totalHoursWorked), 0.0))).one()
    recent = (
        db.execute(
            select(Project)
            .where(Project.status == "completed")
            .where(active)
            .order_by(Project.completedAt.desc())
            .limit(5)
        )
        .scalars()
        .all()
    )
    leads = users_by_id(db, [p.assignedLead for p in recent])
    month_start = month_key(datetime.now(timezone.utc)) + "-01"

    return {
        "data": {
            "overview": {
                "totalProjects": _count(Project, active),
                "completedProjects": _count(Project, active, Project.status == "completed"),
                "ongoingProjects": _count(Project, active, Project.status == "in_progress"),
                "totalUsers": _count(User, User.role == "user", User.approved == True, User.isActive == True),  # noqa: E712
                "totalLeads": _count(User, User.role == "lead", User.approved == True, User.isActive == True),  # noqa: E712
                "totalPoints": int(totals[0] or 0),
                "totalHours": float(totals[1] or 0.0),
            },
            "monthlyStats": {
                "projectsCompleted": _count(Project, Project.status == "completed", Project.completedAt >= month_start),
            },
            "recentCompletions": [
                {
                    "id": p.projectId,
                    "name": p.name,
                    "department": p.department,
                    "completedAt": p.completedAt or None,
                    "progress": int(p.progress or 0),
                    "assignedLead": user_brief(leads.get(p.assignedLead)) or {"id": p.assignedLead},
                }
                for p in recent
            ],
        }
    }
