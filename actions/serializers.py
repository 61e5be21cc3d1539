from __future__ import annotations

from typing import Iterable

from sqlalchemy import select

from models import DailyUpdate, Module, ModuleAssignee, Project, ProjectMember, User


def user_public(u: User) -> dict:
    return {
        "id": u.userId,
        "name": u.name or "",
        "email": u.email or "",
        "role": u.role or "",
        "phone": u.phone or "",
        "department": u.department or "",
        "approved": bool(u.approved),
        "approvedAt": u.approvedAt or "",
        "approvedBy": u.approvedBy or "",
        "isActive": bool(u.isActive),
        "lastLoginAt": u.lastLoginAt or "",
        "createdAt": u.createdAt or "",
        "updatedAt": u.updatedAt or "",
    }


def user_brief(u: User | None) -> dict | None:
    if u is None:
        return None
    return {"id": u.userId, "name": u.name or "", "email": u.email or "", "department": u.department or ""}


def users_by_id(db, user_ids: Iterable[str]) -> dict[str, User]:
    ids = sorted({str(x) for x in user_ids if x})
    if not ids:
        return {}
    rows = db.execute(select(User).where(User.userId.in_(ids))).scalars().all()
    return {u.userId: u for u in rows}


def project_member_ids(db, project_id: str) -> list[str]:
    rows = db.execute(
        select(ProjectMember.userId).where(ProjectMember.projectId == project_id).order_by(ProjectMember.id.asc())
    ).all()
    return [str(r[0]) for r in rows]


def module_assignee_ids(db, module_id: str) -> list[str]:
    rows = db.execute(
        select(ModuleAssignee.userId).where(ModuleAssignee.moduleId == module_id).order_by(ModuleAssignee.id.asc())
    ).all()
    return [str(r[0]) for r in rows]


def module_out(db, m: Module, *, users: dict[str, User] | None = None) -> dict:
    assignees = module_assignee_ids(db, m.moduleId)
    idx = users if users is not None else users_by_id(db, assignees)
    return {
        "id": m.moduleId,
        "projectId": m.projectId,
        "name": m.name or "",
        "description": m.description or "",
        "assignedUsers": [user_brief(idx.get(uid)) or {"id": uid} for uid in assignees],
        "estimatedTime": float(m.estimatedTime or 0.0),
        "actualTime": float(m.actualTime or 0.0),
        "progress": int(m.progress or 0),
        "status": m.status or "",
        "priority": m.priority or "",
        "startDate": m.startDate or None,
        "endDate": m.endDate or None,
        "notes": m.notes or "",
        "createdBy": m.createdBy or "",
        "createdAt": m.createdAt or "",
        "updatedAt": m.updatedAt or "",
    }


def project_out(db, p: Project, *, include_modules: bool = False) -> dict:
    members = project_member_ids(db, p.projectId)
    idx = users_by_id(db, members + [p.assignedLead])
    out = {
        "id": p.projectId,
        "name": p.name or "",
        "description": p.description or "",
        "department": p.department or "",
        "assignedLead": user_brief(idx.get(p.assignedLead)) or {"id": p.assignedLead},
        "assignedUsers": [user_brief(idx.get(uid)) or {"id": uid} for uid in members],
        "progress": int(p.progress or 0),
        "status": p.status or "",
        "priority": p.priority or "",
        "startDate": p.startDate or None,
        "deadline": p.deadline or None,
        "completedAt": p.completedAt or None,
        "totalEstimatedHours": float(p.totalEstimatedHours or 0.0),
        "totalActualHours": float(p.totalActualHours or 0.0),
        "basePoints": int(p.basePoints or 0),
        "pointsDistributed": bool(p.pointsDistributed),
        "isActive": bool(p.isActive),
        "createdBy": p.createdBy or "",
        "createdAt": p.createdAt or "",
        "updatedAt": p.updatedAt or "",
    }
    if include_modules:
        modules = (
            db.execute(select(Module).where(Module.projectId == p.projectId).order_by(Module.createdAt.asc()))
            .scalars()
            .all()
        )
        out["modules"] = [module_out(db, m) for m in modules]
    return out


def daily_update_out(u: DailyUpdate, *, users: dict[str, User] | None = None, modules: dict[str, Module] | None = None) -> dict:
    usr = (users or {}).get(u.userId)
    mod = (modules or {}).get(u.moduleId)
    return {
        "id": u.updateId,
        "user": user_brief(usr) or {"id": u.userId},
        "projectId": u.projectId,
        "module": {"id": u.moduleId, "name": mod.name or ""} if mod else {"id": u.moduleId},
        "date": u.date,
        "hoursWorked": float(u.hoursWorked or 0.0),
        "progressPercentage": int(u.progressPercentage or 0),
        "description": u.description or "",
        "blockers": u.blockers or "",
        "status": u.status or "",
        "createdAt": u.createdAt or "",
        "updatedAt": u.updatedAt or "",
    }


def daily_updates_out(db, rows: list[DailyUpdate]) -> list[dict]:
    users = users_by_id(db, [r.userId for r in rows])
    module_ids = sorted({r.moduleId for r in rows})
    modules = {}
    if module_ids:
        modules = {m.moduleId: m for m in db.execute(select(Module).where(Module.moduleId.in_(module_ids))).scalars().all()}
    return [daily_update_out(r, users=users, modules=modules) for r in rows]
