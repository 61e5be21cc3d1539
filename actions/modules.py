from __future__ import annotations

from sqlalchemy import delete, select

from actions.helpers import append_audit, get_module_or_404, get_project_or_404, optional_str, require_choice, require_str
from actions.serializers import module_out
from models import Module, ModuleAssignee, User
from services.access_policy import (
    assert_can_update_progress,
    assert_can_view_project,
    assert_can_write_module,
    assert_project_lead,
    auto_assign_module_users,
)
from services.progress import apply_progress_change, load_project_for_update, recompute_project
from utils import ApiError, AuthContext, iso_utc_now, new_id, parse_datetime_maybe, parse_number, to_iso_utc


MODULE_STATUSES = {"pending", "in_progress", "completed", "blocked"}
MODULE_PRIORITIES = {"low", "medium", "high"}

MODULE_WRITABLE_FIELDS = {
    "name",
    "description",
    "estimatedTime",
    "actualTime",
    "progress",
    "status",
    "priority",
    "startDate",
    "endDate",
    "notes",
    "assignedUsers",
}


def _parse_date_field(value, label: str) -> str:
    if value in (None, ""):
        return ""
    dt = parse_datetime_maybe(value)
    if dt is None:
        raise ApiError("BAD_REQUEST", f"Invalid {label}")
    return to_iso_utc(dt)


def _clean_assignees(db, raw) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ApiError("BAD_REQUEST", "assignedUsers must be a list of user IDs")
    wanted: list[str] = []
    for x in raw:
        uid = str(x or "").strip()
        if uid and uid not in wanted:
            wanted.append(uid)
    if wanted:
        found = db.execute(select(User.userId).where(User.userId.in_(wanted))).all()
        if len(found) != len(wanted):
            raise ApiError("BAD_REQUEST", "Some assigned users do not exist")
    return wanted


def _set_assignees(db, module_id: str, user_ids: list[str]) -> None:
    db.execute(delete(ModuleAssignee).where(ModuleAssignee.moduleId == module_id).execution_options(synchronize_session=False))
    for uid in user_ids:
        db.add(ModuleAssignee(moduleId=module_id, userId=uid))
    db.flush()


def _recompute_parent(db, project_id: str, auth: AuthContext):
    project = load_project_for_update(db, project_id)
    if project is None:
        return None
    return recompute_project(db, project, actor=auth)


def module_list(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    assert_can_view_project(db, auth, project, message="Not authorized to view these modules")

    q = select(Module).where(Module.projectId == project.projectId)
    status = str((data or {}).get("status") or "").strip()
    if status:
        q = q.where(Module.status == status)
    rows = db.execute(q.order_by(Module.createdAt.desc(), Module.moduleId.desc())).scalars().all()
    return {"count": len(rows), "data": [module_out(db, m) for m in rows]}


def module_create(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    assert_project_lead(auth, project, message="Only the assigned lead can create modules")

    name = require_str(data, "name", label="Module name", max_len=100)
    description = optional_str(data, "description", label="Description", max_len=500) or ""
    notes = optional_str(data, "notes", label="Notes", max_len=500) or ""
    if (data or {}).get("estimatedTime") in (None, ""):
        raise ApiError("BAD_REQUEST", "Estimated time is required")
    estimated = parse_number(data.get("estimatedTime"), field="Estimated time", minimum=0)
    priority = require_choice((data or {}).get("priority") or "medium", MODULE_PRIORITIES, label="priority")
    assignees = _clean_assignees(db, (data or {}).get("assignedUsers"))

    if assignees:
        auto_assign_module_users(db, project, assignees, auth=auth, cfg=cfg)

    now = iso_utc_now()
    module = Module(
        moduleId=new_id("MOD"),
        projectId=project.projectId,
        name=name,
        description=description,
        estimatedTime=estimated,
        actualTime=0.0,
        progress=0,
        status="pending",
        priority=priority,
        startDate=_parse_date_field((data or {}).get("startDate"), "startDate"),
        endDate=_parse_date_field((data or {}).get("endDate"), "endDate"),
        notes=notes,
        createdBy=auth.userId,
        createdAt=now,
        updatedAt=now,
    )
    db.add(module)
    db.flush()
    _set_assignees(db, module.moduleId, assignees)

    _recompute_parent(db, project.projectId, auth)
    append_audit(
        db,
        entityType="MODULE",
        entityId=module.moduleId,
        action="MODULE_CREATE",
        stageTag="MODULE",
        actor=auth,
        meta={"projectId": project.projectId, "assignedUsers": assignees},
    )
    return {"message": "Module created successfully", "data": module_out(db, module)}


def module_get(data, auth: AuthContext, db, cfg):
    module = get_module_or_404(db, (data or {}).get("moduleId"))
    project = get_project_or_404(db, module.projectId, active_only=False)
    assert_can_view_project(db, auth, project, message="Not authorized to view this module")
    out = module_out(db, module)
    out["project"] = {"id": project.projectId, "name": project.name, "department": project.department, "assignedLead": project.assignedLead}
    return {"data": out}


def module_update(data, auth: AuthContext, db, cfg):
    module = get_module_or_404(db, (data or {}).get("moduleId"))
    project = get_project_or_404(db, module.projectId, active_only=False)

    fields = [k for k in MODULE_WRITABLE_FIELDS if k in (data or {}) and data.get(k) is not None]
    assert_can_write_module(db, auth, project, module.moduleId, fields)

    if "assignedUsers" in fields:
        assignees = _clean_assignees(db, data.get("assignedUsers"))
        if assignees:
            auto_assign_module_users(db, project, assignees, auth=auth, cfg=cfg)
        _set_assignees(db, module.moduleId, assignees)

    if data.get("name"):
        module.name = require_str(data, "name", label="Module name", max_len=100)
    if "description" in fields:
        module.description = optional_str(data, "description", label="Description", max_len=500) or ""
    if data.get("estimatedTime") not in (None, ""):
        module.estimatedTime = parse_number(data.get("estimatedTime"), field="Estimated time", minimum=0)
    if "actualTime" in fields:
        module.actualTime = parse_number(data.get("actualTime"), field="Actual time", minimum=0)
    if data.get("status"):
        module.status = require_choice(data["status"], MODULE_STATUSES, label="status")
    if data.get("priority"):
        module.priority = require_choice(data["priority"], MODULE_PRIORITIES, label="priority")
    if data.get("startDate"):
        module.startDate = _parse_date_field(data["startDate"], "startDate")
    if data.get("endDate"):
        module.endDate = _parse_date_field(data["endDate"], "endDate")
    if "notes" in fields:
        module.notes = optional_str(data, "notes", label="Notes", max_len=500) or ""
    if "progress" in fields:
        apply_progress_change(module, data.get("progress"))

    module.updatedAt = iso_utc_now()
    db.flush()
    _recompute_parent(db, project.projectId, auth)

    append_audit(
        db,
        entityType="MODULE",
        entityId=module.moduleId,
        action="MODULE_UPDATE",
        stageTag="MODULE",
        actor=auth,
        meta={"fields": sorted(fields)},
    )
    return {"message": "Module updated successfully", "data": module_out(db, module)}


def module_delete(data, auth: AuthContext, db, cfg):
    module = get_module_or_404(db, (data or {}).get("moduleId"))
    project = get_project_or_404(db, module.projectId, active_only=False)
    assert_project_lead(auth, project, message="Only the assigned lead can delete modules")

    module_id = module.moduleId
    db.execute(delete(ModuleAssignee).where(ModuleAssignee.moduleId == module_id).execution_options(synchronize_session=False))
    db.delete(module)
    db.flush()
    _recompute_parent(db, project.projectId, auth)

    append_audit(
        db,
        entityType="MODULE",
        entityId=module_id,
        action="MODULE_DELETE",
        stageTag="MODULE",
        actor=auth,
        meta={"projectId": project.projectId},
    )
    return {"message": "Module deleted successfully"}


def module_progress_update(data, auth: AuthContext, db, cfg):
    module = get_module_or_404(db, (data or {}).get("moduleId"))
    project = get_project_or_404(db, module.projectId, active_only=False)
    assert_can_update_progress(db, auth, project, module.moduleId)

    if (data or {}).get("progress") is None:
        raise ApiError("BAD_REQUEST", "Progress is required")
    before = int(module.progress or 0)
    apply_progress_change(module, data.get("progress"))
    if data.get("notes") is not None:
        module.notes = optional_str(data, "notes", label="Notes", max_len=500) or ""
    db.flush()

    award = _recompute_parent(db, project.projectId, auth)
    append_audit(
        db,
        entityType="MODULE",
        entityId=module.moduleId,
        action="MODULE_PROGRESS_UPDATE",
        stageTag="MODULE_PROGRESS",
        actor=auth,
        fromState=str(before),
        toState=str(module.progress),
    )
    out = module_out(db, module)
    out["projectProgress"] = int(project.progress or 0)
    out["projectStatus"] = project.status
    out["pointsAwarded"] = award.to_dict() if award else None
    return {"message": "Module progress updated successfully", "data": out}
