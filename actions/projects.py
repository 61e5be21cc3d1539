from __future__ import annotations

from sqlalchemy import delete, select

from actions.helpers import append_audit, get_project_or_404, optional_str, require_choice, require_str
from actions.serializers import project_out, user_brief
from models import Project, ProjectMember, User
from services.access_policy import (
    add_project_members,
    assert_can_view_project,
    assert_project_lead,
    find_eligible_lead,
    validate_assignment_candidates,
)
from services.progress import complete_project
from utils import ApiError, AuthContext, iso_utc_now, new_id, parse_datetime_maybe, to_iso_utc


PROJECT_STATUSES = {"pending", "in_progress", "completed", "on_hold", "cancelled"}
PROJECT_PRIORITIES = {"low", "medium", "high", "urgent"}


def _parse_deadline(value) -> str:
    if value in (None, ""):
        return ""
    dt = parse_datetime_maybe(value)
    if dt is None:
        raise ApiError("BAD_REQUEST", "Invalid deadline")
    return to_iso_utc(dt)


def _validate_name(name: str) -> str:
    if len(name) < 3:
        raise ApiError("BAD_REQUEST", "Project name must be at least 3 characters")
    if len(name) > 100:
        raise ApiError("BAD_REQUEST", "Project name cannot exceed 100 characters")
    return name


def project_list(data, auth: AuthContext, db, cfg):
    q = select(Project).where(Project.isActive == True)  # noqa: E712
    if auth.role == "lead":
        q = q.where(Project.assignedLead == auth.userId)
    elif auth.role == "user":
        member_of = select(ProjectMember.projectId).where(ProjectMember.userId == auth.userId)
        q = q.where(Project.projectId.in_(member_of))

    for key in ("status", "department", "priority"):
        value = str((data or {}).get(key) or "").strip()
        if value:
            q = q.where(getattr(Project, key) == value)

    rows = db.execute(q.order_by(Project.createdAt.desc(), Project.projectId.desc())).scalars().all()
    return {"count": len(rows), "data": [project_out(db, p) for p in rows]}


def project_create(data, auth: AuthContext, db, cfg):
    name = _validate_name(require_str(data, "name", label="Project name"))
    description = optional_str(data, "description", label="Description", max_len=1000) or ""
    department = require_str(data, "department", label="Department", max_len=100)
    lead_id = require_str(data, "assignedLead", label="Assigned lead")
    priority = require_choice((data or {}).get("priority") or "medium", PROJECT_PRIORITIES, label="priority")
    deadline = _parse_deadline((data or {}).get("deadline"))

    lead = find_eligible_lead(db, lead_id, department)

    now = iso_utc_now()
    project = Project(
        projectId=new_id("PRJ"),
        name=name,
        description=description,
        department=department,
        assignedLead=lead.userId,
        progress=0,
        status="pending",
        priority=priority,
        deadline=deadline,
        totalEstimatedHours=0.0,
        totalActualHours=0.0,
        basePoints=100,
        pointsDistributed=False,
        isActive=True,
        createdBy=auth.userId,
        createdAt=now,
        updatedAt=now,
    )
    db.add(project)
    db.flush()

    append_audit(
        db,
        entityType="PROJECT",
        entityId=project.projectId,
        action="PROJECT_CREATE",
        stageTag="PROJECT_ADMIN",
        actor=auth,
        toState="pending",
        meta={"department": department, "assignedLead": lead.userId},
    )
    return {"message": "Project created successfully", "data": project_out(db, project)}


def project_get(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    assert_can_view_project(db, auth, project)
    return {"data": project_out(db, project, include_modules=True)}


def project_update(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    before_status = project.status

    if (data or {}).get("name"):
        project.name = _validate_name(str(data["name"]).strip())
    description = optional_str(data, "description", label="Description", max_len=1000)
    if description:
        project.description = description
    if (data or {}).get("department"):
        project.department = str(data["department"]).strip()
    if (data or {}).get("deadline"):
        project.deadline = _parse_deadline(data["deadline"])
    if (data or {}).get("priority"):
        project.priority = require_choice(data["priority"], PROJECT_PRIORITIES, label="priority")
    new_status = ""
    if (data or {}).get("status"):
        new_status = require_choice(data["status"], PROJECT_STATUSES, label="status")
        if new_status != "completed":
            project.status = new_status

    new_lead = str((data or {}).get("assignedLead") or "").strip()
    if new_lead and new_lead != project.assignedLead:
        project.assignedLead = find_eligible_lead(db, new_lead, project.department).userId

    project.updatedAt = iso_utc_now()
    award = None
    if new_status == "completed" and before_status != "completed":
        award = complete_project(db, project, actor=auth)

    append_audit(
        db,
        entityType="PROJECT",
        entityId=project.projectId,
        action="PROJECT_UPDATE",
        stageTag="PROJECT_ADMIN",
        actor=auth,
        fromState=before_status,
        toState=project.status,
    )
    out = project_out(db, project)
    out["pointsAwarded"] = award.to_dict() if award else None
    return {"message": "Project updated successfully", "data": out}


def project_delete(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    project.isActive = False
    project.updatedAt = iso_utc_now()
    append_audit(db, entityType="PROJECT", entityId=project.projectId, action="PROJECT_DELETE", stageTag="PROJECT_ADMIN", actor=auth)
    return {"message": "Project deleted successfully"}


def project_assign_users(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    user_ids = (data or {}).get("userIds")
    if not isinstance(user_ids, list) or not user_ids:
        raise ApiError("BAD_REQUEST", "Please provide valid user IDs")
    assert_project_lead(auth, project, message="Only the assigned lead can assign users")

    wanted = validate_assignment_candidates(db, project, user_ids)
    added = add_project_members(db, project.projectId, wanted, added_by=auth.userId, source="ASSIGN")
    project.updatedAt = iso_utc_now()

    append_audit(
        db,
        entityType="PROJECT",
        entityId=project.projectId,
        action="PROJECT_ASSIGN_USERS",
        stageTag="PROJECT_MEMBERS",
        actor=auth,
        meta={"userIds": added},
    )
    return {"message": f"{len(added)} user(s) assigned to project", "data": project_out(db, project)}


def project_remove_user(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    assert_project_lead(auth, project, message="Only the assigned lead can remove users")

    user_id = str((data or {}).get("userId") or "").strip()
    res = db.execute(
        delete(ProjectMember)
        .where(ProjectMember.projectId == project.projectId)
        .where(ProjectMember.userId == user_id)
        .execution_options(synchronize_session=False)
    )
    project.updatedAt = iso_utc_now()
    if res.rowcount:
        append_audit(
            db,
            entityType="PROJECT",
            entityId=project.projectId,
            action="PROJECT_REMOVE_USER",
            stageTag="PROJECT_MEMBERS",
            actor=auth,
            meta={"userId": user_id},
        )
    return {"message": "User removed from project", "data": project_out(db, project)}


def project_available_users(data, auth: AuthContext, db, cfg):
    project = get_project_or_404(db, (data or {}).get("projectId"))
    assert_project_lead(auth, project, message="Only the assigned lead can view available users")

    members = select(ProjectMember.userId).where(ProjectMember.projectId == project.projectId)
    rows = (
        db.execute(
            select(User)
            .where(User.role == "user")
            .where(User.approved == True)  # noqa: E712
            .where(User.isActive == True)  # noqa: E712
            .where(User.department == project.department)
            .where(User.userId.not_in(members))
            .order_by(User.name.asc())
        )
        .scalars()
        .all()
    )
    return {"count": len(rows), "data": [user_brief(u) for u in rows]}


def project_available_leads(data, auth: AuthContext, db, cfg):
    department = str((data or {}).get("department") or "").strip()
    rows = (
        db.execute(
            select(User)
            .where(User.role == "lead")
            .where(User.approved == True)  # noqa: E712
            .where(User.isActive == True)  # noqa: E712
            .where(User.department == department)
            .order_by(User.name.asc())
        )
        .scalars()
        .all()
    )
    return {"count": len(rows), "data": [user_brief(u) for u in rows]}
