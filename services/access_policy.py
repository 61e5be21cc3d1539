"""
Ownership and assignment rules.

auth.STATIC_RBAC_PERMISSIONS decides which roles may call an action at all;
the checks here decide whether the caller may touch a particular project,
module or user record.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy import select

from actions.helpers import append_audit
from models import ModuleAssignee, Project, ProjectMember, User
from utils import ApiError, AuthContext, iso_utc_now


log = logging.getLogger("access")

ASSIGNEE_WRITABLE_MODULE_FIELDS = {"progress", "notes"}


def is_admin(auth: Optional[AuthContext]) -> bool:
    return bool(auth and auth.valid and auth.role == "admin")


def is_project_lead(auth: Optional[AuthContext], project: Project) -> bool:
    return bool(auth and auth.valid and auth.role == "lead" and str(project.assignedLead) == str(auth.userId))


def is_project_member(db, project_id: str, user_id: str) -> bool:
    row = db.execute(
        select(ProjectMember.id).where(ProjectMember.projectId == project_id).where(ProjectMember.userId == user_id)
    ).first()
    return row is not None


def is_module_assignee(db, module_id: str, user_id: str) -> bool:
    row = db.execute(
        select(ModuleAssignee.id).where(ModuleAssignee.moduleId == module_id).where(ModuleAssignee.userId == user_id)
    ).first()
    return row is not None


def can_view_project(db, auth: AuthContext, project: Project) -> bool:
    if is_admin(auth):
        return True
    if auth.role == "lead":
        return is_project_lead(auth, project)
    if auth.role == "user":
        return is_project_member(db, project.projectId, auth.userId)
    return False


def assert_can_view_project(db, auth: AuthContext, project: Project, *, message: str = "Not authorized to view this project") -> None:
    if not can_view_project(db, auth, project):
        raise ApiError("FORBIDDEN", message)


def assert_project_lead(auth: AuthContext, project: Project, *, message: str) -> None:
    if not is_project_lead(auth, project):
        raise ApiError("FORBIDDEN", message)


def assert_can_write_module(db, auth: AuthContext, project: Project, module_id: str, fields: Iterable[str]) -> str:
    """Returns "lead" or "assignee". Assignees may only write progress and notes."""
    if is_project_lead(auth, project):
        return "lead"
    if auth.role == "user" and is_module_assignee(db, module_id, auth.userId):
        blocked = sorted(set(fields) - ASSIGNEE_WRITABLE_MODULE_FIELDS)
        if blocked:
            raise ApiError("FORBIDDEN", f"Only the assigned lead can update: {', '.join(blocked)}")
        return "assignee"
    raise ApiError("FORBIDDEN", "Not authorized to update this module")


def assert_can_update_progress(db, auth: AuthContext, project: Project, module_id: str) -> None:
    if is_project_lead(auth, project):
        return
    if auth.role == "user" and is_module_assignee(db, module_id, auth.userId):
        return
    raise ApiError("FORBIDDEN", "You are not assigned to this module")


def assert_can_view_user_stats(auth: AuthContext, user_id: str) -> None:
    if auth.role in {"admin", "lead"} or str(auth.userId) == str(user_id):
        return
    raise ApiError("FORBIDDEN", "Not authorized to view this user's stats")


def find_eligible_lead(db, lead_id: str, department: str) -> User:
    lead = db.execute(
        select(User)
        .where(User.userId == str(lead_id or ""))
        .where(User.role == "lead")
        .where(User.approved == True)  # noqa: E712
        .where(User.isActive == True)  # noqa: E712
        .where(User.department == str(department or ""))
    ).scalar_one_or_none()
    if not lead:
        raise ApiError("NOT_FOUND", "Lead not found or not approved in this department")
    return lead


def validate_assignment_candidates(db, project: Project, user_ids) -> list[str]:
    """All-or-nothing: every id must be an approved, active user in the project's department."""
    if not isinstance(user_ids, list) or not user_ids:
        raise ApiError("BAD_REQUEST", "Please provide valid user IDs")
    wanted = []
    for raw in user_ids:
        uid = str(raw or "").strip()
        if uid and uid not in wanted:
            wanted.append(uid)
    if len(wanted) != len(user_ids):
        raise ApiError("BAD_REQUEST", "Please provide valid user IDs")

    found = db.execute(
        select(User.userId)
        .where(User.userId.in_(wanted))
        .where(User.role == "user")
        .where(User.approved == True)  # noqa: E712
        .where(User.isActive == True)  # noqa: E712
        .where(User.department == project.department)
    ).all()
    if len(found) != len(wanted):
        raise ApiError("BAD_REQUEST", "Some users are not found, not approved, or not in the same department")
    return wanted


def add_project_members(db, project_id: str, user_ids: Iterable[str], *, added_by: str, source: str = "ASSIGN") -> list[str]:
    """Insert-if-absent; returns only the ids that were not members before."""
    existing = {
        str(r[0])
        for r in db.execute(select(ProjectMember.userId).where(ProjectMember.projectId == project_id)).all()
    }
    now = iso_utc_now()
    added: list[str] = []
    for uid in user_ids:
        uid = str(uid or "").strip()
        if not uid or uid in existing or uid in added:
            continue
        db.add(ProjectMember(projectId=project_id, userId=uid, addedBy=str(added_by or ""), source=source, addedAt=now))
        added.append(uid)
    if added:
        db.flush()
    return added


def auto_assign_module_users(db, project: Project, user_ids: list[str], *, auth: AuthContext, cfg) -> list[str]:
    """
    Module assignees who are not yet project members become members.

    With AUTO_ASSIGN_REQUIRE_ELIGIBILITY enabled the newcomers must pass the
    same checks as an explicit assignment.
    """
    pending = [uid for uid in user_ids if not is_project_member(db, project.projectId, uid)]
    if not pending:
        return []

    if bool(getattr(cfg, "AUTO_ASSIGN_REQUIRE_ELIGIBILITY", False)):
        validate_assignment_candidates(db, project, pending)

    added = add_project_members(db, project.projectId, pending, added_by=auth.userId, source="AUTO_MODULE")
    if added:
        log.info("auto-assigned project=%s users=%s by=%s", project.projectId, ",".join(added), auth.userId)
        append_audit(
            db,
            entityType="PROJECT",
            entityId=project.projectId,
            action="PROJECT_MEMBERS_AUTO_ADDED",
            stageTag="MODULE_ASSIGNMENT",
            actor=auth,
            meta={"userIds": added},
        )
    return added
