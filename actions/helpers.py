from __future__ import annotations

import json
import os
from typing import Any, Optional

from sqlalchemy import select

from models import AuditLog, Module, Project, User
from utils import ApiError, AuthContext, iso_utc_now, redact_for_audit


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str = "",
    remark: str = "",
    actor: Optional[AuthContext] = None,
    at: Optional[str] = None,
    fromState: str = "",
    toState: str = "",
    correlationId: str = "",
    meta: Any = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            entityType=str(entityType or ""),
            entityId=str(entityId or ""),
            action=str(action or "").upper(),
            fromState=str(fromState or ""),
            toState=str(toState or ""),
            stageTag=str(stageTag or ""),
            remark=str(remark or ""),
            actorUserId=str(actor.userId) if actor else "SYSTEM",
            actorRole=str(actor.role) if actor else "SYSTEM",
            actorEmail=str(getattr(actor, "email", "") or "") if actor else "",
            at=at or iso_utc_now(),
            correlationId=str(correlationId or ""),
            metaJson=json.dumps(redact_for_audit(meta)) if meta is not None else "",
        )
    )


def require_str(data: dict, key: str, *, label: str | None = None, max_len: int | None = None) -> str:
    value = str((data or {}).get(key) or "").strip()
    name = label or key
    if not value:
        raise ApiError("BAD_REQUEST", f"{name} is required")
    if max_len is not None and len(value) > max_len:
        raise ApiError("BAD_REQUEST", f"{name} cannot exceed {max_len} characters")
    return value


def optional_str(data: dict, key: str, *, label: str | None = None, max_len: int | None = None) -> Optional[str]:
    if key not in (data or {}) or data.get(key) is None:
        return None
    value = str(data.get(key) or "").strip()
    if max_len is not None and len(value) > max_len:
        raise ApiError("BAD_REQUEST", f"{label or key} cannot exceed {max_len} characters")
    return value


def require_choice(value: Any, choices: set[str], *, label: str) -> str:
    v = str(value or "").strip().lower()
    if v not in choices:
        raise ApiError("BAD_REQUEST", f"Invalid {label}: {value}")
    return v


def get_user_or_404(db, user_id: str) -> User:
    uid = str(user_id or "").strip()
    user = db.execute(select(User).where(User.userId == uid)).scalar_one_or_none() if uid else None
    if not user:
        raise ApiError("NOT_FOUND", "User not found")
    return user


def get_project_or_404(db, project_id: str, *, active_only: bool = True) -> Project:
    pid = str(project_id or "").strip()
    q = select(Project).where(Project.projectId == pid)
    if active_only:
        q = q.where(Project.isActive == True)  # noqa: E712
    project = db.execute(q).scalar_one_or_none() if pid else None
    if not project:
        raise ApiError("NOT_FOUND", "Project not found")
    return project


def get_module_or_404(db, module_id: str) -> Module:
    mid = str(module_id or "").strip()
    module = db.execute(select(Module).where(Module.moduleId == mid)).scalar_one_or_none() if mid else None
    if not module:
        raise ApiError("NOT_FOUND", "Module not found")
    return module
