"""
Progress aggregation for modules and projects.

Daily updates feed module progress; module progress feeds project progress;
a project reaching 100% is completed and its points are distributed. Each
stage flushes before the next one re-reads, and the whole cascade runs inside
the caller's transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select

from models import DailyUpdate, Module, Project
from services.points import PointsAward, distribute_points
from utils import ApiError, parse_number, round_half_up, to_iso_utc


log = logging.getLogger("progress")


@dataclass
class CascadeResult:
    moduleId: str
    projectId: str
    moduleChanged: bool
    moduleProgress: int
    moduleStatus: str
    projectProgress: int
    projectStatus: str
    projectCompleted: bool
    award: Optional[PointsAward] = None

    def to_dict(self) -> dict:
        return {
            "moduleId": self.moduleId,
            "projectId": self.projectId,
            "moduleProgress": self.moduleProgress,
            "moduleStatus": self.moduleStatus,
            "projectProgress": self.projectProgress,
            "projectStatus": self.projectStatus,
            "projectCompleted": self.projectCompleted,
            "pointsDistributed": self.award.to_dict() if self.award else None,
        }


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def load_module_for_update(db, module_id: str) -> Optional[Module]:
    return db.execute(select(Module).where(Module.moduleId == module_id).with_for_update()).scalar_one_or_none()


def load_project_for_update(db, project_id: str) -> Optional[Project]:
    return db.execute(select(Project).where(Project.projectId == project_id).with_for_update()).scalar_one_or_none()


def recompute_module_from_updates(db, module: Module, *, now: Optional[datetime] = None) -> bool:
    """
    Latest daily update wins for progress; actualTime is the sum of all hours.
    Returns False (module untouched) when the module has no updates.
    """
    updates = (
        db.execute(
            select(DailyUpdate)
            .where(DailyUpdate.moduleId == module.moduleId)
            .order_by(DailyUpdate.createdAt.desc(), DailyUpdate.seq.desc())
        )
        .scalars()
        .all()
    )
    if not updates:
        return False

    now_iso = to_iso_utc(_now(now))
    latest = int(updates[0].progressPercentage or 0)

    module.progress = latest
    module.actualTime = float(sum(float(u.hoursWorked or 0.0) for u in updates))

    if latest == 100 and module.status != "completed":
        module.status = "completed"
        if not module.endDate:
            module.endDate = now_iso
    elif latest > 0 and module.status == "pending":
        module.status = "in_progress"
        if not module.startDate:
            module.startDate = now_iso

    module.updatedAt = now_iso
    db.flush()
    return True


def apply_progress_change(module: Module, value: Any, *, now: Optional[datetime] = None) -> int:
    """
    Direct progress write (lead or assignee). Values are clamped to 0..100 and
    may never go below the stored progress, so 100 is terminal.
    """
    raw = parse_number(value, field="Progress")
    new_progress = round_half_up(max(0.0, min(100.0, raw)))
    current = int(module.progress or 0)
    if new_progress < current:
        raise ApiError("BAD_REQUEST", "Cannot decrease progress")

    now_iso = to_iso_utc(_now(now))
    module.progress = new_progress
    if new_progress == 100:
        module.status = "completed"
        if not module.endDate:
            module.endDate = now_iso
    elif new_progress > 0 and module.status == "pending":
        module.status = "in_progress"
        if not module.startDate:
            module.startDate = now_iso
    module.updatedAt = now_iso
    return new_progress


def complete_project(db, project: Project, *, now: Optional[datetime] = None, actor=None) -> Optional[PointsAward]:
    """
    Transition to completed: completedAt is set once and points are
    distributed once, whichever path (module progress or an admin edit)
    got the project there.
    """
    now_dt = _now(now)
    project.status = "completed"
    if not project.completedAt:
        project.completedAt = to_iso_utc(now_dt)
    project.updatedAt = to_iso_utc(now_dt)
    db.flush()
    log.info("project completed project=%s", project.projectId)
    if project.pointsDistributed:
        return None
    return distribute_points(db, project, now=now_dt, actor=actor)


def recompute_project(db, project: Project, *, now: Optional[datetime] = None, actor=None) -> Optional[PointsAward]:
    """
    Derive project progress and hour totals from its modules.

    Safe to call repeatedly: the same module set always yields the same
    progress and totals. Completion triggers points distribution once.
    """
    now_dt = _now(now)
    now_iso = to_iso_utc(now_dt)
    modules = db.execute(select(Module).where(Module.projectId == project.projectId)).scalars().all()

    if not modules:
        project.progress = 0
        project.updatedAt = now_iso
        db.flush()
        return None

    project.progress = round_half_up(sum(int(m.progress or 0) for m in modules) / len(modules))
    project.totalEstimatedHours = float(sum(float(m.estimatedTime or 0.0) for m in modules))
    project.totalActualHours = float(sum(float(m.actualTime or 0.0) for m in modules))
    project.updatedAt = now_iso

    if project.progress > 0 and project.status == "pending":
        project.status = "in_progress"
        if not project.startDate:
            project.startDate = now_iso

    award = None
    if project.progress == 100 and project.status != "completed":
        award = complete_project(db, project, now=now_dt, actor=actor)

    db.flush()
    return award


def run_progress_cascade(db, *, module_id: str, now: Optional[datetime] = None, actor=None) -> CascadeResult:
    """Daily update -> module -> project -> points -> user stats, in one transaction."""
    now_dt = _now(now)

    module = load_module_for_update(db, module_id)
    if not module:
        raise ApiError("NOT_FOUND", "Module not found")
    changed = recompute_module_from_updates(db, module, now=now_dt)

    project = load_project_for_update(db, module.projectId)
    if not project:
        raise ApiError("NOT_FOUND", "Project not found")
    was_completed = project.status == "completed"
    award = recompute_project(db, project, now=now_dt, actor=actor)

    result = CascadeResult(
        moduleId=str(module.moduleId),
        projectId=str(project.projectId),
        moduleChanged=changed,
        moduleProgress=int(module.progress or 0),
        moduleStatus=str(module.status or ""),
        projectProgress=int(project.progress or 0),
        projectStatus=str(project.status or ""),
        projectCompleted=(not was_completed) and project.status == "completed",
        award=award,
    )
    log.info(
        "cascade module=%s progress=%s project=%s progress=%s status=%s awarded=%s",
        result.moduleId,
        result.moduleProgress,
        result.projectId,
        result.projectProgress,
        result.projectStatus,
        bool(award),
    )
    return result
