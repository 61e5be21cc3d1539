from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from models import MonthlyStat, ProjectHistory, UserStats
from utils import iso_utc_now, month_key, to_iso_utc


@dataclass
class HistoryEntry:
    projectId: str
    role: str  # lead|member
    pointsEarned: int
    hoursWorked: float
    completedAt: str


def get_or_create_stats(db, user_id: str) -> UserStats:
    """Lazy per-user initialisation; the row is flushed so later queries see it."""
    uid = str(user_id or "").strip()
    stats = db.execute(select(UserStats).where(UserStats.userId == uid)).scalar_one_or_none()
    if stats:
        return stats

    now = iso_utc_now()
    stats = UserStats(
        userId=uid,
        totalProjects=0,
        completedProjects=0,
        ongoingProjects=0,
        totalModules=0,
        completedModules=0,
        totalHoursWorked=0.0,
        totalPoints=0,
        averageCompletionRate=0.0,
        createdAt=now,
        updatedAt=now,
    )
    db.add(stats)
    db.flush()
    return stats


def add_project_to_history(db, stats: UserStats, entry: HistoryEntry, *, now: Optional[datetime] = None) -> UserStats:
    """
    Append a completed-project record and fold it into the running totals.

    Totals only ever grow. completedProjects counts projects the user led;
    totalProjects counts every completed project the user took part in.
    The monthly bucket is keyed by the month of `now`.
    """
    now_dt = now or datetime.now(timezone.utc)
    now_iso = to_iso_utc(now_dt)
    points = int(entry.pointsEarned or 0)
    hours = float(entry.hoursWorked or 0.0)

    db.add(
        ProjectHistory(
            userId=stats.userId,
            projectId=str(entry.projectId or ""),
            role=str(entry.role or "member"),
            pointsEarned=points,
            hoursWorked=hours,
            completedAt=str(entry.completedAt or ""),
            createdAt=now_iso,
        )
    )

    if entry.role == "lead":
        stats.completedProjects = int(stats.completedProjects or 0) + 1
    stats.totalProjects = int(stats.totalProjects or 0) + 1
    stats.totalPoints = int(stats.totalPoints or 0) + points
    stats.totalHoursWorked = float(stats.totalHoursWorked or 0.0) + hours
    stats.updatedAt = now_iso

    key = month_key(now_dt)
    bucket = (
        db.execute(select(MonthlyStat).where(MonthlyStat.userId == stats.userId).where(MonthlyStat.month == key))
        .scalars()
        .first()
    )
    if bucket is None:
        bucket = MonthlyStat(userId=stats.userId, month=key, projectsCompleted=0, hoursWorked=0.0, pointsEarned=0)
        db.add(bucket)
    bucket.projectsCompleted = int(bucket.projectsCompleted or 0) + 1
    bucket.pointsEarned = int(bucket.pointsEarned or 0) + points
    bucket.hoursWorked = float(bucket.hoursWorked or 0.0) + hours

    db.flush()
    return stats


def serialize_history(rows: list[ProjectHistory]) -> list[dict]:
    return [
        {
            "projectId": str(r.projectId or ""),
            "role": str(r.role or ""),
            "pointsEarned": int(r.pointsEarned or 0),
            "hoursWorked": float(r.hoursWorked or 0.0),
            "completedAt": str(r.completedAt or ""),
        }
        for r in rows
    ]


def serialize_monthly(rows: list[MonthlyStat]) -> list[dict]:
    return [
        {
            "month": str(r.month or ""),
            "projectsCompleted": int(r.projectsCompleted or 0),
            "hoursWorked": float(r.hoursWorked or 0.0),
            "pointsEarned": int(r.pointsEarned or 0),
        }
        for r in sorted(rows, key=lambda x: str(x.month or ""))
    ]


def serialize_stats(stats: UserStats) -> dict:
    return {
        "userId": str(stats.userId or ""),
        "totalProjects": int(stats.totalProjects or 0),
        "completedProjects": int(stats.completedProjects or 0),
        "ongoingProjects": int(stats.ongoingProjects or 0),
        "totalModules": int(stats.totalModules or 0),
        "completedModules": int(stats.completedModules or 0),
        "totalHoursWorked": float(stats.totalHoursWorked or 0.0),
        "totalPoints": int(stats.totalPoints or 0),
        "averageCompletionRate": float(stats.averageCompletionRate or 0.0),
    }


def load_history(db, user_id: str) -> list[ProjectHistory]:
    return (
        db.execute(select(ProjectHistory).where(ProjectHistory.userId == user_id).order_by(ProjectHistory.id.asc()))
        .scalars()
        .all()
    )


def load_monthly(db, user_id: str) -> list[MonthlyStat]:
    return db.execute(select(MonthlyStat).where(MonthlyStat.userId == user_id)).scalars().all()
