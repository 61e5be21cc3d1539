"""
Points distribution for completed projects.

A project's award is basePoints scaled by an efficiency multiplier (estimated
vs actual hours) and a deadline multiplier (days early or late). The lead
receives 40% of the award; the remaining 60% is split between contributors in
proportion to the hours they logged through daily updates.

Runs at most once per project: the `pointsDistributed` flag is claimed with a
conditional UPDATE before any stats are written. The claim and the stats
writes share the caller's transaction, so a failure part-way rolls back both.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update

from actions.helpers import append_audit
from cache_layer import cache_invalidate_prefix
from models import DailyUpdate, Project
from services.user_stats import HistoryEntry, add_project_to_history, get_or_create_stats
from utils import parse_datetime_maybe, round_half_up, to_iso_utc


log = logging.getLogger("points")

LEAD_SHARE = 0.4
MEMBER_SHARE = 0.6

LEADERBOARD_CACHE_PREFIX = "LEADERBOARD"


@dataclass
class PointsAward:
    projectId: str
    efficiencyMultiplier: float
    deadlineMultiplier: float
    totalPoints: float
    leadId: str
    leadPoints: int
    memberPool: float
    memberShares: dict[str, int] = field(default_factory=dict)
    memberHours: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "projectId": self.projectId,
            "efficiencyMultiplier": self.efficiencyMultiplier,
            "deadlineMultiplier": self.deadlineMultiplier,
            "totalPoints": self.totalPoints,
            "leadId": self.leadId,
            "leadPoints": self.leadPoints,
            "memberPool": self.memberPool,
            "memberShares": dict(self.memberShares),
        }


def efficiency_ratio(estimated_hours: float, actual_hours: float) -> float:
    """estimated / actual; 1.0 when either side has no hours."""
    estimated = float(estimated_hours or 0.0)
    actual = float(actual_hours or 0.0)
    if estimated <= 0 or actual <= 0:
        return 1.0
    return estimated / actual


def efficiency_multiplier(estimated_hours: float, actual_hours: float) -> float:
    efficiency = efficiency_ratio(estimated_hours, actual_hours)
    if efficiency >= 1:
        # Half credit for finishing under estimate; no upper bound.
        return 1 + (efficiency - 1) * 0.5
    return efficiency


def deadline_multiplier(deadline: Optional[datetime], completed_at: Optional[datetime]) -> float:
    if deadline is None or completed_at is None:
        return 1.0
    days_difference = (deadline - completed_at).total_seconds() / 86400.0
    if days_difference > 0:
        return 1 + min(days_difference / 10, 0.5)
    if days_difference < 0:
        return max(1 + days_difference / 20, 0.5)
    return 1.0


def split_member_pool(pool: float, hours_by_user: dict[str, float]) -> dict[str, int]:
    """Proportional split, each share rounded independently. Zero-hour users get nothing."""
    total_hours = sum(h for h in hours_by_user.values() if h > 0)
    if total_hours <= 0:
        return {}
    return {uid: round_half_up((hours / total_hours) * pool) for uid, hours in hours_by_user.items() if hours > 0}


def contributor_hours(db, project_id: str) -> dict[str, float]:
    rows = db.execute(
        select(DailyUpdate.userId, func.sum(DailyUpdate.hoursWorked))
        .where(DailyUpdate.projectId == project_id)
        .group_by(DailyUpdate.userId)
        .order_by(DailyUpdate.userId.asc())
    ).all()
    return {str(uid): float(hours or 0.0) for uid, hours in rows}


def compute_award(project: Project, hours_by_user: dict[str, float]) -> PointsAward:
    eff = efficiency_multiplier(project.totalEstimatedHours, project.totalActualHours)
    dl = deadline_multiplier(parse_datetime_maybe(project.deadline), parse_datetime_maybe(project.completedAt))
    total = float(project.basePoints or 0) * eff * dl
    pool = total * MEMBER_SHARE
    return PointsAward(
        projectId=str(project.projectId),
        efficiencyMultiplier=eff,
        deadlineMultiplier=dl,
        totalPoints=total,
        leadId=str(project.assignedLead or ""),
        leadPoints=round_half_up(total * LEAD_SHARE),
        memberPool=pool,
        memberShares=split_member_pool(pool, hours_by_user),
        memberHours=dict(hours_by_user),
    )


def claim_distribution(db, project_id: str) -> bool:
    """Compare-and-set pointsDistributed false -> true. True only for the caller that flipped it."""
    res = db.execute(
        update(Project)
        .where(Project.projectId == project_id)
        .where(Project.pointsDistributed == False)  # noqa: E712
        .values(pointsDistributed=True)
        .execution_options(synchronize_session=False)
    )
    return int(res.rowcount or 0) == 1


def distribute_points(db, project: Project, *, now: Optional[datetime] = None, actor=None) -> Optional[PointsAward]:
    """
    Award points for a completed project. Returns None when another caller
    already distributed them (no stats are touched in that case).
    """
    now_dt = now or datetime.now(timezone.utc)
    project_id = str(project.projectId)

    if project.pointsDistributed or not claim_distribution(db, project_id):
        log.info("points already distributed project=%s", project_id)
        return None
    project.pointsDistributed = True

    award = compute_award(project, contributor_hours(db, project_id))
    completed_at = str(project.completedAt or to_iso_utc(now_dt))

    try:
        if award.leadId:
            lead_stats = get_or_create_stats(db, award.leadId)
            add_project_to_history(
                db,
                lead_stats,
                HistoryEntry(
                    projectId=project_id,
                    role="lead",
                    pointsEarned=award.leadPoints,
                    hoursWorked=float(project.totalActualHours or 0.0),
                    completedAt=completed_at,
                ),
                now=now_dt,
            )

        for user_id, share in award.memberShares.items():
            member_stats = get_or_create_stats(db, user_id)
            add_project_to_history(
                db,
                member_stats,
                HistoryEntry(
                    projectId=project_id,
                    role="member",
                    pointsEarned=share,
                    hoursWorked=award.memberHours.get(user_id, 0.0),
                    completedAt=completed_at,
                ),
                now=now_dt,
            )
    except Exception:
        log.exception("points distribution failed project=%s; transaction will be rolled back", project_id)
        raise

    append_audit(
        db,
        entityType="PROJECT",
        entityId=project_id,
        action="POINTS_DISTRIBUTED",
        stageTag="POINTS",
        actor=actor,
        at=to_iso_utc(now_dt),
        meta=award.to_dict(),
    )
    cache_invalidate_prefix(LEADERBOARD_CACHE_PREFIX)

    log.info(
        "points distributed project=%s total=%.2f lead=%s leadPoints=%s members=%s",
        project_id,
        award.totalPoints,
        award.leadId,
        award.leadPoints,
        json.dumps(award.memberShares, sort_keys=True),
    )
    return award
