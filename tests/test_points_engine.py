from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from db import SessionLocal
from models import DailyUpdate, MonthlyStat, Project, ProjectHistory, User, UserStats
from services.points import (
    claim_distribution,
    compute_award,
    deadline_multiplier,
    distribute_points,
    efficiency_multiplier,
    efficiency_ratio,
    split_member_pool,
)
from utils import iso_utc_now, round_half_up


def test_efficiency_bonus_and_penalty():
    assert efficiency_ratio(100, 80) == pytest.approx(1.25)
    # Half of the 25% under-estimate is credited.
    assert efficiency_multiplier(100, 80) == pytest.approx(1.125)
    assert efficiency_multiplier(100, 120) == pytest.approx(100 / 120)
    assert efficiency_multiplier(100, 100) == pytest.approx(1.0)


def test_efficiency_without_hours_is_neutral():
    assert efficiency_multiplier(0, 40) == 1.0
    assert efficiency_multiplier(40, 0) == 1.0


def test_deadline_multiplier_caps_and_floor():
    deadline = datetime(2026, 6, 30, tzinfo=timezone.utc)
    assert deadline_multiplier(deadline, deadline - timedelta(days=30)) == pytest.approx(1.5)
    assert deadline_multiplier(deadline, deadline - timedelta(days=2)) == pytest.approx(1.2)
    assert deadline_multiplier(deadline, deadline + timedelta(days=4)) == pytest.approx(0.8)
    assert deadline_multiplier(deadline, deadline + timedelta(days=30)) == pytest.approx(0.5)
    assert deadline_multiplier(deadline, deadline) == 1.0
    assert deadline_multiplier(None, deadline) == 1.0


def test_member_pool_split_is_proportional_to_hours():
    assert split_member_pool(60, {"USR-A": 60.0, "USR-B": 40.0}) == {"USR-A": 36, "USR-B": 24}


def test_member_pool_skips_zero_hours():
    assert split_member_pool(60, {"USR-A": 5.0, "USR-B": 0.0}) == {"USR-A": 60}
    assert split_member_pool(60, {"USR-A": 0.0}) == {}


def test_round_half_up_rounds_halves_upward():
    assert round_half_up(2.5) == 3
    assert round_half_up(36.4999) == 36
    assert round_half_up(0.5) == 1


def test_compute_award_combines_multipliers():
    project = Project(
        projectId="PRJ-X",
        assignedLead="USR-LEAD",
        basePoints=100,
        totalEstimatedHours=100.0,
        totalActualHours=80.0,
        deadline="2026-06-30T00:00:00.000Z",
        completedAt="2026-06-20T00:00:00.000Z",
    )
    award = compute_award(project, {"USR-A": 30.0, "USR-B": 50.0})

    # 100 * 1.125 * 1.5
    assert award.totalPoints == pytest.approx(168.75)
    assert award.leadPoints == 68
    assert award.memberPool == pytest.approx(101.25)
    assert award.memberShares == {"USR-A": 38, "USR-B": 63}


def _seed_completed_project(project_id: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        for uid, role in (("USR-LEAD-1", "lead"), ("USR-DEV-1", "user"), ("USR-DEV-2", "user")):
            db.add(
                User(
                    userId=uid,
                    name=uid,
                    email=f"{uid.lower()}@tracker.test",
                    role=role,
                    department="Engineering",
                    approved=True,
                    isActive=True,
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.add(
            Project(
                projectId=project_id,
                name="Billing revamp",
                department="Engineering",
                assignedLead="USR-LEAD-1",
                progress=100,
                status="completed",
                totalEstimatedHours=10.0,
                totalActualHours=10.0,
                basePoints=100,
                pointsDistributed=False,
                completedAt=now,
                createdAt=now,
                updatedAt=now,
            )
        )
        for i, (uid, hours) in enumerate((("USR-DEV-1", 6.0), ("USR-DEV-2", 4.0))):
            db.add(
                DailyUpdate(
                    updateId=f"DU-SEED-{i}",
                    userId=uid,
                    projectId=project_id,
                    moduleId="MOD-SEED",
                    date="2026-10-01",
                    hoursWorked=hours,
                    progressPercentage=100,
                    description="done",
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.commit()


def test_points_are_distributed_once(app_client):
    _seed_completed_project("PRJ-ONCE")
    when = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)

    with SessionLocal() as db:
        project = db.execute(select(Project).where(Project.projectId == "PRJ-ONCE")).scalar_one()
        award = distribute_points(db, project, now=when)
        db.commit()

    assert award is not None
    assert award.leadPoints == 40
    assert award.memberShares == {"USR-DEV-1": 36, "USR-DEV-2": 24}

    with SessionLocal() as db:
        project = db.execute(select(Project).where(Project.projectId == "PRJ-ONCE")).scalar_one()
        assert project.pointsDistributed is True
        assert distribute_points(db, project, now=when) is None
        db.commit()

    with SessionLocal() as db:
        lead = db.execute(select(UserStats).where(UserStats.userId == "USR-LEAD-1")).scalar_one()
        dev = db.execute(select(UserStats).where(UserStats.userId == "USR-DEV-1")).scalar_one()
        assert lead.totalPoints == 40
        assert lead.completedProjects == 1
        assert lead.totalProjects == 1
        assert dev.totalPoints == 36
        assert dev.completedProjects == 0
        assert dev.totalProjects == 1
        assert dev.totalHoursWorked == pytest.approx(6.0)

        history = db.execute(select(ProjectHistory).where(ProjectHistory.projectId == "PRJ-ONCE")).scalars().all()
        assert len(history) == 3

        month = db.execute(select(MonthlyStat).where(MonthlyStat.userId == "USR-DEV-2")).scalar_one()
        assert month.month == "2026-10"
        assert month.pointsEarned == 24
        assert month.projectsCompleted == 1


def test_claim_distribution_is_compare_and_set(app_client):
    _seed_completed_project("PRJ-CAS")
    with SessionLocal() as db:
        assert claim_distribution(db, "PRJ-CAS") is True
        assert claim_distribution(db, "PRJ-CAS") is False
        db.rollback()

    with SessionLocal() as db:
        project = db.execute(select(Project).where(Project.projectId == "PRJ-CAS")).scalar_one()
        assert project.pointsDistributed is False
