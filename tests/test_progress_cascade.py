from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from db import SessionLocal
from models import DailyUpdate, Module, Project
from services.progress import apply_progress_change, recompute_module_from_updates, recompute_project, run_progress_cascade
from utils import ApiError, iso_utc_now


NOW = datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)


def _seed_project(project_id: str, module_progress: list[int], *, estimated: float = 10.0) -> list[str]:
    now = iso_utc_now()
    ids = []
    with SessionLocal() as db:
        db.add(
            Project(
                projectId=project_id,
                name="Mobile app",
                department="Engineering",
                assignedLead="USR-LEAD",
                status="pending",
                createdAt=now,
                updatedAt=now,
            )
        )
        for i, progress in enumerate(module_progress):
            mid = f"{project_id}-MOD-{i}"
            ids.append(mid)
            db.add(
                Module(
                    moduleId=mid,
                    projectId=project_id,
                    name=f"Module {i}",
                    estimatedTime=estimated,
                    actualTime=2.0,
                    progress=progress,
                    status="in_progress" if progress else "pending",
                    createdAt=now,
                    updatedAt=now,
                )
            )
        db.commit()
    return ids


def _add_update(module_id: str, project_id: str, *, user_id: str, day: str, hours: float, progress: int, created_at: str):
    with SessionLocal() as db:
        db.add(
            DailyUpdate(
                updateId=f"DU-{module_id}-{user_id}-{day}",
                userId=user_id,
                projectId=project_id,
                moduleId=module_id,
                date=day,
                hoursWorked=hours,
                progressPercentage=progress,
                description="work",
                createdAt=created_at,
                updatedAt=created_at,
            )
        )
        db.commit()


def test_progress_is_clamped_and_monotonic():
    module = Module(moduleId="MOD-1", progress=0, status="pending", startDate="", endDate="")

    assert apply_progress_change(module, -10, now=NOW) == 0
    assert module.status == "pending"

    assert apply_progress_change(module, 40, now=NOW) == 40
    assert module.status == "in_progress"
    assert module.startDate

    with pytest.raises(ApiError) as exc:
        apply_progress_change(module, 30, now=NOW)
    assert exc.value.code == "BAD_REQUEST"
    assert exc.value.message == "Cannot decrease progress"
    assert module.progress == 40

    assert apply_progress_change(module, 150, now=NOW) == 100
    assert module.status == "completed"
    assert module.endDate


def test_progress_rejects_non_numbers():
    module = Module(moduleId="MOD-2", progress=0, status="pending", startDate="", endDate="")
    with pytest.raises(ApiError):
        apply_progress_change(module, "lots", now=NOW)


def test_project_progress_is_mean_of_modules_and_idempotent(app_client):
    _seed_project("PRJ-AVG", [50, 75, 25])

    with SessionLocal() as db:
        project = db.execute(select(Project).where(Project.projectId == "PRJ-AVG")).scalar_one()
        assert recompute_project(db, project, now=NOW) is None
        first = (project.progress, project.totalEstimatedHours, project.totalActualHours)
        recompute_project(db, project, now=NOW)
        second = (project.progress, project.totalEstimatedHours, project.totalActualHours)
        db.commit()

    assert first == (50, 30.0, 6.0)
    assert second == first


def test_project_without_modules_has_zero_progress(app_client):
    _seed_project("PRJ-EMPTY", [])
    with SessionLocal() as db:
        project = db.execute(select(Project).where(Project.projectId == "PRJ-EMPTY")).scalar_one()
        project.progress = 40
        recompute_project(db, project, now=NOW)
        assert project.progress == 0
        assert project.status == "pending"


def test_latest_daily_update_wins_and_hours_are_summed(app_client):
    (mid,) = _seed_project("PRJ-MOD", [0])
    _add_update(mid, "PRJ-MOD", user_id="USR-A", day="2026-10-15", hours=3.0, progress=60, created_at="2026-10-15T10:00:00.000Z")
    _add_update(mid, "PRJ-MOD", user_id="USR-B", day="2026-10-16", hours=2.5, progress=40, created_at="2026-10-16T10:00:00.000Z")

    with SessionLocal() as db:
        module = db.execute(select(Module).where(Module.moduleId == mid)).scalar_one()
        assert recompute_module_from_updates(db, module, now=NOW) is True
        # Absolute snapshot: the newest update sets progress even when it is lower.
        assert module.progress == 40
        assert module.actualTime == pytest.approx(5.5)
        assert module.status == "in_progress"


def test_module_without_updates_is_untouched(app_client):
    (mid,) = _seed_project("PRJ-NOUPD", [20])
    with SessionLocal() as db:
        module = db.execute(select(Module).where(Module.moduleId == mid)).scalar_one()
        assert recompute_module_from_updates(db, module, now=NOW) is False
        assert module.progress == 20
        assert module.actualTime == pytest.approx(2.0)


def test_cascade_completes_project_once(app_client):
    mid_a, mid_b = _seed_project("PRJ-CASCADE", [0, 0])
    _add_update(mid_a, "PRJ-CASCADE", user_id="USR-A", day="2026-10-17", hours=4.0, progress=100, created_at="2026-10-17T08:00:00.000Z")

    with SessionLocal() as db:
        result = run_progress_cascade(db, module_id=mid_a, now=NOW)
        db.commit()
    assert result.moduleStatus == "completed"
    assert result.projectProgress == 50
    assert result.projectStatus == "in_progress"
    assert result.projectCompleted is False
    assert result.award is None

    _add_update(mid_b, "PRJ-CASCADE", user_id="USR-B", day="2026-10-17", hours=6.0, progress=100, created_at="2026-10-17T09:00:00.000Z")
    with SessionLocal() as db:
        result = run_progress_cascade(db, module_id=mid_b, now=NOW)
        db.commit()
    assert result.projectCompleted is True
    assert result.projectStatus == "completed"
    assert result.award is not None
    assert result.award.leadPoints == 60
    assert result.award.memberShares == {"USR-A": 36, "USR-B": 54}

    with SessionLocal() as db:
        again = run_progress_cascade(db, module_id=mid_b, now=NOW)
        db.commit()
    assert again.projectCompleted is False
    assert again.award is None


def test_cascade_unknown_module_is_not_found(app_client):
    with SessionLocal() as db:
        with pytest.raises(ApiError) as exc:
            run_progress_cascade(db, module_id="MOD-MISSING", now=NOW)
    assert exc.value.code == "NOT_FOUND"
