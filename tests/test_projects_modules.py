from __future__ import annotations

from sqlalchemy import select

from db import SessionLocal
from models import ProjectMember, User, UserStats
from passwords import hash_password
from utils import iso_utc_now


PASSWORD = "s3cret-pass"


def _seed_user(user_id: str, role: str, *, department: str = "Engineering", approved: bool = True) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                name=user_id.title(),
                email=f"{user_id.lower()}@tracker.test",
                password_hash=hash_password(PASSWORD),
                role=role,
                department=department,
                approved=approved,
                isActive=True,
                createdAt=now,
                updatedAt=now,
            )
        )
        db.commit()


def _login(client, user_id: str) -> str:
    res = client.post("/api/auth/login", json={"email": f"{user_id.lower()}@tracker.test", "password": PASSWORD})
    assert res.status_code == 200, res.get_json()
    return res.get_json()["accessToken"]


def _admin(client) -> str:
    res = client.post("/api/auth/admin/login", json={"email": "admin@tracker.test", "password": "admin-pass-123"})
    return res.get_json()["accessToken"]


def _h(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _create_project(client, admin: str, lead_id: str, *, name: str = "Payments portal") -> str:
    res = client.post(
        "/api/projects",
        json={"name": name, "description": "Q4 rollout", "department": "Engineering", "assignedLead": lead_id, "priority": "high"},
        headers=_h(admin),
    )
    assert res.status_code == 201, res.get_json()
    return res.get_json()["data"]["id"]


def test_admin_creates_project_for_eligible_lead_only(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("LEAD-OPS", "lead", department="Operations")
    admin = _admin(client)

    project_id = _create_project(client, admin, "LEAD-1")
    body = client.get(f"/api/projects/{project_id}", headers=_h(admin)).get_json()
    assert body["data"]["assignedLead"]["id"] == "LEAD-1"
    assert body["data"]["status"] == "pending"
    assert body["data"]["modules"] == []

    res = client.post(
        "/api/projects",
        json={"name": "Cross team", "department": "Engineering", "assignedLead": "LEAD-OPS"},
        headers=_h(admin),
    )
    assert res.status_code == 404
    assert res.get_json()["message"] == "Lead not found or not approved in this department"

    lead = _login(client, "LEAD-1")
    res = client.post(
        "/api/projects",
        json={"name": "Lead made", "department": "Engineering", "assignedLead": "LEAD-1"},
        headers=_h(lead),
    )
    assert res.status_code == 403


def test_only_assigned_lead_sees_modules(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("LEAD-2", "lead")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")

    other = _login(client, "LEAD-2")
    res = client.get(f"/api/modules/projects/{project_id}/modules", headers=_h(other))
    assert res.status_code == 403
    assert res.get_json()["message"] == "Not authorized to view these modules"

    owner = _login(client, "LEAD-1")
    res = client.get(f"/api/modules/projects/{project_id}/modules", headers=_h(owner))
    assert res.status_code == 200
    assert res.get_json()["count"] == 0


def test_module_assignees_become_project_members(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("DEV-1", "user")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")
    lead = _login(client, "LEAD-1")

    res = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Checkout API", "estimatedTime": 12, "assignedUsers": ["DEV-1"], "priority": "high"},
        headers=_h(lead),
    )
    assert res.status_code == 201
    module = res.get_json()["data"]
    assert [u["id"] for u in module["assignedUsers"]] == ["DEV-1"]
    assert module["status"] == "pending"

    with SessionLocal() as db:
        members = db.execute(select(ProjectMember).where(ProjectMember.projectId == project_id)).scalars().all()
        assert [(m.userId, m.source) for m in members] == [("DEV-1", "AUTO_MODULE")]

    project = client.get(f"/api/projects/{project_id}", headers=_h(lead)).get_json()["data"]
    assert project["totalEstimatedHours"] == 12.0

    dev = _login(client, "DEV-1")
    assert client.get(f"/api/projects/{project_id}", headers=_h(dev)).status_code == 200


def test_module_create_requires_estimate_and_known_users(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")
    lead = _login(client, "LEAD-1")

    res = client.post(f"/api/modules/projects/{project_id}/modules", json={"name": "No estimate"}, headers=_h(lead))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Estimated time is required"

    res = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Ghosts", "estimatedTime": 4, "assignedUsers": ["USR-NOPE"]},
        headers=_h(lead),
    )
    assert res.status_code == 400
    assert res.get_json()["message"] == "Some assigned users do not exist"


def test_assignee_progress_rules(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("DEV-1", "user")
    _seed_user("DEV-2", "user")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")
    lead = _login(client, "LEAD-1")

    module_id = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Ledger sync", "estimatedTime": 8, "assignedUsers": ["DEV-1"]},
        headers=_h(lead),
    ).get_json()["data"]["id"]
    client.patch(f"/api/projects/{project_id}/assign-users", json={"userIds": ["DEV-2"]}, headers=_h(lead))

    dev = _login(client, "DEV-1")
    res = client.patch(f"/api/modules/{module_id}/progress", json={"progress": 60, "notes": "halfway"}, headers=_h(dev))
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["progress"] == 60
    assert data["status"] == "in_progress"
    assert data["projectProgress"] == 60
    assert data["projectStatus"] == "in_progress"
    assert data["pointsAwarded"] is None

    res = client.patch(f"/api/modules/{module_id}/progress", json={"progress": 30}, headers=_h(dev))
    assert res.status_code == 400
    assert res.get_json()["message"] == "Cannot decrease progress"

    res = client.put(f"/api/modules/{module_id}", json={"name": "Renamed"}, headers=_h(dev))
    assert res.status_code == 403

    res = client.put(f"/api/modules/{module_id}", json={"notes": "blocked on vendor"}, headers=_h(dev))
    assert res.status_code == 200
    assert res.get_json()["data"]["notes"] == "blocked on vendor"

    outsider = _login(client, "DEV-2")
    res = client.patch(f"/api/modules/{module_id}/progress", json={"progress": 90}, headers=_h(outsider))
    assert res.status_code == 403
    assert res.get_json()["message"] == "You are not assigned to this module"


def test_assign_users_is_all_or_nothing(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("DEV-1", "user")
    _seed_user("DEV-OPS", "user", department="Operations")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")
    lead = _login(client, "LEAD-1")

    res = client.patch(
        f"/api/projects/{project_id}/assign-users", json={"userIds": ["DEV-1", "DEV-OPS"]}, headers=_h(lead)
    )
    assert res.status_code == 400

    with SessionLocal() as db:
        assert db.execute(select(ProjectMember).where(ProjectMember.projectId == project_id)).first() is None

    res = client.patch(f"/api/projects/{project_id}/assign-users", json={"userIds": ["DEV-1"]}, headers=_h(lead))
    assert res.status_code == 200
    assert [u["id"] for u in res.get_json()["data"]["assignedUsers"]] == ["DEV-1"]

    res = client.get(f"/api/projects/{project_id}/available-users", headers=_h(lead))
    assert res.get_json()["count"] == 0


def test_admin_completion_stamps_date_and_awards_points_once(app_client):
    _app, client = app_client
    _seed_user("LEAD-1", "lead")
    _seed_user("DEV-1", "user")
    admin = _admin(client)
    project_id = _create_project(client, admin, "LEAD-1")
    lead = _login(client, "LEAD-1")

    module_id = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Exports", "estimatedTime": 8, "assignedUsers": ["DEV-1"]},
        headers=_h(lead),
    ).get_json()["data"]["id"]

    res = client.put(f"/api/projects/{project_id}", json={"status": "completed"}, headers=_h(admin))
    assert res.status_code == 200
    data = res.get_json()["data"]
    assert data["status"] == "completed"
    assert data["completedAt"]
    assert data["pointsDistributed"] is True
    assert data["pointsAwarded"]["leadPoints"] == 40
    completed_at = data["completedAt"]

    res = client.patch(f"/api/modules/{module_id}/progress", json={"progress": 100}, headers=_h(lead))
    assert res.status_code == 200
    assert res.get_json()["data"]["pointsAwarded"] is None

    res = client.put(f"/api/projects/{project_id}", json={"status": "completed"}, headers=_h(admin))
    assert res.get_json()["data"]["pointsAwarded"] is None
    assert res.get_json()["data"]["completedAt"] == completed_at

    with SessionLocal() as db:
        stats = db.execute(select(UserStats).where(UserStats.userId == "LEAD-1")).scalar_one()
        assert stats.totalPoints == 40
        assert stats.completedProjects == 1
