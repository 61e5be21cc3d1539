from __future__ import annotations

from db import SessionLocal
from models import User
from passwords import hash_password
from utils import iso_utc_now


PASSWORD = "s3cret-pass"


def _seed_user(user_id: str, role: str, name: str) -> None:
    now = iso_utc_now()
    with SessionLocal() as db:
        db.add(
            User(
                userId=user_id,
                name=name,
                email=f"{user_id.lower()}@tracker.test",
                password_hash=hash_password(PASSWORD),
                role=role,
                department="Engineering",
                approved=True,
                isActive=True,
                createdAt=now,
                updatedAt=now,
            )
        )
        db.commit()


def _token(client, user_id: str) -> str:
    res = client.post("/api/auth/login", json={"email": f"{user_id.lower()}@tracker.test", "password": PASSWORD})
    assert res.status_code == 200, res.get_json()
    return res.get_json()["accessToken"]


def _h(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _setup_project(client) -> tuple[str, str, str]:
    _seed_user("LEAD-1", "lead", "Asha Lead")
    _seed_user("DEV-1", "user", "Bala Dev")
    _seed_user("DEV-2", "user", "Chitra Dev")

    admin = client.post("/api/auth/admin/login", json={"email": "admin@tracker.test", "password": "admin-pass-123"})
    admin_token = admin.get_json()["accessToken"]
    project_id = client.post(
        "/api/projects",
        json={"name": "Inventory sync", "department": "Engineering", "assignedLead": "LEAD-1"},
        headers=_h(admin_token),
    ).get_json()["data"]["id"]

    lead = _token(client, "LEAD-1")
    mod_a = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Importer", "estimatedTime": 10, "assignedUsers": ["DEV-1"]},
        headers=_h(lead),
    ).get_json()["data"]["id"]
    mod_b = client.post(
        f"/api/modules/projects/{project_id}/modules",
        json={"name": "Reconciler", "estimatedTime": 10, "assignedUsers": ["DEV-2"]},
        headers=_h(lead),
    ).get_json()["data"]["id"]
    return project_id, mod_a, mod_b


def _submit(client, token: str, project_id: str, module_id: str, *, hours: float, progress: float):
    return client.post(
        "/api/daily-updates",
        json={
            "projectId": project_id,
            "moduleId": module_id,
            "hoursWorked": hours,
            "progressPercentage": progress,
            "description": "Worked on it",
        },
        headers=_h(token),
    )


def test_one_update_per_module_per_day(app_client):
    _app, client = app_client
    project_id, mod_a, _mod_b = _setup_project(client)
    dev = _token(client, "DEV-1")

    res = _submit(client, dev, project_id, mod_a, hours=3, progress=40)
    assert res.status_code == 201
    body = res.get_json()
    assert body["message"] == "Daily update submitted successfully"
    assert body["data"]["cascade"]["projectProgress"] == 20

    res = _submit(client, dev, project_id, mod_a, hours=2, progress=50)
    assert res.status_code == 400
    assert "already submitted" in res.get_json()["message"]


def test_update_requires_membership_and_valid_hours(app_client):
    _app, client = app_client
    project_id, mod_a, mod_b = _setup_project(client)
    _seed_user("DEV-3", "user", "Outsider")

    res = _submit(client, _token(client, "DEV-3"), project_id, mod_a, hours=2, progress=10)
    assert res.status_code == 403
    assert res.get_json()["message"] == "You are not assigned to this project"

    dev = _token(client, "DEV-1")
    res = _submit(client, dev, project_id, mod_a, hours=25, progress=10)
    assert res.status_code == 400

    res = _submit(client, dev, project_id, "MOD-MISSING", hours=2, progress=10)
    assert res.status_code == 404
    assert res.get_json()["message"] == "Module not found in this project"


def test_edit_today_reruns_cascade(app_client):
    _app, client = app_client
    project_id, mod_a, _mod_b = _setup_project(client)
    dev = _token(client, "DEV-1")

    update_id = _submit(client, dev, project_id, mod_a, hours=2, progress=30).get_json()["data"]["id"]
    res = client.put(f"/api/daily-updates/{update_id}", json={"hoursWorked": 5, "progressPercentage": 70}, headers=_h(dev))
    assert res.status_code == 200

    lead = _token(client, "LEAD-1")
    modules = client.get(f"/api/modules/projects/{project_id}/modules", headers=_h(lead)).get_json()["data"]
    by_id = {m["id"]: m for m in modules}
    assert by_id[mod_a]["progress"] == 70
    assert by_id[mod_a]["actualTime"] == 5.0

    other = _token(client, "DEV-2")
    res = client.put(f"/api/daily-updates/{update_id}", json={"hoursWorked": 1}, headers=_h(other))
    assert res.status_code == 403


def test_fractional_progress_rounds_half_up(app_client):
    _app, client = app_client
    project_id, mod_a, _mod_b = _setup_project(client)
    dev = _token(client, "DEV-1")

    res = _submit(client, dev, project_id, mod_a, hours=2, progress=50.5)
    assert res.status_code == 201
    data = res.get_json()["data"]
    assert data["progressPercentage"] == 51
    assert data["cascade"]["moduleProgress"] == 51
    # (51 + 0) / 2 = 25.5 on the project rounds up as well.
    assert data["cascade"]["projectProgress"] == 26


def test_full_cascade_awards_points_and_ranks_leaderboard(app_client):
    _app, client = app_client
    project_id, mod_a, mod_b = _setup_project(client)

    res = _submit(client, _token(client, "DEV-1"), project_id, mod_a, hours=6, progress=100)
    assert res.get_json()["data"]["cascade"]["projectCompleted"] is False

    res = _submit(client, _token(client, "DEV-2"), project_id, mod_b, hours=4, progress=100)
    assert res.status_code == 201
    cascade = res.get_json()["data"]["cascade"]
    assert cascade["projectCompleted"] is True
    assert cascade["projectStatus"] == "completed"

    lead = _token(client, "LEAD-1")
    project = client.get(f"/api/projects/{project_id}", headers=_h(lead)).get_json()["data"]
    assert project["progress"] == 100
    assert project["pointsDistributed"] is True
    assert project["totalActualHours"] == 10.0

    board = client.get("/api/stats/leaderboard", headers=_h(lead)).get_json()
    assert board["timeframe"] == "all"
    ranking = [(r["user"]["id"], r["totalPoints"], r["rank"]) for r in board["data"]]
    assert ranking == [("LEAD-1", 60, 1), ("DEV-1", 54, 2), ("DEV-2", 36, 3)]

    mine = client.get("/api/stats/my-stats", headers=_h(_token(client, "DEV-1"))).get_json()["data"]
    assert mine["stats"]["totalPoints"] == 54
    assert mine["stats"]["totalProjects"] == 1
    assert [h["pointsEarned"] for h in mine["projectHistory"]] == [54]

    summary = client.get(f"/api/daily-updates/team-summary/{project_id}", headers=_h(lead)).get_json()
    assert summary["totalHours"] == 10.0
    assert summary["teamMembers"] == 2


def test_leaderboard_rejects_unknown_timeframe(app_client):
    _app, client = app_client
    _seed_user("DEV-1", "user", "Bala Dev")
    res = client.get("/api/stats/leaderboard?timeframe=year", headers=_h(_token(client, "DEV-1")))
    assert res.status_code == 400
