"""
Tests for /ready endpoint.
"""
from __future__ import annotations

from unittest.mock import patch

import db


def test_ready_ok(app_client):
    _app, client = app_client

    res = client.get("/ready")
    assert res.status_code == 200

    body = res.get_json()
    assert body["status"] == "ok"
    assert body["checks"]["db"] == "ok"


def test_ready_db_down(app_client):
    """Load balancers get a 503 while the database is unreachable."""
    _app, client = app_client

    with patch("app.ping_db", return_value=False):
        res = client.get("/ready")
        assert res.status_code == 503
        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["db"] == "error"


def test_ping_db_uses_initialised_engine(app_client, monkeypatch):
    assert db.ping_db() is True

    monkeypatch.setattr(db, "_engine", None)
    assert db.get_engine() is None
    assert db.ping_db() is False
