from __future__ import annotations

import pytest

from cache_layer import cache_clear


@pytest.fixture()
def app_client(tmp_path, monkeypatch):
    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'tracker-test.db'}")
    monkeypatch.setenv("ADMIN_EMAIL", "admin@tracker.test")
    monkeypatch.setenv("ADMIN_PASSWORD", "admin-pass-123")
    monkeypatch.setenv("APP_TIMEZONE", "UTC")
    monkeypatch.setenv("NOTIFICATIONS_PROVIDER", "log")
    monkeypatch.setenv("RATE_LIMIT_LOGIN", "1000")
    monkeypatch.setenv("RATE_LIMIT_GLOBAL", "10000")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    cache_clear()

    from app import create_app

    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield app, client
    cache_clear()
