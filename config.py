from __future__ import annotations

import os


def _env_str(name: str, default: str = "") -> str:
    return str(os.getenv(name, default) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        return int(str(os.getenv(name, "") or "").strip() or default)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: list[str] | None = None) -> list[str]:
    raw = str(os.getenv(name, "") or "").strip()
    if not raw:
        return list(default or [])
    return [x.strip() for x in raw.split(",") if x.strip()]


_DEFAULT_ADMIN_PASSWORD = "admin123"


class Config:
    """Process configuration, read from the environment once at startup."""

    def __init__(self):
        self.ENV = _env_str("APP_ENV", "development").lower()
        self.IS_PRODUCTION = self.ENV in {"prod", "production"}
        self.APP_VERSION = _env_str("APP_VERSION", "1.0.0")
        self.LOG_LEVEL = _env_str("LOG_LEVEL", "INFO").upper()

        self.DATABASE_URL = _env_str("DATABASE_URL", "sqlite:///./tracker.db")
        self.HOST = _env_str("HOST", "0.0.0.0")
        self.PORT = _env_int("PORT", 5000)
        self.ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS", ["*"])
        self.APP_TIMEZONE = _env_str("APP_TIMEZONE", "UTC")

        self.ADMIN_EMAIL = _env_str("ADMIN_EMAIL", "admin@example.com").lower()
        self.ADMIN_PASSWORD = _env_str("ADMIN_PASSWORD", _DEFAULT_ADMIN_PASSWORD)

        self.ACCESS_TOKEN_TTL_MINUTES = max(1, _env_int("ACCESS_TOKEN_TTL_MINUTES", 15))
        self.REFRESH_TOKEN_TTL_DAYS = max(1, _env_int("REFRESH_TOKEN_TTL_DAYS", 7))

        self.RATE_LIMIT_LOGIN = _env_int("RATE_LIMIT_LOGIN", 20)
        self.RATE_LIMIT_GLOBAL = _env_int("RATE_LIMIT_GLOBAL", 600)

        self.NOTIFICATIONS_PROVIDER = _env_str("NOTIFICATIONS_PROVIDER", "log").lower()
        self.FCM_PROJECT_ID = _env_str("FCM_PROJECT_ID", "")
        self.FCM_CREDENTIALS_FILE = _env_str("FCM_CREDENTIALS_FILE", "")
        self.NOTIFICATION_TIMEOUT_SECONDS = max(1, _env_int("NOTIFICATION_TIMEOUT_SECONDS", 10))

        # Module assignees are added to the project without eligibility checks unless enabled.
        self.AUTO_ASSIGN_REQUIRE_ELIGIBILITY = _env_bool("AUTO_ASSIGN_REQUIRE_ELIGIBILITY", False)

        self.LEADERBOARD_MAX_LIMIT = max(1, _env_int("LEADERBOARD_MAX_LIMIT", 100))

    def validate(self) -> None:
        if not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL is required")
        if not self.ADMIN_EMAIL:
            raise RuntimeError("ADMIN_EMAIL is required")
        if self.IS_PRODUCTION and self.ADMIN_PASSWORD == _DEFAULT_ADMIN_PASSWORD:
            raise RuntimeError("ADMIN_PASSWORD must be set in production")
        if self.NOTIFICATIONS_PROVIDER not in {"log", "fcm"}:
            raise RuntimeError(f"Unknown NOTIFICATIONS_PROVIDER: {self.NOTIFICATIONS_PROVIDER}")
        if self.NOTIFICATIONS_PROVIDER == "fcm" and (not self.FCM_PROJECT_ID or not self.FCM_CREDENTIALS_FILE):
            raise RuntimeError("FCM_PROJECT_ID and FCM_CREDENTIALS_FILE are required for fcm notifications")
