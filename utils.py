from __future__ import annotations

import hashlib
import math
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from dateutil import parser as dt_parser
from flask import jsonify


_DEFAULT_HTTP_STATUS = {
    "BAD_REQUEST": 400,
    "AUTH_INVALID": 401,
    "FORBIDDEN": 403,
    "NOT_FOUND": 404,
    "CONFLICT": 409,
    "RATE_LIMITED": 429,
    "INTERNAL": 500,
}

ROLES = {"admin", "lead", "user"}


class ApiError(Exception):
    def __init__(self, code: str, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.code = str(code or "INTERNAL").upper()
        self.message = str(message or "")
        self.http_status = int(http_status or _DEFAULT_HTTP_STATUS.get(self.code, 500))


@dataclass
class AuthContext:
    valid: bool
    userId: str
    email: str
    role: str
    expiresAt: str
    department: str = ""
    userModel: str = ""
    sessionId: str = ""


def ok(out: Any = None, *, http_status: int = 200):
    body: dict[str, Any] = {"success": True}
    if isinstance(out, dict):
        body.update(out)
    elif out is not None:
        body["data"] = out
    return jsonify(body), http_status


def err(code: str, message: str, *, http_status: Optional[int] = None):
    status = int(http_status or _DEFAULT_HTTP_STATUS.get(str(code or "").upper(), 500))
    return jsonify({"success": False, "code": str(code or "INTERNAL").upper(), "message": str(message or "")}), status


def new_uuid() -> str:
    return str(uuid.uuid4())


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:20].upper()}"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(str(value or "").encode("utf-8")).hexdigest()


def now_monotonic() -> float:
    return time.monotonic()


def to_iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def iso_utc_now() -> str:
    return to_iso_utc(datetime.now(timezone.utc))


def parse_datetime_maybe(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    s = str(value or "").strip()
    if not s:
        return None
    try:
        dt = datetime.fromisoformat(s[:-1] + "+00:00" if s.endswith("Z") else s)
    except ValueError:
        # Free-form client dates ("Oct 30 2026", "2026/10/30 18:00").
        try:
            dt = dt_parser.parse(s)
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def day_key(dt: datetime, tz_name: str = "UTC") -> str:
    """Calendar day (YYYY-MM-DD) of `dt` in the given timezone."""
    try:
        tz = ZoneInfo(str(tz_name or "UTC"))
    except (KeyError, ValueError):
        tz = timezone.utc
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz).strftime("%Y-%m-%d")


def month_key(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m")


def round_half_up(value: float) -> int:
    # Halves round up for the non-negative values used here.
    return int(math.floor(float(value) + 0.5))


def normalize_role(role: Any) -> str:
    r = str(role or "").strip().lower()
    return r if r in ROLES else ""


def parse_number(value: Any, *, field: str, minimum: float | None = None, maximum: float | None = None) -> float:
    if isinstance(value, bool):
        raise ApiError("BAD_REQUEST", f"{field} must be a number")
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", f"{field} must be a number")
    if math.isnan(num) or math.isinf(num):
        raise ApiError("BAD_REQUEST", f"{field} must be a number")
    if minimum is not None and num < minimum:
        raise ApiError("BAD_REQUEST", f"{field} cannot be less than {minimum:g}")
    if maximum is not None and num > maximum:
        raise ApiError("BAD_REQUEST", f"{field} cannot exceed {maximum:g}")
    return num


def parse_bool_maybe(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


_REDACT_KEYS = {"password", "currentpassword", "newpassword", "token", "refreshtoken", "accesstoken", "fcmtoken"}


def redact_for_audit(data: Any) -> Any:
    if isinstance(data, dict):
        out = {}
        for k, v in data.items():
            if str(k).replace("_", "").lower() in _REDACT_KEYS:
                out[k] = "***"
            else:
                out[k] = redact_for_audit(v)
        return out
    if isinstance(data, list):
        return [redact_for_audit(x) for x in data[:50]]
    if isinstance(data, str) and len(data) > 500:
        return data[:500] + "..."
    return data


class SimpleRateLimiter:
    """Per-key sliding one-minute window, in process memory."""

    def __init__(self, window_seconds: int = 60):
        self._window = max(1, int(window_seconds))
        self._hits: dict[str, deque] = {}
        self._lock = threading.Lock()

    def check(self, key: str, limit: int) -> None:
        if int(limit or 0) <= 0:
            return
        now = time.monotonic()
        with self._lock:
            q = self._hits.setdefault(key, deque())
            while q and now - q[0] > self._window:
                q.popleft()
            if len(q) >= int(limit):
                raise ApiError("RATE_LIMITED", "Too many requests, please try again later")
            q.append(now)
