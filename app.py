from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS
from sqlalchemy.exc import DBAPIError, IntegrityError

from actions import dispatch
from actions.helpers import append_audit
from auth import assert_permission, is_public_action, purge_expired_refresh_tokens, role_or_public, validate_session_token
from config import Config
from db import Base, SessionLocal, get_pool_stats, init_engine, ping_db
from services.notifications import NotificationOutbox, build_notification_sender
from utils import ApiError, AuthContext, SimpleRateLimiter, err, iso_utc_now, now_monotonic, ok


rest_api = Blueprint("rest_api", __name__, url_prefix="/api")

LOGIN_ACTIONS = {"AUTH_LOGIN", "AUTH_ADMIN_LOGIN"}
# Auth actions that record where a refresh token was issued.
CLIENT_META_ACTIONS = {"AUTH_REGISTER", "AUTH_LOGIN", "AUTH_ADMIN_LOGIN"}


def _rest_token() -> str:
    authz = str(request.headers.get("Authorization") or "").strip()
    if authz.lower().startswith("bearer "):
        return authz.split(" ", 1)[1].strip()
    return str(request.headers.get("X-Session-Token") or "").strip()


def _client_ip() -> str:
    fwd = str(request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
    return fwd or str(request.remote_addr or "")


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _query() -> dict:
    return {k: v for k, v in request.args.items()}


def _error_message(cfg: Config, e: Exception, prefix: str) -> str:
    request_id = str(getattr(g, "request_id", "") or "").strip()
    suffix = f" (requestId: {request_id})" if request_id else ""
    if cfg.IS_PRODUCTION:
        return f"{prefix}{suffix}"
    detail = type(e).__name__
    if str(os.getenv("DEBUG_ERROR_DETAILS", "") or "").strip().lower() in {"1", "true", "yes", "y", "on"}:
        raw = re.sub(r"\s+", " ", str(getattr(e, "orig", None) or e or "")).strip()
        if raw:
            detail = f"{detail}: {raw[:300]}"
    return f"{prefix}: {detail}{suffix}"


def _rest_handle(action: str, data: dict, *, status: int = 200):
    cfg: Config = current_app.config["CFG"]
    limiter: SimpleRateLimiter = current_app.config["LIMITER"]
    action_u = str(action or "").upper().strip()
    data = dict(data or {})

    db = None
    auth_ctx: Optional[AuthContext] = None
    try:
        ip = _client_ip()
        if action_u in LOGIN_ACTIONS:
            limiter.check(f"{ip}:LOGIN", cfg.RATE_LIMIT_LOGIN)
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)

        if action_u in CLIENT_META_ACTIONS:
            data["clientIp"] = ip
            data["userAgent"] = str(request.headers.get("User-Agent") or "")

        db = SessionLocal()

        if not is_public_action(action_u):
            auth_ctx = validate_session_token(db, _rest_token(), action=action_u)
            if not auth_ctx.valid:
                raise ApiError("AUTH_INVALID", "Not authorized to access this route")

        assert_permission(role_or_public(auth_ctx), action_u)

        outbox = NotificationOutbox(current_app.config["NOTIFIER"])
        out = dispatch(action_u, data, auth_ctx, db, cfg, notifier=outbox)

        append_audit(
            db,
            entityType="API",
            entityId=auth_ctx.userId if auth_ctx else "PUBLIC",
            action=action_u,
            stageTag="API_CALL",
            actor=auth_ctx,
            correlationId=str(getattr(g, "request_id", "") or ""),
            meta={"data": data},
        )
        db.commit()
        outbox.flush()

        logging.getLogger("api").info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            auth_ctx.userId if auth_ctx else "PUBLIC",
            auth_ctx.role if auth_ctx else "PUBLIC",
            int((now_monotonic() - g.start_ts) * 1000),
        )
        return ok(out, http_status=status)
    except ApiError as e:
        if db is not None:
            db.rollback()
        _write_error_audit(action_u, auth_ctx, data, e)
        return err(e.code, e.message, http_status=e.http_status)
    except IntegrityError as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("CONFLICT", "Duplicate field value entered")
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").warning("request_id=%s action=%s integrity error: %s", g.request_id, action_u, e.orig)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    except DBAPIError as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", _error_message(cfg, e, "Database error"))
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("request_id=%s action=%s", g.request_id, action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    except Exception as e:
        if db is not None:
            db.rollback()
        api_err = ApiError("INTERNAL", _error_message(cfg, e, "Unexpected error"))
        _write_error_audit(action_u, auth_ctx, data, api_err)
        logging.getLogger("api").exception("request_id=%s action=%s", g.request_id, action_u)
        return err(api_err.code, api_err.message, http_status=api_err.http_status)
    finally:
        if db is not None:
            db.close()


def _write_error_audit(action: str, auth_ctx: Optional[AuthContext], data: Any, err_obj: ApiError) -> None:
    db2 = SessionLocal()
    try:
        append_audit(
            db2,
            entityType="API",
            entityId=auth_ctx.userId if auth_ctx else "PUBLIC",
            action=action or "UNKNOWN",
            stageTag="API_ERROR",
            remark=f"{err_obj.code}: {err_obj.message}",
            actor=auth_ctx,
            correlationId=str(getattr(g, "request_id", "") or ""),
            meta={"data": data or {}, "error": {"code": err_obj.code, "message": err_obj.message}},
        )
        db2.commit()
    except DBAPIError:
        db2.rollback()
        logging.getLogger("api").warning("failed to write error audit action=%s", action)
    finally:
        db2.close()


# --- auth -----------------------------------------------------------------

@rest_api.post("/auth/register")
def rest_auth_register():
    return _rest_handle("AUTH_REGISTER", _body(), status=201)


@rest_api.post("/auth/login")
def rest_auth_login():
    return _rest_handle("AUTH_LOGIN", _body())


@rest_api.post("/auth/admin/login")
def rest_auth_admin_login():
    return _rest_handle("AUTH_ADMIN_LOGIN", _body())


@rest_api.post("/auth/refresh")
def rest_auth_refresh():
    return _rest_handle("AUTH_REFRESH", _body())


@rest_api.post("/auth/logout")
def rest_auth_logout():
    return _rest_handle("AUTH_LOGOUT", _body())


@rest_api.post("/auth/logout-all")
def rest_auth_logout_all():
    return _rest_handle("AUTH_LOGOUT_ALL", {})


@rest_api.get("/auth/me")
def rest_auth_me():
    return _rest_handle("AUTH_ME", {})


@rest_api.patch("/auth/fcm-token")
def rest_auth_fcm_token():
    return _rest_handle("AUTH_FCM_TOKEN", _body())


# --- users / admin ----------------------------------------------------------

@rest_api.get("/users")
def rest_users_list():
    return _rest_handle("USERS_LIST", _query())


@rest_api.get("/users/pending-approval")
def rest_users_pending():
    return _rest_handle("USERS_PENDING", {})


@rest_api.get("/users/<user_id>")
def rest_user_get(user_id: str):
    return _rest_handle("USER_GET", {"userId": user_id})


@rest_api.put("/users/<user_id>")
def rest_user_update(user_id: str):
    return _rest_handle("USER_UPDATE", {**_body(), "userId": user_id})


@rest_api.delete("/users/<user_id>")
def rest_user_delete(user_id: str):
    return _rest_handle("USER_DELETE", {"userId": user_id})


@rest_api.patch("/users/<user_id>/approve")
def rest_user_approve(user_id: str):
    return _rest_handle("USER_APPROVE", {"userId": user_id})


@rest_api.patch("/users/<user_id>/reject")
def rest_user_reject(user_id: str):
    return _rest_handle("USER_REJECT", {**_body(), "userId": user_id})


@rest_api.patch("/users/<user_id>/toggle-status")
def rest_user_toggle_status(user_id: str):
    return _rest_handle("USER_TOGGLE_STATUS", {"userId": user_id})


@rest_api.get("/admin/stats")
def rest_admin_dashboard():
    return _rest_handle("ADMIN_DASHBOARD", {})


@rest_api.get("/admin/users-by-department")
def rest_admin_users_by_department():
    return _rest_handle("ADMIN_USERS_BY_DEPARTMENT", {})


# --- projects ---------------------------------------------------------------

@rest_api.get("/projects")
def rest_project_list():
    return _rest_handle("PROJECT_LIST", _query())


@rest_api.post("/projects")
def rest_project_create():
    return _rest_handle("PROJECT_CREATE", _body(), status=201)


@rest_api.get("/projects/available-leads/<department>")
def rest_project_available_leads(department: str):
    return _rest_handle("PROJECT_AVAILABLE_LEADS", {"department": department})


@rest_api.get("/projects/<project_id>")
def rest_project_get(project_id: str):
    return _rest_handle("PROJECT_GET", {"projectId": project_id})


@rest_api.put("/projects/<project_id>")
def rest_project_update(project_id: str):
    return _rest_handle("PROJECT_UPDATE", {**_body(), "projectId": project_id})


@rest_api.delete("/projects/<project_id>")
def rest_project_delete(project_id: str):
    return _rest_handle("PROJECT_DELETE", {"projectId": project_id})


@rest_api.patch("/projects/<project_id>/assign-users")
def rest_project_assign_users(project_id: str):
    return _rest_handle("PROJECT_ASSIGN_USERS", {**_body(), "projectId": project_id})


@rest_api.patch("/projects/<project_id>/remove-user/<user_id>")
def rest_project_remove_user(project_id: str, user_id: str):
    return _rest_handle("PROJECT_REMOVE_USER", {"projectId": project_id, "userId": user_id})


@rest_api.get("/projects/<project_id>/available-users")
def rest_project_available_users(project_id: str):
    return _rest_handle("PROJECT_AVAILABLE_USERS", {"projectId": project_id})


# --- modules ----------------------------------------------------------------

@rest_api.get("/modules/projects/<project_id>/modules")
def rest_module_list(project_id: str):
    return _rest_handle("MODULE_LIST", {**_query(), "projectId": project_id})


@rest_api.post("/modules/projects/<project_id>/modules")
def rest_module_create(project_id: str):
    return _rest_handle("MODULE_CREATE", {**_body(), "projectId": project_id}, status=201)


@rest_api.get("/modules/<module_id>")
def rest_module_get(module_id: str):
    return _rest_handle("MODULE_GET", {"moduleId": module_id})


@rest_api.put("/modules/<module_id>")
def rest_module_update(module_id: str):
    return _rest_handle("MODULE_UPDATE", {**_body(), "moduleId": module_id})


@rest_api.delete("/modules/<module_id>")
def rest_module_delete(module_id: str):
    return _rest_handle("MODULE_DELETE", {"moduleId": module_id})


@rest_api.patch("/modules/<module_id>/progress")
def rest_module_progress(module_id: str):
    return _rest_handle("MODULE_PROGRESS_UPDATE", {**_body(), "moduleId": module_id})


# --- daily updates ----------------------------------------------------------

@rest_api.post("/daily-updates")
def rest_daily_update_create():
    return _rest_handle("DAILY_UPDATE_CREATE", _body(), status=201)


@rest_api.get("/daily-updates/my-updates")
def rest_daily_update_mine():
    return _rest_handle("DAILY_UPDATE_MINE", _query())


@rest_api.put("/daily-updates/<update_id>")
def rest_daily_update_edit(update_id: str):
    return _rest_handle("DAILY_UPDATE_EDIT", {**_body(), "updateId": update_id})


@rest_api.get("/daily-updates/project/<project_id>")
def rest_daily_update_by_project(project_id: str):
    return _rest_handle("DAILY_UPDATE_BY_PROJECT", {**_query(), "projectId": project_id})


@rest_api.get("/daily-updates/team-summary/<project_id>")
def rest_daily_update_team_summary(project_id: str):
    return _rest_handle("DAILY_UPDATE_TEAM_SUMMARY", {**_query(), "projectId": project_id})


# --- stats ------------------------------------------------------------------

@rest_api.get("/stats/my-stats")
def rest_stats_mine():
    return _rest_handle("STATS_MINE", {})


@rest_api.get("/stats/leaderboard")
def rest_stats_leaderboard():
    return _rest_handle("STATS_LEADERBOARD", _query())


@rest_api.get("/stats/department-leaderboard")
def rest_stats_department_leaderboard():
    return _rest_handle("STATS_DEPARTMENT_LEADERBOARD", _query())


@rest_api.get("/stats/user/<user_id>")
def rest_stats_user(user_id: str):
    return _rest_handle("STATS_USER", {"userId": user_id})


@rest_api.get("/stats/team-stats")
def rest_stats_team():
    return _rest_handle("STATS_TEAM", {})


@rest_api.get("/stats/project/<project_id>")
def rest_stats_project(project_id: str):
    return _rest_handle("STATS_PROJECT", {"projectId": project_id})


@rest_api.get("/stats/system-stats")
def rest_stats_system():
    return _rest_handle("STATS_SYSTEM", {})


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL)
    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db0:
        purged = purge_expired_refresh_tokens(db0)
        db0.commit()
    if purged:
        logging.getLogger("api").info("purged %s expired refresh tokens", purged)

    app = Flask(__name__)
    app.config["CFG"] = cfg
    app.config["LIMITER"] = SimpleRateLimiter()
    app.config["NOTIFIER"] = build_notification_sender(cfg)

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    @app.before_request
    def _before():
        g.request_id = str(request.headers.get("X-Request-ID") or "").strip()[:64] or os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats

        return ok(
            {
                "status": "ok",
                "version": cfg.APP_VERSION,
                "env": cfg.ENV,
                "db_pool": get_pool_stats(),
                "cache": cache_stats(),
            }
        )

    @app.get("/ready")
    def ready():
        db_ok = ping_db()
        return ok(
            {
                "status": "ok" if db_ok else "degraded",
                "time": iso_utc_now(),
                "version": cfg.APP_VERSION,
                "checks": {"db": "ok" if db_ok else "error"},
            },
            http_status=200 if db_ok else 503,
        )

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Route not found: {request.path}", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", f"Method {request.method} not allowed for {request.path}", http_status=405)

    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
