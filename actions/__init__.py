from __future__ import annotations

from typing import Any, Callable, Optional

from utils import ApiError, AuthContext


# Handlers that deliver push notifications receive the process-wide sender.
_NOTIFYING_ACTIONS = {"AUTH_REGISTER", "USER_APPROVE", "USER_REJECT"}

_HANDLERS: dict[str, Callable[..., dict]] = {}


def _build_handlers() -> dict[str, Callable[..., dict]]:
    # Imported here: services import actions.helpers, so the handler modules
    # cannot load while this package is still initialising.
    from actions import auth_actions, daily_updates, modules, projects, stats, users

    return {
        "AUTH_REGISTER": auth_actions.register,
        "AUTH_LOGIN": auth_actions.login,
        "AUTH_ADMIN_LOGIN": auth_actions.admin_login,
        "AUTH_REFRESH": auth_actions.refresh,
        "AUTH_LOGOUT": auth_actions.logout,
        "AUTH_LOGOUT_ALL": auth_actions.logout_all,
        "AUTH_ME": auth_actions.me,
        "AUTH_FCM_TOKEN": auth_actions.update_fcm_token,
        "USERS_LIST": users.users_list,
        "USERS_PENDING": users.users_pending,
        "USER_GET": users.user_get,
        "USER_UPDATE": users.user_update,
        "USER_DELETE": users.user_delete,
        "USER_APPROVE": users.user_approve,
        "USER_REJECT": users.user_reject,
        "USER_TOGGLE_STATUS": users.user_toggle_status,
        "ADMIN_DASHBOARD": users.admin_dashboard,
        "ADMIN_USERS_BY_DEPARTMENT": users.admin_users_by_department,
        "PROJECT_LIST": projects.project_list,
        "PROJECT_CREATE": projects.project_create,
        "PROJECT_AVAILABLE_LEADS": projects.project_available_leads,
        "PROJECT_GET": projects.project_get,
        "PROJECT_UPDATE": projects.project_update,
        "PROJECT_DELETE": projects.project_delete,
        "PROJECT_ASSIGN_USERS": projects.project_assign_users,
        "PROJECT_REMOVE_USER": projects.project_remove_user,
        "PROJECT_AVAILABLE_USERS": projects.project_available_users,
        "MODULE_LIST": modules.module_list,
        "MODULE_CREATE": modules.module_create,
        "MODULE_GET": modules.module_get,
        "MODULE_UPDATE": modules.module_update,
        "MODULE_DELETE": modules.module_delete,
        "MODULE_PROGRESS_UPDATE": modules.module_progress_update,
        "DAILY_UPDATE_CREATE": daily_updates.create,
        "DAILY_UPDATE_MINE": daily_updates.mine,
        "DAILY_UPDATE_EDIT": daily_updates.edit,
        "DAILY_UPDATE_BY_PROJECT": daily_updates.by_project,
        "DAILY_UPDATE_TEAM_SUMMARY": daily_updates.team_summary,
        "STATS_MINE": stats.my_stats,
        "STATS_LEADERBOARD": stats.leaderboard,
        "STATS_DEPARTMENT_LEADERBOARD": stats.department_leaderboard,
        "STATS_USER": stats.user_stats,
        "STATS_TEAM": stats.team_stats,
        "STATS_PROJECT": stats.project_stats,
        "STATS_SYSTEM": stats.system_stats,
    }


def get_handler(action: str) -> Callable[..., dict]:
    if not _HANDLERS:
        _HANDLERS.update(_build_handlers())
    fn = _HANDLERS.get(str(action or "").upper().strip())
    if fn is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    return fn


def dispatch(action: str, data: dict, auth: Optional[AuthContext], db, cfg, notifier: Any = None) -> dict:
    action_u = str(action or "").upper().strip()
    fn = get_handler(action_u)
    if action_u in _NOTIFYING_ACTIONS:
        return fn(data or {}, auth, db, cfg, notifier=notifier)
    return fn(data or {}, auth, db, cfg) or {}
