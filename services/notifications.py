"""
Push notifications.

A sender is built once in create_app() and handed to the actions that notify.
Delivery problems are logged and never fail the request that triggered them.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any, Optional

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account


log = logging.getLogger("notifications")

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
LOG_SENDER_HISTORY = 200


class NotificationSender:
    def send(self, device_token: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> bool:
        raise NotImplementedError


class LogNotificationSender(NotificationSender):
    """Writes notifications to the log; keeps only the most recent ones in `sent`."""

    def __init__(self, history: int = LOG_SENDER_HISTORY):
        self.sent: deque[dict[str, Any]] = deque(maxlen=max(1, int(history)))

    def send(self, device_token: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> bool:
        item = {"token": str(device_token or ""), "title": title, "body": body, "data": dict(data or {})}
        self.sent.append(item)
        log.info("notification token=%s title=%s", item["token"][:12], title)
        return True


class NotificationOutbox(NotificationSender):
    """
    Collects the sends a request makes so they can go out after its
    transaction commits. A request that fails never flushes its outbox.
    """

    def __init__(self, sender: Optional[NotificationSender]):
        self._sender = sender
        self._pending: list[tuple[str, str, str, dict[str, Any]]] = []

    def send(self, device_token: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> bool:
        self._pending.append((str(device_token or ""), title, body, dict(data or {})))
        return True

    @property
    def pending(self) -> int:
        return len(self._pending)

    def flush(self) -> int:
        pending, self._pending = self._pending, []
        return sum(1 for token, title, body, data in pending if _deliver(self._sender, token, title, body, data))


class FcmNotificationSender(NotificationSender):
    """Firebase Cloud Messaging HTTP v1 using a service-account key file."""

    def __init__(self, project_id: str, credentials_file: str, *, timeout_seconds: int = 10):
        creds = service_account.Credentials.from_service_account_file(credentials_file, scopes=[FCM_SCOPE])
        self._session = AuthorizedSession(creds)
        self._url = f"https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
        self._timeout = timeout_seconds

    def send(self, device_token: str, title: str, body: str, data: Optional[dict[str, Any]] = None) -> bool:
        message = {
            "message": {
                "token": str(device_token or ""),
                "notification": {"title": title, "body": body},
                # FCM data values must be strings.
                "data": {str(k): str(v) for k, v in (data or {}).items()},
            }
        }
        try:
            resp = self._session.post(self._url, json=message, timeout=self._timeout)
        except requests.RequestException as e:
            log.warning("fcm send error: %s", e)
            return False
        if resp.status_code >= 400:
            log.warning("fcm send failed status=%s body=%s", resp.status_code, resp.text[:300])
            return False
        return True


def build_notification_sender(cfg) -> NotificationSender:
    provider = str(getattr(cfg, "NOTIFICATIONS_PROVIDER", "log") or "log").lower()
    if provider == "fcm":
        sender = FcmNotificationSender(
            cfg.FCM_PROJECT_ID,
            cfg.FCM_CREDENTIALS_FILE,
            timeout_seconds=int(getattr(cfg, "NOTIFICATION_TIMEOUT_SECONDS", 10) or 10),
        )
        log.info("notifications provider=fcm project=%s", cfg.FCM_PROJECT_ID)
        return sender
    return LogNotificationSender()


def _deliver(sender: Optional[NotificationSender], device_token: str, title: str, body: str, data: dict[str, Any]) -> bool:
    if sender is None or not str(device_token or "").strip():
        return False
    try:
        return bool(sender.send(device_token, title, body, data))
    except Exception:
        log.exception("notification failed type=%s", data.get("type", ""))
        return False


def notify_welcome(sender: Optional[NotificationSender], device_token: str, name: str) -> bool:
    return _deliver(
        sender,
        device_token,
        "Welcome!",
        f"Hi {name}, your registration was received. Please wait for admin approval.",
        {"type": "welcome"},
    )


def notify_account_approved(sender: Optional[NotificationSender], device_token: str, name: str) -> bool:
    return _deliver(
        sender,
        device_token,
        "Account Approved",
        f"Hi {name}, your account has been approved. You can now log in.",
        {"type": "account_approved"},
    )


def notify_account_rejected(
    sender: Optional[NotificationSender], device_token: str, name: str, reason: str = ""
) -> bool:
    body = f"Hi {name}, your account registration was not approved."
    if reason:
        body = f"{body} Reason: {reason}"
    return _deliver(sender, device_token, "Account Not Approved", body, {"type": "account_rejected", "reason": reason})
