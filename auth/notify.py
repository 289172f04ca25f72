"""
auth/notify.py -- Out-of-band message delivery for password reset flows.

A dispatcher is anything with

    send(to_address, recipient_name, payload) -> bool

where payload is a dict with at least a "kind" key ("password_reset" or
"password_changed"). Returning False (or raising requests.RequestException
inside the dispatcher, which it converts to False) means the message was
not delivered. Callers log that outcome and carry on -- delivery failure
never changes what a reset request reports to the client.

Implementations:
  ResendDispatcher -- POSTs to the Resend HTTP API using a pooled requests.Session.
  LogDispatcher    -- used when RESEND_API_KEY is unset; logs and returns False.

Never log the payload: a reset payload contains a live credential.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import requests

from auth.models import User

logger = logging.getLogger("notez.notify")

RESEND_API = "https://api.resend.com/emails"

PASSWORD_RESET = "password_reset"
PASSWORD_CHANGED = "password_changed"


class MessageDispatcher(Protocol):
    def send(self, to_address: str, recipient_name: str, payload: dict[str, Any]) -> bool: ...


class LogDispatcher:
    """Fallback when no email provider is configured."""

    def send(self, to_address: str, recipient_name: str, payload: dict[str, Any]) -> bool:
        logger.warning("Email delivery not configured; %s message not sent", payload.get("kind", "unknown"))
        return False


class ResendDispatcher:
    """Deliver messages through the Resend email API."""

    def __init__(self, api_key: str, from_address: str, app_name: str, app_url: str, timeout: float = 10) -> None:
        self.from_address = from_address
        self.app_name = app_name
        self.app_url = app_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3
        self._session.headers["Authorization"] = f"Bearer {api_key}"

    def _render(self, recipient_name: str, payload: dict[str, Any]) -> tuple[str, str]:
        kind = payload.get("kind")
        if kind == PASSWORD_RESET:
            reset_url = f"{self.app_url}/reset-password?token={payload['token']}"
            minutes = payload.get("expires_in_minutes", 60)
            return (
                f"Reset your {self.app_name} password",
                f"Hi {recipient_name},\n\n"
                f"We received a request to reset your {self.app_name} password.\n\n"
                f"Click this link to reset your password:\n{reset_url}\n\n"
                f"This link will expire in {minutes} minutes.\n\n"
                "If you didn't request this password reset, you can safely ignore this email. "
                "Your password will remain unchanged.",
            )
        if kind == PASSWORD_CHANGED:
            return (
                f"Your {self.app_name} password was changed",
                f"Hi {recipient_name},\n\n"
                f"Your {self.app_name} password was just changed and all sessions were signed out.\n\n"
                "If you did not make this change, contact your administrator immediately.",
            )
        raise ValueError(f"Unknown message kind: {kind!r}")

    def send(self, to_address: str, recipient_name: str, payload: dict[str, Any]) -> bool:
        subject, text = self._render(recipient_name, payload)
        try:
            resp = self._session.post(
                RESEND_API,
                json={"from": self.from_address, "to": [to_address], "subject": subject, "text": text},
                timeout=self.timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Email delivery failed for %s message: %s", payload.get("kind"), e)
            return False
        return True


def build_dispatcher(settings) -> MessageDispatcher:
    """Pick the dispatcher from settings: Resend when an API key is set, else log-only."""
    if settings.resend_api_key:
        return ResendDispatcher(
            api_key=settings.resend_api_key,
            from_address=settings.email_from,
            app_name=settings.app_name,
            app_url=settings.app_url,
        )
    return LogDispatcher()


def deliver(dispatcher: MessageDispatcher, user: User, payload: dict[str, Any]) -> bool:
    """Best-effort send to a user. Never raises; a failure is logged and reported as False."""
    if not user.email:
        logger.info("user_id=%d has no email; %s message skipped", user.id, payload["kind"])
        return False
    try:
        delivered = dispatcher.send(user.email, user.username, payload)
    except Exception:
        logger.exception("Dispatcher raised while sending %s message to user_id=%d", payload["kind"], user.id)
        return False
    if not delivered:
        logger.warning("%s message not delivered to user_id=%d", payload["kind"], user.id)
    return delivered
