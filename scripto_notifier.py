#!/usr/bin/env python3
"""
Notification transports used by scripto to report script failures.

A notifier exposes a single ``notify(subject, body, recipients)`` operation.  Two
transports are provided: SMTP email and an HTTP webhook that posts JSON events.
"""

from __future__ import annotations

import json
import os
import smtplib
import socket
from dataclasses import dataclass
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Any, Dict, List, Optional, Union
from urllib import error as urllib_error
from urllib import request as urllib_request


UTC = timezone.utc
DEFAULT_SMTP_HOST = "localhost"
DEFAULT_SMTP_PORT = 25
DEFAULT_SMTP_TIMEOUT_SECONDS = 30.0
DEFAULT_WEBHOOK_TIMEOUT_MS = 2000
VALID_TYPES = {"email", "webhook"}

Recipients = Union[str, List[str], None]


class NotifierError(Exception):
    """Raised when a notification cannot be delivered."""


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def normalize_recipients(recipients: Recipients) -> List[str]:
    if recipients is None or recipients is True or recipients is False:
        return []
    if isinstance(recipients, str):
        items = recipients.split(",")
    else:
        items = [str(item) for item in recipients]
    return [item.strip() for item in items if item and item.strip()]


@dataclass
class NotifierSettings:
    type: str = "email"
    host: str = DEFAULT_SMTP_HOST
    port: int = DEFAULT_SMTP_PORT
    sender: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = False
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout_ms: int = DEFAULT_WEBHOOK_TIMEOUT_MS

    @staticmethod
    def from_env() -> "NotifierSettings":
        endpoint = _non_empty(os.getenv("SCRIPTO_WEBHOOK_ENDPOINT"))
        port_raw = _non_empty(os.getenv("SCRIPTO_SMTP_PORT"))
        try:
            port = int(port_raw) if port_raw else DEFAULT_SMTP_PORT
        except ValueError as exc:
            raise NotifierError(f'SCRIPTO_SMTP_PORT must be an integer, got "{port_raw}".') from exc
        return NotifierSettings(
            type="webhook" if endpoint else "email",
            host=_non_empty(os.getenv("SCRIPTO_SMTP_HOST")) or DEFAULT_SMTP_HOST,
            port=port,
            sender=_non_empty(os.getenv("SCRIPTO_SMTP_SENDER")),
            username=_non_empty(os.getenv("SCRIPTO_SMTP_USER")),
            password=_non_empty(os.getenv("SCRIPTO_SMTP_PASSWORD")),
            endpoint=endpoint,
            api_key=_non_empty(os.getenv("SCRIPTO_WEBHOOK_API_KEY")),
        )

    @staticmethod
    def from_config(raw: Optional[Dict[str, Any]]) -> "NotifierSettings":
        """Overlay the ``notifier`` config mapping on top of the environment settings."""
        settings = NotifierSettings.from_env()
        if raw is None:
            return settings
        if not isinstance(raw, dict):
            raise NotifierError("Error: notifier must be a mapping.")

        unknown = set(raw.keys()) - {
            "type",
            "host",
            "port",
            "sender",
            "username",
            "password",
            "use_tls",
            "endpoint",
            "api_key",
            "timeout_ms",
        }
        if unknown:
            raise NotifierError(f"Error: Unknown keys in notifier: {sorted(unknown)}.")

        for key, value in raw.items():
            setattr(settings, key, value)
        if "type" not in raw and raw.get("endpoint"):
            settings.type = "webhook"

        settings.type = str(settings.type).lower()
        if settings.type not in VALID_TYPES:
            raise NotifierError(
                f'Error: notifier.type must be one of {sorted(VALID_TYPES)}, got "{settings.type}".'
            )
        if not isinstance(settings.port, int) or isinstance(settings.port, bool) or settings.port < 1:
            raise NotifierError("Error: notifier.port must be a positive integer.")
        if (
            not isinstance(settings.timeout_ms, int)
            or isinstance(settings.timeout_ms, bool)
            or settings.timeout_ms < 1
        ):
            raise NotifierError("Error: notifier.timeout_ms must be a positive integer.")
        if not isinstance(settings.use_tls, bool):
            raise NotifierError("Error: notifier.use_tls must be true or false.")
        if not isinstance(settings.host, str) or not settings.host.strip():
            raise NotifierError("Error: notifier.host must be a non-empty string.")
        for key in ("sender", "username", "password", "endpoint", "api_key"):
            value = getattr(settings, key)
            if value is not None and not isinstance(value, str):
                raise NotifierError(f"Error: notifier.{key} must be a string.")
        if settings.type == "webhook":
            endpoint = _non_empty(settings.endpoint)
            if not endpoint or not (endpoint.startswith("http://") or endpoint.startswith("https://")):
                raise NotifierError("Error: notifier.endpoint must be an HTTP URL.")
        return settings


class EmailNotifier:
    """Sends HTML notifications through an SMTP relay."""

    def __init__(
        self,
        host: str = DEFAULT_SMTP_HOST,
        port: int = DEFAULT_SMTP_PORT,
        sender: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        timeout: float = DEFAULT_SMTP_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = _non_empty(sender) or f"noreply@{socket.gethostname()}"
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, subject: str, body: str, recipients: List[str]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content(body, subtype="html", charset="utf-8")
        return message

    def notify(self, subject: str, body: str, recipients: Recipients = None) -> bool:
        to = normalize_recipients(recipients)
        if not to:
            raise NotifierError("An attempt was made to send an email without a valid recipient.")
        message = self.build_message(subject, body, to)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                if self.use_tls:
                    smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password or "")
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise NotifierError(f"Failed to send email via {self.host}:{self.port}: {exc}") from exc
        return True


class WebhookNotifier:
    """Posts notifications as JSON events to an HTTP collector."""

    def __init__(
        self,
        endpoint: str,
        api_key: Optional[str] = None,
        timeout_ms: int = DEFAULT_WEBHOOK_TIMEOUT_MS,
    ) -> None:
        self.endpoint = endpoint
        self.api_key = _non_empty(api_key)
        self.timeout_ms = timeout_ms if timeout_ms > 0 else DEFAULT_WEBHOOK_TIMEOUT_MS

    def notify(self, subject: str, body: str, recipients: Recipients = None) -> bool:
        payload: Dict[str, Any] = {
            "sourceType": "script",
            "eventType": "script.failure",
            "subject": subject,
            "body": body,
            "recipients": normalize_recipients(recipients),
            "host": socket.gethostname(),
            "eventAt": _now_iso(),
        }

        url = self.endpoint.rstrip("/") + "/v1/events"
        data = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        req = urllib_request.Request(url=url, data=data, method="POST", headers=headers)

        try:
            with urllib_request.urlopen(req, timeout=max(0.1, self.timeout_ms / 1000.0)) as response:
                return 200 <= response.status < 300
        except urllib_error.URLError:
            return False


def build_notifier(settings: Optional[NotifierSettings] = None):
    if settings is None:
        settings = NotifierSettings.from_env()
    if settings.type == "webhook":
        return WebhookNotifier(settings.endpoint, settings.api_key, settings.timeout_ms)
    return EmailNotifier(
        host=settings.host,
        port=settings.port,
        sender=settings.sender,
        username=settings.username,
        password=settings.password,
        use_tls=bool(settings.use_tls),
    )
