from __future__ import annotations

import json
from typing import Any, Dict, List

import pytest

import scripto_notifier
from scripto_notifier import (
    EmailNotifier,
    NotifierError,
    NotifierSettings,
    WebhookNotifier,
    build_notifier,
    normalize_recipients,
)


class _FakeSMTP:
    instances: List["_FakeSMTP"] = []

    def __init__(self, host: str, port: int, timeout: float = 0.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.started_tls = False
        self.login_args: Any = None
        self.messages: List[Any] = []
        _FakeSMTP.instances.append(self)

    def __enter__(self) -> "_FakeSMTP":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None

    def starttls(self) -> None:
        self.started_tls = True

    def login(self, username: str, password: str) -> None:
        self.login_args = (username, password)

    def send_message(self, message: Any) -> None:
        self.messages.append(message)


class _FakeResponse:
    def __init__(self, status: int) -> None:
        self.status = status

    def __enter__(self) -> "_FakeResponse":
        return self

    def __exit__(self, *exc: Any) -> None:
        return None


@pytest.fixture
def fake_smtp(monkeypatch: pytest.MonkeyPatch) -> List[_FakeSMTP]:
    _FakeSMTP.instances = []
    monkeypatch.setattr(scripto_notifier.smtplib, "SMTP", _FakeSMTP)
    return _FakeSMTP.instances


def test_normalize_recipients() -> None:
    assert normalize_recipients("a@example.com, b@example.com,,") == ["a@example.com", "b@example.com"]
    assert normalize_recipients(["a@example.com", " "]) == ["a@example.com"]
    assert normalize_recipients(None) == []
    assert normalize_recipients(True) == []


def test_email_requires_recipient(fake_smtp: List[_FakeSMTP]) -> None:
    with pytest.raises(NotifierError, match="without a valid recipient"):
        EmailNotifier().notify("subject", "body", "")
    assert fake_smtp == []


def test_email_sends_html_message(fake_smtp: List[_FakeSMTP]) -> None:
    notifier = EmailNotifier(
        host="smtp.example.com",
        port=587,
        sender="scripts@example.com",
        username="relay",
        password="secret",
        use_tls=True,
    )
    assert notifier.notify("SCRIPT FAILURE!!!", "<p>boom</p>", "a@example.com,b@example.com") is True

    assert len(fake_smtp) == 1
    smtp = fake_smtp[0]
    assert (smtp.host, smtp.port) == ("smtp.example.com", 587)
    assert smtp.started_tls is True
    assert smtp.login_args == ("relay", "secret")
    message = smtp.messages[0]
    assert message["From"] == "scripts@example.com"
    assert message["To"] == "a@example.com, b@example.com"
    assert message["Subject"] == "SCRIPT FAILURE!!!"
    assert message.get_content_subtype() == "html"
    assert "<p>boom</p>" in message.get_content()


def test_email_skips_tls_and_login_by_default(fake_smtp: List[_FakeSMTP]) -> None:
    EmailNotifier().notify("subject", "body", ["ops@example.com"])
    assert fake_smtp[0].started_tls is False
    assert fake_smtp[0].login_args is None


def test_email_transport_errors_are_wrapped(monkeypatch: pytest.MonkeyPatch) -> None:
    def refuse(*args: Any, **kwargs: Any) -> None:
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(scripto_notifier.smtplib, "SMTP", refuse)
    with pytest.raises(NotifierError, match="Failed to send email via localhost:25"):
        EmailNotifier().notify("subject", "body", "ops@example.com")


def test_webhook_posts_json_event(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: Dict[str, Any] = {}

    def fake_urlopen(req: Any, timeout: float) -> _FakeResponse:
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["api_key"] = req.get_header("X-api-key")
        captured["payload"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(202)

    monkeypatch.setattr(scripto_notifier.urllib_request, "urlopen", fake_urlopen)
    notifier = WebhookNotifier("https://events.example.com/", api_key="k-123", timeout_ms=1500)
    assert notifier.notify("SCRIPT FAILURE!!!", "<p>boom</p>", "ops@example.com") is True

    assert captured["url"] == "https://events.example.com/v1/events"
    assert captured["method"] == "POST"
    assert captured["api_key"] == "k-123"
    assert captured["timeout"] == 1.5
    payload = captured["payload"]
    assert payload["sourceType"] == "script"
    assert payload["eventType"] == "script.failure"
    assert payload["subject"] == "SCRIPT FAILURE!!!"
    assert payload["recipients"] == ["ops@example.com"]


def test_webhook_unreachable_returns_false(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(req: Any, timeout: float) -> None:
        raise scripto_notifier.urllib_error.URLError("unreachable")

    monkeypatch.setattr(scripto_notifier.urllib_request, "urlopen", fail)
    assert WebhookNotifier("http://127.0.0.1:9").notify("subject", "body") is False


def test_webhook_non_success_status_returns_false(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        scripto_notifier.urllib_request, "urlopen", lambda req, timeout: _FakeResponse(500)
    )
    assert WebhookNotifier("http://collector").notify("subject", "body") is False


def test_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCRIPTO_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("SCRIPTO_SMTP_PORT", "2525")
    monkeypatch.setenv("SCRIPTO_SMTP_SENDER", "scripts@example.com")
    settings = NotifierSettings.from_env()
    assert settings.type == "email"
    assert settings.host == "smtp.example.com"
    assert settings.port == 2525
    assert settings.sender == "scripts@example.com"

    monkeypatch.setenv("SCRIPTO_WEBHOOK_ENDPOINT", "https://events.example.com")
    assert NotifierSettings.from_env().type == "webhook"

    monkeypatch.setenv("SCRIPTO_SMTP_PORT", "smtp")
    with pytest.raises(NotifierError, match="SCRIPTO_SMTP_PORT must be an integer"):
        NotifierSettings.from_env()


def test_settings_from_config_overlays_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCRIPTO_SMTP_HOST", "smtp.example.com")
    settings = NotifierSettings.from_config({"port": 587, "use_tls": True})
    assert settings.host == "smtp.example.com"
    assert settings.port == 587
    assert settings.use_tls is True

    settings = NotifierSettings.from_config({"endpoint": "http://collector:7410"})
    assert settings.type == "webhook"


def test_settings_from_config_validation() -> None:
    with pytest.raises(NotifierError, match="Unknown keys in notifier"):
        NotifierSettings.from_config({"channel": "#ops"})
    with pytest.raises(NotifierError, match="notifier.type must be one of"):
        NotifierSettings.from_config({"type": "pager"})
    with pytest.raises(NotifierError, match="notifier.port must be a positive integer"):
        NotifierSettings.from_config({"port": "25"})
    with pytest.raises(NotifierError, match="notifier.endpoint must be an HTTP URL"):
        NotifierSettings.from_config({"type": "webhook", "endpoint": "collector:7410"})
    with pytest.raises(NotifierError, match="notifier must be a mapping"):
        NotifierSettings.from_config(["email"])  # type: ignore[arg-type]


def test_build_notifier_selects_transport() -> None:
    assert isinstance(build_notifier(), EmailNotifier)
    webhook = build_notifier(NotifierSettings(type="webhook", endpoint="http://collector", api_key="k"))
    assert isinstance(webhook, WebhookNotifier)
    assert webhook.api_key == "k"


@pytest.mark.parametrize(
    "raw, message",
    [
        ({"type": "webhook", "endpoint": "http://collector", "timeout_ms": "fast"}, "notifier.timeout_ms"),
        ({"timeout_ms": 0}, "notifier.timeout_ms"),
        ({"use_tls": "yes"}, "notifier.use_tls"),
        ({"host": 25}, "notifier.host"),
        ({"host": "  "}, "notifier.host"),
        ({"sender": ["ops@example.com"]}, "notifier.sender must be a string"),
        ({"username": 7}, "notifier.username must be a string"),
        ({"password": 1234}, "notifier.password must be a string"),
        ({"type": "webhook", "endpoint": "http://collector", "api_key": 42}, "notifier.api_key must be a string"),
    ],
)
def test_settings_from_config_rejects_bad_value_types(raw: Dict[str, Any], message: str) -> None:
    with pytest.raises(NotifierError, match=message):
        NotifierSettings.from_config(raw)
