from __future__ import annotations

import logging
from pathlib import Path

import pytest

import scripto

NOTIFIER_ENV_VARS = [
    "SCRIPTO_SMTP_HOST",
    "SCRIPTO_SMTP_PORT",
    "SCRIPTO_SMTP_SENDER",
    "SCRIPTO_SMTP_USER",
    "SCRIPTO_SMTP_PASSWORD",
    "SCRIPTO_WEBHOOK_ENDPOINT",
    "SCRIPTO_WEBHOOK_API_KEY",
]


@pytest.fixture
def pid_dir(tmp_path: Path) -> Path:
    return tmp_path / "pids"


@pytest.fixture(autouse=True)
def _isolated_environment(pid_dir: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(scripto.PID_DIR_ENV, str(pid_dir))
    for name in NOTIFIER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    yield
    for handler in list(scripto.logger.handlers):
        scripto.logger.removeHandler(handler)
        handler.close()
    scripto.logger.setLevel(logging.NOTSET)
