from __future__ import annotations

import os
import re
from pathlib import Path

import allure
import pytest

from spider_queue.config import (
    DEFAULT_VALIDATE_COMMAND,
    DEFAULT_WORKER_COMMAND,
    SchedulerSettings,
    Settings,
    WorkerSettings,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("SPIDER_QUEUE_"):
            monkeypatch.delenv(name)

    settings = Settings.from_env()

    assert settings.db_path == Path(".spider_queue.db")
    assert settings.sqlite_busy_timeout_ms == 5000
    assert settings.worker.command_template == DEFAULT_WORKER_COMMAND
    assert settings.worker.validate_template == DEFAULT_VALIDATE_COMMAND
    assert settings.worker.cwd is None
    assert settings.scheduler == SchedulerSettings()
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SPIDER_QUEUE_DB_PATH", str(tmp_path / "queue.db"))
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_COMMAND", "spider-worker --job {job}")
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_CWD", str(tmp_path))
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_STOP_GRACE_SECONDS", "5")
    monkeypatch.setenv("SPIDER_QUEUE_SETTLE_SECONDS", "0.25")
    monkeypatch.setenv("SPIDER_QUEUE_STALE_TASK_MINUTES", "15")
    monkeypatch.setenv("SPIDER_QUEUE_RETENTION_DAYS", "7")
    monkeypatch.setenv("SPIDER_QUEUE_RECOVER_ON_START", "no")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "queue.db"
    assert settings.worker.command_template == "spider-worker --job {job}"
    assert settings.worker.cwd == tmp_path
    assert settings.worker.stop_grace_seconds == 5.0
    assert settings.scheduler == SchedulerSettings(
        settle_seconds=0.25,
        stale_task_minutes=15,
        retention_days=7,
        recover_on_start=False,
    )


def test_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SPIDER_QUEUE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SPIDER_QUEUE_RECOVER_ON_START", "maybe")

    with pytest.raises(ValueError, match="SPIDER_QUEUE_RECOVER_ON_START"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(worker=WorkerSettings(command_template="  ")), "must not be empty"),
        (Settings(worker=WorkerSettings(command_template="worker run")), "{job}"),
        (Settings(worker=WorkerSettings(validate_template="worker check")), "{payload}"),
        (Settings(worker=WorkerSettings(stop_grace_seconds=0)), "STOP_GRACE_SECONDS"),
        (Settings(scheduler=SchedulerSettings(stale_task_minutes=0)), "STALE_TASK_MINUTES"),
        (Settings(scheduler=SchedulerSettings(settle_seconds=-1)), "SETTLE_SECONDS"),
        (Settings(sqlite_busy_timeout_ms=0), "BUSY_TIMEOUT_MS"),
    ],
)
def test_validate_rejects_unusable_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=re.escape(message)):
        settings.validate()


def test_worker_command_prepends_worker_pythonpath(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("PYTHONPATH", "/usr/lib/site")
    settings = Settings(
        worker=WorkerSettings(
            command_template="python cli.py {job}",
            cwd=tmp_path,
            pythonpath="/opt/spider",
            stop_grace_seconds=4.0,
        ),
    )

    command = settings.worker_command()

    assert command.command_template == "python cli.py {job}"
    assert command.cwd == tmp_path
    assert command.extra_env == {"PYTHONPATH": os.pathsep.join(("/opt/spider", "/usr/lib/site"))}
    assert command.stop_grace_seconds == 4.0
