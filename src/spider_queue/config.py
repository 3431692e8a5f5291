"""Runtime configuration for the task queue and its worker process."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

from spider_queue.engine.backend import JOB_PLACEHOLDER, PAYLOAD_PLACEHOLDER, WorkerCommand

DEFAULT_WORKER_COMMAND = f"{sys.executable} cli.py {{{JOB_PLACEHOLDER}}}"
DEFAULT_VALIDATE_COMMAND = f"{sys.executable} cli.py validate-cookie {{{PAYLOAD_PLACEHOLDER}}}"


@dataclass(slots=True)
class WorkerSettings:
    """How the external collection worker is launched."""

    command_template: str = DEFAULT_WORKER_COMMAND
    validate_template: str = DEFAULT_VALIDATE_COMMAND
    cwd: Path | None = None
    pythonpath: str | None = None
    stop_grace_seconds: float = 2.0
    validate_timeout_seconds: float = 60.0


@dataclass(slots=True)
class SchedulerSettings:
    """Queue pacing and history maintenance."""

    settle_seconds: float = 1.0
    stale_task_minutes: int = 10
    retention_days: int = 30
    recover_on_start: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".spider_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        worker_cwd = os.getenv("SPIDER_QUEUE_WORKER_CWD", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SPIDER_QUEUE_DB_PATH", ".spider_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SPIDER_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                command_template=os.getenv("SPIDER_QUEUE_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                validate_template=os.getenv(
                    "SPIDER_QUEUE_WORKER_VALIDATE_COMMAND",
                    DEFAULT_VALIDATE_COMMAND,
                ),
                cwd=Path(worker_cwd) if worker_cwd else None,
                pythonpath=os.getenv("SPIDER_QUEUE_WORKER_PYTHONPATH") or None,
                stop_grace_seconds=float(
                    os.getenv("SPIDER_QUEUE_WORKER_STOP_GRACE_SECONDS", "2"),
                ),
                validate_timeout_seconds=float(
                    os.getenv("SPIDER_QUEUE_VALIDATE_TIMEOUT_SECONDS", "60"),
                ),
            ),
            scheduler=SchedulerSettings(
                settle_seconds=float(os.getenv("SPIDER_QUEUE_SETTLE_SECONDS", "1.0")),
                stale_task_minutes=int(os.getenv("SPIDER_QUEUE_STALE_TASK_MINUTES", "10")),
                retention_days=int(os.getenv("SPIDER_QUEUE_RETENTION_DAYS", "30")),
                recover_on_start=_env_bool("SPIDER_QUEUE_RECOVER_ON_START", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unusable worker templates or thresholds."""

        _require_placeholder(
            "SPIDER_QUEUE_WORKER_COMMAND",
            self.worker.command_template,
            JOB_PLACEHOLDER,
        )
        _require_placeholder(
            "SPIDER_QUEUE_WORKER_VALIDATE_COMMAND",
            self.worker.validate_template,
            PAYLOAD_PLACEHOLDER,
        )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SPIDER_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.worker.stop_grace_seconds <= 0:
            raise ValueError("SPIDER_QUEUE_WORKER_STOP_GRACE_SECONDS must be > 0.")
        if self.worker.validate_timeout_seconds <= 0:
            raise ValueError("SPIDER_QUEUE_VALIDATE_TIMEOUT_SECONDS must be > 0.")
        if self.scheduler.settle_seconds < 0:
            raise ValueError("SPIDER_QUEUE_SETTLE_SECONDS must be >= 0.")
        if self.scheduler.stale_task_minutes <= 0:
            raise ValueError("SPIDER_QUEUE_STALE_TASK_MINUTES must be > 0.")
        if self.scheduler.retention_days <= 0:
            raise ValueError("SPIDER_QUEUE_RETENTION_DAYS must be > 0.")

    def worker_command(self) -> WorkerCommand:
        extra_env: dict[str, str] = {}
        if self.worker.pythonpath:
            inherited = os.getenv("PYTHONPATH")
            extra_env["PYTHONPATH"] = (
                os.pathsep.join((self.worker.pythonpath, inherited))
                if inherited
                else self.worker.pythonpath
            )
        return WorkerCommand(
            command_template=self.worker.command_template,
            validate_template=self.worker.validate_template,
            cwd=self.worker.cwd,
            extra_env=extra_env,
            stop_grace_seconds=self.worker.stop_grace_seconds,
            validate_timeout_seconds=self.worker.validate_timeout_seconds,
        )


def _require_placeholder(name: str, template: str, placeholder: str) -> None:
    if not template.strip():
        raise ValueError(f"{name} must not be empty.")
    if f"{{{placeholder}}}" not in template:
        raise ValueError(f"{name} must contain the {{{placeholder}}} placeholder: {template!r}")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
