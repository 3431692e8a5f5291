"""Domain models for task history, the job queue and scheduler state."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from spider_queue.engine.errors import SpiderQueueError, ValidationFailureError

SECRET_CONFIG_KEYS = frozenset({"cookie", "token", "password"})


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"
    WARNING = "warning"


class QueueItemStatus(str, Enum):
    """Queue entry lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueStatus(str, Enum):
    """In-memory scheduler state."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


class JobKind(str, Enum):
    """Job kinds understood by the bundled collection worker."""

    SEARCH = "search"
    USER = "user"
    NOTES = "notes"


@dataclass(slots=True)
class JobDescription:
    """What to run: kind tag, kind-specific parameters and execution config."""

    kind: str
    params: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.kind or not self.kind.strip():
            raise ValueError("Job kind must be a non-empty string.")

    def to_json(self) -> str:
        return json.dumps(
            {"kind": self.kind, "params": self.params, "config": self.config},
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> JobDescription:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Job description must be a JSON object.")
        return cls(
            kind=str(payload.get("kind") or ""),
            params=dict(payload.get("params") or {}),
            config=dict(payload.get("config") or {}),
        )

    def config_snapshot(self) -> dict[str, Any]:
        """Execution config as recorded on the task, without credentials."""

        return {key: value for key, value in self.config.items() if key not in SECRET_CONFIG_KEYS}


@dataclass(slots=True)
class TaskView:
    """One execution attempt of a job."""

    task_id: int
    task_type: str
    params: dict[str, Any]
    status: TaskStatus
    started_at: datetime
    completed_at: datetime | None
    error_message: str | None
    result_count: int
    config: dict[str, Any] | None


@dataclass(slots=True)
class TaskLogView:
    """One persisted worker event."""

    log_id: int
    task_id: int
    event_type: str
    level: str | None
    message: str
    created_at: datetime
    metadata: dict[str, Any] | None


@dataclass(slots=True)
class QueueItemView:
    """One pending-or-processed request to run a job."""

    queue_id: int
    job: JobDescription
    priority: int
    status: QueueItemStatus
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    task_id: int | None
    error_message: str | None


@dataclass(slots=True)
class QueueStats:
    """Queue composition grouped by status."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
        }


@dataclass(slots=True)
class QueueStatusSnapshot:
    """Payload published on the status channel."""

    status: QueueStatus
    current_item: QueueItemView | None
    stats: QueueStats


@dataclass(slots=True)
class ControlResult:
    """Outcome of a scheduler start/stop request."""

    success: bool
    message: str
    error: SpiderQueueError | None = None


@dataclass(slots=True)
class PurgeSummary:
    tasks_deleted: int
    logs_deleted: int


@dataclass(slots=True)
class RecoveryReport:
    """Startup repair counters."""

    stuck_tasks: int
    orphaned_queue_items: int


@dataclass(slots=True)
class ValidationResult:
    """Outcome of a one-shot worker validation call."""

    valid: bool
    message: str
    user_info: dict[str, Any] | None = None

    def raise_for_invalid(self) -> None:
        if not self.valid:
            raise ValidationFailureError(self.message or "Validation failed")
