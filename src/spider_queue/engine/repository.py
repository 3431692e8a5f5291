"""Persistent task history and job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from spider_queue.engine.events import WorkerEvent
from spider_queue.engine.models import (
    JobDescription,
    PurgeSummary,
    QueueItemStatus,
    QueueItemView,
    QueueStats,
    TaskLogView,
    TaskStatus,
    TaskView,
)
from spider_queue.storage.alembic_runner import upgrade_head
from spider_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from spider_queue.storage.sqlmodel_models import SpiderQueueItem, SpiderTask, SpiderTaskLog

logger = logging.getLogger(__name__)

STUCK_TASK_MESSAGE = "interrupted"
_QUEUE_STATUS_VALUES = frozenset(status.value for status in QueueItemStatus)


class TaskStore:
    """Data access for tasks, task logs and queue items.

    The store holds no business rules beyond column bookkeeping (timestamps
    that follow a status change); callers decide which transitions happen.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- tasks -----------------------------------------------------------------

    def create_task(
        self,
        kind: str,
        params: dict[str, Any],
        config_snapshot: dict[str, Any] | None = None,
    ) -> int:
        """Insert a running task and return its id."""

        with Session(self.engine) as session:
            row = SpiderTask(
                task_type=kind,
                params_json=_dump_json(params),
                status=TaskStatus.RUNNING.value,
                started_at=utc_now(),
                config_json=_dump_json(config_snapshot) if config_snapshot else None,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            assert row.id is not None
            return row.id

    def update_task(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        error_message: str | None = None,
        result_count: int | None = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status.value,
            "completed_at": (
                None if status == TaskStatus.RUNNING else to_db_datetime(utc_now())
            ),
            "error_message": error_message,
        }
        if result_count is not None:
            values["result_count"] = result_count
        with Session(self.engine) as session:
            session.exec(sa_update(SpiderTask).where(col(SpiderTask.id) == task_id).values(**values))
            session.commit()

    def add_log(self, task_id: int, event: WorkerEvent) -> None:
        """Append one worker event to the task's log."""

        metadata = event.progress_metadata()
        with Session(self.engine) as session:
            session.add(
                SpiderTaskLog(
                    task_id=task_id,
                    event_type=event.type.value,
                    level=event.level,
                    message=event.message or "",
                    created_at=utc_now(),
                    metadata_json=_dump_json(metadata) if metadata else None,
                ),
            )
            session.commit()

    def get_task(self, task_id: int) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(SpiderTask, task_id)
            return _to_task_view(row) if row is not None else None

    def get_task_logs(self, task_id: int) -> list[TaskLogView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SpiderTaskLog)
                .where(SpiderTaskLog.task_id == task_id)
                .order_by(col(SpiderTaskLog.created_at).asc(), col(SpiderTaskLog.id).asc()),
            ).all()
        return [_to_log_view(row) for row in rows]

    def get_recent_tasks(self, limit: int = 50) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SpiderTask)
                .order_by(col(SpiderTask.started_at).desc(), col(SpiderTask.id).desc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def get_current_task(self) -> TaskView | None:
        """Return the running task if there is one, else the most recent task."""

        with Session(self.engine) as session:
            row = session.exec(
                select(SpiderTask)
                .where(SpiderTask.status == TaskStatus.RUNNING.value)
                .order_by(col(SpiderTask.started_at).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                row = session.exec(
                    select(SpiderTask).order_by(col(SpiderTask.started_at).desc()).limit(1),
                ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def delete_task(self, task_id: int) -> bool:
        """Delete a task together with its logs."""

        with Session(self.engine) as session:
            session.exec(sa_delete(SpiderTaskLog).where(col(SpiderTaskLog.task_id) == task_id))
            session.exec(
                sa_update(SpiderQueueItem)
                .where(col(SpiderQueueItem.task_id) == task_id)
                .values(task_id=None),
            )
            result = session.exec(sa_delete(SpiderTask).where(col(SpiderTask.id) == task_id))
            session.commit()
            return result.rowcount == 1

    def fix_stuck_tasks(self, stale_after: timedelta) -> int:
        """Mark tasks left running by a crashed process as stopped."""

        now = utc_now()
        cutoff = now - stale_after
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SpiderTask)
                .where(
                    col(SpiderTask.status) == TaskStatus.RUNNING.value,
                    col(SpiderTask.started_at) < to_db_datetime(cutoff),
                )
                .values(
                    status=TaskStatus.STOPPED.value,
                    completed_at=to_db_datetime(now),
                    error_message=STUCK_TASK_MESSAGE,
                ),
            )
            session.commit()
            fixed = result.rowcount
        if fixed:
            logger.warning("Marked %d stuck task(s) as stopped", fixed)
        return fixed

    def purge_history(self, older_than: timedelta) -> PurgeSummary:
        """Delete finished tasks started before the retention horizon."""

        cutoff = to_db_datetime(utc_now() - older_than)
        with Session(self.engine) as session:
            expired_ids = select(SpiderTask.id).where(
                col(SpiderTask.started_at) < cutoff,
                col(SpiderTask.status) != TaskStatus.RUNNING.value,
            )
            logs = session.exec(
                sa_delete(SpiderTaskLog).where(col(SpiderTaskLog.task_id).in_(expired_ids)),
            )
            session.exec(
                sa_update(SpiderQueueItem)
                .where(col(SpiderQueueItem.task_id).in_(expired_ids))
                .values(task_id=None),
            )
            tasks = session.exec(
                sa_delete(SpiderTask).where(
                    col(SpiderTask.started_at) < cutoff,
                    col(SpiderTask.status) != TaskStatus.RUNNING.value,
                ),
            )
            session.commit()
            return PurgeSummary(tasks_deleted=tasks.rowcount, logs_deleted=logs.rowcount)

    # -- queue -----------------------------------------------------------------

    def enqueue(self, job: JobDescription, priority: int = 0) -> int:
        with Session(self.engine) as session:
            row = SpiderQueueItem(
                job_json=job.to_json(),
                priority=priority,
                status=QueueItemStatus.PENDING.value,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            assert row.id is not None
            return row.id

    def next_pending(self) -> QueueItemView | None:
        """Highest priority pending item; FIFO among equal priorities."""

        with Session(self.engine) as session:
            row = session.exec(
                _ordered_queue_query().where(
                    SpiderQueueItem.status == QueueItemStatus.PENDING.value,
                ),
            ).first()
            return _to_queue_view(row) if row is not None else None

    def get_queue_item(self, queue_id: int) -> QueueItemView | None:
        with Session(self.engine) as session:
            row = session.get(SpiderQueueItem, queue_id)
            return _to_queue_view(row) if row is not None else None

    def set_queue_status(
        self,
        queue_id: int,
        status: QueueItemStatus,
        *,
        task_id: int | None = None,
        error_message: str | None = None,
    ) -> None:
        now = to_db_datetime(utc_now())
        values: dict[str, Any] = {"status": status.value}
        if status == QueueItemStatus.PENDING:
            values.update(started_at=None, completed_at=None, task_id=None, error_message=None)
        elif status == QueueItemStatus.RUNNING:
            values.update(started_at=now, completed_at=None)
        else:
            values["completed_at"] = now
        if task_id is not None:
            values["task_id"] = task_id
        if error_message is not None:
            values["error_message"] = error_message
        with Session(self.engine) as session:
            session.exec(
                sa_update(SpiderQueueItem)
                .where(col(SpiderQueueItem.id) == queue_id)
                .values(**values),
            )
            session.commit()

    def bind_queue_task(self, queue_id: int, task_id: int) -> bool:
        """Attach the task started for a running item; never rebinds."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SpiderQueueItem)
                .where(
                    col(SpiderQueueItem.id) == queue_id,
                    col(SpiderQueueItem.status) == QueueItemStatus.RUNNING.value,
                    col(SpiderQueueItem.task_id).is_(None),
                )
                .values(task_id=task_id),
            )
            session.commit()
            return result.rowcount == 1

    def remove_queue_item(self, queue_id: int) -> bool:
        """Delete a queue item unless it is running."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(SpiderQueueItem).where(
                    col(SpiderQueueItem.id) == queue_id,
                    col(SpiderQueueItem.status) != QueueItemStatus.RUNNING.value,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def set_priority(self, queue_id: int, priority: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SpiderQueueItem)
                .where(col(SpiderQueueItem.id) == queue_id)
                .values(priority=priority),
            )
            session.commit()
            return result.rowcount == 1

    def clear_terminal(self) -> int:
        """Delete completed and failed queue items."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(SpiderQueueItem).where(
                    col(SpiderQueueItem.status).in_(
                        [QueueItemStatus.COMPLETED.value, QueueItemStatus.FAILED.value],
                    ),
                ),
            )
            session.commit()
            return result.rowcount

    def list_queue_items(self, status: QueueItemStatus | None = None) -> list[QueueItemView]:
        statement = _ordered_queue_query()
        if status is not None:
            statement = statement.where(SpiderQueueItem.status == status.value)
        with Session(self.engine) as session:
            rows = session.exec(statement).all()
        return [_to_queue_view(row) for row in rows]

    def recover_orphaned_queue_items(self) -> int:
        """Return items left running by a previous process to the pending pool."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SpiderQueueItem)
                .where(col(SpiderQueueItem.status) == QueueItemStatus.RUNNING.value)
                .values(
                    status=QueueItemStatus.PENDING.value,
                    started_at=None,
                    completed_at=None,
                    task_id=None,
                    error_message=None,
                ),
            )
            session.commit()
            recovered = result.rowcount
        if recovered:
            logger.warning("Returned %d orphaned queue item(s) to pending", recovered)
        return recovered

    def queue_stats(self) -> QueueStats:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SpiderQueueItem.status, func.count()).group_by(SpiderQueueItem.status),
            ).all()
        stats = QueueStats()
        for status, count in rows:
            if status in _QUEUE_STATUS_VALUES:
                setattr(stats, status, count)
            stats.total += count
        return stats


def _ordered_queue_query():  # noqa: ANN202
    return select(SpiderQueueItem).order_by(
        col(SpiderQueueItem.priority).desc(),
        col(SpiderQueueItem.created_at).asc(),
        col(SpiderQueueItem.id).asc(),
    )


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json_dict(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    parsed = json.loads(value)
    return parsed if isinstance(parsed, dict) else None


def _to_task_view(row: SpiderTask) -> TaskView:
    assert row.id is not None
    return TaskView(
        task_id=row.id,
        task_type=row.task_type,
        params=_load_json_dict(row.params_json) or {},
        status=TaskStatus(row.status),
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        error_message=row.error_message,
        result_count=row.result_count,
        config=_load_json_dict(row.config_json),
    )


def _to_log_view(row: SpiderTaskLog) -> TaskLogView:
    assert row.id is not None
    return TaskLogView(
        log_id=row.id,
        task_id=row.task_id,
        event_type=row.event_type,
        level=row.level,
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
        metadata=_load_json_dict(row.metadata_json),
    )


def _to_queue_view(row: SpiderQueueItem) -> QueueItemView:
    assert row.id is not None
    return QueueItemView(
        queue_id=row.id,
        job=JobDescription.from_json(row.job_json),
        priority=row.priority,
        status=QueueItemStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_datetime(row.started_at),
        completed_at=_optional_datetime(row.completed_at),
        task_id=row.task_id,
        error_message=row.error_message,
    )


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None
