"""Controllers for queue, task history and worker CLI commands."""

from __future__ import annotations

import json
import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from spider_queue.config import Settings
from spider_queue.engine.bridge import WorkerBridge
from spider_queue.engine.models import (
    JobDescription,
    QueueItemStatus,
    QueueItemView,
    QueueStatus,
    QueueStatusSnapshot,
    TaskView,
)
from spider_queue.engine.repository import TaskStore
from spider_queue.engine.scheduler import Scheduler
from spider_queue.engine.status import StatusChannel

logger = logging.getLogger(__name__)

_JOIN_POLL_SECONDS = 0.5


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for enqueueing one job."""

    db_path: Path | None
    kind: str
    params: tuple[str, ...]
    params_json: str | None
    config_json: str | None
    priority: int


@dataclass(slots=True)
class QueueListCommand:
    """CLI input for queue listing."""

    db_path: Path | None
    status: str | None


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for single-item queue operations."""

    db_path: Path | None
    queue_id: int


@dataclass(slots=True)
class QueuePriorityCommand:
    db_path: Path | None
    queue_id: int
    priority: int


@dataclass(slots=True)
class QueueDbCommand:
    """CLI input for commands that only need the database."""

    db_path: Path | None


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class TaskShowCommand:
    db_path: Path | None
    task_id: int
    include_logs: bool


@dataclass(slots=True)
class TaskDeleteCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class TaskGcCommand:
    """CLI input for history retention cleanup."""

    db_path: Path | None
    days: int | None


@dataclass(slots=True)
class TaskRecoverCommand:
    """CLI input for crash recovery."""

    db_path: Path | None
    stale_minutes: int | None


@dataclass(slots=True)
class WorkerValidateCommand:
    """CLI input for a one-shot credential check."""

    db_path: Path | None
    payload: str


@dataclass(slots=True)
class _Engine:
    settings: Settings
    store: TaskStore
    bridge: WorkerBridge
    scheduler: Scheduler


class SpiderQueueCliController:
    """CLI controller: parses command input and renders operator-facing lines."""

    def add(self, command: QueueAddCommand) -> list[str]:
        job = JobDescription(
            kind=command.kind.strip(),
            params=_parse_params(command.params, command.params_json),
            config=_parse_json_object(command.config_json, option="--config-json"),
        )
        settings = _settings(command.db_path)
        with _store(settings) as store:
            queue_id = store.enqueue(job, command.priority)
        return [f"Queue item added: queue_id={queue_id} kind={job.kind} priority={command.priority}"]

    def list_items(self, command: QueueListCommand) -> list[str]:
        status = QueueItemStatus(command.status) if command.status else None
        with _store(_settings(command.db_path)) as store:
            items = store.list_queue_items(status)
        if not items:
            return ["Queue is empty."]
        return [_queue_item_line(item) for item in items]

    def stats(self, command: QueueDbCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            stats = store.queue_stats()
            current = store.get_current_task()
        lines = [
            "Queue: "
            f"pending={stats.pending} running={stats.running} "
            f"completed={stats.completed} failed={stats.failed} total={stats.total}",
        ]
        if current is not None:
            lines.append(f"Current task: {_task_line(current)}")
        return lines

    def remove(self, command: QueueItemCommand) -> list[str]:
        with _engine(_settings(command.db_path), recover=False) as engine:
            removed = engine.scheduler.remove(command.queue_id)
        if not removed:
            return [f"Queue item not found: {command.queue_id}"]
        return [f"Queue item removed: {command.queue_id}"]

    def set_priority(self, command: QueuePriorityCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            updated = store.set_priority(command.queue_id, command.priority)
        if not updated:
            return [f"Queue item not found: {command.queue_id}"]
        return [f"Queue item {command.queue_id} priority set to {command.priority}"]

    def clear(self, command: QueueDbCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            removed = store.clear_terminal()
        return [f"Cleared finished queue items: {removed}"]

    def run(self, command: QueueDbCommand) -> list[str]:
        """Drain the queue in the foreground; SIGINT/SIGTERM pause it."""

        settings = _settings(command.db_path)
        processed: list[int] = []

        def _track(snapshot: QueueStatusSnapshot) -> None:
            item = snapshot.current_item
            if item is not None and item.queue_id not in processed:
                processed.append(item.queue_id)

        with _engine(settings, recover=settings.scheduler.recover_on_start) as engine:
            unsubscribe = engine.scheduler.channel.subscribe(_track)
            try:
                result = engine.scheduler.start()
                if not result.success and result.error is not None:
                    raise result.error
                with _stop_on_signal(engine.scheduler):
                    while not engine.scheduler.join(timeout=_JOIN_POLL_SECONDS):
                        pass
            finally:
                unsubscribe()
            status = engine.scheduler.status
            items = [engine.store.get_queue_item(queue_id) for queue_id in processed]

        lines = [_queue_item_line(item) for item in items if item is not None]
        lines.append(f"Queue {status.value}: processed={len(lines)}")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            tasks = store.get_recent_tasks(limit=command.limit)
        if not tasks:
            return ["No tasks recorded."]
        return [_task_line(task) for task in tasks]

    def show_task(self, command: TaskShowCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            task = store.get_task(command.task_id)
            logs = store.get_task_logs(command.task_id) if command.include_logs else []
        if task is None:
            return [f"Task not found: {command.task_id}"]

        lines = [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Params: {json.dumps(task.params, ensure_ascii=False, sort_keys=True)}",
            f"Started: {task.started_at.isoformat()}",
            f"Completed: {task.completed_at.isoformat() if task.completed_at else '-'}",
            f"Results: {task.result_count}",
            f"Error: {task.error_message or '-'}",
        ]
        if command.include_logs:
            lines.append(f"Logs: {len(logs)}")
            for log in logs:
                lines.append(
                    f"  {log.created_at.isoformat()} {log.event_type} "
                    f"{log.level or '-'} {log.message}",
                )
        return lines

    def delete_task(self, command: TaskDeleteCommand) -> list[str]:
        with _store(_settings(command.db_path)) as store:
            deleted = store.delete_task(command.task_id)
        if not deleted:
            return [f"Task not found: {command.task_id}"]
        return [f"Task deleted: {command.task_id}"]

    def gc(self, command: TaskGcCommand) -> list[str]:
        settings = _settings(command.db_path)
        days = command.days if command.days is not None else settings.scheduler.retention_days
        with _store(settings) as store:
            summary = store.purge_history(timedelta(days=days))
        return [
            f"History older than {days} days removed: "
            f"tasks={summary.tasks_deleted} logs={summary.logs_deleted}",
        ]

    def recover(self, command: TaskRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        if command.stale_minutes is not None:
            settings.scheduler.stale_task_minutes = command.stale_minutes
        with _engine(settings, recover=False) as engine:
            report = engine.scheduler.recover(
                timedelta(minutes=settings.scheduler.stale_task_minutes),
            )
        return [
            "Recovery: "
            f"stuck_tasks={report.stuck_tasks} "
            f"orphaned_queue_items={report.orphaned_queue_items}",
        ]

    def validate(self, command: WorkerValidateCommand) -> list[str]:
        payload = _validation_payload(command.payload)
        with _engine(_settings(command.db_path), recover=False) as engine:
            result = engine.bridge.validate(payload)
        lines = [f"Valid: {'yes' if result.valid else 'no'}", f"Message: {result.message or '-'}"]
        if result.user_info:
            lines.extend(f"  {key}: {value}" for key, value in sorted(result.user_info.items()))
        result.raise_for_invalid()
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _engine(settings: Settings, *, recover: bool) -> Iterator[_Engine]:
    with _store(settings) as store:
        bridge = WorkerBridge(store=store, command=settings.worker_command())
        scheduler = Scheduler(
            store=store,
            bridge=bridge,
            channel=StatusChannel(),
            settle_seconds=settings.scheduler.settle_seconds,
        )
        if recover:
            scheduler.recover(timedelta(minutes=settings.scheduler.stale_task_minutes))
        try:
            yield _Engine(settings=settings, store=store, bridge=bridge, scheduler=scheduler)
        finally:
            if scheduler.status == QueueStatus.RUNNING:
                scheduler.stop()


@contextmanager
def _stop_on_signal(scheduler: Scheduler) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s; pausing the queue", name)
        scheduler.stop()

    try:
        original_sigint = signal.signal(signal.SIGINT, _handler)
        original_sigterm = signal.signal(signal.SIGTERM, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _parse_params(pairs: tuple[str, ...], params_json: str | None) -> dict[str, Any]:
    params = _parse_json_object(params_json, option="--params-json")
    for pair in pairs:
        key, separator, raw_value = pair.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValueError(f"Invalid --param {pair!r}. Expected format 'key=value'.")
        try:
            params[key] = json.loads(raw_value)
        except json.JSONDecodeError:
            params[key] = raw_value
    return params


def _parse_json_object(raw: str | None, *, option: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"{option} is not valid JSON: {error}") from error
    if not isinstance(value, dict):
        raise ValueError(f"{option} must be a JSON object.")
    return value


def _validation_payload(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return {"cookie": raw}
    if isinstance(value, dict):
        return value
    return {"cookie": raw}


def _queue_item_line(item: QueueItemView) -> str:
    line = (
        f"queue_id={item.queue_id} status={item.status.value} priority={item.priority} "
        f"kind={item.job.kind} task_id={item.task_id if item.task_id is not None else '-'}"
    )
    if item.error_message:
        line += f" error={item.error_message}"
    return line


def _task_line(task: TaskView) -> str:
    return (
        f"task_id={task.task_id} type={task.task_type} status={task.status.value} "
        f"results={task.result_count} started_at={task.started_at.isoformat()} "
        f"error={task.error_message or '-'}"
    )
