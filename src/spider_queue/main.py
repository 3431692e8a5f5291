"""CLI entrypoint for spider-queue."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from spider_queue import __version__
from spider_queue.engine.controllers import (
    QueueAddCommand,
    QueueDbCommand,
    QueueItemCommand,
    QueueListCommand,
    QueuePriorityCommand,
    SpiderQueueCliController,
    TaskDeleteCommand,
    TaskGcCommand,
    TaskListCommand,
    TaskRecoverCommand,
    TaskShowCommand,
    WorkerValidateCommand,
)
from spider_queue.engine.errors import SpiderQueueError
from spider_queue.engine.models import QueueItemStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SpiderQueueCliController()

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="spider-queue")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging.")
def spider_queue(verbose: bool) -> None:
    """Single-flight job queue for the collection worker."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@spider_queue.group()
def queue() -> None:
    """Queue commands."""


@queue.command("add")
@db_path_option
@click.option("--kind", required=True, help="Job kind, for example search, user or notes.")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Job parameter as key=value; JSON values are decoded. Can be repeated.",
)
@click.option("--params-json", default=None, help="Job parameters as a JSON object.")
@click.option("--config-json", default=None, help="Execution config as a JSON object.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def queue_add(
    db_path: Path | None,
    kind: str,
    params: tuple[str, ...],
    params_json: str | None,
    config_json: str | None,
    priority: int,
) -> None:
    """Add one job to the queue."""

    _invoke(
        CONTROLLER.add,
        QueueAddCommand(
            db_path=db_path,
            kind=kind,
            params=params,
            params_json=params_json,
            config_json=config_json,
            priority=priority,
        ),
    )


@queue.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in QueueItemStatus]),
    default=None,
    help="Only show items with this status.",
)
def queue_list(db_path: Path | None, status: str | None) -> None:
    """List queue items in execution order."""

    _invoke(CONTROLLER.list_items, QueueListCommand(db_path=db_path, status=status))


@queue.command("stats")
@db_path_option
def queue_stats(db_path: Path | None) -> None:
    """Show queue counters and the running task."""

    _invoke(CONTROLLER.stats, QueueDbCommand(db_path=db_path))


@queue.command("remove")
@db_path_option
@click.argument("queue_id", type=int)
def queue_remove(db_path: Path | None, queue_id: int) -> None:
    """Remove a queue item that is not running."""

    _invoke(CONTROLLER.remove, QueueItemCommand(db_path=db_path, queue_id=queue_id))


@queue.command("priority")
@db_path_option
@click.argument("queue_id", type=int)
@click.argument("priority", type=int)
def queue_priority(db_path: Path | None, queue_id: int, priority: int) -> None:
    """Change the priority of a queue item."""

    _invoke(
        CONTROLLER.set_priority,
        QueuePriorityCommand(db_path=db_path, queue_id=queue_id, priority=priority),
    )


@queue.command("clear")
@db_path_option
def queue_clear(db_path: Path | None) -> None:
    """Delete completed and failed queue items."""

    _invoke(CONTROLLER.clear, QueueDbCommand(db_path=db_path))


@queue.command("run")
@db_path_option
def queue_run(db_path: Path | None) -> None:
    """Run pending items until the queue is empty; Ctrl-C pauses it."""

    _invoke(CONTROLLER.run, QueueDbCommand(db_path=db_path))


@spider_queue.group()
def tasks() -> None:
    """Task history commands."""


@tasks.command("list")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="How many recent tasks to show.",
)
def tasks_list(db_path: Path | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _invoke(CONTROLLER.list_tasks, TaskListCommand(db_path=db_path, limit=limit))


@tasks.command("show")
@db_path_option
@click.argument("task_id", type=int)
@click.option("--logs/--no-logs", default=True, show_default=True, help="Include task logs.")
def tasks_show(db_path: Path | None, task_id: int, logs: bool) -> None:
    """Show one task and its event log."""

    _invoke(
        CONTROLLER.show_task,
        TaskShowCommand(db_path=db_path, task_id=task_id, include_logs=logs),
    )


@tasks.command("delete")
@db_path_option
@click.argument("task_id", type=int)
def tasks_delete(db_path: Path | None, task_id: int) -> None:
    """Delete a task and its logs."""

    _invoke(CONTROLLER.delete_task, TaskDeleteCommand(db_path=db_path, task_id=task_id))


@tasks.command("gc")
@db_path_option
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Retention window; defaults to SPIDER_QUEUE_RETENTION_DAYS.",
)
def tasks_gc(db_path: Path | None, days: int | None) -> None:
    """Delete finished tasks older than the retention window."""

    _invoke(CONTROLLER.gc, TaskGcCommand(db_path=db_path, days=days))


@tasks.command("recover")
@db_path_option
@click.option(
    "--stale-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Age after which a running task counts as interrupted.",
)
def tasks_recover(db_path: Path | None, stale_minutes: int | None) -> None:
    """Mark interrupted tasks stopped and return orphaned queue items to pending."""

    _invoke(
        CONTROLLER.recover,
        TaskRecoverCommand(db_path=db_path, stale_minutes=stale_minutes),
    )


@spider_queue.group()
def worker() -> None:
    """Worker commands."""


@worker.command("validate")
@db_path_option
@click.argument("payload")
def worker_validate(db_path: Path | None, payload: str) -> None:
    """Check credentials with the worker; PAYLOAD is a JSON object or a raw cookie."""

    _invoke(CONTROLLER.validate, WorkerValidateCommand(db_path=db_path, payload=payload))


def _invoke(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (SpiderQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    spider_queue()
