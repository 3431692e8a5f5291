"""Single-flight scheduler that drains the job queue through the worker bridge."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from spider_queue.engine.bridge import WorkerBridge
from spider_queue.engine.errors import (
    AlreadyRunningError,
    ItemNotRemovableError,
    ProcessSpawnError,
    QueueNotRunningError,
)
from spider_queue.engine.events import WorkerEvent
from spider_queue.engine.models import (
    ControlResult,
    JobDescription,
    QueueItemStatus,
    QueueItemView,
    QueueStats,
    QueueStatus,
    QueueStatusSnapshot,
    RecoveryReport,
    TaskStatus,
    TaskView,
)
from spider_queue.engine.repository import TaskStore
from spider_queue.engine.status import StatusChannel

logger = logging.getLogger(__name__)

_WAKE = object()
_SUCCESSFUL_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.WARNING})


@dataclass(slots=True)
class _PullLoop:
    """One generation of the pull loop; retired on stop."""

    token: int
    events: queue.Queue
    stopped: threading.Event
    thread: threading.Thread | None = None


class Scheduler:
    """Runs pending queue items one at a time, in priority order.

    Each ``start()`` spawns a fresh daemon thread that pulls the next pending
    item, hands it to the bridge and blocks until the bridge reports the
    process exit. ``stop()`` retires that loop, stops the worker and returns
    the interrupted item to ``pending`` so the next start picks it up again.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        bridge: WorkerBridge,
        channel: StatusChannel | None = None,
        settle_seconds: float = 1.0,
    ) -> None:
        self._store = store
        self._bridge = bridge
        self._channel = channel or StatusChannel()
        self._settle_seconds = settle_seconds
        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._status = QueueStatus.IDLE
        self._current: QueueItemView | None = None
        self._loop: _PullLoop | None = None
        self._tokens = itertools.count(1)

    @property
    def channel(self) -> StatusChannel:
        return self._channel

    @property
    def status(self) -> QueueStatus:
        with self._lock:
            return self._status

    @property
    def current_item(self) -> QueueItemView | None:
        with self._lock:
            return self._current

    # -- queue contents ------------------------------------------------------

    def enqueue(self, job: JobDescription, priority: int = 0) -> int:
        queue_id = self._store.enqueue(job, priority)
        logger.info("Enqueued queue_id=%s kind=%s priority=%s", queue_id, job.kind, priority)
        self._publish()
        return queue_id

    def remove(self, queue_id: int) -> bool:
        with self._lock:
            if self._current is not None and self._current.queue_id == queue_id:
                raise ItemNotRemovableError(f"Queue item {queue_id} is currently running.")
            if not self._store.remove_queue_item(queue_id):
                item = self._store.get_queue_item(queue_id)
                if item is not None and item.status == QueueItemStatus.RUNNING:
                    raise ItemNotRemovableError(f"Queue item {queue_id} is currently running.")
                return False
            self._publish()
        return True

    def set_priority(self, queue_id: int, priority: int) -> bool:
        updated = self._store.set_priority(queue_id, priority)
        if updated:
            self._publish()
        return updated

    def clear_completed(self) -> int:
        removed = self._store.clear_terminal()
        if removed:
            logger.info("Cleared %s finished queue items", removed)
            self._publish()
        return removed

    def list_items(self, status: QueueItemStatus | None = None) -> list[QueueItemView]:
        return self._store.list_queue_items(status)

    def stats(self) -> QueueStats:
        try:
            return self._store.queue_stats()
        except SQLAlchemyError:
            logger.warning("Queue stats unavailable", exc_info=True)
            return QueueStats()

    def snapshot(self) -> QueueStatusSnapshot:
        with self._lock:
            status, current = self._status, self._current
        return QueueStatusSnapshot(status=status, current_item=current, stats=self.stats())

    # -- control -------------------------------------------------------------

    def start(self) -> ControlResult:
        with self._lock:
            if self._status == QueueStatus.RUNNING:
                error = AlreadyRunningError("Queue is already running")
                return ControlResult(success=False, message=str(error), error=error)
            if self._bridge.is_running():
                error = AlreadyRunningError(
                    "A task is currently running; wait for it to finish first",
                )
                return ControlResult(success=False, message=str(error), error=error)

            loop = _PullLoop(
                token=next(self._tokens),
                events=queue.Queue(),
                stopped=threading.Event(),
            )
            loop.thread = threading.Thread(
                target=self._pull_loop,
                args=(loop,),
                daemon=True,
                name=f"queue-pull-{loop.token}",
            )
            self._loop = loop
            self._set_status(QueueStatus.RUNNING)
            loop.thread.start()

        logger.info("Queue started (loop=%s)", loop.token)
        return ControlResult(success=True, message="Queue started")

    def stop(self) -> ControlResult:
        with self._lock:
            if self._status == QueueStatus.IDLE:
                error = QueueNotRunningError("Queue is not running")
                return ControlResult(success=False, message=str(error), error=error)

            loop, self._loop = self._loop, None
            if loop is not None:
                loop.stopped.set()
                loop.events.put(_WAKE)
            stopped_worker = self._bridge.stop()
            if self._current is not None:
                finished = None if stopped_worker else self._finished_task(self._current)
                if finished is not None:
                    self._finish(
                        self._current,
                        finished.status,
                        task_id=finished.task_id,
                        message=finished.error_message,
                    )
                else:
                    self._store.set_queue_status(self._current.queue_id, QueueItemStatus.PENDING)
                    logger.info("Returned queue_id=%s to pending", self._current.queue_id)
                    self._current = None
            self._set_status(QueueStatus.PAUSED)

        logger.info("Queue stopped")
        return ControlResult(success=True, message="Queue stopped")

    def join(self, timeout: float | None = None) -> bool:
        """Block until the scheduler leaves ``running``; False on timeout."""

        with self._state_changed:
            return self._state_changed.wait_for(
                lambda: self._status != QueueStatus.RUNNING,
                timeout=timeout,
            )

    def recover(self, stale_after: timedelta) -> RecoveryReport:
        """Repair rows left behind by a crash before the queue is started."""

        with self._lock:
            if self._status == QueueStatus.RUNNING or self._bridge.is_running():
                raise AlreadyRunningError("Recovery requires an idle queue")
            report = RecoveryReport(
                stuck_tasks=self._store.fix_stuck_tasks(stale_after),
                orphaned_queue_items=self._store.recover_orphaned_queue_items(),
            )
        if report.stuck_tasks or report.orphaned_queue_items:
            logger.info(
                "Recovered %s stuck tasks and %s orphaned queue items",
                report.stuck_tasks,
                report.orphaned_queue_items,
            )
        return report

    # -- pull loop -----------------------------------------------------------

    def _pull_loop(self, loop: _PullLoop) -> None:
        try:
            while self._run_next(loop):
                if loop.stopped.wait(self._settle_seconds):
                    break
        except Exception as error:
            logger.exception("Queue loop %s crashed", loop.token)
            with self._lock:
                if self._loop is loop:
                    self._loop = None
                    self._abandon_current(f"Queue loop crashed: {error}")
                    self._set_status(QueueStatus.PAUSED)

    def _abandon_current(self, message: str) -> None:
        """Fail the in-flight item so no ``running`` row outlives the loop."""

        item, self._current = self._current, None
        try:
            task_id = self._bridge.current_task_id()
            self._bridge.stop()
            if item is not None:
                self._store.set_queue_status(
                    item.queue_id,
                    QueueItemStatus.FAILED,
                    task_id=item.task_id if item.task_id is not None else task_id,
                    error_message=message,
                )
        except SQLAlchemyError:
            logger.exception("Could not fail queue item after loop crash")

    def _run_next(self, loop: _PullLoop) -> bool:
        """Execute one pending item; False when the loop should exit."""

        with self._lock:
            if self._loop is not loop:
                return False
            item = self._store.next_pending()
            if item is None:
                self._loop = None
                self._current = None
                self._set_status(QueueStatus.IDLE)
                logger.info("Queue drained")
                return False

            self._store.set_queue_status(item.queue_id, QueueItemStatus.RUNNING)
            self._current = replace(item, status=QueueItemStatus.RUNNING)
            self._publish()
            task_id: int | None = None
            try:
                task_id = self._bridge.start(item.job, loop.events.put)
                self._store.bind_queue_task(item.queue_id, task_id)
            except (ProcessSpawnError, AlreadyRunningError, SQLAlchemyError) as error:
                logger.error("Queue item %s could not start: %s", item.queue_id, error)
                if task_id is not None:
                    self._bridge.stop()
                self._finish(
                    item,
                    TaskStatus.FAILED,
                    task_id=task_id if task_id is not None else getattr(error, "task_id", None),
                    message=str(error),
                )
                return True
            self._current = replace(self._current, task_id=task_id)
            self._publish()

        exit_event = self._await_exit(loop)
        if exit_event is None:
            return False

        with self._lock:
            if self._loop is not loop:
                logger.info("Ignoring exit of task_id=%s after stop", task_id)
                return False
            self._finish(
                item,
                TaskStatus(exit_event.task_status or TaskStatus.FAILED.value),
                task_id=task_id,
                message=exit_event.message,
            )
        return True

    def _await_exit(self, loop: _PullLoop) -> WorkerEvent | None:
        while True:
            event = loop.events.get()
            if event is _WAKE:
                return None
            self._channel.publish_event(event)
            if event.is_terminal:
                return event

    def _finish(
        self,
        item: QueueItemView,
        task_status: TaskStatus,
        *,
        task_id: int | None,
        message: str | None,
    ) -> None:
        if task_status in _SUCCESSFUL_TASK_STATUSES:
            self._store.set_queue_status(item.queue_id, QueueItemStatus.COMPLETED, task_id=task_id)
        else:
            self._store.set_queue_status(
                item.queue_id,
                QueueItemStatus.FAILED,
                task_id=task_id,
                error_message=message or f"Task ended {task_status.value}",
            )
        logger.info(
            "Queue item %s finished: task_id=%s status=%s",
            item.queue_id,
            task_id,
            task_status.value,
        )
        self._current = None
        self._publish()

    def _finished_task(self, item: QueueItemView) -> TaskView | None:
        """The item's task when the worker already exited and finalized it."""

        if item.task_id is None:
            return None
        task = self._store.get_task(item.task_id)
        if task is None or task.status == TaskStatus.RUNNING:
            return None
        return task

    # -- publishing ----------------------------------------------------------

    def _set_status(self, status: QueueStatus) -> None:
        self._status = status
        self._state_changed.notify_all()
        self._publish()

    def _publish(self) -> None:
        self._channel.publish(self.snapshot())
