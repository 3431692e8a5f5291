from __future__ import annotations

import logging
import queue
from collections.abc import Callable

import allure
import pytest

from spider_queue.engine.backend import WorkerCommand
from spider_queue.engine.bridge import (
    API_FAILURE_MESSAGE,
    EMPTY_RESULT_MESSAGE,
    STOPPED_MESSAGE,
    WorkerBridge,
)
from spider_queue.engine.errors import (
    AlreadyRunningError,
    ProcessSpawnError,
    ValidationFailureError,
)
from spider_queue.engine.events import EventType, WorkerEvent
from spider_queue.engine.models import JobDescription, TaskStatus
from spider_queue.engine.repository import TaskStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker Bridge"),
]

JobFactory = Callable[..., JobDescription]


def _run_to_exit(
    bridge: WorkerBridge,
    job: JobDescription,
    timeout: float = 20.0,
) -> tuple[int, list[WorkerEvent]]:
    events: queue.Queue[WorkerEvent] = queue.Queue()
    task_id = bridge.start(job, events.put)
    received: list[WorkerEvent] = []
    while True:
        event = events.get(timeout=timeout)
        received.append(event)
        if event.type == EventType.EXIT:
            return task_id, received


def test_successful_run_persists_events_and_completes_task(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, events = _run_to_exit(bridge, make_job(items=2))

    assert [event.type for event in events] == [
        EventType.LOG,
        EventType.PROGRESS,
        EventType.MEDIA,
        EventType.PROGRESS,
        EventType.MEDIA,
        EventType.DONE,
        EventType.EXIT,
    ]
    assert events[-1].exit_code == 0
    assert events[-1].task_status == TaskStatus.COMPLETED.value
    assert bridge.is_running() is False
    assert bridge.current_task_id() is None

    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.result_count == 2
    assert task.error_message is None
    assert task.config == {"save_path": "/tmp/out"}

    logs = store.get_task_logs(task_id)
    assert [log.event_type for log in logs] == [event.type.value for event in events[:-1]]
    assert logs[1].metadata == {"current": 1, "total": 2, "title": "item-1"}
    assert logs[-1].metadata == {"count": 2, "files": ["item-1.json", "item-2.json"]}


def test_non_zero_exit_without_error_event_fails_task(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, events = _run_to_exit(bridge, make_job(items=1, exit_code=1))

    assert events[-2].type == EventType.ERROR
    assert events[-2].code == "PROCESS_EXIT"
    assert events[-1].exit_code == 1
    assert events[-1].task_status == TaskStatus.FAILED.value
    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Worker exited with code 1"
    assert store.get_task_logs(task_id)[-1].metadata == {"code": "PROCESS_EXIT"}


def test_error_event_fails_task_even_on_clean_exit(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, events = _run_to_exit(bridge, make_job(items=1, error="Login required"))

    assert events[-1].exit_code == 0
    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "Login required"


def test_stderr_output_becomes_error_event(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, events = _run_to_exit(bridge, make_job(items=1, stderr="DeprecationWarning: old api"))

    stderr_events = [event for event in events if event.code == "STDERR"]
    assert [event.message for event in stderr_events] == ["DeprecationWarning: old api"]
    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert task.error_message == "DeprecationWarning: old api"


def test_malformed_lines_are_dropped(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING, logger="spider_queue.engine.bridge")
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, _ = _run_to_exit(bridge, make_job(items=1, malformed=True))

    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert all("not a protocol frame" not in log.message for log in store.get_task_logs(task_id))
    assert "Dropped malformed worker line" in caplog.text


@pytest.mark.parametrize(
    ("simulate", "status", "message"),
    [
        ({"items": 0}, TaskStatus.WARNING, EMPTY_RESULT_MESSAGE),
        ({"items": 1, "api_success": False}, TaskStatus.FAILED, API_FAILURE_MESSAGE),
        (
            {"items": 1, "api_success": False, "api_message": "Rate limited"},
            TaskStatus.FAILED,
            "Rate limited",
        ),
        (
            {"items": 1, "api_message": "request rejected: code=-1"},
            TaskStatus.FAILED,
            "request rejected: code=-1",
        ),
        (
            {"items": 1, "api_success": True, "api_message": "检测到账号异常"},
            TaskStatus.FAILED,
            "检测到账号异常",
        ),
        ({"items": 1, "api_message": "ok"}, TaskStatus.COMPLETED, None),
    ],
)
def test_done_event_outcome_maps_to_task_status(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
    simulate: dict[str, object],
    status: TaskStatus,
    message: str | None,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    task_id, events = _run_to_exit(bridge, make_job(**simulate))

    assert events[-1].task_status == status.value
    task = store.get_task(task_id)
    assert task is not None
    assert task.status == status
    assert task.error_message == message


def test_spawn_failure_fails_task_and_raises(store: TaskStore, make_job: JobFactory) -> None:
    bridge = WorkerBridge(
        store=store,
        command=WorkerCommand(
            command_template="/nonexistent/spider-worker {job}",
            validate_template="/nonexistent/spider-worker {payload}",
        ),
    )

    with pytest.raises(ProcessSpawnError) as error_info:
        bridge.start(make_job(), lambda _event: None)

    task_id = error_info.value.task_id
    assert task_id is not None
    task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.FAILED
    assert "not found" in (task.error_message or "")
    logs = store.get_task_logs(task_id)
    assert [log.event_type for log in logs] == ["error"]
    assert logs[0].metadata == {"code": "PROCESS_ERROR"}
    assert bridge.is_running() is False


def test_second_start_is_rejected_while_worker_runs(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)
    task_id = bridge.start(make_job(items=1, hang=10), lambda _event: None)
    try:
        assert bridge.is_running() is True
        assert bridge.current_task_id() == task_id
        with pytest.raises(AlreadyRunningError):
            bridge.start(make_job(), lambda _event: None)
    finally:
        assert bridge.stop() is True

    assert len(store.get_recent_tasks()) == 1
    assert bridge.stop() is False


def test_stop_discards_trailing_output_from_terminated_worker(
    store: TaskStore,
    echo_command: WorkerCommand,
    make_job: JobFactory,
    wait_until: Callable[..., None],
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A stopped worker may still print while exiting; none of it reaches the task."""

    caplog.set_level(logging.DEBUG, logger="spider_queue.engine.bridge")
    bridge = WorkerBridge(store=store, command=echo_command)
    events: queue.Queue[WorkerEvent] = queue.Queue()
    task_id = bridge.start(make_job(items=1, hang=30, trailing_on_term=True), events.put)
    wait_until(lambda: any(log.event_type == "media" for log in store.get_task_logs(task_id)))
    logs_before_stop = store.get_task_logs(task_id)

    assert bridge.stop() is True
    assert bridge.is_running() is False
    stopped = store.get_task(task_id)
    assert stopped is not None
    assert stopped.status == TaskStatus.STOPPED
    assert stopped.error_message == STOPPED_MESSAGE

    wait_until(lambda: "Stopped worker exited" in caplog.text)
    assert "Discarded log event from stopped" in caplog.text
    assert store.get_task_logs(task_id) == logs_before_stop
    final = store.get_task(task_id)
    assert final is not None
    assert final.status == TaskStatus.STOPPED
    delivered = []
    while not events.empty():
        delivered.append(events.get_nowait())
    assert EventType.EXIT not in {event.type for event in delivered}


def test_validate_reports_worker_verdict(store: TaskStore, echo_command: WorkerCommand) -> None:
    bridge = WorkerBridge(store=store, command=echo_command)

    valid = bridge.validate({"cookie": "a1=b2"})
    assert valid.valid is True
    assert valid.user_info is not None
    assert valid.user_info["nickname"] == "echo"
    valid.raise_for_invalid()

    expired = bridge.validate({"cookie": "expired"})
    assert expired.valid is False
    assert expired.message == "Session expired"
    with pytest.raises(ValidationFailureError, match="Session expired"):
        expired.raise_for_invalid()

    missing = bridge.validate({"cookie": ""})
    assert missing.valid is False
    assert missing.message == "No credentials supplied"

    assert store.get_recent_tasks() == []
