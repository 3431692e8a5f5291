"""Shared test fixtures."""

from __future__ import annotations

import sys
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from spider_queue.engine.backend import WorkerCommand
from spider_queue.engine.models import JobDescription
from spider_queue.engine.repository import TaskStore

_ECHO_WORKER_MODULE = "spider_queue.engine.backend.echo_worker"
ECHO_RUN_TEMPLATE = f"{sys.executable} -m {_ECHO_WORKER_MODULE} run {{job}}"
ECHO_VALIDATE_TEMPLATE = f"{sys.executable} -m {_ECHO_WORKER_MODULE} validate {{payload}}"


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "spider_queue.db")
    task_store.init_schema()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def echo_command() -> WorkerCommand:
    """Worker command that runs the bundled echo worker."""

    return WorkerCommand(
        command_template=ECHO_RUN_TEMPLATE,
        validate_template=ECHO_VALIDATE_TEMPLATE,
        stop_grace_seconds=2.0,
        validate_timeout_seconds=30.0,
    )


@pytest.fixture()
def echo_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Point Settings.from_env at the echo worker."""

    monkeypatch.setenv("SPIDER_QUEUE_WORKER_COMMAND", ECHO_RUN_TEMPLATE)
    monkeypatch.setenv("SPIDER_QUEUE_WORKER_VALIDATE_COMMAND", ECHO_VALIDATE_TEMPLATE)
    monkeypatch.setenv("SPIDER_QUEUE_SETTLE_SECONDS", "0.05")


@pytest.fixture()
def make_job() -> Callable[..., JobDescription]:
    """Build a job whose echo worker behaviour is driven by keyword arguments."""

    def _make_job(kind: str = "search", **simulate: Any) -> JobDescription:
        return JobDescription(
            kind=kind,
            params={"keyword": "coffee", "simulate": simulate},
            config={"save_path": "/tmp/out", "cookie": "secret"},
        )

    return _make_job


@pytest.fixture()
def wait_until() -> Callable[..., None]:
    def _wait_until(predicate: Callable[[], bool], timeout: float = 15.0) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return
            time.sleep(0.02)
        raise AssertionError("Condition not reached before timeout")

    return _wait_until
