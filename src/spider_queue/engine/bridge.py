"""Bridge between the task store and the external worker process."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import IO, Any

from spider_queue.engine.backend import (
    JOB_PLACEHOLDER,
    PAYLOAD_PLACEHOLDER,
    WorkerCommand,
    build_run_args,
    spawn_worker,
    terminate_process,
    worker_env,
)
from spider_queue.engine.errors import (
    AlreadyRunningError,
    ProcessExitError,
    ProcessSpawnError,
    ProtocolError,
)
from spider_queue.engine.events import EventType, LineFramer, WorkerEvent, parse_event_line
from spider_queue.engine.models import JobDescription, TaskStatus, ValidationResult
from spider_queue.engine.repository import TaskStore

logger = logging.getLogger(__name__)

EventSink = Callable[[WorkerEvent], None]

EMPTY_RESULT_MESSAGE = "Worker finished without collecting any data"
API_FAILURE_MESSAGE = "Worker reported an API failure"
STOPPED_MESSAGE = "stopped by user"
# The platform API answers a flagged account with success but one of these messages.
ACCOUNT_ANOMALY_MARKERS = ("账号异常", "code=-1")

_READ_CHUNK_BYTES = 8192


@dataclass(slots=True)
class _WorkerRun:
    """Mutable bookkeeping for the active worker process."""

    task_id: int
    process: subprocess.Popen[bytes]
    on_event: EventSink
    detached: bool = False
    last_error: str | None = None
    done: WorkerEvent | None = None
    readers: list[threading.Thread] = field(default_factory=list)


class WorkerBridge:
    """Spawns one worker at a time and turns its output into persisted events.

    Each stdout frame becomes a ``WorkerEvent``, is appended to the bound
    task's log and handed to the caller's sink, in arrival order. When the
    process exits the task row is finalized and a synthetic ``exit`` event is
    delivered as the last event of the run.
    """

    def __init__(self, *, store: TaskStore, command: WorkerCommand) -> None:
        self._store = store
        self._command = command
        self._lock = threading.RLock()
        self._run: _WorkerRun | None = None

    def is_running(self) -> bool:
        with self._lock:
            return self._run is not None

    def current_task_id(self) -> int | None:
        with self._lock:
            return self._run.task_id if self._run is not None else None

    def start(self, job: JobDescription, on_event: EventSink) -> int:
        """Create the task row, spawn the worker and return the task id."""

        with self._lock:
            if self._run is not None:
                raise AlreadyRunningError(
                    f"Worker task {self._run.task_id} is already running.",
                )

            task_id = self._store.create_task(job.kind, job.params, job.config_snapshot())
            try:
                run_args = build_run_args(
                    template=self._command.command_template,
                    placeholder=JOB_PLACEHOLDER,
                    value=job.to_json(),
                )
                process = spawn_worker(self._command, run_args)
            except ProcessSpawnError as error:
                logger.error("Worker spawn failed for task_id=%s: %s", task_id, error)
                self._store.add_log(task_id, WorkerEvent.from_error(error))
                self._store.update_task(task_id, TaskStatus.FAILED, error_message=str(error))
                error.task_id = task_id
                raise

            run = _WorkerRun(task_id=task_id, process=process, on_event=on_event)
            run.readers = [
                threading.Thread(
                    target=self._read_stdout,
                    args=(run,),
                    daemon=True,
                    name=f"worker-stdout-{task_id}",
                ),
                threading.Thread(
                    target=self._read_stderr,
                    args=(run,),
                    daemon=True,
                    name=f"worker-stderr-{task_id}",
                ),
            ]
            self._run = run
            for reader in run.readers:
                reader.start()
            threading.Thread(
                target=self._watch,
                args=(run,),
                daemon=True,
                name=f"worker-watch-{task_id}",
            ).start()

        logger.info(
            "Worker started: task_id=%s pid=%s kind=%s",
            task_id,
            process.pid,
            job.kind,
        )
        return task_id

    def stop(self) -> bool:
        """Signal the active worker and mark its task stopped without waiting.

        The run is detached first: anything the process still prints while it
        shuts down is drained and discarded, and no ``exit`` event follows.
        """

        with self._lock:
            run = self._run
            if run is None:
                return False
            run.detached = True
            self._run = None
            self._store.update_task(run.task_id, TaskStatus.STOPPED, error_message=STOPPED_MESSAGE)

        threading.Thread(
            target=terminate_process,
            args=(run.process,),
            kwargs={"grace_seconds": self._command.stop_grace_seconds},
            daemon=True,
            name=f"worker-reaper-{run.task_id}",
        ).start()
        logger.info("Stop requested: task_id=%s pid=%s", run.task_id, run.process.pid)
        return True

    def validate(self, payload: dict[str, Any] | str) -> ValidationResult:
        """Run a one-shot validation invocation; no task or log rows are written."""

        raw = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        try:
            run_args = build_run_args(
                template=self._command.validate_template,
                placeholder=PAYLOAD_PLACEHOLDER,
                value=raw,
            )
            completed = subprocess.run(  # noqa: S603
                run_args,
                cwd=self._command.cwd,
                env=worker_env(self._command),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=self._command.validate_timeout_seconds,
                check=False,
            )
        except ProcessSpawnError as error:
            return ValidationResult(valid=False, message=str(error))
        except subprocess.TimeoutExpired:
            return ValidationResult(valid=False, message="Validation timed out")
        except OSError as error:
            return ValidationResult(valid=False, message=f"Validation failed to start: {error}")

        stdout = completed.stdout.decode("utf-8", errors="replace")
        stderr = completed.stderr.decode("utf-8", errors="replace").strip()
        result = _last_validation_record(stdout)
        if result is None:
            return ValidationResult(valid=False, message=stderr or "Unknown validation error")
        if completed.returncode != 0 and result.valid:
            return ValidationResult(
                valid=False,
                message=str(ProcessExitError(completed.returncode)),
                user_info=None,
            )
        return result

    # -- process supervision --------------------------------------------------

    def _read_stdout(self, run: _WorkerRun) -> None:
        framer = LineFramer()
        for chunk in _iter_chunks(run.process.stdout):
            for frame in framer.feed(chunk):
                self._handle_frame(run, frame)
        leftover = framer.close()
        if leftover is not None:
            logger.warning(
                "Dropped unterminated worker frame (task_id=%s): %.200s",
                run.task_id,
                leftover,
            )

    def _read_stderr(self, run: _WorkerRun) -> None:
        framer = LineFramer()
        for chunk in _iter_chunks(run.process.stderr):
            for line in framer.feed(chunk):
                logger.debug("Worker stderr (task_id=%s): %s", run.task_id, line)
                self._dispatch(run, WorkerEvent.from_stderr(line))
        leftover = framer.close()
        if leftover is not None:
            self._dispatch(run, WorkerEvent.from_stderr(leftover.rstrip()))

    def _handle_frame(self, run: _WorkerRun, frame: str) -> None:
        try:
            event = parse_event_line(frame)
        except ProtocolError as error:
            logger.warning(
                "Dropped malformed worker line (task_id=%s): %s: %.200s",
                run.task_id,
                error,
                frame,
            )
            return
        self._dispatch(run, event)

    def _dispatch(self, run: _WorkerRun, event: WorkerEvent) -> None:
        with self._lock:
            if run.detached:
                logger.debug(
                    "Discarded %s event from stopped task_id=%s",
                    event.type.value,
                    run.task_id,
                )
                return
            self._store.add_log(run.task_id, event)
            if event.type == EventType.ERROR:
                run.last_error = event.message or "Worker reported an error"
            elif event.type == EventType.DONE:
                run.done = event
            _deliver(run, event)

    def _watch(self, run: _WorkerRun) -> None:
        for reader in run.readers:
            reader.join()
        exit_code = run.process.wait()

        with self._lock:
            if run.detached:
                logger.info(
                    "Stopped worker exited: task_id=%s exit_code=%s",
                    run.task_id,
                    exit_code,
                )
                return

            if exit_code != 0 and run.last_error is None:
                exit_event = WorkerEvent.from_error(ProcessExitError(exit_code))
                exit_event.exit_code = exit_code
                self._store.add_log(run.task_id, exit_event)
                _deliver(run, exit_event)
                run.last_error = exit_event.message

            status, message = _final_status(run)
            self._store.update_task(
                run.task_id,
                status,
                error_message=message,
                result_count=run.done.count if run.done is not None else None,
            )
            self._run = None
            _deliver(
                run,
                WorkerEvent(
                    type=EventType.EXIT,
                    message=message,
                    exit_code=exit_code,
                    task_status=status.value,
                ),
            )

        logger.info(
            "Worker finished: task_id=%s exit_code=%s status=%s",
            run.task_id,
            exit_code,
            status.value,
        )


def _final_status(run: _WorkerRun) -> tuple[TaskStatus, str | None]:
    if run.last_error is not None:
        return TaskStatus.FAILED, run.last_error
    done = run.done
    if done is not None:
        if done.api_success is False or _is_account_anomaly(done.api_message):
            return TaskStatus.FAILED, done.api_message or API_FAILURE_MESSAGE
        if done.count == 0:
            return TaskStatus.WARNING, EMPTY_RESULT_MESSAGE
    return TaskStatus.COMPLETED, None


def _is_account_anomaly(api_message: str | None) -> bool:
    return bool(api_message) and any(marker in api_message for marker in ACCOUNT_ANOMALY_MARKERS)


def _deliver(run: _WorkerRun, event: WorkerEvent) -> None:
    try:
        run.on_event(event)
    except Exception:
        logger.exception("Event sink failed for task_id=%s", run.task_id)


def _iter_chunks(stream: IO[bytes] | None):  # noqa: ANN202
    if stream is None:
        return
    try:
        while chunk := stream.read(_READ_CHUNK_BYTES):
            yield chunk
    finally:
        stream.close()


def _last_validation_record(stdout: str) -> ValidationResult | None:
    for line in reversed(stdout.strip().splitlines()):
        if not line.strip():
            continue
        try:
            event = parse_event_line(line)
        except ProtocolError:
            logger.warning("Unparseable validation output: %.200s", line)
            return None
        if event.type == EventType.VALIDATION_RESULT:
            return ValidationResult(
                valid=bool(event.valid),
                message=event.message or "",
                user_info=event.user_info,
            )
        if event.type == EventType.ERROR:
            return ValidationResult(valid=False, message=event.message or "Validation failed")
    return None
