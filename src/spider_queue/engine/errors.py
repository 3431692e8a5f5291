"""Error taxonomy for the task execution engine."""

from __future__ import annotations


class SpiderQueueError(RuntimeError):
    """Base class for engine errors surfaced to callers."""

    code = "SPIDER_QUEUE_ERROR"


class AlreadyRunningError(SpiderQueueError):
    """A worker process or queue run is already active."""

    code = "ALREADY_RUNNING"


class QueueNotRunningError(SpiderQueueError):
    """Stop requested while the queue is idle."""

    code = "QUEUE_NOT_RUNNING"


class ItemNotRemovableError(SpiderQueueError):
    """Removal of a queue item that is currently executing."""

    code = "ITEM_NOT_REMOVABLE"


class ProcessSpawnError(SpiderQueueError):
    """Worker process could not be launched."""

    code = "PROCESS_ERROR"
    task_id: int | None = None


class ProcessExitError(SpiderQueueError):
    """Worker process exited abnormally."""

    code = "PROCESS_EXIT"

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Worker exited with code {exit_code}")
        self.exit_code = exit_code


class ValidationFailureError(SpiderQueueError):
    """Validation invocation reported an invalid payload or unusable output."""

    code = "VALIDATION_FAILED"


class ProtocolError(ValueError):
    """A worker output frame violates the line protocol."""
