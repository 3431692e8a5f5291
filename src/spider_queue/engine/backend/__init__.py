"""Worker process launch helpers."""

from spider_queue.engine.backend.base import JOB_PLACEHOLDER, PAYLOAD_PLACEHOLDER, WorkerCommand
from spider_queue.engine.backend.launcher import (
    build_run_args,
    spawn_worker,
    terminate_process,
    worker_env,
)

__all__ = [
    "JOB_PLACEHOLDER",
    "PAYLOAD_PLACEHOLDER",
    "WorkerCommand",
    "build_run_args",
    "spawn_worker",
    "terminate_process",
    "worker_env",
]
