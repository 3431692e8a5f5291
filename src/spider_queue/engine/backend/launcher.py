"""Subprocess helpers for spawning and terminating the worker."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess

from spider_queue.engine.backend.base import WorkerCommand
from spider_queue.engine.errors import ProcessSpawnError

logger = logging.getLogger(__name__)


def build_run_args(
    *,
    template: str,
    placeholder: str,
    value: str,
    os_name: str | None = None,
) -> list[str]:
    """Split a command template into argv and substitute one placeholder.

    The template is tokenized before substitution, so the value always lands
    in exactly one argv element regardless of quotes or spaces it contains.
    """

    stripped = template.strip()
    if not stripped:
        raise ProcessSpawnError("Worker command template is empty.")
    marker = "{" + placeholder + "}"
    if marker not in stripped:
        raise ProcessSpawnError(f"Worker command template must include {marker}.")

    # Windows paths carry backslashes that POSIX splitting would eat.
    posix = (os_name or os.name) != "nt"
    try:
        tokens = shlex.split(stripped, posix=posix)
    except ValueError as error:
        raise ProcessSpawnError(f"Worker command template is malformed: {error}") from error
    if not posix:
        tokens = [_strip_windows_quotes(token) for token in tokens]
    return [token.replace(marker, value) for token in tokens]


def _strip_windows_quotes(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] == '"':
        return token[1:-1]
    return token


def worker_env(command: WorkerCommand) -> dict[str, str]:
    env = os.environ.copy()
    env["PYTHONUNBUFFERED"] = "1"
    env["PYTHONIOENCODING"] = "utf-8"
    env.update(command.extra_env)
    return env


def spawn_worker(command: WorkerCommand, run_args: list[str]) -> subprocess.Popen[bytes]:
    """Start the worker with piped, unbuffered binary stdout/stderr."""

    try:
        return subprocess.Popen(  # noqa: S603
            run_args,
            cwd=command.cwd,
            env=worker_env(command),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            bufsize=0,
        )
    except FileNotFoundError as error:
        raise ProcessSpawnError(f"Worker command not found: {run_args[0]}") from error
    except OSError as error:
        raise ProcessSpawnError(f"Worker failed to start: {error}") from error


def terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    """SIGTERM, then SIGKILL if the process outlives the grace period."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        logger.warning("Worker pid=%s ignored terminate; killing", process.pid)
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
