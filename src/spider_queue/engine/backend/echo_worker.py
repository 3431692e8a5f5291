"""Local stand-in worker that speaks the line protocol.

Used by integration tests and for wiring checks without the real collector.
The job's ``params["simulate"]`` mapping drives its behaviour:

- ``items`` (int): progress steps to emit, default 2
- ``delay`` (float): seconds to sleep between steps
- ``count`` (int): value reported in the ``done`` event, default ``items``
- ``error`` (str): emit an ``error`` event before finishing
- ``stderr`` (str): write text to stderr
- ``malformed`` (bool): print a non-JSON line
- ``exit_code`` (int): exit with this code instead of emitting ``done``
- ``api_success`` (bool) / ``api_message`` (str): copied into ``done``
- ``hang`` (float): sleep this long before finishing
- ``trailing_on_term`` (bool): on SIGTERM, print one more event and exit 0
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time
from typing import Any


def emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def run_job(job: dict[str, Any]) -> int:
    params = job.get("params") or {}
    simulate = params.get("simulate") or {}
    items = int(simulate.get("items", 2))
    delay = float(simulate.get("delay", 0.0))

    if simulate.get("trailing_on_term"):

        def _on_term(_signum: int, _frame: object) -> None:
            emit({"type": "log", "level": "WARNING", "message": "terminated, flushing"})
            sys.exit(0)

        signal.signal(signal.SIGTERM, _on_term)

    emit({"type": "log", "level": "INFO", "message": f"Starting {job.get('kind')} job"})
    if simulate.get("malformed"):
        print("not a protocol frame", flush=True)
    if simulate.get("stderr"):
        sys.stderr.write(str(simulate["stderr"]) + "\n")
        sys.stderr.flush()

    files: list[str] = []
    for index in range(1, items + 1):
        if delay:
            time.sleep(delay)
        title = f"item-{index}"
        emit({"type": "progress", "current": index, "total": items, "title": title})
        emit(
            {
                "type": "media",
                "noteId": title,
                "action": "saved",
                "file": f"{title}.json",
                "success": True,
            },
        )
        files.append(f"{title}.json")

    if simulate.get("hang"):
        time.sleep(float(simulate["hang"]))
    if simulate.get("error"):
        emit({"type": "error", "message": str(simulate["error"])})
    if "exit_code" in simulate:
        return int(simulate["exit_code"])

    done: dict[str, Any] = {
        "type": "done",
        "success": True,
        "count": int(simulate.get("count", items)),
        "files": files,
    }
    if "api_success" in simulate:
        done["api_success"] = bool(simulate["api_success"])
    if "api_success" in simulate or "api_message" in simulate:
        done["api_message"] = str(simulate.get("api_message", ""))
    emit(done)
    return 0


def run_validation(payload: dict[str, Any]) -> int:
    cookie = str(payload.get("cookie", "")).strip()
    emit({"type": "log", "level": "INFO", "message": "Validating credentials"})
    if not cookie:
        emit({"type": "error", "message": "No credentials supplied"})
        return 1
    if cookie == "expired":
        emit({"type": "validation_result", "valid": False, "message": "Session expired"})
        return 0
    emit(
        {
            "type": "validation_result",
            "valid": True,
            "message": "Session is valid",
            "userInfo": {"userId": "u-1", "nickname": "echo", "redId": "1", "avatar": ""},
        },
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(dest="mode")
    run_parser = subparsers.add_parser("run")
    run_parser.add_argument("job")
    validate_parser = subparsers.add_parser("validate")
    validate_parser.add_argument("payload")
    args = parser.parse_args(argv)

    if args.mode == "validate":
        return run_validation(json.loads(args.payload))
    if args.mode == "run":
        return run_job(json.loads(args.job))
    parser.error("mode is required")
    return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
