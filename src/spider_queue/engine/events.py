"""Worker line protocol: typed events and strict newline framing.

The worker writes one JSON object per line to stdout. Every object carries a
``type`` discriminator; the remaining fields depend on the type::

    {"type": "log", "level": "INFO", "message": "..."}
    {"type": "progress", "current": 3, "total": 10, "title": "..."}
    {"type": "media", "noteId": "...", "action": "download", "file": "...", "progress": 50}
    {"type": "done", "count": 10, "files": ["..."], "api_success": true}
    {"type": "error", "message": "...", "code": "..."}
    {"type": "validation_result", "valid": true, "message": "...", "userInfo": {...}}

``exit`` is never written by a worker; the bridge synthesizes it once the
process has exited and its task row has been finalized.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from spider_queue.engine.errors import ProtocolError, SpiderQueueError


class EventType(str, Enum):
    LOG = "log"
    PROGRESS = "progress"
    MEDIA = "media"
    DONE = "done"
    ERROR = "error"
    VALIDATION_RESULT = "validation_result"
    EXIT = "exit"


WIRE_EVENT_TYPES = frozenset(event_type for event_type in EventType if event_type != EventType.EXIT)

_WIRE_ALIASES = {
    "noteId": "note_id",
    "userInfo": "user_info",
    "apiSuccess": "api_success",
    "apiMessage": "api_message",
}


@dataclass(slots=True)
class WorkerEvent:
    """One event observed while a worker runs."""

    type: EventType
    level: str | None = None
    message: str | None = None
    current: int | None = None
    total: int | None = None
    title: str | None = None
    note_id: str | None = None
    action: str | None = None
    file: str | None = None
    progress: float | None = None
    success: bool | None = None
    count: int | None = None
    files: list[str] | None = None
    code: str | None = None
    valid: bool | None = None
    api_success: bool | None = None
    api_message: str | None = None
    user_info: dict[str, Any] | None = None
    exit_code: int | None = None
    task_status: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.type == EventType.EXIT

    @classmethod
    def from_error(cls, error: SpiderQueueError) -> WorkerEvent:
        """Normalize a process-level failure into the ``error`` event shape."""

        return cls(type=EventType.ERROR, level="ERROR", message=str(error), code=error.code)

    @classmethod
    def from_stderr(cls, text: str) -> WorkerEvent:
        return cls(type=EventType.ERROR, level="ERROR", message=text, code="STDERR")

    def progress_metadata(self) -> dict[str, Any] | None:
        """Structured payload stored next to the log message, if any."""

        if self.type == EventType.PROGRESS:
            candidate = {"current": self.current, "total": self.total, "title": self.title}
        elif self.type == EventType.MEDIA:
            candidate = {
                "note_id": self.note_id,
                "action": self.action,
                "file": self.file,
                "progress": self.progress,
                "success": self.success,
            }
        elif self.type == EventType.DONE:
            candidate = {"count": self.count, "files": self.files}
        elif self.type == EventType.ERROR and self.code:
            candidate = {"code": self.code}
        else:
            return None
        metadata = {key: value for key, value in candidate.items() if value is not None}
        return metadata or None


def parse_event_line(line: str) -> WorkerEvent:
    """Parse one complete protocol frame into a typed event."""

    try:
        payload = json.loads(line)
    except json.JSONDecodeError as error:
        raise ProtocolError(f"Frame is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ProtocolError("Frame must be a JSON object.")

    raw_type = payload.get("type")
    try:
        event_type = EventType(raw_type)
    except ValueError as error:
        raise ProtocolError(f"Unknown event type: {raw_type!r}") from error
    if event_type not in WIRE_EVENT_TYPES:
        raise ProtocolError(f"Event type {raw_type!r} is reserved.")

    fields: dict[str, Any] = {}
    for key, value in payload.items():
        name = _WIRE_ALIASES.get(key, key)
        if name == "type" or name not in _FIELD_NAMES:
            continue
        fields[name] = value

    return WorkerEvent(
        type=event_type,
        level=_optional_str(fields.get("level")),
        message=_optional_str(fields.get("message")),
        current=_optional_int(fields.get("current")),
        total=_optional_int(fields.get("total")),
        title=_optional_str(fields.get("title")),
        note_id=_optional_str(fields.get("note_id")),
        action=_optional_str(fields.get("action")),
        file=_optional_str(fields.get("file")),
        progress=_optional_float(fields.get("progress")),
        success=_optional_bool(fields.get("success")),
        count=_optional_int(fields.get("count")),
        files=[str(item) for item in fields["files"]]
        if isinstance(fields.get("files"), list)
        else None,
        code=_optional_str(fields.get("code")),
        valid=_optional_bool(fields.get("valid")),
        api_success=_optional_bool(fields.get("api_success")),
        api_message=_optional_str(fields.get("api_message")),
        user_info=fields["user_info"] if isinstance(fields.get("user_info"), dict) else None,
    )


class LineFramer:
    """Incremental decoder that yields only newline-terminated frames.

    Chunks may split a frame (or a multi-byte UTF-8 sequence) anywhere; bytes
    are buffered until the terminating newline arrives.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return [frame.removesuffix("\r") for frame in complete if frame.strip()]

    def close(self) -> str | None:
        """Flush the decoder; return an unterminated trailing frame, if any."""

        self._buffer += self._decoder.decode(b"", final=True)
        leftover, self._buffer = self._buffer, ""
        if not leftover.strip():
            return None
        return leftover


_FIELD_NAMES = frozenset(WorkerEvent.__dataclass_fields__) - {"exit_code", "task_status"}


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _optional_int(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _optional_float(value: object) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)
    return None


def _optional_bool(value: object) -> bool | None:
    return value if isinstance(value, bool) else None
