from __future__ import annotations

import allure
import pytest

from spider_queue.engine.errors import ProcessExitError, ProtocolError
from spider_queue.engine.events import EventType, LineFramer, WorkerEvent, parse_event_line

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker Line Protocol"),
]


def test_parse_event_line_maps_type_specific_fields() -> None:
    progress = parse_event_line('{"type": "progress", "current": 2, "total": 5, "title": "Mocha"}')
    assert progress.type == EventType.PROGRESS
    assert (progress.current, progress.total, progress.title) == (2, 5, "Mocha")
    assert progress.progress_metadata() == {"current": 2, "total": 5, "title": "Mocha"}

    media = parse_event_line(
        '{"type": "media", "noteId": "n1", "action": "download", "file": "a.jpg", "progress": 50}',
    )
    assert media.note_id == "n1"
    assert media.progress == 50.0

    done = parse_event_line('{"type": "done", "count": 3, "files": ["a", "b"], "apiSuccess": false}')
    assert done.count == 3
    assert done.files == ["a", "b"]
    assert done.api_success is False

    validation = parse_event_line(
        '{"type": "validation_result", "valid": true, "userInfo": {"nickname": "x"}}',
    )
    assert validation.valid is True
    assert validation.user_info == {"nickname": "x"}


def test_parse_event_line_ignores_unknown_fields() -> None:
    event = parse_event_line('{"type": "log", "level": "INFO", "message": "hi", "extra": 1}')

    assert event == WorkerEvent(type=EventType.LOG, level="INFO", message="hi")
    assert event.progress_metadata() is None


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        '{"message": "no type"}',
        '{"type": "shout"}',
        '{"type": "exit", "exit_code": 0}',
    ],
)
def test_parse_event_line_rejects_invalid_frames(line: str) -> None:
    with pytest.raises(ProtocolError):
        parse_event_line(line)


def test_error_events_share_one_shape() -> None:
    exit_event = WorkerEvent.from_error(ProcessExitError(3))
    stderr_event = WorkerEvent.from_stderr("Traceback (most recent call last):")

    assert exit_event.type == stderr_event.type == EventType.ERROR
    assert exit_event.message == "Worker exited with code 3"
    assert exit_event.progress_metadata() == {"code": "PROCESS_EXIT"}
    assert stderr_event.code == "STDERR"


def test_line_framer_reassembles_frames_split_across_chunks() -> None:
    framer = LineFramer()

    assert framer.feed(b'{"type": "log", "mes') == []
    assert framer.feed(b'sage": "a"}\n{"type"') == ['{"type": "log", "message": "a"}']
    assert framer.feed(b': "done"}\r\n\n') == ['{"type": "done"}']
    assert framer.close() is None


def test_line_framer_handles_split_multibyte_characters() -> None:
    encoded = '{"type": "log", "message": "café ☕"}\n'.encode()
    framer = LineFramer()
    frames: list[str] = []
    for index in range(len(encoded)):
        frames.extend(framer.feed(encoded[index : index + 1]))

    assert frames == ['{"type": "log", "message": "café ☕"}']
    assert parse_event_line(frames[0]).message == "café ☕"


def test_line_framer_returns_unterminated_tail_on_close() -> None:
    framer = LineFramer()

    assert framer.feed(b'{"type": "log"}\n{"type": "do') == ['{"type": "log"}']
    assert framer.close() == '{"type": "do'
