"""Publish channel for queue status snapshots and worker events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from spider_queue.engine.events import WorkerEvent
from spider_queue.engine.models import QueueStatusSnapshot

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[QueueStatusSnapshot], None]
EventListener = Callable[[WorkerEvent], None]


class StatusChannel:
    """Best-effort fan-out to UI listeners; the latest snapshot wins."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._snapshot_listeners: list[SnapshotListener] = []
        self._event_listeners: list[EventListener] = []
        self._latest: QueueStatusSnapshot | None = None

    @property
    def latest(self) -> QueueStatusSnapshot | None:
        with self._lock:
            return self._latest

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        with self._lock:
            self._snapshot_listeners.append(listener)
        return lambda: self._remove(self._snapshot_listeners, listener)

    def subscribe_events(self, listener: EventListener) -> Callable[[], None]:
        with self._lock:
            self._event_listeners.append(listener)
        return lambda: self._remove(self._event_listeners, listener)

    def publish(self, snapshot: QueueStatusSnapshot) -> None:
        with self._lock:
            self._latest = snapshot
            listeners = list(self._snapshot_listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Status listener failed")

    def publish_event(self, event: WorkerEvent) -> None:
        with self._lock:
            listeners = list(self._event_listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener failed")

    def _remove(self, listeners: list, listener: object) -> None:
        with self._lock:
            if listener in listeners:
                listeners.remove(listener)
