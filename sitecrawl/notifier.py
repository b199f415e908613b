from __future__ import annotations

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from dataclasses import asdict
from enum import Enum
from typing import Any, Callable, Optional

from .models import Event

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Abstract sink for task lifecycle events.

    Implementations may be slow or unavailable; the scheduler never calls
    them directly but through an EventDispatcher.
    """

    @abstractmethod
    def emit(self, event: Event) -> None:
        """Deliver a single event."""

    def close(self) -> None:
        """Flush pending deliveries and release resources."""


class NullNotifier(Notifier):
    def emit(self, event: Event) -> None:
        return None


class CallbackNotifier(Notifier):
    """Delivers events to a plain callable."""

    def __init__(self, callback: Callable[[Event], Any]) -> None:
        self._callback = callback

    def emit(self, event: Event) -> None:
        self._callback(event)


class JsonlNotifier(Notifier):
    """Appends events as JSON Lines (.jsonl)."""

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._file = open(path, "a", encoding="utf-8")

    def emit(self, event: Event) -> None:
        record = {
            "timestamp": event.timestamp,
            "type": event.type.value,
            "task_id": event.task_id,
            "payload": event.payload,
        }
        with self._lock:
            self._file.write(json.dumps(record, ensure_ascii=False, default=_json_default) + "\n")
            self._file.flush()

    def close(self) -> None:
        with self._lock:
            if not self._file.closed:
                self._file.close()


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "__dataclass_fields__"):
        return asdict(value)
    return str(value)


class EventDispatcher:
    """Outbound event queue drained by a dedicated background thread.

    dispatch() never blocks: when the queue is full the event is dropped and
    counted. Failures inside the notifier are logged and do not stop the
    worker."""

    def __init__(self, notifier: Optional[Notifier] = None, max_pending: int = 1000) -> None:
        self._notifier = notifier or NullNotifier()
        self._queue: queue.Queue[Optional[Event]] = queue.Queue(maxsize=max_pending)
        self._dropped = 0
        self._closed = False
        self._thread = threading.Thread(target=self._worker, name="event-dispatcher", daemon=True)
        self._thread.start()

    @property
    def dropped(self) -> int:
        return self._dropped

    def dispatch(self, event: Event) -> bool:
        """Enqueue an event for background delivery; False if it was dropped."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._dropped += 1
            logger.warning("event queue full, dropped %s for task %s", event.type.value, event.task_id)
            return False
        return True

    def flush(self, timeout: Optional[float] = None) -> None:
        """Block until every queued event has been handed to the notifier."""
        if timeout is None:
            self._queue.join()
            return
        done = threading.Event()

        def _join() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_join, daemon=True).start()
        done.wait(timeout)

    def close(self, timeout: float = 5.0) -> None:
        """Signal the worker to drain and stop, then close the notifier."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            logger.warning("event queue still full on close, %d events undelivered", self._queue.qsize())
        self._thread.join(timeout=timeout)
        self._notifier.close()

    def _worker(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    break
                self._notifier.emit(event)
            except Exception:  # noqa: BLE001
                logger.exception("notifier failed on %s", event.type.value if event else None)
            finally:
                self._queue.task_done()
