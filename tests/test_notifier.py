"""Tests for notifiers and the background EventDispatcher."""

import json
import os
import tempfile
import threading
import time
import unittest

from sitecrawl.models import Event, EventType
from sitecrawl.notifier import CallbackNotifier, EventDispatcher, JsonlNotifier, Notifier


def _event(n: int = 0) -> Event:
    return Event(type=EventType.TASK_PROGRESS, task_id="task_1", payload={"n": n})


class TestJsonlNotifier(unittest.TestCase):
    def test_writes_one_line_per_event(self):
        fd, path = tempfile.mkstemp(suffix=".jsonl")
        os.close(fd)
        self.addCleanup(os.remove, path)
        notifier = JsonlNotifier(path)
        notifier.emit(_event(1))
        notifier.emit(Event(type=EventType.TASK_COMPLETED, task_id="task_1", payload={"status": "completed"}))
        notifier.close()
        with open(path, "r", encoding="utf-8") as f:
            rows = [json.loads(line) for line in f]
        self.assertEqual([r["type"] for r in rows], ["task_progress", "task_completed"])
        self.assertEqual(rows[0]["payload"], {"n": 1})


class TestEventDispatcher(unittest.TestCase):
    """Verify delivery happens off the caller's thread and never blocks it."""

    def test_delivers_in_order(self):
        received = []
        dispatcher = EventDispatcher(CallbackNotifier(received.append))
        for n in range(5):
            self.assertTrue(dispatcher.dispatch(_event(n)))
        dispatcher.flush(timeout=2.0)
        dispatcher.close()
        self.assertEqual([e.payload["n"] for e in received], [0, 1, 2, 3, 4])

    def test_slow_notifier_does_not_block_dispatch(self):
        gate = threading.Event()

        class SlowNotifier(Notifier):
            def emit(self, event):
                gate.wait(2.0)

        dispatcher = EventDispatcher(SlowNotifier(), max_pending=2)
        start = time.monotonic()
        results = [dispatcher.dispatch(_event(n)) for n in range(10)]
        self.assertLess(time.monotonic() - start, 0.5)
        self.assertIn(False, results)
        self.assertGreater(dispatcher.dropped, 0)
        gate.set()
        dispatcher.close()

    def test_failing_notifier_keeps_worker_alive(self):
        received = []

        def callback(event):
            if event.payload["n"] == 0:
                raise RuntimeError("sink down")
            received.append(event)

        dispatcher = EventDispatcher(CallbackNotifier(callback))
        with self.assertLogs("sitecrawl.notifier", level="ERROR"):
            dispatcher.dispatch(_event(0))
            dispatcher.dispatch(_event(1))
            dispatcher.flush(timeout=2.0)
        dispatcher.close()
        self.assertEqual(len(received), 1)

    def test_dispatch_after_close_is_dropped(self):
        dispatcher = EventDispatcher()
        dispatcher.close()
        self.assertFalse(dispatcher.dispatch(_event()))


if __name__ == "__main__":
    unittest.main()
