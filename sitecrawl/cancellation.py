from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import TaskAborted


class CancellationToken:
    """Cooperative cancel/pause signal shared by every worker of one task.

    Cancellation and timeout both go through ``cancel()``. Workers observe it
    at their suspension points via ``checkpoint()`` and ``sleep()``, which
    also hold the caller while the task is paused."""

    def __init__(self) -> None:
        self._cv = threading.Condition()
        self._cancelled = False
        self._paused = False
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._cv:
            if not self._cancelled:
                self._cancelled = True
                self._reason = reason
            self._cv.notify_all()

    def pause(self) -> None:
        with self._cv:
            self._paused = True

    def resume(self) -> None:
        with self._cv:
            self._paused = False
            self._cv.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def checkpoint(self) -> None:
        """Block while paused; raise TaskAborted once cancelled."""
        with self._cv:
            while self._paused and not self._cancelled:
                self._cv.wait()
            if self._cancelled:
                raise TaskAborted(self._reason or "cancelled")

    def sleep(self, seconds: float) -> None:
        """Interruptible sleep; a paused task stays parked here until resumed."""
        remaining = max(0.0, seconds)
        with self._cv:
            while True:
                while self._paused and not self._cancelled:
                    self._cv.wait()
                if self._cancelled:
                    raise TaskAborted(self._reason or "cancelled")
                if remaining <= 0:
                    return
                start = time.monotonic()
                self._cv.wait(timeout=remaining)
                remaining -= time.monotonic() - start
