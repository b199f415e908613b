from __future__ import annotations

import threading
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional

from .models import Task, TaskStatus


class TaskRegistry:
    """In-memory store of queued, running and archived tasks.

    One instance is owned by each scheduler. Every method takes the same
    re-entrant lock, so a task is always in exactly one of the three
    collections."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queued: Deque[Task] = deque()
        self._running: Dict[str, Task] = {}
        self._archived: "OrderedDict[str, Task]" = OrderedDict()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def enqueue(self, task: Task) -> None:
        with self._lock:
            self._queued.append(task)

    def pop_next(self) -> Optional[Task]:
        with self._lock:
            return self._queued.popleft() if self._queued else None

    def remove_queued(self, task_id: str) -> Optional[Task]:
        with self._lock:
            for task in self._queued:
                if task.id == task_id:
                    self._queued.remove(task)
                    return task
            return None

    def add_running(self, task: Task) -> None:
        with self._lock:
            self._running[task.id] = task

    def archive(self, task: Task) -> None:
        with self._lock:
            self._running.pop(task.id, None)
            self._archived[task.id] = task

    def get(self, task_id: str) -> Optional[Task]:
        """Live task from whichever collection holds it."""
        with self._lock:
            task = self._running.get(task_id)
            if task is not None:
                return task
            for queued in self._queued:
                if queued.id == task_id:
                    return queued
            return self._archived.get(task_id)

    def snapshot(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self.get(task_id)
            return task.snapshot() if task is not None else None

    def running_tasks(self) -> List[Task]:
        with self._lock:
            return [t.snapshot() for t in self._running.values()]

    def queued_tasks(self) -> List[Task]:
        with self._lock:
            return [t.snapshot() for t in self._queued]

    def archived_tasks(self) -> List[Task]:
        with self._lock:
            return [t.snapshot() for t in self._archived.values()]

    def completed_durations_ms(self) -> List[int]:
        with self._lock:
            return [
                t.duration_ms
                for t in self._archived.values()
                if t.status is TaskStatus.COMPLETED and t.duration_ms is not None
            ]

    @property
    def queued_count(self) -> int:
        with self._lock:
            return len(self._queued)

    @property
    def running_count(self) -> int:
        with self._lock:
            return len(self._running)

    @property
    def archived_count(self) -> int:
        with self._lock:
            return len(self._archived)

    def purge_archived(self, cutoff: float) -> int:
        """Drop archived tasks that ended before ``cutoff`` (epoch seconds)."""
        with self._lock:
            stale = [
                task_id
                for task_id, task in self._archived.items()
                if (task.end_time if task.end_time is not None else task.start_time) < cutoff
            ]
            for task_id in stale:
                del self._archived[task_id]
            return len(stale)
