from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .cancellation import CancellationToken
from .config import SchedulerConfig, SiteConfig
from .coordinator import SiteCrawlCoordinator
from .errors import ConfigError, QueueFullError
from .extractors import Extractor
from .factory import FetcherFactory
from .models import (
    CrawlError,
    ErrorType,
    Event,
    EventType,
    SchedulerStats,
    Severity,
    Task,
    TaskOptions,
    TaskProgress,
    TaskStatus,
)
from .notifier import EventDispatcher, Notifier
from .registry import TaskRegistry
from .retry import ErrorClassifier, RetryPolicy, make_error
from .supervisor import AntiDetectionSupervisor

logger = logging.getLogger(__name__)

SYSTEM_SITE = "system"


@dataclass
class _TaskRun:
    token: CancellationToken
    timeout: float
    executor: Optional[ThreadPoolExecutor] = None
    timer: Optional[threading.Timer] = None
    generation: int = 0
    finished_sites: Set[str] = field(default_factory=set)


class TaskScheduler:
    """Admits crawl tasks and fans each one out to one worker per site.

    - At most ``max_concurrent_tasks`` tasks run at once; the rest wait in a
      FIFO queue bounded by ``max_queue_size``.
    - Every admitted task gets a deadline timer. Cancellation and timeout
      both mark the task failed, release its slot and cancel the task's
      token so in-flight site workers stop at their next suspension point.
    - Events go out through an EventDispatcher and never block scheduling.
    """

    def __init__(
        self,
        site_configs: Mapping[str, SiteConfig],
        extractor: Extractor,
        supervisor: Optional[AntiDetectionSupervisor] = None,
        notifier: Optional[Notifier] = None,
        config: Optional[SchedulerConfig] = None,
        registry: Optional[TaskRegistry] = None,
        fetcher_factory: Optional[FetcherFactory] = None,
        classifier: Optional[ErrorClassifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._config = config or SchedulerConfig()
        self._sites: Dict[str, SiteConfig] = dict(site_configs)
        self._extractor = extractor
        self._supervisor = supervisor or AntiDetectionSupervisor()
        self._registry = registry or TaskRegistry()
        self._fetchers = fetcher_factory or FetcherFactory()
        self._classifier = classifier or ErrorClassifier()
        self._policy = retry_policy or RetryPolicy(max_attempts=self._config.retry_attempts)
        self._events = EventDispatcher(notifier)

        self._lock = self._registry.lock
        self._done = threading.Condition(self._lock)
        self._runs: Dict[str, _TaskRun] = {}
        self._running = False
        self._processed = 0

        for site in self._sites.values():
            self._supervisor.register_site(site)

    @property
    def supervisor(self) -> AntiDetectionSupervisor:
        return self._supervisor

    def start(self) -> None:
        """Begin admitting tasks, including any submitted before start."""
        with self._lock:
            self._running = True
            self._admit_locked()

    def stop(self, wait: bool = True) -> None:
        """Stop admitting, abort running tasks and shut down the event queue."""
        with self._lock:
            self._running = False
            task_ids = list(self._runs)
            executors = [run.executor for run in self._runs.values() if run.executor is not None]
        for task_id in task_ids:
            self._terminate(task_id, ErrorType.CANCELLED, "scheduler stopped")
        for executor in executors:
            executor.shutdown(wait=wait)
        self._events.close()
        self._fetchers.close()

    def submit(self, query: str, site_ids: Iterable[str], options: Optional[TaskOptions] = None) -> str:
        """Queue a search over ``site_ids`` and return the new task id.

        Raises ConfigError for an empty query, no sites or an unknown or
        inactive site, and QueueFullError when the queue is at capacity."""
        options = options or TaskOptions()
        ids = list(dict.fromkeys(site_ids))
        self._validate(query, ids, options)

        now = time.time()
        task = Task(
            id=f"task_{int(now * 1000)}_{uuid.uuid4().hex[:9]}",
            query=query.strip(),
            site_ids=ids,
            status=TaskStatus.PENDING,
            progress=TaskProgress(total=len(ids)),
            start_time=now,
            options=options,
            submitted_at=now,
        )
        with self._lock:
            if self._registry.queued_count >= self._config.max_queue_size and not self._has_free_slot():
                raise QueueFullError(self._config.max_queue_size)
            self._registry.enqueue(task)
            logger.info("task %s queued: %r on %s", task.id, task.query, ",".join(ids))
            self._admit_locked()
        return task.id

    def get_status(self, task_id: str) -> Optional[Task]:
        return self._registry.snapshot(task_id)

    def pause(self, task_id: str) -> bool:
        with self._lock:
            task = self._registry.get(task_id)
            run = self._runs.get(task_id)
            if task is None or run is None or task.status is not TaskStatus.RUNNING:
                return False
            task.status = TaskStatus.PAUSED
            run.token.pause()
            self._disarm_timer(run)
            self._emit_progress(task)
        logger.info("task %s paused", task_id)
        return True

    def resume(self, task_id: str) -> bool:
        with self._lock:
            task = self._registry.get(task_id)
            run = self._runs.get(task_id)
            if task is None or run is None or task.status is not TaskStatus.PAUSED:
                return False
            task.status = TaskStatus.RUNNING
            run.token.resume()
            self._arm_timer(task_id, run)
            self._emit_progress(task)
        logger.info("task %s resumed", task_id)
        return True

    def cancel(self, task_id: str) -> bool:
        """Fail a pending, running or paused task with one cancellation error."""
        return self._terminate(task_id, ErrorType.CANCELLED, "task cancelled by user")

    def active_tasks(self) -> List[Task]:
        return self._registry.running_tasks()

    def queued_tasks(self) -> List[Task]:
        return self._registry.queued_tasks()

    def archived_tasks(self) -> List[Task]:
        return self._registry.archived_tasks()

    def stats(self) -> SchedulerStats:
        with self._lock:
            durations = self._registry.completed_durations_ms()
            return SchedulerStats(
                queued=self._registry.queued_count,
                active=self._registry.running_count,
                archived=self._registry.archived_count,
                total_processed=self._processed,
                average_completion_ms=sum(durations) / len(durations) if durations else 0.0,
            )

    def cleanup_archive(self, older_than_hours: Optional[float] = None) -> int:
        hours = self._config.archive_retention_hours if older_than_hours is None else older_than_hours
        removed = self._registry.purge_archived(time.time() - hours * 3600)
        if removed:
            logger.info("purged %d archived tasks older than %.1fh", removed, hours)
        return removed

    def wait(self, task_id: str, timeout: Optional[float] = None) -> Optional[Task]:
        """Block until the task is terminal (or ``timeout`` elapses); return its snapshot."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._done:
            while True:
                task = self._registry.get(task_id)
                if task is None or task.status.is_terminal:
                    break
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    break
                self._done.wait(remaining)
            return task.snapshot() if task is not None else None

    # TaskSink, called from site workers

    def add_result(self, task_id: str, site_id: str, result: Dict[str, Any]) -> bool:
        with self._lock:
            task = self._live_task(task_id)
            if task is None:
                return False
            limit = task.options.max_results
            if limit is not None and len(task.results) >= limit:
                return False
            task.results.append(result)
            self._emit(EventType.TASK_RESULT, task_id, {"site_id": site_id, "result": dict(result)})
            return True

    def add_error(self, task_id: str, error: CrawlError) -> None:
        with self._lock:
            task = self._live_task(task_id)
            if task is None:
                return
            task.errors.append(error)
            self._emit(EventType.TASK_ERROR, task_id, {"error": _error_payload(error)})

    def site_finished(self, task_id: str, site_id: str, success: bool, error: Optional[CrawlError] = None) -> None:
        with self._lock:
            task = self._live_task(task_id)
            run = self._runs.get(task_id)
            if task is None or run is None or site_id in run.finished_sites:
                return
            run.finished_sites.add(site_id)
            if success:
                task.progress.completed += 1
            else:
                task.progress.failed += 1
                if error is not None:
                    task.errors.append(error)
                    self._emit(EventType.TASK_ERROR, task_id, {"error": _error_payload(error)})
            self._estimate(task)
            self._emit_progress(task)
            logger.info(
                "task %s site %s %s (%d/%d)",
                task_id, site_id, "completed" if success else "failed",
                task.progress.finished, task.progress.total,
            )
            if task.progress.remaining == 0:
                self._finish_locked(task, run)

    # internals

    def _validate(self, query: str, site_ids: List[str], options: TaskOptions) -> None:
        if not query or not query.strip():
            raise ConfigError("query must not be empty")
        if not site_ids:
            raise ConfigError("at least one site id is required")
        for site_id in site_ids:
            site = self._sites.get(site_id)
            if site is None:
                raise ConfigError(f"unknown site: {site_id}", details={"site_id": site_id})
            if not site.active:
                raise ConfigError(f"site {site_id} is disabled", details={"site_id": site_id})
        if options.max_results is not None and options.max_results < 1:
            raise ConfigError("max_results must be >= 1")
        if options.timeout_ms is not None and options.timeout_ms <= 0:
            raise ConfigError("timeout_ms must be > 0")
        if options.retry_attempts is not None and options.retry_attempts < 0:
            raise ConfigError("retry_attempts must be >= 0")

    def _has_free_slot(self) -> bool:
        return self._running and self._registry.running_count < self._config.max_concurrent_tasks

    def _admit_locked(self) -> None:
        while self._has_free_slot():
            task = self._registry.pop_next()
            if task is None:
                return
            self._launch_locked(task)

    def _launch_locked(self, task: Task) -> None:
        timeout = (
            task.options.timeout_ms / 1000.0 if task.options.timeout_ms is not None else self._config.task_timeout
        )
        run = _TaskRun(token=CancellationToken(), timeout=timeout)
        task.status = TaskStatus.RUNNING
        task.start_time = time.time()
        self._registry.add_running(task)
        self._runs[task.id] = run
        self._emit(EventType.TASK_STARTED, task.id, {"query": task.query, "site_ids": list(task.site_ids)})
        logger.info("task %s started on %d sites", task.id, len(task.site_ids))

        run.executor = ThreadPoolExecutor(max_workers=len(task.site_ids), thread_name_prefix=task.id)
        for site_id in task.site_ids:
            run.executor.submit(self._coordinator(task, site_id, run.token).run)
        run.executor.shutdown(wait=False)
        self._arm_timer(task.id, run)

    def _coordinator(self, task: Task, site_id: str, token: CancellationToken) -> SiteCrawlCoordinator:
        site = self._sites[site_id]
        max_retries = task.options.retry_attempts
        if max_retries is None:
            max_retries = site.max_retries if site.max_retries is not None else self._config.retry_attempts
        return SiteCrawlCoordinator(
            task_id=task.id,
            query=task.query,
            site=site,
            extractor=self._extractor,
            supervisor=self._supervisor,
            fetcher=self._fetchers.create_fetcher(site),
            sink=self,
            token=token,
            retry_policy=self._policy,
            classifier=self._classifier,
            max_results=task.options.max_results,
            max_retries=max_retries,
        )

    def _arm_timer(self, task_id: str, run: _TaskRun) -> None:
        self._disarm_timer(run)
        generation = run.generation
        run.timer = threading.Timer(run.timeout, self._on_deadline, args=(task_id, generation))
        run.timer.daemon = True
        run.timer.start()

    @staticmethod
    def _disarm_timer(run: _TaskRun) -> None:
        run.generation += 1
        if run.timer is not None:
            run.timer.cancel()
            run.timer = None

    def _on_deadline(self, task_id: str, generation: int) -> None:
        with self._lock:
            run = self._runs.get(task_id)
            if run is None or run.generation != generation:
                return
            timeout = run.timeout
        logger.warning("task %s timed out after %.1fs", task_id, timeout)
        self._terminate(task_id, ErrorType.TIMEOUT_ERROR, f"task timed out after {timeout:.1f}s")

    def _terminate(self, task_id: str, error_type: ErrorType, message: str) -> bool:
        """Force a non-terminal task to failed, keeping what it has collected."""
        with self._lock:
            task = self._registry.get(task_id)
            if task is None or task.status.is_terminal:
                return False
            if error_type is ErrorType.CANCELLED:
                error = make_error(error_type, message, SYSTEM_SITE, severity=Severity.LOW, recoverable=False)
            else:
                error = make_error(error_type, message, SYSTEM_SITE, severity=Severity.HIGH)
            task.errors.append(error)
            self._emit(EventType.TASK_ERROR, task_id, {"error": _error_payload(error)})
            task.progress.failed = task.progress.total - task.progress.completed

            run = self._runs.get(task_id)
            if run is None:
                self._registry.remove_queued(task_id)
                task.status = TaskStatus.FAILED
                task.end_time = time.time()
                self._archive_locked(task)
            else:
                run.token.cancel(message)
                self._finish_locked(task, run, TaskStatus.FAILED)
        logger.info("task %s terminated: %s", task_id, message)
        return True

    def _finish_locked(self, task: Task, run: _TaskRun, status: Optional[TaskStatus] = None) -> None:
        self._disarm_timer(run)
        if status is None:
            status = TaskStatus.COMPLETED if task.progress.completed > 0 else TaskStatus.FAILED
        task.status = status
        task.end_time = time.time()
        task.estimated_end_time = None
        self._runs.pop(task.id, None)
        self._archive_locked(task)
        logger.info(
            "task %s %s: %d results, %d errors",
            task.id, status.value, len(task.results), len(task.errors),
        )
        self._admit_locked()

    def _archive_locked(self, task: Task) -> None:
        self._registry.archive(task)
        self._processed += 1
        self._emit(
            EventType.TASK_COMPLETED,
            task.id,
            {
                "status": task.status.value,
                "completed": task.progress.completed,
                "failed": task.progress.failed,
                "results": len(task.results),
                "errors": len(task.errors),
                "duration_ms": task.duration_ms,
            },
        )
        self._done.notify_all()

    def _live_task(self, task_id: str) -> Optional[Task]:
        task = self._registry.get(task_id)
        if task is None or task.status.is_terminal or task.id not in self._runs:
            return None
        return task

    @staticmethod
    def _estimate(task: Task) -> None:
        finished = task.progress.finished
        if finished == 0:
            return
        now = time.time()
        per_site = (now - task.start_time) / finished
        task.estimated_end_time = now + per_site * task.progress.remaining

    def _emit_progress(self, task: Task) -> None:
        remaining = None
        if task.estimated_end_time is not None:
            remaining = max(0.0, task.estimated_end_time - time.time())
        self._emit(
            EventType.TASK_PROGRESS,
            task.id,
            {
                "status": task.status.value,
                "total": task.progress.total,
                "completed": task.progress.completed,
                "failed": task.progress.failed,
                "estimated_time_remaining": remaining,
            },
        )

    def _emit(self, event_type: EventType, task_id: str, payload: Dict[str, Any]) -> None:
        self._events.dispatch(Event(type=event_type, task_id=task_id, payload=payload))


def _error_payload(error: CrawlError) -> Dict[str, Any]:
    return {
        "type": error.type.value,
        "message": error.message,
        "severity": error.severity.value,
        "recoverable": error.recoverable,
        "site_id": error.site_id,
        "timestamp": error.timestamp,
        "details": dict(error.details),
    }
