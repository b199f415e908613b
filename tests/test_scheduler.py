"""Tests for the TaskScheduler: admission, lifecycle control and accounting."""

import threading
import time
import unittest

from fakes import FakeFactory, FakeFetcher, LineExtractor, fast_policy, make_site, site_pages

from sitecrawl.config import SchedulerConfig
from sitecrawl.errors import ConfigError, NetworkError, QueueFullError
from sitecrawl.models import ErrorType, EventType, TaskOptions, TaskStatus
from sitecrawl.notifier import CallbackNotifier
from sitecrawl.scheduler import TaskScheduler
from sitecrawl.supervisor import AntiDetectionSupervisor

QUERY = "desk lamp"


def _wait_for(predicate, timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class SchedulerTestCase(unittest.TestCase):
    def setUp(self):
        self.events = []
        self.gate = threading.Event()
        self.addCleanup(self.gate.set)

    def _scheduler(self, fetchers, start=True, **config) -> TaskScheduler:
        sites = {site_id: make_site(site_id) for site_id in fetchers}
        scheduler = TaskScheduler(
            sites,
            LineExtractor(),
            supervisor=AntiDetectionSupervisor(),
            notifier=CallbackNotifier(self.events.append),
            config=SchedulerConfig(**config),
            fetcher_factory=FakeFactory(fetchers),
            retry_policy=fast_policy(),
        )
        if start:
            scheduler.start()
        self.addCleanup(scheduler.stop, False)
        return scheduler

    def _gated(self, site_id: str, query: str = QUERY) -> FakeFetcher:
        return FakeFetcher(site_pages(site_id, query, ["held"]), gate=self.gate)

    def assertProgressConsistent(self, task):
        progress = task.progress
        self.assertLessEqual(progress.completed + progress.failed, progress.total)
        if task.status.is_terminal:
            self.assertEqual(progress.completed + progress.failed, progress.total)
        else:
            self.assertLess(progress.completed + progress.failed, progress.total)


class TestCompletion(SchedulerTestCase):
    """Verify a task runs every site and lands in the archive."""

    def test_all_sites_complete(self):
        scheduler = self._scheduler({
            "a": FakeFetcher(site_pages("a", QUERY, ["A lamp"])),
            "b": FakeFetcher(site_pages("b", QUERY, ["B lamp", "B lamp 2"])),
        })
        task_id = scheduler.submit(QUERY, ["a", "b"])
        task = scheduler.wait(task_id, timeout=5.0)
        self.assertIs(task.status, TaskStatus.COMPLETED)
        self.assertEqual(task.progress.completed, 2)
        self.assertEqual(sorted(r["title"] for r in task.results), ["A lamp", "B lamp", "B lamp 2"])
        self.assertEqual(task.errors, [])
        self.assertIsNotNone(task.end_time)
        self.assertProgressConsistent(task)
        self.assertEqual([t.id for t in scheduler.archived_tasks()], [task_id])

    def test_every_site_failing_fails_the_task(self):
        scheduler = self._scheduler({"a": FakeFetcher(error=NetworkError("down"))})
        task = scheduler.wait(scheduler.submit(QUERY, ["a"], TaskOptions(retry_attempts=0)), timeout=5.0)
        self.assertIs(task.status, TaskStatus.FAILED)
        self.assertEqual(task.progress.failed, 1)
        self.assertProgressConsistent(task)

    def test_max_results_caps_the_task(self):
        scheduler = self._scheduler({"a": FakeFetcher(site_pages("a", QUERY, ["1", "2", "3", "4"]))})
        task = scheduler.wait(scheduler.submit(QUERY, ["a"], TaskOptions(max_results=2)), timeout=5.0)
        self.assertEqual(len(task.results), 2)

    def test_status_is_a_snapshot(self):
        scheduler = self._scheduler({"a": self._gated("a")})
        task_id = scheduler.submit(QUERY, ["a"])
        snap = scheduler.get_status(task_id)
        snap.results.append({"title": "injected"})
        snap.status = TaskStatus.COMPLETED
        live = scheduler.get_status(task_id)
        self.assertEqual(live.results, [])
        self.assertIs(live.status, TaskStatus.RUNNING)
        self.assertIsNone(scheduler.get_status("task_missing"))

    def test_events_are_emitted(self):
        scheduler = self._scheduler({"a": FakeFetcher(site_pages("a", QUERY, ["x"]))})
        task_id = scheduler.submit(QUERY, ["a"])
        scheduler.wait(task_id, timeout=5.0)
        self.assertTrue(_wait_for(lambda: any(e.type is EventType.TASK_COMPLETED for e in self.events)))
        types = [e.type for e in self.events]
        self.assertEqual(types[0], EventType.TASK_STARTED)
        self.assertIn(EventType.TASK_RESULT, types)
        self.assertIn(EventType.TASK_PROGRESS, types)
        self.assertEqual(types[-1], EventType.TASK_COMPLETED)
        for event in self.events:
            self.assertEqual(event.task_id, task_id)
            if event.type is EventType.TASK_PROGRESS:
                p = event.payload
                self.assertLessEqual(p["completed"] + p["failed"], p["total"])


class TestAdmission(SchedulerTestCase):
    """Verify the concurrency limit, FIFO queue and queue capacity."""

    def test_queue_full(self):
        """Beyond max_concurrent_tasks + max_queue_size, submit raises and nothing is dropped."""
        scheduler = self._scheduler({"a": self._gated("a")}, max_concurrent_tasks=1, max_queue_size=1)
        first = scheduler.submit(QUERY, ["a"])
        second = scheduler.submit(QUERY, ["a"])
        with self.assertRaises(QueueFullError):
            scheduler.submit(QUERY, ["a"])
        stats = scheduler.stats()
        self.assertEqual((stats.active, stats.queued), (1, 1))
        self.assertIs(scheduler.get_status(first).status, TaskStatus.RUNNING)
        self.assertIs(scheduler.get_status(second).status, TaskStatus.PENDING)

    def test_second_task_waits_then_runs(self):
        """With one slot busy, a new task stays pending and starts once the slot frees up."""
        scheduler = self._scheduler(
            {
                "slow": self._gated("slow", "first"),
                "a": FakeFetcher(site_pages("a", QUERY, ["A lamp"])),
                "b": FakeFetcher(site_pages("b", QUERY, ["B lamp"])),
            },
            max_concurrent_tasks=1,
        )
        first = scheduler.submit("first", ["slow"])
        second = scheduler.submit(QUERY, ["a", "b"])
        self.assertIs(scheduler.get_status(first).status, TaskStatus.RUNNING)
        self.assertIs(scheduler.get_status(second).status, TaskStatus.PENDING)
        self.assertEqual([t.id for t in scheduler.queued_tasks()], [second])

        self.gate.set()
        done = scheduler.wait(second, timeout=5.0)
        self.assertIs(scheduler.get_status(first).status, TaskStatus.COMPLETED)
        self.assertIs(done.status, TaskStatus.COMPLETED)
        self.assertEqual(sorted(r["title"] for r in done.results), ["A lamp", "B lamp"])

    def test_tasks_wait_for_start(self):
        scheduler = self._scheduler({"a": FakeFetcher(site_pages("a", QUERY, ["x"]))}, start=False)
        task_id = scheduler.submit(QUERY, ["a"])
        self.assertIs(scheduler.get_status(task_id).status, TaskStatus.PENDING)
        scheduler.start()
        self.assertIs(scheduler.wait(task_id, timeout=5.0).status, TaskStatus.COMPLETED)

    def test_invalid_submissions_rejected_before_any_fetch(self):
        fetcher = FakeFetcher(site_pages("a", QUERY, ["x"]))
        scheduler = self._scheduler({"a": fetcher})
        with self.assertRaises(ConfigError):
            scheduler.submit(QUERY, ["a", "nope"])
        with self.assertRaises(ConfigError):
            scheduler.submit(QUERY, [])
        with self.assertRaises(ConfigError):
            scheduler.submit("   ", ["a"])
        self.assertEqual(fetcher.calls, [])
        self.assertEqual(scheduler.stats().queued + scheduler.stats().active, 0)


class TestLifecycleControl(SchedulerTestCase):
    """Verify pause, resume and cancel transitions."""

    def test_pause_resume_cancel(self):
        scheduler = self._scheduler({"a": self._gated("a")})
        task_id = scheduler.submit(QUERY, ["a"])

        self.assertFalse(scheduler.resume(task_id))
        self.assertTrue(scheduler.pause(task_id))
        self.assertIs(scheduler.get_status(task_id).status, TaskStatus.PAUSED)
        self.assertFalse(scheduler.pause(task_id))
        self.assertTrue(scheduler.resume(task_id))
        self.assertIs(scheduler.get_status(task_id).status, TaskStatus.RUNNING)

        self.assertTrue(scheduler.cancel(task_id))
        task = scheduler.get_status(task_id)
        self.assertIs(task.status, TaskStatus.FAILED)
        cancels = [e for e in task.errors if e.type is ErrorType.CANCELLED]
        self.assertEqual(len(cancels), 1)
        self.assertFalse(cancels[0].recoverable)
        self.assertProgressConsistent(task)
        self.assertFalse(scheduler.cancel(task_id))
        self.assertFalse(scheduler.pause(task_id))

    def test_cancel_paused_task(self):
        scheduler = self._scheduler({"a": self._gated("a")})
        task_id = scheduler.submit(QUERY, ["a"])
        scheduler.pause(task_id)
        self.assertTrue(scheduler.cancel(task_id))
        self.assertEqual(len(scheduler.get_status(task_id).errors), 1)

    def test_cancel_pending_task(self):
        scheduler = self._scheduler({"a": self._gated("a")}, max_concurrent_tasks=1)
        scheduler.submit(QUERY, ["a"])
        queued = scheduler.submit(QUERY, ["a"])
        self.assertFalse(scheduler.pause(queued))
        self.assertTrue(scheduler.cancel(queued))
        task = scheduler.get_status(queued)
        self.assertIs(task.status, TaskStatus.FAILED)
        self.assertEqual(len(task.errors), 1)
        self.assertProgressConsistent(task)
        self.assertEqual(scheduler.queued_tasks(), [])

    def test_cancel_frees_the_slot(self):
        scheduler = self._scheduler(
            {"slow": self._gated("slow"), "a": FakeFetcher(site_pages("a", QUERY, ["x"]))},
            max_concurrent_tasks=1,
        )
        blocker = scheduler.submit(QUERY, ["slow"])
        waiting = scheduler.submit(QUERY, ["a"])
        scheduler.cancel(blocker)
        self.assertIs(scheduler.wait(waiting, timeout=5.0).status, TaskStatus.COMPLETED)

    def test_unknown_task(self):
        scheduler = self._scheduler({"a": self._gated("a")})
        self.assertFalse(scheduler.pause("task_x"))
        self.assertFalse(scheduler.resume("task_x"))
        self.assertFalse(scheduler.cancel("task_x"))


class TestFailureAccounting(SchedulerTestCase):
    """Verify failed sites and timeouts are accounted for exactly once."""

    def test_failed_site_counts_once(self):
        """A site failing every fetch contributes one error and one failed increment."""
        failing = FakeFetcher(error=NetworkError("unreachable"))
        scheduler = self._scheduler({"a": failing, "b": FakeFetcher(site_pages("b", QUERY, ["B lamp"]))})
        task = scheduler.wait(scheduler.submit(QUERY, ["a", "b"], TaskOptions(retry_attempts=3)), timeout=5.0)
        self.assertEqual(len(failing.calls), 4)
        site_a_errors = [e for e in task.errors if e.site_id == "a"]
        self.assertEqual(len(site_a_errors), 1)
        self.assertIs(site_a_errors[0].type, ErrorType.NETWORK_ERROR)
        self.assertEqual(task.progress.failed, 1)
        self.assertEqual(task.progress.completed, 1)
        self.assertIs(task.status, TaskStatus.COMPLETED)

    def test_timeout_keeps_partial_results(self):
        """A slow site hits the deadline: task fails with a timeout error but keeps earlier results."""
        scheduler = self._scheduler({
            "a": FakeFetcher(site_pages("a", QUERY, ["A lamp"])),
            "b": FakeFetcher(site_pages("b", QUERY, ["B lamp"]), delay=2.0),
        })
        started = time.monotonic()
        task_id = scheduler.submit(QUERY, ["a", "b"], TaskOptions(timeout_ms=500))
        task = scheduler.wait(task_id, timeout=5.0)
        elapsed = time.monotonic() - started
        self.assertIs(task.status, TaskStatus.FAILED)
        self.assertGreaterEqual(elapsed, 0.45)
        self.assertLess(elapsed, 1.9)
        timeouts = [e for e in task.errors if e.type is ErrorType.TIMEOUT_ERROR]
        self.assertEqual(len(timeouts), 1)
        self.assertEqual(timeouts[0].site_id, "system")
        self.assertEqual([r["title"] for r in task.results], ["A lamp"])
        self.assertEqual(task.progress.completed, 1)
        self.assertProgressConsistent(task)

    def test_late_reports_are_ignored(self):
        scheduler = self._scheduler({"a": self._gated("a")})
        task_id = scheduler.submit(QUERY, ["a"])
        scheduler.cancel(task_id)
        self.gate.set()
        time.sleep(0.1)
        task = scheduler.get_status(task_id)
        self.assertEqual(task.results, [])
        self.assertEqual(task.progress.failed, 1)
        self.assertEqual(task.progress.completed, 0)


class TestStatsAndArchive(SchedulerTestCase):
    def test_average_counts_completed_tasks_only(self):
        scheduler = self._scheduler({
            "a": FakeFetcher(site_pages("a", QUERY, ["x"])),
            "slow": self._gated("slow"),
        })
        done = scheduler.wait(scheduler.submit(QUERY, ["a"]), timeout=5.0)
        cancelled = scheduler.submit(QUERY, ["slow"])
        time.sleep(0.05)
        scheduler.cancel(cancelled)
        stats = scheduler.stats()
        self.assertEqual(stats.archived, 2)
        self.assertEqual(stats.total_processed, 2)
        self.assertEqual(stats.average_completion_ms, float(done.duration_ms))

    def test_cleanup_archive(self):
        scheduler = self._scheduler({"a": FakeFetcher(site_pages("a", QUERY, ["x"]))})
        task_id = scheduler.submit(QUERY, ["a"])
        scheduler.wait(task_id, timeout=5.0)
        self.assertEqual(scheduler.cleanup_archive(), 0)
        time.sleep(0.01)
        self.assertEqual(scheduler.cleanup_archive(older_than_hours=0), 1)
        self.assertIsNone(scheduler.get_status(task_id))
        self.assertEqual(scheduler.stats().total_processed, 1)


if __name__ == "__main__":
    unittest.main()
