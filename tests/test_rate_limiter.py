"""Tests for the RateLimiter class."""

import time
import unittest

from sitecrawl.cancellation import CancellationToken
from sitecrawl.config import RateLimitConfig
from sitecrawl.errors import TaskAborted
from sitecrawl.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestTokenBucket(unittest.TestCase):
    """Verify per-site token bucket throttling."""

    def setUp(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(RateLimitConfig(requests_per_second=1.0, burst_size=3), clock=self.clock)

    def test_burst_then_wait(self):
        """burst_size requests pass at once; the next one must wait for a refill."""
        for _ in range(3):
            self.assertEqual(self.limiter.try_acquire("a"), 0.0)
        self.assertAlmostEqual(self.limiter.try_acquire("a"), 1.0)
        self.clock.advance(1.0)
        self.assertEqual(self.limiter.try_acquire("a"), 0.0)

    def test_sites_are_independent(self):
        for _ in range(3):
            self.limiter.try_acquire("a")
        self.assertEqual(self.limiter.try_acquire("b"), 0.0)

    def test_minute_window(self):
        limiter = RateLimiter(
            RateLimitConfig(requests_per_second=100.0, requests_per_minute=2, burst_size=10), clock=self.clock
        )
        limiter.try_acquire("a")
        self.clock.advance(1.0)
        limiter.try_acquire("a")
        self.assertAlmostEqual(limiter.try_acquire("a"), 59.0)

    def test_wait_for_slot_suspends(self):
        """The (burst_size + 1)th call blocks until a token is replenished."""
        limiter = RateLimiter(RateLimitConfig(requests_per_second=10.0, burst_size=2))
        limiter.wait_for_slot("a")
        limiter.wait_for_slot("a")
        start = time.monotonic()
        waited = limiter.wait_for_slot("a")
        elapsed = time.monotonic() - start
        self.assertGreater(waited, 0.0)
        self.assertGreaterEqual(elapsed, 0.08)

    def test_wait_for_slot_honours_cancellation(self):
        token = CancellationToken()
        token.cancel()
        with self.assertRaises(TaskAborted):
            self.limiter.wait_for_slot("a", token)


class TestAdaptiveDelay(unittest.TestCase):
    """Verify delay growth on failure, decay on success and Retry-After floors."""

    def setUp(self):
        self.clock = FakeClock()
        self.config = RateLimitConfig(max_delay=4.0, decay_after=5)
        self.limiter = RateLimiter(self.config, clock=self.clock)

    def test_growth_from_zero_baseline(self):
        self.assertEqual(self.limiter.record("a", False), 1.0)
        self.assertEqual(self.limiter.record("a", False), 1.5)
        self.assertEqual(self.limiter.record("a", False), 2.25)

    def test_growth_is_capped(self):
        for _ in range(20):
            delay = self.limiter.record("a", False)
        self.assertEqual(delay, 4.0)

    def test_decay_after_consecutive_successes(self):
        self.limiter.record("a", False)
        self.limiter.record("a", False)
        for _ in range(4):
            self.assertEqual(self.limiter.record("a", True), 1.5)
        self.assertEqual(self.limiter.record("a", True), 0.75)

    def test_retry_after_is_a_floor(self):
        """A server Retry-After can raise the delay above max_delay but never lower it."""
        self.assertEqual(self.limiter.record("a", False, status_code=429, retry_after=10.0), 10.0)
        self.assertEqual(self.limiter.current_delay("a"), 10.0)
        self.limiter.record("a", False, retry_after=0.5)
        self.assertGreaterEqual(self.limiter.current_delay("a"), 10.0)

    def test_pending_retry_after_runs_down(self):
        self.assertEqual(self.limiter.pending_retry_after("a"), 0.0)
        self.limiter.record("a", False, status_code=503, retry_after=3.0)
        self.assertEqual(self.limiter.pending_retry_after("a"), 3.0)
        self.clock.advance(2.0)
        self.assertEqual(self.limiter.pending_retry_after("a"), 1.0)
        self.clock.advance(5.0)
        self.assertEqual(self.limiter.pending_retry_after("a"), 0.0)

    def test_disabled_adaptive_delay(self):
        limiter = RateLimiter(RateLimitConfig(adaptive_delay=False), clock=self.clock)
        limiter.record("a", False)
        self.assertEqual(limiter.current_delay("a"), 0.0)

    def test_state_copy_and_reset(self):
        self.limiter.record("a", False)
        state = self.limiter.get_state("a")
        state.current_delay = 99.0
        self.assertEqual(self.limiter.current_delay("a"), 1.0)
        self.limiter.reset_site("a")
        self.assertEqual(self.limiter.current_delay("a"), 0.0)

    def test_stats(self):
        self.limiter.record("a", True, response_time=0.2)
        self.limiter.record("a", False, response_time=0.4)
        stats = self.limiter.global_stats()
        self.assertEqual(stats["total_requests"], 2)
        self.assertEqual(stats["failed_requests"], 1)
        self.assertAlmostEqual(self.limiter.site_stats("a")["avg_response_time"], 0.3)


if __name__ == "__main__":
    unittest.main()
