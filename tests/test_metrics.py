"""Tests for the MetricsCollector class."""

import unittest

from sitecrawl.metrics import MetricsCollector
from sitecrawl.models import RequestOutcome


def _outcome(site_id="a", success=True, status_code=200, response_ms=100, signal=None) -> RequestOutcome:
    return RequestOutcome(
        site_id=site_id, success=success, response_ms=response_ms, status_code=status_code, signal=signal
    )


class TestMetricsCollector(unittest.TestCase):
    """Verify that outcomes are aggregated correctly in snapshots."""

    def setUp(self):
        self.metrics = MetricsCollector()

    def test_empty_snapshot(self):
        snap = self.metrics.snapshot(window_secs=60)
        self.assertEqual(snap.total_requests, 0)
        self.assertEqual(snap.avg_latency_ms, 0.0)

    def test_counts(self):
        self.metrics.record(_outcome(response_ms=100))
        self.metrics.record(_outcome(success=False, status_code=429, response_ms=300, signal="rate_limited"))
        self.metrics.record(_outcome(success=False, status_code=403, signal="blocked"))
        self.metrics.record(_outcome(success=False, status_code=200, signal="captcha"))
        self.metrics.record(_outcome(success=False, status_code=403, signal="ip_ban"))
        snap = self.metrics.snapshot(window_secs=60)
        self.assertEqual(snap.total_requests, 5)
        self.assertEqual(snap.success_count, 1)
        self.assertEqual(snap.http_429_count, 1)
        self.assertEqual(snap.http_403_count, 2)
        self.assertEqual(snap.captcha_count, 1)
        self.assertEqual(snap.ip_ban_count, 1)
        self.assertEqual(snap.block_count, 2)

    def test_site_filter(self):
        self.metrics.record(_outcome(site_id="a", response_ms=100))
        self.metrics.record(_outcome(site_id="b", response_ms=300))
        snap = self.metrics.snapshot(window_secs=60, site_id="b")
        self.assertEqual(snap.total_requests, 1)
        self.assertEqual(snap.avg_latency_ms, 300.0)

    def test_export_json(self):
        self.metrics.record(_outcome(site_id="a"))
        exported = self.metrics.export_json()
        self.assertEqual(len(exported), 1)
        self.assertEqual(exported[0]["site_id"], "a")
        self.assertIn("timestamp", exported[0])


if __name__ == "__main__":
    unittest.main()
