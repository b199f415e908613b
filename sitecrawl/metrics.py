from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict
from threading import Lock
from typing import Deque, Dict, List, Optional

from .models import MetricsSnapshot, RequestOutcome


class MetricsCollector:
    """Thread-safe collector for per-request crawl outcomes.

    Records RequestOutcome events and produces aggregated MetricsSnapshot
    objects over sliding time windows, optionally narrowed to one site."""

    def __init__(self, maxlen: int = 10000) -> None:
        self._lock = Lock()
        self._events: Deque[tuple[float, RequestOutcome]] = deque(maxlen=maxlen)

    def record(self, outcome: RequestOutcome) -> None:
        """Record an outcome with the current timestamp."""
        with self._lock:
            self._events.append((time.time(), outcome))

    def snapshot(self, window_secs: int, site_id: Optional[str] = None) -> MetricsSnapshot:
        """Return aggregated metrics for events within the last window_secs seconds."""
        now = time.time()
        cutoff = now - window_secs
        with self._lock:
            events: List[RequestOutcome] = [
                e for ts, e in self._events
                if ts >= cutoff and (site_id is None or e.site_id == site_id)
            ]
        total = len(events)
        return MetricsSnapshot(
            window_secs=window_secs,
            total_requests=total,
            success_count=sum(1 for e in events if e.success),
            http_429_count=sum(1 for e in events if e.status_code == 429),
            http_403_count=sum(1 for e in events if e.status_code == 403),
            captcha_count=sum(1 for e in events if e.signal == "captcha"),
            ip_ban_count=sum(1 for e in events if e.signal == "ip_ban"),
            block_count=sum(1 for e in events if e.signal in ("blocked", "rate_limited")),
            avg_latency_ms=(sum(e.response_ms for e in events) / total) if total else 0.0,
            timestamp=now,
        )

    def export_json(self) -> List[Dict]:
        """Export all recorded events as a list of dictionaries."""
        with self._lock:
            return [{"timestamp": ts, **asdict(e)} for ts, e in self._events]
