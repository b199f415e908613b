from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional

import requests

from .config import ProxyPoolConfig, parse_proxy
from .errors import ConfigError
from .models import Proxy, ProxyCheckResult, ProxyStatus

logger = logging.getLogger(__name__)


class ProxyRotator:
    """Thread-safe pool of outbound proxies with health scoring.

    get_next() walks the pool round-robin and only returns proxies whose
    health score is above the configured threshold and whose cooldown has
    expired. Health is an exponential moving average of reported outcomes
    (100 for success, 0 for failure). A proxy that fails too often or drops
    to the threshold cools down, and returns with ``recovery_health`` once
    the cooldown ends."""

    def __init__(
        self,
        proxies: Iterable[Proxy] = (),
        config: Optional[ProxyPoolConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ProxyPoolConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._pool: Dict[str, ProxyStatus] = {}
        self._order: List[str] = []
        self._cursor = 0
        self._checker: Optional[threading.Thread] = None
        self._checker_stop: Optional[threading.Event] = None
        self.add_proxies(proxies)

    def add_proxy(self, proxy: Proxy) -> None:
        with self._lock:
            if proxy.key in self._pool:
                return
            self._pool[proxy.key] = ProxyStatus(proxy=proxy)
            self._order.append(proxy.key)
        logger.info("added proxy %s", proxy.key)

    def add_proxies(self, proxies: Iterable[Proxy]) -> None:
        for proxy in proxies:
            self.add_proxy(proxy)

    def remove_proxy(self, proxy: Proxy) -> bool:
        with self._lock:
            if self._pool.pop(proxy.key, None) is None:
                return False
            idx = self._order.index(proxy.key)
            self._order.pop(idx)
            if idx < self._cursor:
                self._cursor -= 1
            return True

    def import_proxies(self, lines: Iterable[str]) -> int:
        """Add proxies from text lines; unparsable lines are logged and skipped."""
        imported = 0
        for line in lines:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                proxy = parse_proxy(line)
            except ConfigError as exc:
                logger.warning("skipping proxy line %r: %s", line, exc)
                continue
            self.add_proxy(proxy)
            imported += 1
        return imported

    def export_proxies(self) -> List[str]:
        with self._lock:
            return [self._pool[k].proxy.url for k in self._order]

    def __len__(self) -> int:
        return len(self._pool)

    def get_next(self, exclude: Optional[Proxy] = None) -> Optional[Proxy]:
        """Return the next selectable proxy in round-robin order, or None.

        ``exclude`` is skipped when any other proxy is selectable."""
        with self._lock:
            now = self._clock()
            self._recover_locked(now)
            fallback: Optional[ProxyStatus] = None
            size = len(self._order)
            for step in range(size):
                idx = (self._cursor + step) % size
                status = self._pool[self._order[idx]]
                if not self._selectable(status, now):
                    continue
                if exclude is not None and status.proxy.key == exclude.key:
                    if fallback is None:
                        fallback = status
                    continue
                self._cursor = (idx + 1) % size
                status.last_used = now
                return status.proxy
            if fallback is not None:
                fallback.last_used = now
                return fallback.proxy
        if size:
            logger.warning("no healthy proxy available (pool=%d)", size)
        return None

    def is_selectable(self, proxy: Proxy) -> bool:
        with self._lock:
            now = self._clock()
            self._recover_locked(now)
            status = self._pool.get(proxy.key)
            return status is not None and self._selectable(status, now)

    def report_result(
        self,
        proxy: Proxy,
        success: bool,
        response_time: float = 0.0,
        error: Optional[str] = None,
    ) -> None:
        """Update counters and the EMA health score for one outcome."""
        with self._lock:
            status = self._pool.get(proxy.key)
            if status is None:
                return
            alpha = self._config.ema_alpha
            sample = 100.0 if success else 0.0
            status.health_score = alpha * sample + (1 - alpha) * status.health_score
            if success:
                status.success_count += 1
                status.consecutive_failures = 0
                if response_time:
                    ms = response_time * 1000.0
                    status.avg_response_ms = ms if not status.avg_response_ms else (
                        alpha * ms + (1 - alpha) * status.avg_response_ms
                    )
                return
            status.failure_count += 1
            status.consecutive_failures += 1
            status.last_error = error
            exhausted = status.consecutive_failures >= self._config.failure_threshold
            if exhausted or status.health_score <= self._config.health_threshold:
                self._cool_down_locked(status, error)

    def status(self, proxy: Proxy) -> Optional[ProxyStatus]:
        with self._lock:
            status = self._pool.get(proxy.key)
            return replace(status) if status is not None else None

    def reset_proxy(self, proxy: Proxy) -> None:
        with self._lock:
            if proxy.key in self._pool:
                self._pool[proxy.key] = ProxyStatus(proxy=proxy)

    def cleanup_inactive(self, min_health: float = 10.0) -> int:
        """Drop proxies that are cooling down with health below ``min_health``."""
        with self._lock:
            now = self._clock()
            self._recover_locked(now)
            dead = [
                s.proxy for s in self._pool.values()
                if s.health_score < min_health and s.cooldown_until > now
            ]
        for proxy in dead:
            self.remove_proxy(proxy)
        if dead:
            logger.info("removed %d inactive proxies", len(dead))
        return len(dead)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            now = self._clock()
            self._recover_locked(now)
            statuses = list(self._pool.values())
            active = [s for s in statuses if self._selectable(s, now)]
            return {
                "total": len(statuses),
                "active": len(active),
                "inactive": len(statuses) - len(active),
                "avg_health_score": round(sum(s.health_score for s in statuses) / len(statuses), 1) if statuses else 0.0,
                "avg_response_ms": round(sum(s.avg_response_ms for s in active) / len(active), 1) if active else 0.0,
            }

    def check_health(self, tester: Optional[Callable[[Proxy], ProxyCheckResult]] = None) -> int:
        """Test every proxy once and adjust its health; return how many are usable.

        A passing check adds 5 to the score, ends any cooldown and lifts the
        score to at least ``recovery_health``. A failing check takes 15 off and
        cools the proxy down once the score reaches the threshold."""
        tester = tester or self._check
        with self._lock:
            proxies = [self._pool[k].proxy for k in self._order]
        for proxy in proxies:
            result = tester(proxy)
            with self._lock:
                status = self._pool.get(proxy.key)
                if status is None:
                    continue
                if result.success:
                    raised = min(100.0, status.health_score + 5.0)
                    status.health_score = max(raised, self._config.recovery_health)
                    status.cooldown_until = 0.0
                    status.consecutive_failures = 0
                    if result.response_ms:
                        status.avg_response_ms = result.response_ms
                    continue
                status.health_score = max(0.0, status.health_score - 15.0)
                status.last_error = result.error
                cooling = status.cooldown_until > self._clock()
                if not cooling and status.health_score <= self._config.health_threshold:
                    self._cool_down_locked(status, result.error)
        with self._lock:
            now = self._clock()
            usable = sum(1 for s in self._pool.values() if self._selectable(s, now))
        logger.info("proxy health check: %d/%d usable", usable, len(proxies))
        return usable

    def start_health_checks(
        self,
        interval: Optional[float] = None,
        tester: Optional[Callable[[Proxy], ProxyCheckResult]] = None,
    ) -> None:
        """Run check_health() every ``interval`` seconds on a daemon thread."""
        period = interval or self._config.check_interval
        with self._lock:
            if self._checker is not None:
                return
            stop = threading.Event()
            self._checker_stop = stop

            def _loop() -> None:
                while not stop.wait(period):
                    try:
                        self.check_health(tester)
                    except Exception:  # noqa: BLE001
                        logger.exception("proxy health check failed")

            self._checker = threading.Thread(target=_loop, name="proxy-health", daemon=True)
            self._checker.start()

    def stop_health_checks(self, timeout: float = 5.0) -> None:
        with self._lock:
            checker, stop = self._checker, self._checker_stop
            self._checker = self._checker_stop = None
        if checker is None or stop is None:
            return
        stop.set()
        checker.join(timeout)

    def _check(self, proxy: Proxy) -> ProxyCheckResult:
        return check_proxy(proxy, self._config.check_url, self._config.check_timeout)

    def _cool_down_locked(self, status: ProxyStatus, error: Optional[str]) -> None:
        status.cooldown_until = self._clock() + self._config.cooldown
        status.consecutive_failures = 0
        logger.warning(
            "proxy %s cooling down for %.0fs (health=%.1f, last_error=%s)",
            status.proxy.key, self._config.cooldown, status.health_score, error,
        )

    def _recover_locked(self, now: float) -> None:
        # an expired cooldown returns the proxy to rotation with a usable score
        for status in self._pool.values():
            if status.cooldown_until and status.cooldown_until <= now:
                status.cooldown_until = 0.0
                status.consecutive_failures = 0
                status.health_score = max(status.health_score, self._config.recovery_health)
                logger.info("proxy %s back in rotation (health=%.1f)", status.proxy.key, status.health_score)

    def _selectable(self, status: ProxyStatus, now: float) -> bool:
        return status.health_score > self._config.health_threshold and status.cooldown_until <= now


def check_proxy(proxy: Proxy, url: str = "http://httpbin.org/ip", timeout: float = 10.0) -> ProxyCheckResult:
    """Fetch ``url`` through ``proxy`` and report whether it answered."""
    start = time.monotonic()
    try:
        response = requests.get(url, proxies={"http": proxy.url, "https": proxy.url}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        return ProxyCheckResult(False, error=str(exc))
    elapsed_ms = (time.monotonic() - start) * 1000.0
    try:
        body = response.json()
    except ValueError:
        body = None
    ip = body.get("origin") if isinstance(body, dict) else None
    return ProxyCheckResult(True, response_ms=elapsed_ms, ip=ip)
