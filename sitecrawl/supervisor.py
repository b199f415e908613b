from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from .cancellation import CancellationToken
from .config import SiteConfig, SupervisorConfig
from .metrics import MetricsCollector
from .models import Proxy, RequestOutcome, RequestProfile
from .proxy import ProxyRotator
from .rate_limiter import RateLimiter
from .strategies import (
    NO_ACTION,
    EscalationDecision,
    EscalationOutcome,
    EscalationStrategy,
    Signal,
    SignalDetector,
    SiteDefenseState,
    default_ladder,
)

logger = logging.getLogger(__name__)


class AntiDetectionSupervisor:
    """Per-site gatekeeper for outbound requests.

    prepare() is called before every network call: it holds the caller
    through any site cooldown and until the rate limiter grants a slot, then
    returns the headers, proxy and inter-request delay to use.
    record_outcome() is called after every call: it feeds the rate limiter,
    the proxy pool and the metrics, and runs the escalation ladder, applying
    the first strategy that matches."""

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        proxies: Optional[ProxyRotator] = None,
        config: Optional[SupervisorConfig] = None,
        strategies: Optional[Iterable[EscalationStrategy]] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or SupervisorConfig()
        self._rate_limiter = rate_limiter or RateLimiter()
        self._proxies = proxies if proxies is not None else ProxyRotator()
        self._detector = SignalDetector(self._config.signatures)
        self._strategies = list(strategies) if strategies is not None else default_ladder(self._config)
        self._metrics = metrics or MetricsCollector()
        self._clock = clock
        self._lock = threading.Lock()
        self._sites: Dict[str, SiteDefenseState] = {}
        self._site_headers: Dict[str, Mapping[str, str]] = {}
        self._ua_index = 0

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def proxies(self) -> ProxyRotator:
        return self._proxies

    def register_site(self, site: SiteConfig) -> None:
        """Install the site's rate limits and extra headers."""
        self._rate_limiter.set_site_config(site.site_id, site.rate_limit)
        with self._lock:
            self._site_headers[site.site_id] = dict(site.headers)

    def prepare(self, site_id: str, token: Optional[CancellationToken] = None) -> RequestProfile:
        """Suspend until a request to ``site_id`` may go out and describe how to send it."""
        if token is not None:
            token.checkpoint()
        while True:
            remaining = self.cooldown_remaining(site_id)
            if remaining <= 0:
                break
            logger.info("site %s cooling down for %.1fs", site_id, remaining)
            if token is not None:
                token.sleep(remaining)
            else:
                time.sleep(remaining)
        self._rate_limiter.wait_for_slot(site_id, token)
        proxy = self._choose_proxy(site_id)
        return RequestProfile(
            headers=self._headers(site_id),
            proxy=proxy,
            delay=self._rate_limiter.current_delay(site_id),
            retry_after=self._rate_limiter.pending_retry_after(site_id),
        )

    def detect(self, status_code: Optional[int], content: Optional[str]) -> Signal:
        return self._detector.detect(status_code, content)

    def record_outcome(
        self,
        site_id: str,
        success: bool,
        response_time: float = 0.0,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        signal: Signal = Signal.NONE,
        error: Optional[str] = None,
    ) -> EscalationDecision:
        """Feed one request outcome and return the ladder's decision for it."""
        self._rate_limiter.record(site_id, success, response_time, status_code, retry_after)
        self._metrics.record(
            RequestOutcome(
                site_id=site_id,
                success=success,
                response_ms=int(response_time * 1000),
                status_code=status_code,
                signal=None if signal is Signal.NONE else signal.value,
            )
        )

        with self._lock:
            state = self._state(site_id)
            proxy = state.proxy
            if success:
                state.consecutive_failures = 0
                state.consecutive_blocks = 0
            else:
                state.consecutive_failures += 1
            failures = state.consecutive_failures
            outcome = EscalationOutcome(site_id=site_id, success=success, signal=signal, status_code=status_code)
            decision = NO_ACTION
            for strat in self._strategies:
                if strat.should_apply(outcome, state):
                    decision = strat.apply(outcome, state)
                    break
            if decision.cooldown > 0:
                state.cooldown_until = max(state.cooldown_until, self._clock() + decision.cooldown)
            if decision.switch_proxy:
                state.switch_requested = True

        if proxy is not None:
            reason = None if success else (error or f"HTTP {status_code or 'unknown'}")
            self._proxies.report_result(proxy, success, response_time, reason)

        if decision.strategy is not None:
            log = {
                "timestamp": time.time(),
                "site_id": site_id,
                "strategy": decision.strategy,
                "signal": decision.signal.value,
                "cooldown": decision.cooldown,
                "switch_proxy": decision.switch_proxy,
                "retry": decision.retry,
                "reason": {
                    "status_code": status_code,
                    "consecutive_failures": failures,
                    "proxy": proxy.key if proxy else None,
                },
            }
            logger.warning(json.dumps(log, ensure_ascii=False))
        return decision

    def cooldown_remaining(self, site_id: str) -> float:
        with self._lock:
            state = self._sites.get(site_id)
            if state is None:
                return 0.0
            return max(0.0, state.cooldown_until - self._clock())

    def current_proxy(self, site_id: str) -> Optional[Proxy]:
        with self._lock:
            state = self._sites.get(site_id)
            return state.proxy if state else None

    def set_proxy(self, site_id: str, proxy: Optional[Proxy]) -> None:
        with self._lock:
            state = self._state(site_id)
            state.proxy = proxy
            state.switch_requested = False
            state.last_switch = self._clock()

    def site_state(self, site_id: str) -> SiteDefenseState:
        with self._lock:
            return replace(self._state(site_id))

    def reset_site(self, site_id: str) -> None:
        with self._lock:
            self._sites.pop(site_id, None)
        self._rate_limiter.reset_site(site_id)
        logger.info("reset anti-detection state for %s", site_id)

    def stats(self, window_secs: int = 300) -> Dict[str, Any]:
        with self._lock:
            sites = {
                site_id: {
                    "consecutive_failures": s.consecutive_failures,
                    "cooldown_remaining": max(0.0, s.cooldown_until - self._clock()),
                    "proxy": s.proxy.key if s.proxy else None,
                }
                for site_id, s in self._sites.items()
            }
        return {
            "sites": sites,
            "proxies": self._proxies.stats(),
            "rate_limit": self._rate_limiter.global_stats(),
            "metrics": asdict(self._metrics.snapshot(window_secs)),
        }

    def _state(self, site_id: str) -> SiteDefenseState:
        state = self._sites.get(site_id)
        if state is None:
            state = SiteDefenseState()
            self._sites[site_id] = state
        return state

    def _choose_proxy(self, site_id: str) -> Optional[Proxy]:
        with self._lock:
            state = self._state(site_id)
            now = self._clock()
            current = state.proxy
            stale = current is not None and now - state.last_switch > self._config.proxy_rotation_interval
            unhealthy = current is not None and not self._proxies.is_selectable(current)
            if current is not None and not (state.switch_requested or stale or unhealthy):
                return current
            chosen = self._proxies.get_next(exclude=current)
            if chosen is not None and (current is None or chosen.key != current.key):
                logger.info(
                    "site %s switching proxy %s -> %s",
                    site_id, current.key if current else None, chosen.key,
                )
            state.proxy = chosen
            state.switch_requested = False
            state.last_switch = now
            return chosen

    def _headers(self, site_id: str) -> Dict[str, str]:
        with self._lock:
            agents = self._config.user_agents
            ua = agents[self._ua_index % len(agents)]
            self._ua_index += 1
            headers = dict(self._config.default_headers)
            headers["User-Agent"] = ua
            headers.update(self._site_headers.get(site_id, {}))
        return headers
