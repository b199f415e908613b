from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, Optional

from .cancellation import CancellationToken
from .config import RateLimitConfig
from .models import RateLimitState

logger = logging.getLogger(__name__)

_MINUTE = 60.0
_HOUR = 3600.0


class RateLimiter:
    """Thread-safe per-site token-bucket rate limiter with adaptive delay.

    Each site gets a bucket of ``burst_size`` tokens refilled at
    ``requests_per_second``, plus sliding minute and hour windows. Calling
    wait_for_slot() suspends the current thread until the bucket grants a
    token. The adaptive delay grows on failures and decays toward the
    site's baseline after sustained success; it is handed to callers through
    current_delay() rather than slept here."""

    def __init__(
        self,
        default_config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default = default_config or RateLimitConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._configs: Dict[str, RateLimitConfig] = {}
        self._states: Dict[str, RateLimitState] = {}
        self._minute: Dict[str, Deque[float]] = {}
        self._hour: Dict[str, Deque[float]] = {}
        self._totals: Dict[str, list] = {}

    def set_site_config(self, site_id: str, config: RateLimitConfig) -> None:
        with self._lock:
            self._configs[site_id] = config
            self._states.pop(site_id, None)
        logger.debug("rate limit for %s set to %s", site_id, config)

    def config_for(self, site_id: str) -> RateLimitConfig:
        return self._configs.get(site_id, self._default)

    def wait_for_slot(self, site_id: str, token: Optional[CancellationToken] = None) -> float:
        """Block until a request to ``site_id`` is permitted; return seconds waited."""
        waited = 0.0
        while True:
            if token is not None:
                token.checkpoint()
            wait = self.try_acquire(site_id)
            if wait <= 0:
                return waited
            logger.debug("waiting %.3fs for a %s slot", wait, site_id)
            if token is not None:
                token.sleep(wait)
            else:
                time.sleep(wait)
            waited += wait

    def try_acquire(self, site_id: str) -> float:
        """Take a token if one is available; otherwise return seconds until one is."""
        with self._lock:
            config = self.config_for(site_id)
            state = self._state(site_id, config)
            now = self._clock()
            self._refill(state, config, now)

            minute = self._window(self._minute, site_id, now, _MINUTE)
            hour = self._window(self._hour, site_id, now, _HOUR)

            wait = 0.0
            if state.tokens < 1.0:
                wait = max(wait, (1.0 - state.tokens) / config.requests_per_second)
            if len(minute) >= config.requests_per_minute:
                wait = max(wait, minute[0] + _MINUTE - now)
            if len(hour) >= config.requests_per_hour:
                wait = max(wait, hour[0] + _HOUR - now)
            if wait > 0:
                return wait

            state.tokens -= 1.0
            state.last_request = now
            minute.append(now)
            hour.append(now)
            return 0.0

    def record(
        self,
        site_id: str,
        success: bool,
        response_time: float = 0.0,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ) -> float:
        """Feed one request outcome into the adaptive delay; return the new delay."""
        with self._lock:
            config = self.config_for(site_id)
            state = self._state(site_id, config)
            totals = self._totals.setdefault(site_id, [0, 0, 0.0])
            totals[0] += 1
            totals[1] += 1 if success else 0
            totals[2] += response_time

            if success:
                state.consecutive_failures = 0
                state.consecutive_successes += 1
                if config.adaptive_delay and state.consecutive_successes >= config.decay_after:
                    state.current_delay = self._decay(state.current_delay, config)
                    state.consecutive_successes = 0
            else:
                state.consecutive_successes = 0
                state.consecutive_failures += 1
                if config.adaptive_delay:
                    grown = state.current_delay * config.growth_factor if state.current_delay > 0 else config.failure_floor
                    if status_code == 429:
                        grown = max(grown, config.failure_floor * config.growth_factor)
                    state.current_delay = max(config.base_delay, min(config.max_delay, grown))

            if retry_after and config.respect_retry_after:
                # server-supplied floor; may exceed max_delay
                state.current_delay = max(state.current_delay, float(retry_after))
                state.retry_after_until = max(state.retry_after_until, self._clock() + float(retry_after))
                logger.info("server asked %s to wait %.1fs", site_id, retry_after)
            return state.current_delay

    def current_delay(self, site_id: str) -> float:
        with self._lock:
            config = self.config_for(site_id)
            state = self._state(site_id, config)
            pending = max(0.0, state.retry_after_until - self._clock())
            return max(state.current_delay, pending)

    def pending_retry_after(self, site_id: str) -> float:
        """Seconds left on the last server-requested Retry-After for the site."""
        with self._lock:
            state = self._states.get(site_id)
            if state is None:
                return 0.0
            return max(0.0, state.retry_after_until - self._clock())

    def get_state(self, site_id: str) -> RateLimitState:
        """Return a copy of the site's limiter state."""
        with self._lock:
            config = self.config_for(site_id)
            state = self._state(site_id, config)
            self._refill(state, config, self._clock())
            return replace(state)

    def reset_site(self, site_id: str) -> None:
        with self._lock:
            self._states.pop(site_id, None)
            self._minute.pop(site_id, None)
            self._hour.pop(site_id, None)
            self._totals.pop(site_id, None)

    def site_stats(self, site_id: str) -> Dict[str, float]:
        with self._lock:
            now = self._clock()
            config = self.config_for(site_id)
            state = self._state(site_id, config)
            total, ok, elapsed = self._totals.get(site_id, [0, 0, 0.0])
            return {
                "tokens": state.tokens,
                "current_delay": state.current_delay,
                "consecutive_failures": state.consecutive_failures,
                "requests_last_minute": len(self._window(self._minute, site_id, now, _MINUTE)),
                "requests_last_hour": len(self._window(self._hour, site_id, now, _HOUR)),
                "total_requests": total,
                "success_rate": (ok / total) if total else 1.0,
                "avg_response_time": (elapsed / total) if total else 0.0,
            }

    def global_stats(self) -> Dict[str, float]:
        with self._lock:
            total = sum(t[0] for t in self._totals.values())
            ok = sum(t[1] for t in self._totals.values())
            elapsed = sum(t[2] for t in self._totals.values())
            return {
                "total_requests": total,
                "successful_requests": ok,
                "failed_requests": total - ok,
                "avg_response_time": (elapsed / total) if total else 0.0,
                "success_rate": round(ok / total, 2) if total else 1.0,
                "active_sites": len(self._states),
            }

    def _state(self, site_id: str, config: RateLimitConfig) -> RateLimitState:
        state = self._states.get(site_id)
        if state is None:
            state = RateLimitState(
                tokens=float(config.burst_size),
                window_start=self._clock(),
                current_delay=config.base_delay,
            )
            self._states[site_id] = state
        return state

    @staticmethod
    def _refill(state: RateLimitState, config: RateLimitConfig, now: float) -> None:
        elapsed = now - state.window_start
        if elapsed > 0:
            state.tokens = min(float(config.burst_size), state.tokens + elapsed * config.requests_per_second)
            state.window_start = now

    @staticmethod
    def _window(windows: Dict[str, Deque[float]], site_id: str, now: float, span: float) -> Deque[float]:
        window = windows.setdefault(site_id, deque())
        while window and window[0] <= now - span:
            window.popleft()
        return window

    @staticmethod
    def _decay(delay: float, config: RateLimitConfig) -> float:
        decayed = config.base_delay + (delay - config.base_delay) * config.decay_factor
        if decayed - config.base_delay < 0.01:
            return config.base_delay
        return decayed
