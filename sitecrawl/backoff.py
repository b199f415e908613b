from __future__ import annotations

import random


class BackoffStrategy:
    """Exponential backoff for retry delays.

    Computes sleep duration as base * 2^attempt, capped at a configurable
    maximum, with optional proportional jitter added on top of the cap."""

    def __init__(self, base_seconds: float = 1.0, max_seconds: float = 30.0, jitter: float = 0.0) -> None:
        if base_seconds < 0 or max_seconds < 0:
            raise ValueError("backoff durations must be non-negative")
        self._base = base_seconds
        self._max = max_seconds
        self._jitter = jitter

    def get_sleep(self, attempt: int) -> float:
        """Backoff in seconds after ``attempt`` retries have already been made."""
        exp = min(self._max, self._base * (2 ** max(attempt, 0)))
        if self._jitter <= 0:
            return exp
        return exp + random.uniform(0, exp * self._jitter)

    @property
    def max_seconds(self) -> float:
        return self._max
