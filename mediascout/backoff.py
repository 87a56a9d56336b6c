from __future__ import annotations

import random


class BackoffStrategy:
    """Exponential backoff with optional jitter for retry delays.

    Computes the delay as base * 2^(attempt-1), capped at a configurable
    maximum, plus up to `jitter` (a fraction of the delay) of random noise.
    Job retries use it without jitter so delays stay predictable; reconnect
    loops add jitter so several workers do not retry in lockstep."""

    def __init__(self, base_seconds: float = 2.0, max_seconds: float = 60.0, jitter: float = 0.0) -> None:
        self._base = base_seconds
        self._max = max_seconds
        self._jitter = jitter

    def get_sleep(self, attempt: int) -> float:
        """Calculate the delay in seconds before retry number `attempt` (1-based)."""
        exp = min(self._max, self._base * (2 ** max(attempt - 1, 0)))
        if self._jitter <= 0:
            return exp
        return exp + random.uniform(0, exp * self._jitter)
