from __future__ import annotations

import logging
import time
from typing import Callable

LOGGER = logging.getLogger(__name__)


class TokenBucket:
    """Token bucket guarding git mutations. An empty bucket waits, it never fails."""

    def __init__(
        self,
        capacity: int = 10,
        refill_per_minute: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if capacity < 1 or refill_per_minute <= 0:
            raise ValueError("capacity and refill rate must be positive")
        self.capacity = capacity
        self.refill_per_second = refill_per_minute / 60.0
        self.clock = clock
        self.sleep = sleep
        self.tokens = float(capacity)
        self._last = clock()
        self.total_waited_s = 0.0

    def _refill(self) -> None:
        now = self.clock()
        elapsed = max(0.0, now - self._last)
        self._last = now
        self.tokens = min(float(self.capacity), self.tokens + elapsed * self.refill_per_second)

    def try_acquire(self) -> bool:
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False

    def acquire(self) -> float:
        """Take one token, sleeping until one is available; returns seconds waited."""
        waited = 0.0
        while not self.try_acquire():
            delay = (1.0 - self.tokens) / self.refill_per_second
            if not waited:
                LOGGER.info("Git rate limit reached, waiting %.2fs", delay)
            self.sleep(delay)
            waited += delay
        self.total_waited_s += waited
        return waited
