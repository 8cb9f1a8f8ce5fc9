from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator


@dataclass
class Stopwatch:
    started: float
    elapsed_s: float = 0.0

    def stop(self) -> float:
        self.elapsed_s = time.perf_counter() - self.started
        return self.elapsed_s


@contextmanager
def log_timing(logger: logging.Logger, label: str, level: int = logging.INFO) -> Iterator[Stopwatch]:
    """Log how long the block took, even when it raises; the stopwatch holds the result."""
    watch = Stopwatch(time.perf_counter())
    try:
        yield watch
    finally:
        logger.log(level, "%s finished in %.2fs", label, watch.stop())
