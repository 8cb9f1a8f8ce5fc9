from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from plan_executor.gitops import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


def test_burst_then_wait() -> None:
    clock = FakeClock()
    bucket = TokenBucket(capacity=3, refill_per_minute=60, clock=clock, sleep=clock.sleep)
    assert [bucket.acquire() for _ in range(3)] == [0.0, 0.0, 0.0]
    assert not bucket.try_acquire()

    waited = bucket.acquire()
    assert waited == pytest.approx(1.0)
    assert clock.now == pytest.approx(1.0)
    assert bucket.total_waited_s == pytest.approx(1.0)


def test_refill_is_capped_at_capacity() -> None:
    clock = FakeClock()
    bucket = TokenBucket(capacity=2, refill_per_minute=120, clock=clock, sleep=clock.sleep)
    bucket.acquire()
    bucket.acquire()
    clock.now = 600.0
    assert bucket.try_acquire()
    assert bucket.try_acquire()
    assert not bucket.try_acquire()


def test_invalid_configuration() -> None:
    with pytest.raises(ValueError):
        TokenBucket(capacity=0)
    with pytest.raises(ValueError):
        TokenBucket(refill_per_minute=0)
