"""Tests for the generation circuit breaker."""

from __future__ import annotations

import pytest

from heybills.errors import GenerationFailed
from heybills.llm.breaker import BreakerState, CircuitBreaker


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_opens_after_threshold_and_reports_retry_after():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, reset_seconds=60, clock=clock)

    for _ in range(3):
        breaker.allow()
        breaker.record_failure()

    assert breaker.state is BreakerState.OPEN
    clock.now = 15
    with pytest.raises(GenerationFailed) as raised:
        breaker.allow()
    assert raised.value.retry_after == 45


def test_success_resets_failure_count():
    breaker = CircuitBreaker(failure_threshold=2)
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state is BreakerState.CLOSED


def test_half_open_allows_a_single_trial():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_seconds=10, clock=clock)
    breaker.record_failure()
    clock.now = 11

    breaker.allow()
    assert breaker.state is BreakerState.HALF_OPEN
    with pytest.raises(GenerationFailed):
        breaker.allow()

    breaker.record_success()
    assert breaker.state is BreakerState.CLOSED
    breaker.allow()


def test_failed_trial_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=5, reset_seconds=10, clock=clock)
    for _ in range(5):
        breaker.record_failure()
    clock.now = 20

    breaker.allow()
    breaker.record_failure()

    assert breaker.state is BreakerState.OPEN
    with pytest.raises(GenerationFailed):
        breaker.allow()
