import pytest

from payment_service.circuit_breaker import BreakerState, CircuitBreaker
from payment_service.exceptions import CircuitOpenError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("order-service", failure_threshold=3, window=60, reset_timeout=30, clock=clock)


def test_opens_after_threshold(breaker):
    for _ in range(3):
        breaker.before_call()
        breaker.record_failure()

    assert breaker.state is BreakerState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_failures_outside_window_do_not_accumulate(breaker, clock):
    breaker.record_failure()
    breaker.record_failure()
    clock.now = 61
    breaker.record_failure()

    assert breaker.state is BreakerState.CLOSED
    assert breaker.failures == 1


def test_success_resets_failure_count(breaker):
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state is BreakerState.CLOSED
    assert breaker.failures == 1


def test_half_open_allows_a_single_probe(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 30

    assert breaker.state is BreakerState.HALF_OPEN
    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_successful_probe_closes(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 31
    breaker.before_call()
    breaker.record_success()

    assert breaker.state is BreakerState.CLOSED
    breaker.before_call()


def test_failed_probe_reopens(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 31
    breaker.before_call()
    breaker.record_failure()

    assert breaker.state is BreakerState.OPEN
    clock.now = 50
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_abandoned_half_open_call_lets_the_next_call_through(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 31
    breaker.before_call()
    breaker.release_probe()

    assert breaker.state is BreakerState.HALF_OPEN
    breaker.before_call()
    with pytest.raises(CircuitOpenError):
        breaker.before_call()
