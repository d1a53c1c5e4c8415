import pytest

from src.shared.batch.circuit_breaker import CircuitBreaker
from src.shared.batch.errors import CircuitOpenError


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        breaker.before_request()
        breaker.on_result(False)


def test_opens_after_threshold_consecutive_failures(clock):
    breaker = CircuitBreaker(failure_threshold=3, cool_down_seconds=60, clock=clock)

    _fail(breaker, 2)
    assert breaker.status == "closed"

    _fail(breaker, 1)
    state = breaker.state()
    assert state.is_open is True
    assert state.consecutive_failures == 3
    assert state.next_retry_at == 60
    assert breaker.times_opened == 1

    with pytest.raises(CircuitOpenError) as excinfo:
        breaker.before_request()
    assert excinfo.value.retry_in == 60
    assert "Circuit open" in str(excinfo.value)


def test_success_resets_failure_count(clock):
    breaker = CircuitBreaker(failure_threshold=3, clock=clock)

    _fail(breaker, 2)
    breaker.before_request()
    breaker.on_result(True)
    _fail(breaker, 2)

    assert breaker.status == "closed"
    assert breaker.state().consecutive_failures == 2


def test_half_open_allows_a_single_probe(clock):
    breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=30, clock=clock)
    _fail(breaker, 1)

    clock.advance(30)
    assert breaker.status == "half_open"
    assert breaker.allows_requests() is True

    breaker.before_request()
    assert breaker.allows_requests() is False
    with pytest.raises(CircuitOpenError):
        breaker.before_request()

    breaker.on_result(True)
    assert breaker.status == "closed"
    assert breaker.state().consecutive_failures == 0


def test_failed_probe_reopens_with_fresh_cool_down(clock):
    breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=30, clock=clock)
    _fail(breaker, 1)

    clock.advance(31)
    breaker.before_request()
    breaker.on_result(False)

    assert breaker.status == "open"
    assert breaker.state().next_retry_at == 61
    assert breaker.retry_in() == 30
    assert breaker.times_opened == 2


def test_cancelled_probe_is_not_counted(clock):
    breaker = CircuitBreaker(failure_threshold=1, cool_down_seconds=10, clock=clock)
    _fail(breaker, 1)
    clock.advance(10)

    breaker.before_request()
    breaker.on_cancelled()

    assert breaker.state().consecutive_failures == 1
    breaker.before_request()


def test_reset_closes_circuit(clock):
    breaker = CircuitBreaker(failure_threshold=1, clock=clock)
    _fail(breaker, 1)

    breaker.reset()

    assert breaker.status == "closed"
    assert breaker.retry_in() == 0.0
    breaker.before_request()


def test_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        CircuitBreaker(failure_threshold=0)
    with pytest.raises(ValueError):
        CircuitBreaker(cool_down_seconds=0)
