import pytest

from ecotrace_api.app.core.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


def failing():
    raise ConnectionError("boom")


def test_opens_after_consecutive_failures():
    breaker = CircuitBreaker("test", failure_threshold=3, recovery_timeout=60)
    for _ in range(3):
        with pytest.raises(ConnectionError):
            breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        breaker.call(lambda: "not called")


def test_success_resets_failure_count():
    breaker = CircuitBreaker("test", failure_threshold=3)
    with pytest.raises(ConnectionError):
        breaker.call(failing)

    assert breaker.call(lambda: 42) == 42
    assert breaker.failures == 0
    assert breaker.state == CircuitState.CLOSED


def test_half_open_after_recovery_timeout_and_closes_on_success():
    breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
    with pytest.raises(ConnectionError):
        breaker.call(failing)
    assert breaker.is_open

    assert breaker.call(lambda: "ok") == "ok"
    assert breaker.state == CircuitState.CLOSED


def test_failure_in_half_open_reopens():
    breaker = CircuitBreaker("test", failure_threshold=1, recovery_timeout=0)
    with pytest.raises(ConnectionError):
        breaker.call(failing)
    with pytest.raises(ConnectionError):
        breaker.call(failing)

    state = breaker.get_state()
    assert state["state"] == "open"
    assert state["failures"] == 2
    assert state["next_attempt_time"] is not None
