"""Tests for the circuit breaker module."""

import pytest
from posse_sync.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    CircuitOpenError,
)
from posse_sync.errors import PermanentAdapterError, TransientAdapterError


def _transient():
    raise TransientAdapterError("wp-main", "HTTP 503", 503)


def _permanent():
    raise PermanentAdapterError("wp-main", "HTTP 400", 400)


class TestCircuitBreaker:
    def _clock(self, time: float = 0.0):
        """Create a controllable clock."""
        state = {"now": time}

        def clock():
            return state["now"]

        def advance(dt: float):
            state["now"] += dt

        return clock, advance

    def test_starts_closed(self):
        cb = CircuitBreaker("wp-main")
        assert cb.state == CircuitState.CLOSED

    def test_success_keeps_closed(self):
        cb = CircuitBreaker("wp-main")
        result = cb.call(lambda: 42)
        assert result == 42
        assert cb.state == CircuitState.CLOSED

    def test_opens_after_threshold(self):
        clock, advance = self._clock()
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=3), clock=clock)
        for _ in range(3):
            with pytest.raises(TransientAdapterError):
                cb.call(_transient)
        assert cb.state == CircuitState.OPEN

    def test_permanent_errors_do_not_open(self):
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=1))
        for _ in range(3):
            with pytest.raises(PermanentAdapterError):
                cb.call(_permanent)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_open_rejects_calls(self):
        clock, advance = self._clock()
        cb = CircuitBreaker(
            "wp-main",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=60.0),
            clock=clock,
        )
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)

        calls = []
        with pytest.raises(CircuitOpenError):
            cb.call(lambda: calls.append(1))
        assert calls == []

    def test_open_error_is_transient(self):
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=1))
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)
        with pytest.raises(CircuitOpenError) as exc_info:
            cb.call(lambda: 42)
        assert exc_info.value.retryable is True
        assert exc_info.value.platform == "wp-main"

    def test_transitions_to_half_open(self):
        clock, advance = self._clock()
        cb = CircuitBreaker(
            "wp-main",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
            clock=clock,
        )
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)
        assert cb.state == CircuitState.OPEN

        advance(11.0)
        assert cb.state == CircuitState.HALF_OPEN

    def test_half_open_success_closes(self):
        clock, advance = self._clock()
        cb = CircuitBreaker(
            "wp-main",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
            clock=clock,
        )
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)

        advance(11.0)
        result = cb.call(lambda: "recovered")
        assert result == "recovered"
        assert cb.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock, advance = self._clock()
        cb = CircuitBreaker(
            "wp-main",
            CircuitBreakerConfig(failure_threshold=1, reset_timeout=10.0),
            clock=clock,
        )
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)

        advance(11.0)
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)
        assert cb.state == CircuitState.OPEN

    def test_reset(self):
        clock, advance = self._clock()
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        with pytest.raises(TransientAdapterError):
            cb.call(_transient)
        assert cb.state == CircuitState.OPEN

        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_failure_count_resets_on_success(self):
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=3))

        with pytest.raises(TransientAdapterError):
            cb.call(_transient)
        assert cb.failure_count == 1

        cb.call(lambda: "ok")
        assert cb.failure_count == 0

    def test_connection_errors_count_as_transient(self):
        cb = CircuitBreaker("wp-main", CircuitBreakerConfig(failure_threshold=1))

        def refused():
            raise ConnectionRefusedError("refused")

        with pytest.raises(ConnectionRefusedError):
            cb.call(refused)
        assert cb.state == CircuitState.OPEN
