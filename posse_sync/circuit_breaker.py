"""Per-platform circuit breaker for adapter calls.

Implements a three-state machine:
  CLOSED  → Normal operation, failures are counted
  OPEN    → Calls fail immediately (platform assumed down)
  HALF_OPEN → Trial call allowed to test recovery

Only transient failures count toward opening the circuit; a permanent
error (validation, not found) says nothing about platform health.
State is guarded by a lock so concurrent workers share one breaker,
but the wrapped call itself runs outside the lock.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

import structlog

from posse_sync.errors import TransientAdapterError
from posse_sync.retry import is_retryable

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(TransientAdapterError):
    """Raised when a call is attempted while the circuit is OPEN."""

    def __init__(self, platform: str, reset_at: float) -> None:
        self.reset_at = reset_at
        super().__init__(platform, f"circuit is open, resets at {reset_at:.1f}")


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0
    half_open_max_calls: int = 1


class CircuitBreaker:
    """Tracks transient failures for one platform and opens past a threshold."""

    def __init__(
        self,
        name: str = "",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float = 0.0
        self._half_open_calls = 0

    def _current_state(self) -> CircuitState:
        if self._state == CircuitState.OPEN:
            elapsed = self._clock() - self._last_failure_time
            if elapsed >= self._config.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
        return self._state

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute func through the circuit breaker."""
        with self._lock:
            current_state = self._current_state()
            reset_at = self._last_failure_time + self._config.reset_timeout
            if current_state == CircuitState.OPEN:
                raise CircuitOpenError(self.name, reset_at)
            if current_state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._config.half_open_max_calls:
                    raise CircuitOpenError(self.name, reset_at)
                self._half_open_calls += 1

        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            if is_retryable(exc):
                self._on_failure()
            else:
                self._on_success()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("circuit_closed", platform=self.name)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self._config.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.warning("circuit_opened", platform=self.name, failures=self._failure_count)
                self._state = CircuitState.OPEN

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0
