"""Resilience wrapper shared by every adapter call.

Ordering: rate limiter (outermost) → circuit breaker (fail-fast) → API call.
There is no in-call retry loop: an exhausted bucket or open circuit raises
a transient error, and the caller reschedules the item for a later pass.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, TypeVar

from posse_sync.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from posse_sync.delivery_log import DeliveryLog, DeliveryRecord
from posse_sync.rate_limiter import RateLimiter, RateLimiterConfig

T = TypeVar("T")


class AdapterDispatcher:
    """Per-platform circuit breakers and rate limiters, created on first use.

    limiter_config applies to every platform not named in
    limiter_overrides; with neither set, calls are not rate limited.
    """

    def __init__(
        self,
        breaker_config: CircuitBreakerConfig | None = None,
        limiter_config: RateLimiterConfig | None = None,
        delivery_log: DeliveryLog | None = None,
        clock: Callable[[], float] | None = None,
        limiter_overrides: dict[str, RateLimiterConfig] | None = None,
    ) -> None:
        self._breaker_config = breaker_config or CircuitBreakerConfig()
        self._limiter_config = limiter_config
        self._limiter_overrides = dict(limiter_overrides or {})
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._limiters: dict[str, RateLimiter] = {}
        self.delivery_log = delivery_log

    def breaker(self, platform: str) -> CircuitBreaker:
        with self._lock:
            if platform not in self._breakers:
                self._breakers[platform] = CircuitBreaker(platform, self._breaker_config, clock=self._clock)
            return self._breakers[platform]

    def limiter(self, platform: str) -> RateLimiter | None:
        config = self._limiter_overrides.get(platform, self._limiter_config)
        if config is None:
            return None
        with self._lock:
            if platform not in self._limiters:
                self._limiters[platform] = RateLimiter(platform, config, clock=self._clock)
            return self._limiters[platform]

    def call(self, platform: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        limiter = self.limiter(platform)
        if limiter is not None:
            limiter.acquire(block=False)
        return self.breaker(platform).call(func, *args, **kwargs)

    def record(self, record: DeliveryRecord) -> None:
        if self.delivery_log is not None:
            self.delivery_log.append(record)

    def breaker_states(self) -> dict[str, str]:
        with self._lock:
            breakers = dict(self._breakers)
        return {name: cb.state.value for name, cb in breakers.items()}
