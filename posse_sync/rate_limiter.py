"""Token bucket rate limiter for outbound platform calls.

Prevents exceeding platform rate limits by controlling the rate of
outgoing requests. Workers acquire without blocking: an empty bucket
raises RateLimitExceeded, which the sync engine and scheduler treat as
a transient failure and retry on a later pass.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from posse_sync.errors import TransientAdapterError


class RateLimitExceeded(TransientAdapterError):
    """Raised when rate limit would be exceeded and blocking is disabled."""

    def __init__(self, platform: str, retry_after: float) -> None:
        self.retry_after = retry_after
        super().__init__(platform, f"rate limit exceeded, retry after {retry_after:.1f}s", 429)


@dataclass
class RateLimiterConfig:
    """Token bucket configuration."""
    tokens_per_second: float = 1.0
    max_tokens: float = 10.0
    initial_tokens: float | None = None  # Defaults to max_tokens


class RateLimiter:
    """Thread-safe token bucket rate limiter."""

    def __init__(
        self,
        name: str = "",
        config: RateLimiterConfig | None = None,
        clock: Callable[[], float] | None = None,
        sleep_func: Callable[[float], None] | None = None,
    ) -> None:
        cfg = config or RateLimiterConfig()
        self.name = name
        self._rate = cfg.tokens_per_second
        self._max = cfg.max_tokens
        self._tokens = cfg.initial_tokens if cfg.initial_tokens is not None else cfg.max_tokens
        self._clock = clock or time.monotonic
        self._sleep = sleep_func or time.sleep
        self._lock = threading.Lock()
        self._last_refill = self._clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._tokens = min(self._max, self._tokens + elapsed * self._rate)
        self._last_refill = now

    def acquire(self, tokens: float = 1.0, block: bool = False) -> bool:
        """Acquire tokens from the bucket.

        Args:
            tokens: Number of tokens to consume.
            block: If True, sleep until tokens are available.
                   If False, raise RateLimitExceeded.

        Returns:
            True if tokens were acquired.
        """
        with self._lock:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True

            deficit = tokens - self._tokens
            wait_time = deficit / self._rate
            if not block:
                raise RateLimitExceeded(self.name, wait_time)
            # Reserve the tokens now so concurrent callers queue behind us
            self._tokens -= tokens

        self._sleep(wait_time)
        return True

    @property
    def available_tokens(self) -> float:
        with self._lock:
            self._refill()
            return self._tokens
