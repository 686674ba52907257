"""Backoff policy for requeued sync events and rescheduled posts.

Retries here are not in-call loops: a failed item is written back with a
later due time, and a subsequent drain or processing pass picks it up.
The delay escalates through a fixed list, then holds at a ceiling.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from posse_sync.errors import AdapterError


@dataclass
class BackoffPolicy:
    """Escalating retry delays (seconds)."""
    delays: list[float] = field(default_factory=lambda: [1.0, 5.0, 15.0])
    ceiling: float = 60.0
    jitter: bool = False

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        if attempt <= len(self.delays):
            delay = min(self.delays[attempt - 1], self.ceiling)
        else:
            delay = self.ceiling
        if self.jitter:
            delay = delay * (0.5 + random.random() * 0.5)
        return delay

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempt))


def is_retryable(exc: BaseException) -> bool:
    """Classify a failure raised out of an adapter call.

    Adapter errors carry their own classification. Connection-level
    errors that escaped an adapter are treated as transient; anything
    else (programming errors, bad data) is permanent.
    """
    if isinstance(exc, AdapterError):
        return exc.retryable
    return isinstance(exc, OSError)  # ConnectionError, TimeoutError, socket errors
