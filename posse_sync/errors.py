"""Exception taxonomy shared by the sync engine, scheduler, and adapters.

Adapter failures are split by whether a later attempt can succeed:
  TransientAdapterError  → retried with backoff (timeouts, 429, 5xx)
  PermanentAdapterError  → surfaced as failed (4xx validation)
  NotFoundError          → permanent, except on delete where it means success
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all posse-sync errors."""


class ConfigError(SyncError):
    """Raised when configuration is missing or malformed."""


class SignatureError(SyncError):
    """Raised when an inbound webhook fails HMAC verification."""

    def __init__(self, site: str, reason: str) -> None:
        self.site = site
        self.reason = reason
        super().__init__(f"Webhook signature rejected for {site}: {reason}")


class UnknownSiteError(SyncError):
    """Raised when a webhook or push names a site that is not configured."""

    def __init__(self, site: str) -> None:
        self.site = site
        super().__init__(f"No site configured named {site!r}")


class PayloadError(SyncError):
    """Raised when an external payload cannot be parsed into a known shape."""


class ContentNotFoundError(SyncError):
    def __init__(self, content_id: str) -> None:
        self.content_id = content_id
        super().__init__(f"Content record {content_id!r} not found")


class PostNotFoundError(SyncError):
    def __init__(self, post_id: str) -> None:
        self.post_id = post_id
        super().__init__(f"Scheduled post {post_id!r} not found")


class EventNotFoundError(SyncError):
    def __init__(self, event_id: int) -> None:
        self.event_id = event_id
        super().__init__(f"Sync event {event_id} not found")


class TargetNotEnabledError(SyncError):
    """Raised when content is pushed to a target its options do not enable."""

    def __init__(self, content_id: str, platform: str, reason: str = "") -> None:
        self.content_id = content_id
        self.platform = platform
        detail = f": {reason}" if reason else ""
        super().__init__(f"Target {platform} not enabled for {content_id}{detail}")


class InvalidTransitionError(SyncError):
    """Raised when a state change is requested from a state that forbids it."""

    def __init__(self, subject: str, current: str, requested: str) -> None:
        self.subject = subject
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot move {subject} from {current} to {requested}")


class AdapterError(SyncError):
    """Base class for failures reported by a platform adapter."""

    retryable: bool = False

    def __init__(self, platform: str, message: str, status_code: int | None = None) -> None:
        self.platform = platform
        self.status_code = status_code
        super().__init__(f"{platform}: {message}")


class TransientAdapterError(AdapterError):
    retryable = True


class PermanentAdapterError(AdapterError):
    retryable = False


class NotFoundError(PermanentAdapterError):
    """The external entity does not exist (HTTP 404)."""
