"""Domain records for canonical content, sync bookkeeping, and scheduled posts.

ContentRecord is the single authoritative representation of a content item.
SyncMapping and SyncEvent track its identity and pending propagation on each
configured website target; ScheduledPost tracks derived social posts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentStatus(Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class SyncDirection(Enum):
    """Which way a configured site is allowed to sync."""
    BIDIRECTIONAL = "bidirectional"
    OUTBOUND = "outbound"
    INBOUND = "inbound"

    @property
    def allows_outbound(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.OUTBOUND)

    @property
    def allows_inbound(self) -> bool:
        return self in (SyncDirection.BIDIRECTIONAL, SyncDirection.INBOUND)


class MappingStatus(Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"


class EventDirection(Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class SyncOperation(Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EventStatus(Enum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PostStatus(Enum):
    SCHEDULED = "scheduled"
    CLAIMED = "claimed"  # internal: a processing pass owns the publish attempt
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PostStatus.PUBLISHED, PostStatus.FAILED, PostStatus.CANCELLED)


@dataclass
class PublishingOptions:
    """Which targets a record syncs to, plus per-target field overrides."""
    targets: dict[str, bool] = field(default_factory=dict)
    overrides: dict[str, dict[str, Any]] = field(default_factory=dict)

    def is_enabled(self, platform: str) -> bool:
        return bool(self.targets.get(platform, False))

    def enabled_targets(self) -> list[str]:
        return [name for name, on in self.targets.items() if on]

    def overrides_for(self, platform: str) -> dict[str, Any]:
        return dict(self.overrides.get(platform, {}))

    def to_dict(self) -> dict[str, Any]:
        return {"targets": dict(self.targets), "overrides": {k: dict(v) for k, v in self.overrides.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PublishingOptions:
        data = data or {}
        return cls(
            targets={str(k): bool(v) for k, v in (data.get("targets") or {}).items()},
            overrides={str(k): dict(v) for k, v in (data.get("overrides") or {}).items()},
        )


@dataclass
class ContentRecord:
    id: str
    title: str
    body: str
    excerpt: str = ""
    status: ContentStatus = ContentStatus.DRAFT
    content_type: str = "article"
    organization_id: str = "default"
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    publishing_options: PublishingOptions = field(default_factory=PublishingOptions)
    origin_platform: str | None = None

    def canonical_fields(self) -> dict[str, Any]:
        """Fields that define the record's content for change detection."""
        return {
            "title": self.title,
            "body": self.body,
            "excerpt": self.excerpt,
            "status": self.status.value,
            "content_type": self.content_type,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "excerpt": self.excerpt,
            "status": self.status.value,
            "content_type": self.content_type,
            "organization_id": self.organization_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "publishing_options": self.publishing_options.to_dict(),
            "origin_platform": self.origin_platform,
        }


@dataclass
class SyncMapping:
    content_id: str
    platform: str
    external_id: str | None = None
    last_synced_at: datetime | None = None
    last_synced_hash: str | None = None
    status: MappingStatus = MappingStatus.PENDING
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "content_id": self.content_id,
            "platform": self.platform,
            "external_id": self.external_id,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "last_synced_hash": self.last_synced_hash,
            "status": self.status.value,
            "last_error": self.last_error,
        }


@dataclass
class SyncEvent:
    id: int
    content_id: str
    platform: str
    direction: EventDirection
    operation: SyncOperation
    payload: dict[str, Any] = field(default_factory=dict)
    content_hash: str | None = None
    attempt_count: int = 0
    max_attempts: int = 5
    status: EventStatus = EventStatus.QUEUED
    next_attempt_at: datetime = field(default_factory=utcnow)
    claimed_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_id": self.content_id,
            "platform": self.platform,
            "direction": self.direction.value,
            "operation": self.operation.value,
            "attempt_count": self.attempt_count,
            "max_attempts": self.max_attempts,
            "status": self.status.value,
            "next_attempt_at": self.next_attempt_at.isoformat(),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class PostPayload:
    """Platform-shaped social post content."""
    text: str
    media_assets: list[str] = field(default_factory=list)
    visibility: str = "public"
    link_url: str = ""
    title: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "media_assets": list(self.media_assets),
            "visibility": self.visibility,
            "link_url": self.link_url,
            "title": self.title,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PostPayload:
        return cls(
            text=data.get("text", ""),
            media_assets=list(data.get("media_assets") or []),
            visibility=data.get("visibility", "public"),
            link_url=data.get("link_url", ""),
            title=data.get("title", ""),
        )


@dataclass
class ScheduledPost:
    id: str
    platform: str
    post_payload: PostPayload
    scheduled_time: datetime
    content_id: str | None = None
    account_ref: str = ""
    organization_id: str = "default"
    status: PostStatus = PostStatus.SCHEDULED
    published_time: datetime | None = None
    platform_post_id: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    error_message: str | None = None
    claimed_at: datetime | None = None
    claim_token: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content_id": self.content_id,
            "platform": self.platform,
            "account_ref": self.account_ref,
            "organization_id": self.organization_id,
            "status": self.status.value,
            "scheduled_time": self.scheduled_time.isoformat(),
            "published_time": self.published_time.isoformat() if self.published_time else None,
            "post_payload": self.post_payload.to_dict(),
            "platform_post_id": self.platform_post_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class SchedulingRule:
    """Default posting time for a platform."""
    platform: str
    hour: int
    minute: int = 0
    timezone: str = "UTC"
    exclude_weekends: bool = False
