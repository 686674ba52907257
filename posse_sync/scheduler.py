"""Multi-channel publishing scheduler.

Derives one social post per platform from a content record, assigns it
the next slot from the platform's scheduling rule, and publishes due
posts when triggered. A trigger may fire from several processes at once:
each post is published by the one pass that wins its claim.
"""

from __future__ import annotations

import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

import structlog

from posse_sync.config import DEFAULT_RULES, AccountConfig, SchedulerSettings
from posse_sync.delivery_log import KIND_PUBLISH, DeliveryRecord
from posse_sync.dispatch import AdapterDispatcher
from posse_sync.errors import (
    ContentNotFoundError,
    InvalidTransitionError,
    PostNotFoundError,
    TargetNotEnabledError,
)
from posse_sync.formatting import format_post
from posse_sync.models import (
    PostPayload,
    PostStatus,
    ScheduledPost,
    SchedulingRule,
    utcnow,
)
from posse_sync.platforms import SocialAdapter
from posse_sync.post_store import PostStore
from posse_sync.retry import is_retryable
from posse_sync.store import ContentStore, Database

logger = structlog.get_logger(__name__)

WEEKEND = (5, 6)


@dataclass
class ProcessSummary:
    processed: int = 0
    published: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class DeriveOptions:
    """Per-call options for derive_posts."""
    link_url: str = ""
    hashtags: list[str] = field(default_factory=list)
    media_assets: list[str] = field(default_factory=list)
    visibility: str = "public"
    scheduled_time: datetime | None = None
    texts: dict[str, str] = field(default_factory=dict)  # per-platform text override

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DeriveOptions:
        data = data or {}
        scheduled = data.get("scheduled_time")
        if isinstance(scheduled, str):
            scheduled = datetime.fromisoformat(scheduled.replace("Z", "+00:00"))
        return cls(
            link_url=data.get("link_url", ""),
            hashtags=list(data.get("hashtags") or []),
            media_assets=list(data.get("media_assets") or []),
            visibility=data.get("visibility", "public"),
            scheduled_time=scheduled,
            texts=dict(data.get("texts") or {}),
        )


def next_slot(rule: SchedulingRule, after: datetime) -> datetime:
    """Next occurrence of the rule's local time strictly after `after`.

    Weekend days are skipped when the rule excludes them. Returned in UTC.
    """
    tz = ZoneInfo(rule.timezone)
    local = after.astimezone(tz)
    candidate = local.replace(hour=rule.hour, minute=rule.minute, second=0, microsecond=0)
    if candidate <= local:
        candidate += timedelta(days=1)
    while rule.exclude_weekends and candidate.weekday() in WEEKEND:
        candidate += timedelta(days=1)
    return candidate.astimezone(ZoneInfo("UTC"))


class PublishingScheduler:
    """Creates scheduled posts and publishes the due ones on each trigger."""

    def __init__(
        self,
        db: Database,
        adapters: dict[str, SocialAdapter],
        accounts: dict[str, AccountConfig] | None = None,
        rules: dict[str, SchedulingRule] | None = None,
        settings: SchedulerSettings | None = None,
        dispatcher: AdapterDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.posts = PostStore(db)
        self.content = ContentStore(db)
        self._adapters = adapters
        self._accounts = accounts or {}
        self._settings = settings or SchedulerSettings()
        self._dispatcher = dispatcher or AdapterDispatcher()
        self._clock = clock or utcnow
        if rules:
            self.posts.seed_rules(rules.values())

    # ── Creating posts ───────────────────────────────────────────

    def rule_for(self, platform: str) -> SchedulingRule:
        return self.posts.get_rule(platform) or DEFAULT_RULES.get(platform) or SchedulingRule(platform=platform, hour=12)

    def derive_posts(
        self,
        content_id: str,
        target_platforms: Iterable[str],
        options: DeriveOptions | None = None,
    ) -> list[ScheduledPost]:
        """Create one scheduled post per platform from a content record."""
        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        platforms = list(target_platforms)
        for platform in platforms:
            if platform not in self._adapters:
                raise TargetNotEnabledError(content_id, platform, "no social adapter configured")
        options = options or DeriveOptions()
        now = self._clock()
        created = []
        for platform in platforms:
            payload = format_post(
                record, platform,
                link_url=options.link_url,
                hashtags=options.hashtags,
                media_assets=options.media_assets,
                visibility=options.visibility,
                text=options.texts.get(platform),
            )
            post = self._new_post(
                platform, payload,
                options.scheduled_time or next_slot(self.rule_for(platform), now),
                content_id=content_id, organization_id=record.organization_id, now=now,
            )
            created.append(post)
        return created

    def schedule_post(
        self,
        platform: str,
        text: str,
        scheduled_time: datetime | None = None,
        media_assets: Iterable[str] = (),
        visibility: str = "public",
        link_url: str = "",
        organization_id: str = "default",
    ) -> ScheduledPost:
        """Schedule a standalone post that has no content record."""
        if platform not in self._adapters:
            raise TargetNotEnabledError("-", platform, "no social adapter configured")
        now = self._clock()
        payload = PostPayload(text=text, media_assets=list(media_assets), visibility=visibility, link_url=link_url)
        return self._new_post(
            platform, payload, scheduled_time or next_slot(self.rule_for(platform), now),
            content_id=None, organization_id=organization_id, now=now,
        )

    def _new_post(
        self,
        platform: str,
        payload: PostPayload,
        scheduled_time: datetime,
        content_id: str | None,
        organization_id: str,
        now: datetime,
    ) -> ScheduledPost:
        account = self._accounts.get(platform)
        post = ScheduledPost(
            id=uuid.uuid4().hex,
            platform=platform,
            post_payload=payload,
            scheduled_time=scheduled_time,
            content_id=content_id,
            account_ref=account.account_ref if account else "",
            organization_id=organization_id,
            max_retries=self._settings.max_retries,
            created_at=now,
            updated_at=now,
        )
        self.posts.insert(post)
        logger.info("post_scheduled", post_id=post.id, platform=platform, scheduled_time=scheduled_time.isoformat())
        return post

    # ── Processing ───────────────────────────────────────────────

    def process_due_posts(self, now: datetime | None = None, limit: int | None = None) -> ProcessSummary:
        """Publish every due post once. Never raises for a single post."""
        now = now or self._clock()
        summary = ProcessSummary()
        released = self.posts.release_stale(now - timedelta(seconds=self._settings.claim_timeout), now)
        if released:
            logger.warning("stale_post_claims_released", count=released)

        claimed: list[tuple[ScheduledPost, str]] = []
        for post in self.posts.due(now, limit):
            token = uuid.uuid4().hex
            if self.posts.claim(post.id, token, now):
                claimed.append((post, token))
            else:
                summary.skipped += 1
        summary.processed = len(claimed)
        if not claimed:
            return summary

        with ThreadPoolExecutor(max_workers=max(1, self._settings.workers)) as pool:
            outcomes = list(pool.map(lambda item: self._run_post(item[0], item[1], now), claimed))
        for outcome in outcomes:
            setattr(summary, outcome, getattr(summary, outcome) + 1)
        logger.info("post_processing_finished", **summary.to_dict())
        return summary

    def _run_post(self, post: ScheduledPost, token: str, now: datetime) -> str:
        try:
            return self._publish(post, token, now)
        except Exception:
            # Stays claimed; the stale-claim release returns it to scheduled.
            logger.exception("post_processing_crashed", post_id=post.id)
            return "skipped"

    def _publish(self, post: ScheduledPost, token: str, now: datetime) -> str:
        log = logger.bind(post_id=post.id, platform=post.platform)
        adapter = self._adapters.get(post.platform)
        try:
            if adapter is None:
                raise TargetNotEnabledError(post.content_id or "-", post.platform, "no social adapter configured")
            platform_post_id = self._dispatcher.call(
                post.platform, adapter.publish, post.post_payload, post.account_ref,
            )
        except Exception as exc:
            return self._handle_failure(post, token, now, exc)

        if not self.posts.mark_published(post.id, token, platform_post_id, self._clock()):
            log.warning("post_claim_lost", platform_post_id=platform_post_id)
        self._dispatcher.record(DeliveryRecord(
            kind=KIND_PUBLISH, subject_id=post.id, platform=post.platform,
            status="success", external_id=platform_post_id, attempt=post.retry_count + 1,
        ))
        log.info("post_published", platform_post_id=platform_post_id)
        return "published"

    def _handle_failure(self, post: ScheduledPost, token: str, now: datetime, exc: Exception) -> str:
        error = str(exc)
        retry_count = post.retry_count + 1
        log = logger.bind(post_id=post.id, platform=post.platform, retry_count=retry_count)
        if is_retryable(exc) and retry_count <= post.max_retries:
            retry_at = now + timedelta(seconds=self._settings.retry_delay)
            self.posts.reschedule(post.id, token, retry_count, retry_at, error, self._clock())
            status, outcome = "retry", "retried"
            log.warning("post_publish_retry", error=error, retry_at=retry_at.isoformat())
        else:
            self.posts.mark_failed(post.id, token, retry_count, error, self._clock())
            status, outcome = "failure", "failed"
            log.error("post_publish_failed", error=error)
        self._dispatcher.record(DeliveryRecord(
            kind=KIND_PUBLISH, subject_id=post.id, platform=post.platform,
            status=status, error=error, attempt=retry_count,
        ))
        return outcome

    # ── Operator actions ─────────────────────────────────────────

    def _require(self, post_id: str) -> ScheduledPost:
        post = self.posts.get(post_id)
        if post is None:
            raise PostNotFoundError(post_id)
        return post

    def cancel_post(self, post_id: str) -> ScheduledPost:
        """Cancel a post that has not been claimed for publishing yet."""
        if not self.posts.cancel(post_id, self._clock()):
            post = self._require(post_id)
            raise InvalidTransitionError(f"post {post_id}", post.status.value, PostStatus.CANCELLED.value)
        logger.info("post_cancelled", post_id=post_id)
        return self._require(post_id)

    def edit_post(
        self,
        post_id: str,
        payload: PostPayload | None = None,
        scheduled_time: datetime | None = None,
    ) -> ScheduledPost:
        if not self.posts.update_scheduled(post_id, payload, scheduled_time, self._clock()):
            post = self._require(post_id)
            raise InvalidTransitionError(f"post {post_id}", post.status.value, "edited")
        return self._require(post_id)

    def retry_post(self, post_id: str, scheduled_time: datetime | None = None) -> ScheduledPost:
        """Return a failed post to scheduled with its retry budget reset."""
        now = self._clock()
        if not self.posts.retry_failed(post_id, scheduled_time or now, now):
            post = self._require(post_id)
            raise InvalidTransitionError(f"post {post_id}", post.status.value, PostStatus.SCHEDULED.value)
        logger.info("post_retry_requested", post_id=post_id)
        return self._require(post_id)

    # ── Views ────────────────────────────────────────────────────

    def get_post(self, post_id: str) -> ScheduledPost:
        return self._require(post_id)

    def list_posts(
        self,
        platform: str | None = None,
        status: PostStatus | None = None,
        content_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[ScheduledPost]:
        return self.posts.list_posts(
            platform=platform, status=status, content_id=content_id,
            since=since, until=until, limit=limit,
        )

    def analytics(self, since: datetime | None = None) -> dict[str, Any]:
        """Totals, success rate and per-platform breakdown of scheduled posts."""
        totals: dict[str, int] = {s.value: 0 for s in PostStatus}
        by_platform: dict[str, dict[str, int]] = {}
        for platform, status, count in self.posts.status_counts(since):
            totals[status] = totals.get(status, 0) + count
            by_platform.setdefault(platform, {})[status] = count
        attempted = totals[PostStatus.PUBLISHED.value] + totals[PostStatus.FAILED.value]
        success_rate = totals[PostStatus.PUBLISHED.value] / attempted if attempted else 0.0
        return {
            "since": since.isoformat() if since else None,
            "total": sum(totals.values()),
            "by_status": totals,
            "success_rate": round(success_rate, 4),
            "by_platform": by_platform,
        }
