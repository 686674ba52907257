"""Bidirectional content sync between the canonical store and website CMSs.

Outbound: a content change is turned into at most one queued sync event
per (content, target) pair, and drain() pushes due events through the
target's adapter on a bounded worker pool.

Inbound: a signed webhook is verified against the raw body, parsed into
the site's entity variant, and applied to the canonical record under a
last-write-wins policy. The mutation is tagged with its origin and the
origin's mapping hash is refreshed, so the resulting fan-out skips the
origin and a later echo of the same state is a no-op.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from posse_sync.config import SiteConfig, SyncSettings
from posse_sync.delivery_log import (
    KIND_PUSH,
    KIND_WEBHOOK_REJECTED,
    DeliveryRecord,
)
from posse_sync.dispatch import AdapterDispatcher
from posse_sync.errors import (
    ContentNotFoundError,
    EventNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    SignatureError,
    TargetNotEnabledError,
    UnknownSiteError,
)
from posse_sync.hashing import INGESTED_FIELDS, content_hash, target_fields, target_hash
from posse_sync.models import (
    ContentRecord,
    ContentStatus,
    EventStatus,
    PublishingOptions,
    SyncEvent,
    SyncOperation,
    utcnow,
)
from posse_sync.platforms import ExternalEntity, WebsiteAdapter
from posse_sync.retry import BackoffPolicy, is_retryable
from posse_sync.store import ContentStore, Database
from posse_sync.sync_state import SyncStateStore

logger = structlog.get_logger(__name__)


@dataclass
class PushResult:
    content_id: str
    platform: str
    action: str  # "queued", "collapsed", "noop"
    event_id: int | None = None
    operation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DrainSummary:
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    reset: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class IngestResult:
    site: str
    action: str  # "created", "updated", "archived", "duplicate", "conflict", "ignored"
    content_id: str | None = None
    external_id: str | None = None
    reason: str = ""
    fanned_out: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SyncEngine:
    """Outbound push, queue draining, and inbound ingestion for website targets."""

    def __init__(
        self,
        db: Database,
        sites: dict[str, SiteConfig],
        adapters: dict[str, WebsiteAdapter],
        settings: SyncSettings | None = None,
        dispatcher: AdapterDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.content = ContentStore(db)
        self.state = SyncStateStore(db)
        self._db = db
        self._sites = sites
        self._adapters = adapters
        self._settings = settings or SyncSettings()
        self._dispatcher = dispatcher or AdapterDispatcher()
        self._clock = clock or utcnow
        self._backoff = BackoffPolicy(
            delays=list(self._settings.backoff_seconds),
            ceiling=self._settings.backoff_ceiling,
        )

    # ── Content changes ──────────────────────────────────────────

    def save_content(self, record: ContentRecord, origin: str | None = None) -> list[PushResult]:
        """Upsert a record and queue pushes to every eligible target but origin."""
        record.updated_at = self._clock()
        record.origin_platform = origin
        self.content.save(record)
        logger.info("content_saved", content_id=record.id, origin=origin)
        return self._fan_out(record, exclude=origin)

    def _fan_out(self, record: ContentRecord, exclude: str | None) -> list[PushResult]:
        results = []
        for platform in record.publishing_options.enabled_targets():
            if platform == exclude:
                continue
            site = self._sites.get(platform)
            reason = self._ineligible_reason(record, platform, site)
            if reason:
                logger.debug("target_skipped", content_id=record.id, platform=platform, reason=reason)
                continue
            results.append(self.push_to_target(record.id, platform))
        return results

    def _ineligible_reason(self, record: ContentRecord, platform: str, site: SiteConfig | None) -> str:
        if site is None:
            return "site not configured"
        if not record.publishing_options.is_enabled(platform):
            return "target not enabled in publishing options"
        if not site.direction.allows_outbound:
            return f"site direction is {site.direction.value}"
        if not site.accepts_content_type(record.content_type):
            return f"content type {record.content_type} not synced to this site"
        if site.organization_id != record.organization_id:
            return "site belongs to another organization"
        return ""

    def push_to_target(
        self,
        content_id: str,
        platform: str,
        operation: SyncOperation | None = None,
        force: bool = False,
    ) -> PushResult:
        """Queue an outbound sync of one record to one target.

        Returns a no-op result when the target already holds the current
        state and nothing is queued for the pair, unless force is set.
        """
        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        site = self._sites.get(platform)
        if site is None:
            raise UnknownSiteError(platform)
        reason = self._ineligible_reason(record, platform, site)
        if reason:
            raise TargetNotEnabledError(content_id, platform, reason)

        fields = target_fields(record, platform)
        digest = content_hash(fields)
        mapping = self.state.get_mapping(content_id, platform)
        if (
            not force
            and mapping is not None
            and mapping.last_synced_hash == digest
            and self.state.queued_event(content_id, platform) is None
        ):
            logger.debug("push_noop", content_id=content_id, platform=platform)
            return PushResult(content_id, platform, "noop")

        if operation is None:
            has_external = mapping is not None and mapping.external_id is not None
            operation = SyncOperation.UPDATE if has_external else SyncOperation.CREATE
        self.state.prepare_mapping(content_id, platform)
        event, collapsed = self.state.enqueue(
            content_id, platform, operation, {"fields": fields}, digest,
            self._settings.max_attempts, self._clock(),
        )
        action = "collapsed" if collapsed else "queued"
        logger.info(
            "sync_event_queued", content_id=content_id, platform=platform,
            event_id=event.id, operation=event.operation.value, collapsed=collapsed,
        )
        return PushResult(content_id, platform, action, event.id, event.operation.value)

    def push_all(self, content_id: str, force: bool = False) -> list[PushResult]:
        """Queue a push to every eligible enabled target (manual sync)."""
        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        return [
            self.push_to_target(content_id, platform, force=force)
            for platform in record.publishing_options.enabled_targets()
            if not self._ineligible_reason(record, platform, self._sites.get(platform))
        ]

    def delete_content(self, content_id: str) -> list[PushResult]:
        """Queue external deletes for every mapped target, then delete the record."""
        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        results = []
        now = self._clock()
        for mapping in self.state.list_mappings(content_id):
            site = self._sites.get(mapping.platform)
            if site is None or not site.direction.allows_outbound:
                continue
            if mapping.external_id is None and self.state.queued_event(content_id, mapping.platform) is None:
                continue
            event, collapsed = self.state.enqueue(
                content_id, mapping.platform, SyncOperation.DELETE,
                {"external_id": mapping.external_id}, None,
                self._settings.max_attempts, now,
            )
            results.append(PushResult(
                content_id, mapping.platform, "collapsed" if collapsed else "queued",
                event.id, SyncOperation.DELETE.value,
            ))
        self.content.delete(content_id)
        logger.info("content_deleted", content_id=content_id, deletes_queued=len(results))
        return results

    # ── Queue draining ───────────────────────────────────────────

    def drain(self, limit: int | None = None) -> DrainSummary:
        """Process due sync events once. Never raises for a single event."""
        summary = DrainSummary()
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.claim_timeout)
        summary.reset = self.state.reset_stale(cutoff, now)
        if summary.reset:
            logger.warning("stale_sync_claims_reset", count=summary.reset)

        claimed: list[SyncEvent] = []
        for event in self.state.due_events(now, limit):
            if self.state.claim(event.id, now):
                claimed.append(event)
            else:
                summary.skipped += 1
        summary.claimed = len(claimed)
        if not claimed:
            return summary

        with ThreadPoolExecutor(max_workers=max(1, self._settings.workers)) as pool:
            outcomes = list(pool.map(self._run_event, claimed))
        for outcome in outcomes:
            setattr(summary, outcome, getattr(summary, outcome) + 1)
        logger.info("sync_drain_finished", **summary.to_dict())
        return summary

    def _run_event(self, event: SyncEvent) -> str:
        try:
            return self._process_event(event)
        except Exception:
            # Left in_progress; the stale-claim reset returns it to the queue.
            logger.exception("sync_event_crashed", event_id=event.id)
            return "skipped"

    def _process_event(self, event: SyncEvent) -> str:
        log = logger.bind(event_id=event.id, content_id=event.content_id, platform=event.platform)
        adapter = self._adapters.get(event.platform)
        if adapter is None:
            return self._fail_event(event, f"no adapter configured for {event.platform}", retryable=False)

        mapping = self.state.get_mapping(event.content_id, event.platform)
        known_id = mapping.external_id if mapping else None
        fields = event.payload.get("fields", {})
        operation = event.operation
        try:
            if operation == SyncOperation.DELETE:
                external_id = event.payload.get("external_id") or known_id
                if external_id:
                    try:
                        self._dispatcher.call(event.platform, adapter.delete, external_id)
                    except NotFoundError:
                        log.info("sync_delete_already_absent", external_id=external_id)
            elif known_id is None:
                operation = SyncOperation.CREATE
                external_id = self._dispatcher.call(event.platform, adapter.create, event.content_id, fields)
            else:
                operation = SyncOperation.UPDATE
                external_id = known_id
                self._dispatcher.call(event.platform, adapter.update, known_id, event.content_id, fields)
        except Exception as exc:
            return self._handle_failure(event, exc)

        now = self._clock()
        with self._db.transaction() as conn:
            completed = self.state.complete(event.id, now, conn)
            if operation != SyncOperation.DELETE:
                self.state.mark_synced(event.content_id, event.platform, external_id, event.content_hash, now, conn)
        self._dispatcher.record(DeliveryRecord(
            kind=KIND_PUSH, subject_id=event.content_id, platform=event.platform,
            status="success", operation=operation.value, external_id=external_id or "",
            attempt=event.attempt_count + 1,
        ))
        if not completed:
            log.warning("sync_event_claim_lost")
            return "skipped"
        log.info("sync_event_succeeded", operation=operation.value, external_id=external_id)

        if operation == SyncOperation.CREATE and self.content.get(event.content_id) is None:
            # The record was deleted while the create was in flight.
            self.state.enqueue(
                event.content_id, event.platform, SyncOperation.DELETE,
                {"external_id": external_id}, None, self._settings.max_attempts, now,
            )
        return "succeeded"

    def _handle_failure(self, event: SyncEvent, exc: Exception) -> str:
        return self._fail_event(event, str(exc), retryable=is_retryable(exc))

    def _fail_event(self, event: SyncEvent, error: str, retryable: bool) -> str:
        now = self._clock()
        attempt = event.attempt_count + 1
        log = logger.bind(event_id=event.id, content_id=event.content_id, platform=event.platform, attempt=attempt)
        if retryable and attempt < event.max_attempts:
            next_at = self._backoff.next_attempt_at(now, attempt)
            self.state.requeue(event.id, attempt, next_at, error, now)
            self.state.note_mapping_error(event.content_id, event.platform, error)
            status, outcome = "retry", "retried"
            log.warning("sync_event_retry", error=error, next_attempt_at=next_at.isoformat())
        else:
            self.state.fail(event.id, attempt, error, now)
            self.state.mark_mapping_failed(event.content_id, event.platform, error)
            status, outcome = "failure", "failed"
            log.error("sync_event_failed", error=error, retryable=retryable)
        self._dispatcher.record(DeliveryRecord(
            kind=KIND_PUSH, subject_id=event.content_id, platform=event.platform,
            status=status, operation=event.operation.value, error=error, attempt=attempt,
        ))
        return outcome

    def run_forever(self, interval: float | None = None, stop: threading.Event | None = None) -> None:
        """Drain the queue every interval seconds until stop is set."""
        stop = stop or threading.Event()
        interval = self._settings.worker_interval if interval is None else interval
        logger.info("sync_worker_started", interval=interval)
        while not stop.is_set():
            self.drain()
            stop.wait(interval)
        logger.info("sync_worker_stopped")

    # ── Inbound ──────────────────────────────────────────────────

    def handshake(self, site_name: str, params: dict[str, str]) -> dict[str, Any]:
        adapter = self._adapters.get(site_name)
        if adapter is None:
            raise UnknownSiteError(site_name)
        return adapter.handshake(params)

    def ingest(self, site_name: str, signature: str | None, raw_body: bytes) -> IngestResult:
        """Verify, parse, and apply one webhook delivery.

        Raises SignatureError before the body is parsed when verification
        fails; nothing is written except the audit record.
        """
        site = self._sites.get(site_name)
        adapter = self._adapters.get(site_name)
        if site is None or adapter is None:
            raise UnknownSiteError(site_name)

        if not adapter.verify(raw_body, signature):
            if not site.webhook_secret:
                reason = "no webhook secret configured"
            elif not signature:
                reason = "missing signature"
            else:
                reason = "signature mismatch"
            self._dispatcher.record(DeliveryRecord(
                kind=KIND_WEBHOOK_REJECTED, subject_id=site_name, platform=site_name,
                status="rejected", error=reason, metadata={"body_bytes": len(raw_body)},
            ))
            logger.warning("webhook_rejected", site=site_name, reason=reason)
            raise SignatureError(site_name, reason)

        if not site.direction.allows_inbound:
            return IngestResult(site_name, "ignored", reason=f"site direction is {site.direction.value}")

        webhook = adapter.parse_webhook(raw_body)
        entity = webhook.entity
        incoming = entity.to_canonical()
        if not site.accepts_content_type(incoming["content_type"]):
            return IngestResult(
                site_name, "ignored", external_id=entity.external_id,
                reason=f"content type {incoming['content_type']} not synced from this site",
            )

        mapping = self.state.find_by_external_id(site_name, entity.external_id)
        record = self.content.get(mapping.content_id) if mapping else None

        if webhook.action == SyncOperation.DELETE:
            if record is None:
                return IngestResult(site_name, "ignored", external_id=entity.external_id, reason="unknown entity")
            return self._archive_from(record, site_name, entity)

        if record is None:
            if not site.allow_ingest_create:
                return IngestResult(
                    site_name, "ignored", external_id=entity.external_id,
                    reason="inbound creation disabled for this site",
                )
            return self._create_from(site, entity, incoming)
        return self._apply_inbound(record, site_name, entity, incoming, honor_timestamps=True)

    def _create_from(self, site: SiteConfig, entity: ExternalEntity, incoming: dict[str, Any]) -> IngestResult:
        now = self._clock()
        changed_at = entity.modified_at or now
        record = ContentRecord(
            id=uuid.uuid4().hex,
            title=incoming.get("title", ""),
            body=incoming.get("body", ""),
            excerpt=incoming.get("excerpt", ""),
            status=ContentStatus(incoming.get("status", "draft")),
            content_type=incoming.get("content_type", "article"),
            organization_id=site.organization_id,
            created_at=changed_at,
            updated_at=changed_at,
            publishing_options=PublishingOptions(targets={site.name: True}),
            origin_platform=site.name,
        )
        try:
            with self._db.transaction() as conn:
                self.content.save(record, conn)
                self.state.record_ingest(
                    record.id, site.name, entity.external_id, target_hash(record, site.name), now, conn,
                )
        except sqlite3.IntegrityError:
            # A concurrent delivery of the same create committed first.
            mapping = self.state.find_by_external_id(site.name, entity.external_id)
            if mapping is None:
                raise
            logger.debug("webhook_duplicate", site=site.name, content_id=mapping.content_id)
            return IngestResult(site.name, "duplicate", mapping.content_id, entity.external_id)
        logger.info("content_ingested", site=site.name, content_id=record.id, action="created")
        return IngestResult(site.name, "created", record.id, entity.external_id)

    def _apply_inbound(
        self,
        record: ContentRecord,
        site_name: str,
        entity: ExternalEntity,
        incoming: dict[str, Any],
        honor_timestamps: bool,
    ) -> IngestResult:
        # Compare against what this site was sent, overrides included, so an
        # echo of our own push is recognised as unchanged.
        sent = target_fields(record, site_name)
        changed = {
            key: incoming[key]
            for key in INGESTED_FIELDS
            if key in incoming and incoming[key] != sent.get(key)
        }
        if not changed:
            logger.debug("webhook_duplicate", site=site_name, content_id=record.id)
            return IngestResult(site_name, "duplicate", record.id, entity.external_id)

        now = self._clock()
        changed_at = entity.modified_at or now
        if honor_timestamps:
            verdict = self._resolve_conflict(record.updated_at, changed_at)
            if verdict:
                logger.info("webhook_conflict_lost", site=site_name, content_id=record.id, reason=verdict)
                return IngestResult(site_name, "conflict", record.id, entity.external_id, reason=verdict)

        for key, value in changed.items():
            if key == "status":
                record.status = ContentStatus(value)
            else:
                setattr(record, key, value)
        record.updated_at = max(changed_at, record.updated_at)
        record.origin_platform = site_name
        with self._db.transaction() as conn:
            self.content.save(record, conn)
            self.state.record_ingest(record.id, site_name, entity.external_id, target_hash(record, site_name), now, conn)
            # The site now holds the winning version; an older queued push would overwrite it.
            self.state.drop_queued_pushes(record.id, site_name, conn)
        fanned = [r.platform for r in self._fan_out(record, exclude=site_name) if r.action != "noop"]
        logger.info("content_ingested", site=site_name, content_id=record.id, action="updated", fields=sorted(changed))
        return IngestResult(site_name, "updated", record.id, entity.external_id, fanned_out=fanned)

    def _resolve_conflict(self, local_at: datetime, remote_at: datetime) -> str:
        """Empty string when the inbound change wins, otherwise why it lost."""
        if remote_at > local_at:
            return ""
        if remote_at < local_at:
            return "local change is newer"
        if self._settings.tie_break == "remote":
            return ""
        return "equal timestamps, tie goes to local"

    def _archive_from(self, record: ContentRecord, site_name: str, entity: ExternalEntity) -> IngestResult:
        if record.status == ContentStatus.ARCHIVED and not record.publishing_options.is_enabled(site_name):
            return IngestResult(site_name, "duplicate", record.id, entity.external_id)
        now = self._clock()
        record.status = ContentStatus.ARCHIVED
        record.publishing_options = replace(
            record.publishing_options,
            targets={**record.publishing_options.targets, site_name: False},
        )
        record.updated_at = now
        record.origin_platform = site_name
        with self._db.transaction() as conn:
            self.content.save(record, conn)
            self.state.record_ingest(record.id, site_name, entity.external_id, target_hash(record, site_name), now, conn)
            self.state.drop_queued_pushes(record.id, site_name, conn)
        fanned = [r.platform for r in self._fan_out(record, exclude=site_name) if r.action != "noop"]
        logger.info("content_archived_by_remote", site=site_name, content_id=record.id)
        return IngestResult(site_name, "archived", record.id, entity.external_id, fanned_out=fanned)

    # ── Operator actions and views ───────────────────────────────

    def force_resolve(self, content_id: str, platform: str, prefer: str) -> dict[str, Any]:
        """Override the conflict policy for one pair.

        prefer="local" re-pushes the canonical version even if unchanged;
        prefer="remote" fetches the external version and applies it.
        """
        if prefer == "local":
            return self.push_to_target(content_id, platform, force=True).to_dict()
        if prefer != "remote":
            raise ValueError(f"prefer must be 'local' or 'remote', got {prefer!r}")

        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        adapter = self._adapters.get(platform)
        if adapter is None:
            raise UnknownSiteError(platform)
        mapping = self.state.get_mapping(content_id, platform)
        if mapping is None or mapping.external_id is None:
            raise TargetNotEnabledError(content_id, platform, "no external entity to pull from")
        entity = self._dispatcher.call(platform, adapter.fetch, mapping.external_id)
        result = self._apply_inbound(record, platform, entity, entity.to_canonical(), honor_timestamps=False)
        logger.info("conflict_force_resolved", content_id=content_id, platform=platform, prefer=prefer)
        return result.to_dict()

    def retry_event(self, event_id: int) -> SyncEvent:
        """Requeue a failed event with a fresh attempt budget."""
        if not self.state.retry_failed(event_id, self._clock()):
            event = self.state.get_event(event_id)
            if event is None:
                raise EventNotFoundError(event_id)
            raise InvalidTransitionError(f"sync event {event_id}", event.status.value, EventStatus.QUEUED.value)
        event = self.state.get_event(event_id)
        if self.content.get(event.content_id) is not None:
            self.state.prepare_mapping(event.content_id, event.platform)
        logger.info("sync_event_retry_requested", event_id=event_id)
        return event

    def sync_status(self, content_id: str) -> dict[str, Any]:
        """Per-target sync state for one record. Read-only."""
        record = self.content.get(content_id)
        if record is None:
            raise ContentNotFoundError(content_id)
        mappings = {m.platform: m for m in self.state.list_mappings(content_id)}
        targets = []
        for platform in sorted(set(record.publishing_options.targets) | set(mappings)):
            mapping = mappings.get(platform)
            queued = self.state.list_events(content_id=content_id, platform=platform, status=EventStatus.QUEUED, limit=1)
            in_sync = mapping is not None and mapping.last_synced_hash == target_hash(record, platform)
            targets.append({
                "platform": platform,
                "enabled": record.publishing_options.is_enabled(platform),
                "status": mapping.status.value if mapping else None,
                "external_id": mapping.external_id if mapping else None,
                "last_synced_at": mapping.last_synced_at.isoformat() if mapping and mapping.last_synced_at else None,
                "last_error": mapping.last_error if mapping else None,
                "in_sync": in_sync,
                "pending": bool(queued),
            })
        return {"content_id": content_id, "status": record.status.value, "targets": targets}

    def list_events(
        self,
        content_id: str | None = None,
        platform: str | None = None,
        status: EventStatus | None = None,
        limit: int = 100,
    ) -> list[SyncEvent]:
        return self.state.list_events(content_id=content_id, platform=platform, status=status, limit=limit)
