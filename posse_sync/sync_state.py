"""Sync mappings and the outbound event queue.

The queue enforces two invariants in SQL rather than in process memory,
so they hold across worker threads and processes sharing the database:

- single-flight: at most one in_progress event per (content_id, platform);
- FIFO per pair: an event is only claimable when no older event for the
  same pair is still queued or in progress.

Every transition out of in_progress is conditional on the event still
being in_progress, so a worker whose claim was reset as stale cannot
overwrite the outcome of the worker that re-claimed it.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any

from posse_sync.models import (
    EventDirection,
    EventStatus,
    MappingStatus,
    SyncEvent,
    SyncMapping,
    SyncOperation,
)
from posse_sync.store import Database, from_db, to_db


def _row_to_mapping(row: sqlite3.Row) -> SyncMapping:
    return SyncMapping(
        content_id=row["content_id"],
        platform=row["platform"],
        external_id=row["external_id"],
        last_synced_at=from_db(row["last_synced_at"]),
        last_synced_hash=row["last_synced_hash"],
        status=MappingStatus(row["status"]),
        last_error=row["last_error"],
    )


def _row_to_event(row: sqlite3.Row) -> SyncEvent:
    return SyncEvent(
        id=row["id"],
        content_id=row["content_id"],
        platform=row["platform"],
        direction=EventDirection(row["direction"]),
        operation=SyncOperation(row["operation"]),
        payload=json.loads(row["payload"]),
        content_hash=row["content_hash"],
        attempt_count=row["attempt_count"],
        max_attempts=row["max_attempts"],
        status=EventStatus(row["status"]),
        next_attempt_at=from_db(row["next_attempt_at"]),
        claimed_at=from_db(row["claimed_at"]),
        last_error=row["last_error"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


def merge_operations(queued: SyncOperation, incoming: SyncOperation) -> SyncOperation:
    """Operation of a queued event after a newer change collapses into it."""
    if incoming == SyncOperation.DELETE or queued == SyncOperation.DELETE:
        return SyncOperation.DELETE
    if queued == SyncOperation.CREATE:
        return SyncOperation.CREATE
    return incoming


class SyncStateStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    # ── Mappings ─────────────────────────────────────────────────

    def get_mapping(self, content_id: str, platform: str) -> SyncMapping | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_mappings WHERE content_id = ? AND platform = ?",
                (content_id, platform),
            ).fetchone()
        return _row_to_mapping(row) if row else None

    def list_mappings(self, content_id: str) -> list[SyncMapping]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_mappings WHERE content_id = ? ORDER BY platform",
                (content_id,),
            ).fetchall()
        return [_row_to_mapping(r) for r in rows]

    def find_by_external_id(self, platform: str, external_id: str) -> SyncMapping | None:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_mappings WHERE platform = ? AND external_id = ?",
                (platform, external_id),
            ).fetchone()
        return _row_to_mapping(row) if row else None

    def prepare_mapping(self, content_id: str, platform: str) -> None:
        """Create the mapping as pending, or return a failed one to pending."""
        with self._db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO sync_mappings (content_id, platform, status) VALUES (?, ?, ?)",
                (content_id, platform, MappingStatus.PENDING.value),
            )
            conn.execute(
                "UPDATE sync_mappings SET status = ? WHERE content_id = ? AND platform = ? AND status = ?",
                (MappingStatus.PENDING.value, content_id, platform, MappingStatus.FAILED.value),
            )

    def mark_synced(
        self,
        content_id: str,
        platform: str,
        external_id: str | None,
        content_hash: str | None,
        now: datetime,
        conn: sqlite3.Connection | None = None,
    ) -> None:
        """Record a successful sync; an existing external_id is never replaced."""
        sql = """
            UPDATE sync_mappings SET
                external_id = COALESCE(external_id, ?),
                last_synced_hash = ?,
                last_synced_at = ?,
                status = ?,
                last_error = NULL
            WHERE content_id = ? AND platform = ?
        """
        params = (external_id, content_hash, to_db(now), MappingStatus.SYNCED.value, content_id, platform)
        if conn is not None:
            conn.execute(sql, params)
            return
        with self._db.connect() as own:
            own.execute(sql, params)

    def mark_mapping_failed(self, content_id: str, platform: str, error: str) -> None:
        with self._db.connect() as conn:
            conn.execute(
                "UPDATE sync_mappings SET status = ?, last_error = ? WHERE content_id = ? AND platform = ?",
                (MappingStatus.FAILED.value, error, content_id, platform),
            )

    def note_mapping_error(self, content_id: str, platform: str, error: str) -> None:
        """Record a retryable error without changing the mapping status."""
        with self._db.connect() as conn:
            conn.execute(
                "UPDATE sync_mappings SET last_error = ? WHERE content_id = ? AND platform = ?",
                (error, content_id, platform),
            )

    def record_ingest(
        self,
        content_id: str,
        platform: str,
        external_id: str,
        content_hash: str,
        now: datetime,
        conn: sqlite3.Connection,
    ) -> None:
        """Create or refresh the mapping for content that arrived from platform."""
        conn.execute(
            """
            INSERT INTO sync_mappings
                (content_id, platform, external_id, last_synced_at, last_synced_hash, status)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(content_id, platform) DO UPDATE SET
                external_id = COALESCE(sync_mappings.external_id, excluded.external_id),
                last_synced_at = excluded.last_synced_at,
                last_synced_hash = excluded.last_synced_hash,
                status = excluded.status,
                last_error = NULL
            """,
            (content_id, platform, external_id, to_db(now), content_hash, MappingStatus.SYNCED.value),
        )

    def drop_queued_pushes(self, content_id: str, platform: str, conn: sqlite3.Connection) -> int:
        """Discard queued create/update events for a pair whose site now holds newer content."""
        cur = conn.execute(
            """DELETE FROM sync_events
               WHERE content_id = ? AND platform = ? AND direction = ? AND status = ? AND operation != ?""",
            (
                content_id, platform, EventDirection.OUTBOUND.value,
                EventStatus.QUEUED.value, SyncOperation.DELETE.value,
            ),
        )
        return cur.rowcount

    # ── Events ───────────────────────────────────────────────────

    def enqueue(
        self,
        content_id: str,
        platform: str,
        operation: SyncOperation,
        payload: dict[str, Any],
        content_hash: str | None,
        max_attempts: int,
        now: datetime,
        direction: EventDirection = EventDirection.OUTBOUND,
    ) -> tuple[SyncEvent, bool]:
        """Queue a change for a pair, collapsing into an already queued event.

        Returns the event and whether it was collapsed into an existing one.
        An in_progress event is never modified; the change queues behind it.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                """SELECT * FROM sync_events
                   WHERE content_id = ? AND platform = ? AND direction = ? AND status = ?
                   ORDER BY id DESC LIMIT 1""",
                (content_id, platform, direction.value, EventStatus.QUEUED.value),
            ).fetchone()
            if row is not None:
                merged = merge_operations(SyncOperation(row["operation"]), operation)
                conn.execute(
                    """UPDATE sync_events SET operation = ?, payload = ?, content_hash = ?, updated_at = ?
                       WHERE id = ?""",
                    (merged.value, json.dumps(payload), content_hash, to_db(now), row["id"]),
                )
                event_id = row["id"]
                collapsed = True
            else:
                cur = conn.execute(
                    """INSERT INTO sync_events
                        (content_id, platform, direction, operation, payload, content_hash,
                         attempt_count, max_attempts, status, next_attempt_at, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)""",
                    (
                        content_id, platform, direction.value, operation.value,
                        json.dumps(payload), content_hash, max_attempts,
                        EventStatus.QUEUED.value, to_db(now), to_db(now), to_db(now),
                    ),
                )
                event_id = cur.lastrowid
                collapsed = False
            event = _row_to_event(conn.execute("SELECT * FROM sync_events WHERE id = ?", (event_id,)).fetchone())
        return event, collapsed

    def get_event(self, event_id: int) -> SyncEvent | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM sync_events WHERE id = ?", (event_id,)).fetchone()
        return _row_to_event(row) if row else None

    def queued_event(self, content_id: str, platform: str) -> SyncEvent | None:
        with self._db.connect() as conn:
            row = conn.execute(
                """SELECT * FROM sync_events
                   WHERE content_id = ? AND platform = ? AND direction = ? AND status = ?
                   ORDER BY id DESC LIMIT 1""",
                (content_id, platform, EventDirection.OUTBOUND.value, EventStatus.QUEUED.value),
            ).fetchone()
        return _row_to_event(row) if row else None

    def due_events(self, now: datetime, limit: int | None = None) -> list[SyncEvent]:
        """Queued events whose next attempt is due, oldest first."""
        with self._db.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_events
                   WHERE status = ? AND next_attempt_at <= ?
                   ORDER BY id LIMIT ?""",
                (EventStatus.QUEUED.value, to_db(now), -1 if limit is None else limit),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def claim(self, event_id: int, now: datetime) -> bool:
        """queued → in_progress, only if no older or running event holds the pair."""
        with self._db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE sync_events SET status = ?, claimed_at = ?, updated_at = ?
                WHERE id = ? AND status = ? AND next_attempt_at <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM sync_events AS other
                      WHERE other.content_id = sync_events.content_id
                        AND other.platform = sync_events.platform
                        AND other.id != sync_events.id
                        AND (other.status = ? OR (other.status = ? AND other.id < sync_events.id))
                  )
                """,
                (
                    EventStatus.IN_PROGRESS.value, to_db(now), to_db(now),
                    event_id, EventStatus.QUEUED.value, to_db(now),
                    EventStatus.IN_PROGRESS.value, EventStatus.QUEUED.value,
                ),
            )
        return cur.rowcount == 1

    def reset_stale(self, cutoff: datetime, now: datetime) -> int:
        """Return events claimed before cutoff to the queue (worker died mid-call)."""
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE sync_events SET status = ?, claimed_at = NULL, updated_at = ?,
                       last_error = 'claim expired'
                   WHERE status = ? AND claimed_at < ?""",
                (EventStatus.QUEUED.value, to_db(now), EventStatus.IN_PROGRESS.value, to_db(cutoff)),
            )
        return cur.rowcount

    def complete(self, event_id: int, now: datetime, conn: sqlite3.Connection | None = None) -> bool:
        sql = """UPDATE sync_events SET status = ?, claimed_at = NULL, last_error = NULL, updated_at = ?
                 WHERE id = ? AND status = ?"""
        params = (EventStatus.SUCCEEDED.value, to_db(now), event_id, EventStatus.IN_PROGRESS.value)
        if conn is not None:
            return conn.execute(sql, params).rowcount == 1
        with self._db.connect() as own:
            return own.execute(sql, params).rowcount == 1

    def requeue(self, event_id: int, attempt_count: int, next_attempt_at: datetime, error: str, now: datetime) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE sync_events SET status = ?, attempt_count = ?, next_attempt_at = ?,
                       claimed_at = NULL, last_error = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    EventStatus.QUEUED.value, attempt_count, to_db(next_attempt_at), error,
                    to_db(now), event_id, EventStatus.IN_PROGRESS.value,
                ),
            )
        return cur.rowcount == 1

    def fail(self, event_id: int, attempt_count: int, error: str, now: datetime) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE sync_events SET status = ?, attempt_count = ?, claimed_at = NULL,
                       last_error = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (EventStatus.FAILED.value, attempt_count, error, to_db(now), event_id, EventStatus.IN_PROGRESS.value),
            )
        return cur.rowcount == 1

    def retry_failed(self, event_id: int, now: datetime) -> bool:
        """failed → queued with a fresh attempt budget."""
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE sync_events SET status = ?, attempt_count = 0, next_attempt_at = ?,
                       last_error = NULL, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (EventStatus.QUEUED.value, to_db(now), to_db(now), event_id, EventStatus.FAILED.value),
            )
        return cur.rowcount == 1

    def list_events(
        self,
        content_id: str | None = None,
        platform: str | None = None,
        status: EventStatus | None = None,
        limit: int = 100,
    ) -> list[SyncEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if content_id is not None:
            clauses.append("content_id = ?")
            params.append(content_id)
        if platform is not None:
            clauses.append("platform = ?")
            params.append(platform)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM sync_events {where} ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def count_by_status(self) -> dict[str, int]:
        with self._db.connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM sync_events GROUP BY status").fetchall()
        return {row["status"]: row["n"] for row in rows}
