"""SQLite persistence: connection handling, schema, and the content store.

Every operation opens its own short-lived connection so worker threads
never share one. State transitions are single conditional UPDATE
statements; read-modify-write sequences run inside BEGIN IMMEDIATE so
they serialize against other writers.

Timestamps are stored as UTC ISO 8601 strings with fixed microsecond
precision, so lexical comparison in SQL matches chronological order.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

import structlog

from posse_sync.models import ContentRecord, ContentStatus, PublishingOptions

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS content_records (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL DEFAULT 'default',
    title TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    excerpt TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'draft',
    content_type TEXT NOT NULL DEFAULT 'article',
    publishing_options TEXT NOT NULL DEFAULT '{}',
    origin_platform TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_mappings (
    content_id TEXT NOT NULL REFERENCES content_records(id) ON DELETE CASCADE,
    platform TEXT NOT NULL,
    external_id TEXT,
    last_synced_at TEXT,
    last_synced_hash TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT,
    PRIMARY KEY (content_id, platform)
);

CREATE TABLE IF NOT EXISTS sync_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    content_id TEXT NOT NULL,
    platform TEXT NOT NULL,
    direction TEXT NOT NULL DEFAULT 'outbound',
    operation TEXT NOT NULL,
    payload TEXT NOT NULL DEFAULT '{}',
    content_hash TEXT,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    status TEXT NOT NULL DEFAULT 'queued',
    next_attempt_at TEXT NOT NULL,
    claimed_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduled_posts (
    id TEXT PRIMARY KEY,
    content_id TEXT,
    platform TEXT NOT NULL,
    account_ref TEXT NOT NULL DEFAULT '',
    organization_id TEXT NOT NULL DEFAULT 'default',
    status TEXT NOT NULL DEFAULT 'scheduled',
    scheduled_time TEXT NOT NULL,
    published_time TEXT,
    post_payload TEXT NOT NULL DEFAULT '{}',
    platform_post_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    claimed_at TEXT,
    claim_token TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS scheduling_rules (
    platform TEXT PRIMARY KEY,
    hour INTEGER NOT NULL,
    minute INTEGER NOT NULL DEFAULT 0,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    exclude_weekends INTEGER NOT NULL DEFAULT 0
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mappings_external
    ON sync_mappings(platform, external_id) WHERE external_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_events_due ON sync_events(status, next_attempt_at);
CREATE INDEX IF NOT EXISTS idx_events_pair ON sync_events(content_id, platform, status);
CREATE INDEX IF NOT EXISTS idx_posts_due ON scheduled_posts(status, scheduled_time);
CREATE INDEX IF NOT EXISTS idx_content_org ON content_records(organization_id);
"""


def to_db(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class Database:
    """Owns the SQLite file and hands out per-operation connections."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self.connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.debug("database_ready", path=str(self.path))

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Autocommit connection; each statement is its own transaction."""
        conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction taken with BEGIN IMMEDIATE (rolled back on error)."""
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")


def _row_to_record(row: sqlite3.Row) -> ContentRecord:
    return ContentRecord(
        id=row["id"],
        title=row["title"],
        body=row["body"],
        excerpt=row["excerpt"],
        status=ContentStatus(row["status"]),
        content_type=row["content_type"],
        organization_id=row["organization_id"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
        publishing_options=PublishingOptions.from_dict(json.loads(row["publishing_options"])),
        origin_platform=row["origin_platform"],
    )


class ContentStore:
    """Canonical content records, scoped by organization."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, content_id: str, organization_id: str | None = None) -> ContentRecord | None:
        query = "SELECT * FROM content_records WHERE id = ?"
        params: list[Any] = [content_id]
        if organization_id is not None:
            query += " AND organization_id = ?"
            params.append(organization_id)
        with self._db.connect() as conn:
            row = conn.execute(query, params).fetchone()
        return _row_to_record(row) if row else None

    def save(self, record: ContentRecord, conn: sqlite3.Connection | None = None) -> None:
        """Insert or update a record (created_at is kept on update)."""
        params = (
            record.id, record.organization_id, record.title, record.body,
            record.excerpt, record.status.value, record.content_type,
            json.dumps(record.publishing_options.to_dict()),
            record.origin_platform, to_db(record.created_at), to_db(record.updated_at),
        )
        sql = """
            INSERT INTO content_records
                (id, organization_id, title, body, excerpt, status, content_type,
                 publishing_options, origin_platform, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                organization_id = excluded.organization_id,
                title = excluded.title,
                body = excluded.body,
                excerpt = excluded.excerpt,
                status = excluded.status,
                content_type = excluded.content_type,
                publishing_options = excluded.publishing_options,
                origin_platform = excluded.origin_platform,
                updated_at = excluded.updated_at
        """
        if conn is not None:
            conn.execute(sql, params)
            return
        with self._db.connect() as own:
            own.execute(sql, params)

    def delete(self, content_id: str) -> bool:
        """Delete a record; its sync mappings cascade."""
        with self._db.connect() as conn:
            cur = conn.execute("DELETE FROM content_records WHERE id = ?", (content_id,))
        return cur.rowcount > 0

    def list_records(
        self,
        organization_id: str | None = None,
        status: ContentStatus | None = None,
        limit: int = 100,
    ) -> list[ContentRecord]:
        clauses: list[str] = []
        params: list[Any] = []
        if organization_id is not None:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM content_records {where} ORDER BY updated_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_record(r) for r in rows]
