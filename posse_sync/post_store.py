"""Scheduled social posts and the scheduling rule table.

A processing pass owns a post only after moving it scheduled → claimed
with a fresh claim token in one conditional UPDATE. Every later
transition checks both the claimed status and the token, so two passes
can never both publish the same post.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime
from typing import Any, Iterable

from posse_sync.models import PostPayload, PostStatus, ScheduledPost, SchedulingRule
from posse_sync.store import Database, from_db, to_db


def _row_to_post(row: sqlite3.Row) -> ScheduledPost:
    return ScheduledPost(
        id=row["id"],
        platform=row["platform"],
        post_payload=PostPayload.from_dict(json.loads(row["post_payload"])),
        scheduled_time=from_db(row["scheduled_time"]),
        content_id=row["content_id"],
        account_ref=row["account_ref"],
        organization_id=row["organization_id"],
        status=PostStatus(row["status"]),
        published_time=from_db(row["published_time"]),
        platform_post_id=row["platform_post_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        error_message=row["error_message"],
        claimed_at=from_db(row["claimed_at"]),
        claim_token=row["claim_token"],
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
    )


class PostStore:
    def __init__(self, db: Database) -> None:
        self._db = db

    def insert(self, post: ScheduledPost) -> None:
        with self._db.connect() as conn:
            conn.execute(
                """INSERT INTO scheduled_posts
                    (id, content_id, platform, account_ref, organization_id, status,
                     scheduled_time, published_time, post_payload, platform_post_id,
                     retry_count, max_retries, error_message, claimed_at, claim_token,
                     created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    post.id, post.content_id, post.platform, post.account_ref,
                    post.organization_id, post.status.value, to_db(post.scheduled_time),
                    to_db(post.published_time), json.dumps(post.post_payload.to_dict()),
                    post.platform_post_id, post.retry_count, post.max_retries,
                    post.error_message, to_db(post.claimed_at), post.claim_token,
                    to_db(post.created_at), to_db(post.updated_at),
                ),
            )

    def get(self, post_id: str) -> ScheduledPost | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM scheduled_posts WHERE id = ?", (post_id,)).fetchone()
        return _row_to_post(row) if row else None

    def list_posts(
        self,
        platform: str | None = None,
        status: PostStatus | None = None,
        content_id: str | None = None,
        organization_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[ScheduledPost]:
        """Posts matching every given filter, by scheduled time."""
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("platform", platform),
            ("status", status.value if status else None),
            ("content_id", content_id),
            ("organization_id", organization_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            clauses.append("scheduled_time >= ?")
            params.append(to_db(since))
        if until is not None:
            clauses.append("scheduled_time <= ?")
            params.append(to_db(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM scheduled_posts {where} ORDER BY scheduled_time, id LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [_row_to_post(r) for r in rows]

    def due(self, now: datetime, limit: int | None = None) -> list[ScheduledPost]:
        with self._db.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM scheduled_posts
                   WHERE status = ? AND scheduled_time <= ?
                   ORDER BY scheduled_time, id LIMIT ?""",
                (PostStatus.SCHEDULED.value, to_db(now), -1 if limit is None else limit),
            ).fetchall()
        return [_row_to_post(r) for r in rows]

    def release_stale(self, cutoff: datetime, now: datetime) -> int:
        """claimed → scheduled for claims taken before cutoff."""
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE scheduled_posts SET status = ?, claim_token = NULL, claimed_at = NULL, updated_at = ?
                   WHERE status = ? AND claimed_at < ?""",
                (PostStatus.SCHEDULED.value, to_db(now), PostStatus.CLAIMED.value, to_db(cutoff)),
            )
        return cur.rowcount

    def claim(self, post_id: str, token: str, now: datetime) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE scheduled_posts SET status = ?, claim_token = ?, claimed_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND scheduled_time <= ?""",
                (
                    PostStatus.CLAIMED.value, token, to_db(now), to_db(now),
                    post_id, PostStatus.SCHEDULED.value, to_db(now),
                ),
            )
        return cur.rowcount == 1

    def _finish_claim(self, post_id: str, token: str, assignments: str, params: Iterable[Any]) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                f"""UPDATE scheduled_posts SET {assignments}, claim_token = NULL, claimed_at = NULL
                    WHERE id = ? AND status = ? AND claim_token = ?""",
                (*params, post_id, PostStatus.CLAIMED.value, token),
            )
        return cur.rowcount == 1

    def mark_published(self, post_id: str, token: str, platform_post_id: str, now: datetime) -> bool:
        return self._finish_claim(
            post_id, token,
            "status = ?, platform_post_id = ?, published_time = ?, error_message = NULL, updated_at = ?",
            (PostStatus.PUBLISHED.value, platform_post_id, to_db(now), to_db(now)),
        )

    def reschedule(
        self, post_id: str, token: str, retry_count: int, scheduled_time: datetime, error: str, now: datetime,
    ) -> bool:
        return self._finish_claim(
            post_id, token,
            "status = ?, retry_count = ?, scheduled_time = ?, error_message = ?, updated_at = ?",
            (PostStatus.SCHEDULED.value, retry_count, to_db(scheduled_time), error, to_db(now)),
        )

    def mark_failed(self, post_id: str, token: str, retry_count: int, error: str, now: datetime) -> bool:
        return self._finish_claim(
            post_id, token,
            "status = ?, retry_count = ?, error_message = ?, updated_at = ?",
            (PostStatus.FAILED.value, retry_count, error, to_db(now)),
        )

    def cancel(self, post_id: str, now: datetime) -> bool:
        with self._db.connect() as conn:
            cur = conn.execute(
                "UPDATE scheduled_posts SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (PostStatus.CANCELLED.value, to_db(now), post_id, PostStatus.SCHEDULED.value),
            )
        return cur.rowcount == 1

    def update_scheduled(
        self,
        post_id: str,
        payload: PostPayload | None,
        scheduled_time: datetime | None,
        now: datetime,
    ) -> bool:
        assignments = ["updated_at = ?"]
        params: list[Any] = [to_db(now)]
        if payload is not None:
            assignments.append("post_payload = ?")
            params.append(json.dumps(payload.to_dict()))
        if scheduled_time is not None:
            assignments.append("scheduled_time = ?")
            params.append(to_db(scheduled_time))
        with self._db.connect() as conn:
            cur = conn.execute(
                f"UPDATE scheduled_posts SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, post_id, PostStatus.SCHEDULED.value),
            )
        return cur.rowcount == 1

    def retry_failed(self, post_id: str, scheduled_time: datetime, now: datetime) -> bool:
        """failed → scheduled with the retry budget reset."""
        with self._db.connect() as conn:
            cur = conn.execute(
                """UPDATE scheduled_posts SET status = ?, retry_count = 0, scheduled_time = ?,
                       error_message = NULL, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (PostStatus.SCHEDULED.value, to_db(scheduled_time), to_db(now), post_id, PostStatus.FAILED.value),
            )
        return cur.rowcount == 1

    def status_counts(self, since: datetime | None = None) -> list[tuple[str, str, int]]:
        """(platform, status, count) rows for posts scheduled at or after since."""
        query = "SELECT platform, status, COUNT(*) AS n FROM scheduled_posts"
        params: tuple[Any, ...] = ()
        if since is not None:
            query += " WHERE scheduled_time >= ?"
            params = (to_db(since),)
        query += " GROUP BY platform, status ORDER BY platform, status"
        with self._db.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [(r["platform"], r["status"], r["n"]) for r in rows]

    # ── Scheduling rules ─────────────────────────────────────────

    def seed_rules(self, rules: Iterable[SchedulingRule]) -> None:
        with self._db.transaction() as conn:
            for rule in rules:
                conn.execute(
                    """INSERT OR REPLACE INTO scheduling_rules
                        (platform, hour, minute, timezone, exclude_weekends)
                       VALUES (?, ?, ?, ?, ?)""",
                    (rule.platform, rule.hour, rule.minute, rule.timezone, int(rule.exclude_weekends)),
                )

    def get_rule(self, platform: str) -> SchedulingRule | None:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM scheduling_rules WHERE platform = ?", (platform,)).fetchone()
        if row is None:
            return None
        return SchedulingRule(
            platform=row["platform"],
            hour=row["hour"],
            minute=row["minute"],
            timezone=row["timezone"],
            exclude_weekends=bool(row["exclude_weekends"]),
        )
