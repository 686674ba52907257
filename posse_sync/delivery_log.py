"""Persistent audit log of adapter dispatches and rejected webhooks.

Records every outbound push, social publish, and webhook rejection to a
JSON file so operators can audit failures after the fact. The log is
bounded: once max_records is exceeded the oldest entries are dropped.
"""

from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

KIND_PUSH = "push"
KIND_PUBLISH = "publish"
KIND_WEBHOOK_REJECTED = "webhook_rejected"


@dataclass
class DeliveryRecord:
    """A single dispatch attempt or audit event."""
    kind: str  # "push", "publish", "webhook_rejected"
    subject_id: str  # content id, post id, or site name
    platform: str
    status: str  # "success", "failure", "retry", "rejected"
    operation: str = ""
    external_id: str = ""
    error: str = ""
    attempt: int = 0
    timestamp: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()


class DeliveryLog:
    """JSON file-backed delivery log (in-memory when no path is given)."""

    def __init__(self, path: Path | None = None, max_records: int = 10000) -> None:
        self._path = path
        self._max_records = max_records
        self._lock = threading.Lock()
        self._records: list[DeliveryRecord] = []
        if path and path.exists():
            self._load()

    def _load(self) -> None:
        if not self._path or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._records = [
                DeliveryRecord(**rec) for rec in data.get("records", [])
            ]
        except (json.JSONDecodeError, TypeError):
            logger.warning("delivery_log_corrupt", path=str(self._path))
            self._records = []

    def _save(self) -> None:
        if not self._path:
            return
        data = {"records": [asdict(r) for r in self._records]}
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
        os.replace(str(tmp), str(self._path))

    def append(self, record: DeliveryRecord) -> None:
        with self._lock:
            self._records.append(record)
            if self._max_records > 0 and len(self._records) > self._max_records:
                self._records = self._records[-self._max_records:]
            self._save()

    def get_by_subject(self, subject_id: str) -> list[DeliveryRecord]:
        with self._lock:
            return [r for r in self._records if r.subject_id == subject_id]

    def get_by_platform(self, platform: str) -> list[DeliveryRecord]:
        with self._lock:
            return [r for r in self._records if r.platform == platform]

    def get_failures(self) -> list[DeliveryRecord]:
        with self._lock:
            return [r for r in self._records if r.status in ("failure", "rejected")]

    @property
    def total_records(self) -> int:
        return len(self._records)

    @property
    def all_records(self) -> list[DeliveryRecord]:
        with self._lock:
            return list(self._records)
