"""Content digests used for change detection and redelivery protection."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from posse_sync.models import ContentRecord

# Fields of a ContentRecord that an inbound webhook can carry.
INGESTED_FIELDS = ("title", "body", "excerpt", "status")


def content_hash(fields: dict[str, Any]) -> str:
    """Stable SHA-256 digest of a field mapping (key order independent)."""
    encoded = json.dumps(fields, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def target_fields(record: ContentRecord, platform: str) -> dict[str, Any]:
    """Fields pushed to one target: canonical fields plus its overrides."""
    fields = record.canonical_fields()
    fields.update(record.publishing_options.overrides_for(platform))
    return fields


def target_hash(record: ContentRecord, platform: str) -> str:
    return content_hash(target_fields(record, platform))

