"""Adapter contracts for website CMSs and social platforms.

Every adapter follows the same live/mock pattern: in mock mode calls are
recorded locally and synthetic identifiers are returned, so the engine
and scheduler can run end to end without network access.

Website adapters also own their platform's inbound payload shapes: a
small tagged union of entity dataclasses (one per supported entity type),
each with an explicit mapping to canonical ContentRecord fields.
"""

from __future__ import annotations

import itertools
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from posse_sync.config import SiteConfig
from posse_sync.errors import NotFoundError, PayloadError
from posse_sync.models import PostPayload, SyncOperation
from posse_sync.signing import verify_signature


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp from a payload; naive values are UTC."""
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise PayloadError(f"invalid timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def load_json_body(platform: str, raw_body: bytes) -> dict[str, Any]:
    try:
        data = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PayloadError(f"{platform}: body is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise PayloadError(f"{platform}: body must be a JSON object")
    return data


class ExternalEntity(Protocol):
    """Common surface of every platform entity variant."""
    kind: str
    external_id: str
    modified_at: datetime | None

    def to_canonical(self) -> dict[str, Any]: ...


@dataclass
class WebhookEvent:
    """A parsed inbound change notification."""
    action: SyncOperation
    entity: ExternalEntity


class WebsiteAdapter(ABC):
    """Base class for website CMS adapters (one instance per configured site)."""

    kind: str = ""

    def __init__(self, site: SiteConfig, live: bool = False, timeout: float = 30.0) -> None:
        self.site = site
        self.platform = site.name
        self._live = live
        self._timeout = timeout
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._entities: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []

    # ── Outbound ─────────────────────────────────────────────────

    def create(self, content_id: str, fields: dict[str, Any]) -> str:
        """Create the external entity and return its external ID."""
        self._track("create", content_id)
        if self._live:
            return self._create_live(content_id, fields)
        with self._lock:
            external_id = self.mock_external_id(next(self._ids), fields)
            self._entities[external_id] = dict(fields)
        return external_id

    def update(self, external_id: str, content_id: str, fields: dict[str, Any]) -> None:
        self._track("update", external_id)
        if self._live:
            self._update_live(external_id, content_id, fields)
            return
        with self._lock:
            if external_id not in self._entities:
                raise NotFoundError(self.platform, f"{external_id} does not exist", 404)
            self._entities[external_id] = dict(fields)

    def delete(self, external_id: str) -> None:
        """Delete the external entity; raises NotFoundError if already absent."""
        self._track("delete", external_id)
        if self._live:
            self._delete_live(external_id)
            return
        with self._lock:
            if self._entities.pop(external_id, None) is None:
                raise NotFoundError(self.platform, f"{external_id} does not exist", 404)

    def fetch(self, external_id: str) -> ExternalEntity:
        """Load the current external version of an entity."""
        if self._live:
            return self._fetch_live(external_id)
        with self._lock:
            fields = self._entities.get(external_id)
        if fields is None:
            raise NotFoundError(self.platform, f"{external_id} does not exist", 404)
        return self.entity_from_fields(external_id, fields)

    # ── Inbound ──────────────────────────────────────────────────

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        """Verify a webhook signature header against the raw request body."""
        return verify_signature(self.site.webhook_secret, raw_body, signature)

    def handshake(self, params: dict[str, str]) -> dict[str, Any]:
        """Answer a webhook verification challenge (GET on the webhook URL)."""
        challenge = params.get("challenge") or params.get("hub.challenge")
        if challenge:
            return {"challenge": challenge}
        return {"site": self.platform, "kind": self.kind, "status": "ok"}

    @abstractmethod
    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """Parse a verified webhook body into a WebhookEvent."""

    # ── Platform specifics ───────────────────────────────────────

    @abstractmethod
    def mock_external_id(self, seq: int, fields: dict[str, Any]) -> str:
        """Synthetic external ID in this platform's ID format."""

    @abstractmethod
    def entity_from_fields(self, external_id: str, fields: dict[str, Any]) -> ExternalEntity:
        """Build an entity variant from canonical fields (mock fetch)."""

    @abstractmethod
    def _create_live(self, content_id: str, fields: dict[str, Any]) -> str: ...

    @abstractmethod
    def _update_live(self, external_id: str, content_id: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    def _delete_live(self, external_id: str) -> None: ...

    @abstractmethod
    def _fetch_live(self, external_id: str) -> ExternalEntity: ...

    def _track(self, operation: str, ref: str) -> None:
        with self._lock:
            self.calls.append((operation, ref))

    @property
    def entity_count(self) -> int:
        return len(self._entities)


class SocialAdapter(ABC):
    """Base class for social platform publishers."""

    platform: str = ""
    max_chars: int = 3000

    def __init__(self, live: bool = False, timeout: float = 30.0) -> None:
        self._live = live
        self._timeout = timeout
        self._lock = threading.Lock()
        self._posted: list[dict[str, Any]] = []

    def publish(self, payload: PostPayload, account_ref: str) -> str:
        """Publish a post and return the platform post ID."""
        if self._live:
            post_id = self._publish_live(payload, account_ref)
        else:
            with self._lock:
                post_id = f"mock-{self.platform}-{len(self._posted) + 1}"
        with self._lock:
            self._posted.append({"id": post_id, "text": payload.text, "account": account_ref})
        return post_id

    @abstractmethod
    def _publish_live(self, payload: PostPayload, account_ref: str) -> str: ...

    @property
    def post_count(self) -> int:
        return len(self._posted)
