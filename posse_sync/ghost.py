"""Ghost CMS integration module.

Ghost Admin API uses JWT (HS256) authentication: the site's api_token is
the admin API key "{id}:{secret}", signed into a short-lived token. The
token is cached and rebuilt under a lock shortly before it expires.

Ghost signs its webhooks with its own header format,
"X-Ghost-Signature: sha256=<hex>, t=<timestamp>", where the HMAC covers
the raw body followed by the timestamp.
"""

from __future__ import annotations

import hmac
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Literal, Union

from posse_sync.config import SiteConfig
from posse_sync.errors import PayloadError
from posse_sync.http import request_json
from posse_sync.models import SyncOperation
from posse_sync.platforms import (
    WebhookEvent,
    WebsiteAdapter,
    load_json_body,
    parse_timestamp,
)
from posse_sync.signing import build_ghost_jwt, sign_body

ARCHIVED_TAG = "#archived"
TOKEN_TTL = 300
TOKEN_REFRESH_MARGIN = 30


@dataclass
class GhostPost:
    external_id: str
    title: str
    html: str
    custom_excerpt: str = ""
    status: str = "draft"  # "draft", "scheduled" or "published"
    tags: tuple[str, ...] = ()
    modified_at: datetime | None = None
    kind: Literal["post"] = "post"

    def to_canonical(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.html,
            "excerpt": self.custom_excerpt,
            "status": _canonical_status(self.status, self.tags),
            "content_type": "article",
        }


@dataclass
class GhostPage:
    external_id: str
    title: str
    html: str
    status: str = "draft"
    tags: tuple[str, ...] = ()
    modified_at: datetime | None = None
    kind: Literal["page"] = "page"

    def to_canonical(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.html,
            "status": _canonical_status(self.status, self.tags),
            "content_type": "page",
        }


GhostEntity = Union[GhostPost, GhostPage]


def _canonical_status(status: str, tags: tuple[str, ...]) -> str:
    if ARCHIVED_TAG in tags:
        return "archived"
    return "published" if status == "published" else "draft"


def _string(data: dict[str, Any], name: str, default: str = "") -> str:
    value = data.get(name)
    if value is None:
        return default
    if not isinstance(value, str):
        raise PayloadError(f"ghost: field {name!r} must be a string")
    return value


def entity_from_api(kind: str, data: dict[str, Any]) -> GhostEntity:
    """Map a Ghost Admin API post or page object onto its entity variant."""
    if not data.get("id"):
        raise PayloadError("ghost: entity has no id")
    raw_tags = data.get("tags") or []
    if not isinstance(raw_tags, list):
        raise PayloadError("ghost: field 'tags' must be a list")
    tags = tuple(_string(t, "name") for t in raw_tags if isinstance(t, dict))
    modified = parse_timestamp(data.get("updated_at"))
    if kind == "post":
        return GhostPost(
            external_id=f"post:{data['id']}",
            title=_string(data, "title"),
            html=_string(data, "html"),
            custom_excerpt=_string(data, "custom_excerpt"),
            status=_string(data, "status", "draft"),
            tags=tags,
            modified_at=modified,
        )
    if kind == "page":
        return GhostPage(
            external_id=f"page:{data['id']}",
            title=_string(data, "title"),
            html=_string(data, "html"),
            status=_string(data, "status", "draft"),
            tags=tags,
            modified_at=modified,
        )
    raise PayloadError(f"ghost: unsupported entity kind {kind!r}")


def from_canonical(fields: dict[str, Any]) -> dict[str, Any]:
    """Shape canonical fields into a Ghost Admin API post/page object."""
    status = fields.get("status", "draft")
    entry: dict[str, Any] = {
        "title": fields.get("title", ""),
        "html": fields.get("body", ""),
        "status": "published" if status == "published" else "draft",
        "tags": [{"name": ARCHIVED_TAG}] if status == "archived" else [],
    }
    if fields.get("content_type") != "page":
        entry["custom_excerpt"] = fields.get("excerpt", "")
    return entry


def _split_id(external_id: str) -> tuple[str, str]:
    kind, _, ghost_id = external_id.partition(":")
    if not ghost_id or kind not in ("post", "page"):
        raise PayloadError(f"ghost: malformed external id {external_id!r}")
    return kind, ghost_id


def parse_signature_header(header: str) -> tuple[str, str]:
    """Split "sha256=<hex>, t=<timestamp>" into (hex, timestamp)."""
    digest = timestamp = ""
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "sha256":
            digest = value
        elif key == "t":
            timestamp = value
    return digest, timestamp


class GhostClient(WebsiteAdapter):
    """Client for syncing content with Ghost via the Admin API."""

    kind = "ghost"

    def __init__(
        self,
        site: SiteConfig,
        live: bool = False,
        timeout: float = 30.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(site, live=live, timeout=timeout)
        self._clock = clock or time.time
        self._token_lock = threading.Lock()
        self._token: str | None = None
        self._token_expires = 0.0

    def _auth_token(self) -> str:
        with self._token_lock:
            now = self._clock()
            if self._token is None or now >= self._token_expires - TOKEN_REFRESH_MARGIN:
                self._token = build_ghost_jwt(self.site.api_token, ttl=TOKEN_TTL, clock=self._clock)
                self._token_expires = now + TOKEN_TTL
            return self._token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Ghost {self._auth_token()}"}

    def _url(self, kind: str, ghost_id: str = "") -> str:
        url = f"{self.site.base_url}/ghost/api/admin/{kind}s/"
        return f"{url}{ghost_id}/" if ghost_id else url

    def _create_live(self, content_id: str, fields: dict[str, Any]) -> str:
        kind = "page" if fields.get("content_type") == "page" else "post"
        result = request_json(
            self.platform, "POST", self._url(kind),
            body={f"{kind}s": [from_canonical(fields)]},
            params={"source": "html"},
            headers=self._headers(), timeout=self._timeout,
        )
        created = (result.get(f"{kind}s") or [{}])[0]
        if not created.get("id"):
            raise PayloadError("ghost: create response carried no id")
        return f"{kind}:{created['id']}"

    def _update_live(self, external_id: str, content_id: str, fields: dict[str, Any]) -> None:
        # Ghost rejects updates that do not echo the current updated_at.
        kind, ghost_id = _split_id(external_id)
        current = request_json(
            self.platform, "GET", self._url(kind, ghost_id),
            headers=self._headers(), timeout=self._timeout,
        )
        entry = from_canonical(fields)
        entry["updated_at"] = (current.get(f"{kind}s") or [{}])[0].get("updated_at")
        request_json(
            self.platform, "PUT", self._url(kind, ghost_id),
            body={f"{kind}s": [entry]},
            params={"source": "html"},
            headers=self._headers(), timeout=self._timeout,
        )

    def _delete_live(self, external_id: str) -> None:
        kind, ghost_id = _split_id(external_id)
        request_json(
            self.platform, "DELETE", self._url(kind, ghost_id),
            headers=self._headers(), timeout=self._timeout,
        )

    def _fetch_live(self, external_id: str) -> GhostEntity:
        kind, ghost_id = _split_id(external_id)
        result = request_json(
            self.platform, "GET", self._url(kind, ghost_id),
            params={"formats": "html"},
            headers=self._headers(), timeout=self._timeout,
        )
        return entity_from_api(kind, (result.get(f"{kind}s") or [{}])[0])

    def mock_external_id(self, seq: int, fields: dict[str, Any]) -> str:
        kind = "page" if fields.get("content_type") == "page" else "post"
        return f"{kind}:{seq:024x}"

    def entity_from_fields(self, external_id: str, fields: dict[str, Any]) -> GhostEntity:
        kind, ghost_id = _split_id(external_id)
        return entity_from_api(kind, {"id": ghost_id, **from_canonical(fields)})

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        secret = self.site.webhook_secret
        if not secret or not signature:
            return False
        digest, timestamp = parse_signature_header(signature)
        if not digest or not timestamp:
            return False
        expected = sign_body(secret, raw_body + timestamp.encode("utf-8"))
        return hmac.compare_digest(expected.encode("ascii"), digest.lower().encode("ascii", errors="replace"))

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """Parse a Ghost webhook: {"post": {"current": {...}, "previous": {...}}}.

        An empty "current" means the entity was deleted; an empty
        "previous" means it was just added.
        """
        data = load_json_body(self.platform, raw_body)
        for kind in ("post", "page"):
            envelope = data.get(kind)
            if isinstance(envelope, dict):
                break
        else:
            raise PayloadError("ghost: webhook has no post or page envelope")

        current = envelope.get("current") or {}
        previous = envelope.get("previous") or {}
        if not isinstance(current, dict) or not isinstance(previous, dict):
            raise PayloadError("ghost: webhook current and previous must be objects")
        if not current:
            if not previous.get("id"):
                raise PayloadError("ghost: delete webhook has no previous entity")
            return WebhookEvent(action=SyncOperation.DELETE, entity=entity_from_api(kind, previous))
        action = SyncOperation.UPDATE if previous else SyncOperation.CREATE
        return WebhookEvent(action=action, entity=entity_from_api(kind, current))
