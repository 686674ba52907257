"""WordPress integration module.

Pushes canonical content to the WordPress REST API (wp/v2) using a bearer
token, and parses the change webhooks sent by the site's bridge plugin.

External IDs carry the REST collection so pages and posts can share one
mapping table: "post:123" or "page:45".
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Union

from posse_sync.errors import PayloadError
from posse_sync.http import request_json
from posse_sync.models import SyncOperation
from posse_sync.platforms import (
    WebhookEvent,
    WebsiteAdapter,
    load_json_body,
    parse_timestamp,
)

WP_TO_CANONICAL_STATUS = {
    "publish": "published",
    "future": "draft",
    "draft": "draft",
    "pending": "draft",
    "private": "archived",
    "trash": "archived",
}
CANONICAL_TO_WP_STATUS = {"published": "publish", "draft": "draft", "archived": "private"}

WEBHOOK_ACTIONS = {
    "create": SyncOperation.CREATE,
    "created": SyncOperation.CREATE,
    "update": SyncOperation.UPDATE,
    "updated": SyncOperation.UPDATE,
    "delete": SyncOperation.DELETE,
    "deleted": SyncOperation.DELETE,
    "trashed": SyncOperation.DELETE,
}


@dataclass
class WordPressPost:
    external_id: str
    title: str
    content: str
    excerpt: str = ""
    status: str = "draft"
    modified_at: datetime | None = None
    kind: Literal["post"] = "post"

    def to_canonical(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.content,
            "excerpt": self.excerpt,
            "status": WP_TO_CANONICAL_STATUS.get(self.status, "draft"),
            "content_type": "article",
        }


@dataclass
class WordPressPage:
    external_id: str
    title: str
    content: str
    status: str = "draft"
    modified_at: datetime | None = None
    kind: Literal["page"] = "page"

    def to_canonical(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.content,
            "status": WP_TO_CANONICAL_STATUS.get(self.status, "draft"),
            "content_type": "page",
        }


WordPressEntity = Union[WordPressPost, WordPressPage]


def _text(value: Any) -> str:
    """WordPress returns rendered fields as {"rendered": ..., "raw": ...}."""
    if isinstance(value, dict):
        value = value.get("raw", value.get("rendered", ""))
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise PayloadError("wordpress: text field must be a string or rendered object")
    return str(value)


def _status(data: dict[str, Any]) -> str:
    status = data.get("status", "draft")
    if not isinstance(status, str):
        raise PayloadError(f"wordpress: status must be a string, got {type(status).__name__}")
    return status


def entity_from_api(data: dict[str, Any]) -> WordPressEntity:
    """Map a wp/v2 post or page object onto its entity variant."""
    if "id" not in data:
        raise PayloadError("wordpress: entity has no id")
    if isinstance(data["id"], (dict, list)):
        raise PayloadError("wordpress: entity id must be a scalar")
    wp_type = data.get("type", "post")
    modified = parse_timestamp(data.get("modified_gmt") or data.get("modified"))
    if wp_type == "post":
        return WordPressPost(
            external_id=f"post:{data['id']}",
            title=_text(data.get("title")),
            content=_text(data.get("content")),
            excerpt=_text(data.get("excerpt")),
            status=_status(data),
            modified_at=modified,
        )
    if wp_type == "page":
        return WordPressPage(
            external_id=f"page:{data['id']}",
            title=_text(data.get("title")),
            content=_text(data.get("content")),
            status=_status(data),
            modified_at=modified,
        )
    raise PayloadError(f"wordpress: unsupported entity type {wp_type!r}")


def from_canonical(content_id: str, fields: dict[str, Any]) -> dict[str, Any]:
    """Shape canonical fields into a wp/v2 request body."""
    body: dict[str, Any] = {
        "title": fields.get("title", ""),
        "content": fields.get("body", ""),
        "status": CANONICAL_TO_WP_STATUS.get(fields.get("status", "draft"), "draft"),
        "meta": {"_headless_cms_id": content_id},
    }
    if fields.get("content_type") != "page":
        body["excerpt"] = fields.get("excerpt", "")
    return body


def _split_id(external_id: str) -> tuple[str, str]:
    wp_type, _, wp_id = external_id.partition(":")
    if not wp_id or wp_type not in ("post", "page"):
        raise PayloadError(f"wordpress: malformed external id {external_id!r}")
    return f"{wp_type}s", wp_id


class WordPressClient(WebsiteAdapter):
    """Client for syncing content with a WordPress site."""

    kind = "wordpress"

    def _url(self, path: str) -> str:
        return f"{self.site.base_url}/wp-json/wp/v2/{path}"

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.site.api_token}"}

    def _create_live(self, content_id: str, fields: dict[str, Any]) -> str:
        collection = "pages" if fields.get("content_type") == "page" else "posts"
        result = request_json(
            self.platform, "POST", self._url(collection),
            body=from_canonical(content_id, fields),
            headers=self._headers(), timeout=self._timeout,
        )
        return f"{collection[:-1]}:{result['id']}"

    def _update_live(self, external_id: str, content_id: str, fields: dict[str, Any]) -> None:
        collection, wp_id = _split_id(external_id)
        request_json(
            self.platform, "PUT", self._url(f"{collection}/{wp_id}"),
            body=from_canonical(content_id, fields),
            headers=self._headers(), timeout=self._timeout,
        )

    def _delete_live(self, external_id: str) -> None:
        collection, wp_id = _split_id(external_id)
        request_json(
            self.platform, "DELETE", self._url(f"{collection}/{wp_id}"),
            params={"force": "true"},
            headers=self._headers(), timeout=self._timeout,
        )

    def _fetch_live(self, external_id: str) -> WordPressEntity:
        collection, wp_id = _split_id(external_id)
        data = request_json(
            self.platform, "GET", self._url(f"{collection}/{wp_id}"),
            params={"context": "edit"},
            headers=self._headers(), timeout=self._timeout,
        )
        return entity_from_api(data)

    def mock_external_id(self, seq: int, fields: dict[str, Any]) -> str:
        prefix = "page" if fields.get("content_type") == "page" else "post"
        return f"{prefix}:{seq}"

    def entity_from_fields(self, external_id: str, fields: dict[str, Any]) -> WordPressEntity:
        collection, wp_id = _split_id(external_id)
        data = {"id": wp_id, "type": collection[:-1], **from_canonical("", fields)}
        return entity_from_api(data)

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """Parse a bridge plugin webhook.

        Accepts {"action": "update", "post": {...}} or the event form
        {"event": "post.updated", "post": {...}}.
        """
        data = load_json_body(self.platform, raw_body)
        action_name = str(data.get("action") or str(data.get("event", "")).rpartition(".")[2])
        action = WEBHOOK_ACTIONS.get(action_name)
        if action is None:
            raise PayloadError(f"wordpress: unknown webhook action {action_name!r}")
        entity_data = data.get("post") or data.get("page")
        if not isinstance(entity_data, dict):
            raise PayloadError("wordpress: webhook has no post or page object")
        if "page" in data and "type" not in entity_data:
            entity_data = {**entity_data, "type": "page"}
        return WebhookEvent(action=action, entity=entity_from_api(entity_data))
