"""Drupal integration module.

Talks to Drupal's JSON:API module. Resources are addressed by their
"entity_type--bundle" type and UUID, which together form the external
ID: "node--article:3f1c...". Canonical content types map onto bundles
through CONTENT_TYPE_RESOURCES; "tag" content lives in the tags
vocabulary as taxonomy terms.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
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

JSONAPI_MEDIA_TYPE = "application/vnd.api+json"

CONTENT_TYPE_RESOURCES = {
    "article": "node--article",
    "page": "node--page",
    "tag": "taxonomy_term--tags",
}

WEBHOOK_ACTIONS = {
    "create": SyncOperation.CREATE,
    "insert": SyncOperation.CREATE,
    "update": SyncOperation.UPDATE,
    "delete": SyncOperation.DELETE,
}


@dataclass
class DrupalNode:
    external_id: str
    bundle: str
    title: str
    body: str
    summary: str = ""
    published: bool = False
    moderation_state: str = ""
    modified_at: datetime | None = None
    kind: Literal["node"] = "node"

    def to_canonical(self) -> dict[str, Any]:
        if self.moderation_state == "archived":
            status = "archived"
        else:
            status = "published" if self.published else "draft"
        return {
            "title": self.title,
            "body": self.body,
            "excerpt": self.summary,
            "status": status,
            "content_type": self.bundle,
        }


@dataclass
class DrupalTerm:
    external_id: str
    vocabulary: str
    name: str
    description: str = ""
    published: bool = True
    modified_at: datetime | None = None
    kind: Literal["taxonomy_term"] = "taxonomy_term"

    def to_canonical(self) -> dict[str, Any]:
        return {
            "title": self.name,
            "body": self.description,
            "status": "published" if self.published else "draft",
            "content_type": "tag",
        }


DrupalEntity = Union[DrupalNode, DrupalTerm]


def _changed(value: Any) -> datetime | None:
    # Older cores serialize "changed" as a unix timestamp.
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return parse_timestamp(value)


def resource_type_for(content_type: str) -> str:
    try:
        return CONTENT_TYPE_RESOURCES[content_type]
    except KeyError:
        raise PayloadError(f"drupal: no resource type for content type {content_type!r}") from None


def _object(attrs: dict[str, Any], name: str) -> dict[str, Any]:
    value = attrs.get(name) or {}
    if not isinstance(value, dict):
        raise PayloadError(f"drupal: attribute {name!r} must be an object")
    return value


def _string(attrs: dict[str, Any], name: str) -> str:
    value = attrs.get(name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PayloadError(f"drupal: attribute {name!r} must be a string")
    return value


def entity_from_resource(resource: dict[str, Any]) -> DrupalEntity:
    """Map a JSON:API resource object onto its entity variant."""
    resource_type = resource.get("type", "")
    uuid = resource.get("id")
    if not isinstance(resource_type, str) or not isinstance(uuid, (str, int)):
        raise PayloadError("drupal: resource type and id must be scalars")
    if not uuid or "--" not in resource_type:
        raise PayloadError(f"drupal: malformed resource {resource_type!r}")
    entity_type, _, bundle = resource_type.partition("--")
    attrs = _object(resource, "attributes")
    external_id = f"{resource_type}:{uuid}"

    if entity_type == "node":
        body = _object(attrs, "body")
        return DrupalNode(
            external_id=external_id,
            bundle=bundle,
            title=_string(attrs, "title"),
            body=_string(body, "value"),
            summary=_string(body, "summary"),
            published=bool(attrs.get("status", False)),
            moderation_state=_string(attrs, "moderation_state"),
            modified_at=_changed(attrs.get("changed")),
        )
    if entity_type == "taxonomy_term":
        description = _object(attrs, "description")
        return DrupalTerm(
            external_id=external_id,
            vocabulary=bundle,
            name=_string(attrs, "name"),
            description=_string(description, "value"),
            published=bool(attrs.get("status", True)),
            modified_at=_changed(attrs.get("changed")),
        )
    raise PayloadError(f"drupal: unsupported entity type {entity_type!r}")


def to_resource(resource_type: str, fields: dict[str, Any], uuid: str | None = None) -> dict[str, Any]:
    """Shape canonical fields into a JSON:API document for resource_type."""
    status = fields.get("status", "draft")
    if resource_type.startswith("taxonomy_term--"):
        attributes: dict[str, Any] = {
            "name": fields.get("title", ""),
            "description": {"value": fields.get("body", ""), "format": "basic_html"},
            "status": status != "archived",
        }
    else:
        attributes = {
            "title": fields.get("title", ""),
            "body": {
                "value": fields.get("body", ""),
                "summary": fields.get("excerpt", ""),
                "format": "basic_html",
            },
            "status": status == "published",
        }
        if status == "archived":
            attributes["moderation_state"] = "archived"
    data: dict[str, Any] = {"type": resource_type, "attributes": attributes}
    if uuid:
        data["id"] = uuid
    return {"data": data}


def _split_id(external_id: str) -> tuple[str, str]:
    resource_type, _, uuid = external_id.partition(":")
    if not uuid or "--" not in resource_type:
        raise PayloadError(f"drupal: malformed external id {external_id!r}")
    return resource_type, uuid


class DrupalClient(WebsiteAdapter):
    """Client for syncing content with a Drupal site over JSON:API."""

    kind = "drupal"

    def _url(self, resource_type: str, uuid: str = "") -> str:
        entity_type, _, bundle = resource_type.partition("--")
        url = f"{self.site.base_url}/jsonapi/{entity_type}/{bundle}"
        return f"{url}/{uuid}" if uuid else url

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.site.api_token}",
            "Accept": JSONAPI_MEDIA_TYPE,
            "Content-Type": JSONAPI_MEDIA_TYPE,
        }

    def _create_live(self, content_id: str, fields: dict[str, Any]) -> str:
        resource_type = resource_type_for(fields.get("content_type", "article"))
        result = request_json(
            self.platform, "POST", self._url(resource_type),
            body=to_resource(resource_type, fields),
            headers=self._headers(), timeout=self._timeout,
        )
        uuid = (result.get("data") or {}).get("id")
        if not uuid:
            raise PayloadError("drupal: create response carried no resource id")
        return f"{resource_type}:{uuid}"

    def _update_live(self, external_id: str, content_id: str, fields: dict[str, Any]) -> None:
        resource_type, uuid = _split_id(external_id)
        request_json(
            self.platform, "PATCH", self._url(resource_type, uuid),
            body=to_resource(resource_type, fields, uuid),
            headers=self._headers(), timeout=self._timeout,
        )

    def _delete_live(self, external_id: str) -> None:
        resource_type, uuid = _split_id(external_id)
        request_json(
            self.platform, "DELETE", self._url(resource_type, uuid),
            headers=self._headers(), timeout=self._timeout,
        )

    def _fetch_live(self, external_id: str) -> DrupalEntity:
        resource_type, uuid = _split_id(external_id)
        result = request_json(
            self.platform, "GET", self._url(resource_type, uuid),
            headers=self._headers(), timeout=self._timeout,
        )
        return entity_from_resource(result.get("data") or {})

    def mock_external_id(self, seq: int, fields: dict[str, Any]) -> str:
        resource_type = resource_type_for(fields.get("content_type", "article"))
        return f"{resource_type}:mock-{seq:08d}"

    def entity_from_fields(self, external_id: str, fields: dict[str, Any]) -> DrupalEntity:
        resource_type, uuid = _split_id(external_id)
        return entity_from_resource(to_resource(resource_type, fields, uuid)["data"])

    def parse_webhook(self, raw_body: bytes) -> WebhookEvent:
        """Parse a bridge module webhook: {"event": "node/update", "data": {...}}."""
        data = load_json_body(self.platform, raw_body)
        event = str(data.get("event", ""))
        action = WEBHOOK_ACTIONS.get(event.replace(".", "/").rpartition("/")[2])
        if action is None:
            raise PayloadError(f"drupal: unknown webhook event {event!r}")
        resource = data.get("data")
        if not isinstance(resource, dict):
            raise PayloadError("drupal: webhook has no data object")
        return WebhookEvent(action=action, entity=entity_from_resource(resource))
