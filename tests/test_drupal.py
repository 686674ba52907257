"""Tests for the Drupal module."""

import json

import pytest
from posse_sync.drupal import (
    JSONAPI_MEDIA_TYPE,
    DrupalClient,
    DrupalNode,
    DrupalTerm,
    entity_from_resource,
    resource_type_for,
    to_resource,
)
from posse_sync.errors import PayloadError
from posse_sync.models import SyncOperation

UUID = "3f1c9a2e-0000-4000-8000-000000000001"


def _node(**attrs):
    return {
        "type": "node--article",
        "id": UUID,
        "attributes": {
            "title": "Docs page",
            "body": {"value": "<p>Text</p>", "summary": "Sum"},
            "status": True,
            "changed": "2026-03-02T12:05:00+00:00",
            **attrs,
        },
    }


class TestEntityMapping:
    def test_node(self):
        entity = entity_from_resource(_node())
        assert isinstance(entity, DrupalNode)
        assert entity.external_id == f"node--article:{UUID}"
        assert entity.to_canonical() == {
            "title": "Docs page",
            "body": "<p>Text</p>",
            "excerpt": "Sum",
            "status": "published",
            "content_type": "article",
        }

    def test_archived_moderation_state(self):
        entity = entity_from_resource(_node(status=False, moderation_state="archived"))
        assert entity.to_canonical()["status"] == "archived"

    def test_unix_timestamp_changed(self):
        entity = entity_from_resource(_node(changed=1772452800))
        assert entity.modified_at.isoformat() == "2026-03-02T12:00:00+00:00"

    def test_term(self):
        entity = entity_from_resource({
            "type": "taxonomy_term--tags",
            "id": UUID,
            "attributes": {"name": "python", "description": {"value": "Snakes"}, "status": True},
        })
        assert isinstance(entity, DrupalTerm)
        canonical = entity.to_canonical()
        assert canonical["content_type"] == "tag"
        assert "excerpt" not in canonical

    def test_malformed_resource(self):
        with pytest.raises(PayloadError):
            entity_from_resource({"type": "node", "id": UUID})
        with pytest.raises(PayloadError):
            entity_from_resource({"type": "user--user", "id": UUID})

    @pytest.mark.parametrize("attrs", [
        {"body": "plain text"},
        {"body": ["<p>Text</p>"]},
        {"title": {"value": "Docs page"}},
        {"moderation_state": 3},
    ])
    def test_wrongly_typed_node_attribute(self, attrs):
        with pytest.raises(PayloadError, match="drupal: attribute"):
            entity_from_resource(_node(**attrs))

    def test_wrongly_typed_term_description(self):
        with pytest.raises(PayloadError, match="'description' must be an object"):
            entity_from_resource({
                "type": "taxonomy_term--tags",
                "id": UUID,
                "attributes": {"name": "python", "description": "Snakes"},
            })

    def test_non_object_attributes(self):
        with pytest.raises(PayloadError):
            entity_from_resource({"type": "node--article", "id": UUID, "attributes": ["title"]})
        with pytest.raises(PayloadError):
            entity_from_resource({"type": ["node--article"], "id": UUID})

    def test_to_resource(self):
        doc = to_resource("node--article", {"title": "T", "body": "B", "excerpt": "E", "status": "archived"}, UUID)
        data = doc["data"]
        assert data["id"] == UUID
        assert data["attributes"]["status"] is False
        assert data["attributes"]["moderation_state"] == "archived"
        assert data["attributes"]["body"]["summary"] == "E"

    def test_resource_type_for(self):
        assert resource_type_for("page") == "node--page"
        with pytest.raises(PayloadError):
            resource_type_for("event")


class TestParseWebhook:
    def test_update(self, sites):
        body = json.dumps({"event": "node/update", "data": _node()}).encode()
        event = DrupalClient(sites["drupal-docs"]).parse_webhook(body)
        assert event.action == SyncOperation.UPDATE
        assert event.entity.bundle == "article"

    def test_insert_with_dotted_event(self, sites):
        body = json.dumps({"event": "node.insert", "data": _node()}).encode()
        assert DrupalClient(sites["drupal-docs"]).parse_webhook(body).action == SyncOperation.CREATE

    def test_unknown_event(self, sites):
        body = json.dumps({"event": "node/publish", "data": _node()}).encode()
        with pytest.raises(PayloadError):
            DrupalClient(sites["drupal-docs"]).parse_webhook(body)

    def test_non_object_body_is_payload_error(self, sites):
        body = json.dumps({"event": "node/update", "data": _node(body="plain")}).encode()
        with pytest.raises(PayloadError):
            DrupalClient(sites["drupal-docs"]).parse_webhook(body)


class TestClient:
    def test_mock_ids(self, sites):
        client = DrupalClient(sites["drupal-docs"])
        assert client.create("c1", {"title": "T", "content_type": "page"}) == "node--page:mock-00000001"

    def test_live_create(self, sites, http):
        http.queue({"data": {"type": "node--article", "id": UUID}})
        client = DrupalClient(sites["drupal-docs"], live=True)
        external_id = client.create("c1", {"title": "T", "body": "B", "status": "draft", "content_type": "article"})
        assert external_id == f"node--article:{UUID}"
        req = http.requests[0]
        assert req.full_url == "https://docs.example.com/jsonapi/node/article"
        assert req.get_header("Content-type") == JSONAPI_MEDIA_TYPE
        assert http.body()["data"]["type"] == "node--article"

    def test_live_update_patches(self, sites, http):
        http.queue({"data": {"type": "node--article", "id": UUID}})
        client = DrupalClient(sites["drupal-docs"], live=True)
        client.update(f"node--article:{UUID}", "c1", {"title": "T2", "content_type": "article"})
        req = http.requests[0]
        assert req.get_method() == "PATCH"
        assert req.full_url.endswith(f"/jsonapi/node/article/{UUID}")
        assert http.body()["data"]["id"] == UUID

    def test_live_fetch(self, sites, http):
        http.queue({"data": _node(title="Remote")})
        client = DrupalClient(sites["drupal-docs"], live=True)
        assert client.fetch(f"node--article:{UUID}").title == "Remote"
