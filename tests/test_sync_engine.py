"""Tests for outbound push, queue draining, and webhook ingestion."""

import json
import threading

import pytest
from posse_sync.config import SyncSettings
from posse_sync.delivery_log import DeliveryLog
from posse_sync.dispatch import AdapterDispatcher
from posse_sync.errors import (
    ContentNotFoundError,
    EventNotFoundError,
    InvalidTransitionError,
    PermanentAdapterError,
    SignatureError,
    TargetNotEnabledError,
    TransientAdapterError,
    UnknownSiteError,
)
from posse_sync.models import (
    ContentRecord,
    ContentStatus,
    EventStatus,
    MappingStatus,
    PublishingOptions,
    SyncDirection,
    SyncOperation,
)
from posse_sync.rate_limiter import RateLimiterConfig
from posse_sync.signing import sign_body
from posse_sync.sync_engine import SyncEngine


def _record(content_id="c1", targets=("wp-main",), **kwargs) -> ContentRecord:
    return ContentRecord(
        id=content_id,
        title=kwargs.pop("title", "Hello"),
        body=kwargs.pop("body", "<p>World</p>"),
        publishing_options=PublishingOptions(targets={t: True for t in targets}),
        **kwargs,
    )


def _fail_times(adapter, method, exc, times=1):
    """Make adapter.method raise exc for the next `times` calls."""
    original = getattr(adapter, method)
    state = {"left": times}

    def wrapper(*args):
        if state["left"] > 0:
            state["left"] -= 1
            raise exc
        return original(*args)

    setattr(adapter, method, wrapper)


def _wp_webhook(action, wp_id, title="Hello", content="<p>World</p>", status="draft",
                modified="2026-03-02T12:05:00", excerpt=""):
    body = json.dumps({
        "action": action,
        "post": {
            "id": wp_id,
            "type": "post",
            "title": {"raw": title},
            "content": {"raw": content},
            "excerpt": {"raw": excerpt},
            "status": status,
            "modified_gmt": modified,
        },
    }).encode("utf-8")
    return body, sign_body("wp-secret", body)


def _synced(engine, record) -> str:
    """Save, drain, and return the wp-main external ID."""
    engine.save_content(record)
    engine.drain()
    return engine.state.get_mapping(record.id, "wp-main").external_id


class TestOutboundPush:
    def test_save_queues_enabled_targets(self, engine):
        results = engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        assert sorted(r.platform for r in results) == ["ghost-blog", "wp-main"]
        assert all(r.action == "queued" and r.operation == "create" for r in results)
        assert engine.state.get_mapping("c1", "wp-main").status == MappingStatus.PENDING

    def test_drain_creates_and_records_mapping(self, engine, adapters):
        engine.save_content(_record())
        summary = engine.drain()
        assert summary.claimed == 1
        assert summary.succeeded == 1
        mapping = engine.state.get_mapping("c1", "wp-main")
        assert mapping.status == MappingStatus.SYNCED
        assert mapping.external_id == "post:1"
        assert adapters["wp-main"].calls == [("create", "c1")]

    def test_push_is_idempotent(self, engine, adapters):
        _synced(engine, _record())
        result = engine.push_to_target("c1", "wp-main")
        assert result.action == "noop"
        assert engine.drain().claimed == 0
        assert len(adapters["wp-main"].calls) == 1

    def test_force_push_requeues(self, engine):
        _synced(engine, _record())
        result = engine.push_to_target("c1", "wp-main", force=True)
        assert result.action == "queued"
        assert result.operation == "update"

    def test_change_after_sync_is_an_update(self, engine, adapters):
        external_id = _synced(engine, _record())
        record = engine.content.get("c1")
        record.title = "Hello again"
        results = engine.save_content(record)
        assert results[0].operation == "update"
        engine.drain()
        assert adapters["wp-main"].calls[-1] == ("update", external_id)
        assert adapters["wp-main"]._entities[external_id]["title"] == "Hello again"

    def test_edits_before_drain_collapse(self, engine, adapters):
        engine.save_content(_record())
        record = engine.content.get("c1")
        record.title = "Second draft"
        results = engine.save_content(record)
        assert results[0].action == "collapsed"
        engine.drain()
        assert adapters["wp-main"].calls == [("create", "c1")]
        assert adapters["wp-main"]._entities["post:1"]["title"] == "Second draft"

    def test_revert_while_queued_is_not_a_noop(self, engine):
        _synced(engine, _record())
        record = engine.content.get("c1")
        record.title = "B"
        engine.save_content(record)
        record.title = "Hello"
        results = engine.save_content(record)
        assert results[0].action == "collapsed"
        event = engine.state.queued_event("c1", "wp-main")
        assert event.payload["fields"]["title"] == "Hello"

    def test_overrides_are_pushed(self, engine, adapters):
        record = _record()
        record.publishing_options.overrides["wp-main"] = {"title": "WP title"}
        engine.save_content(record)
        engine.drain()
        assert adapters["wp-main"]._entities["post:1"]["title"] == "WP title"

    def test_ineligible_targets(self, engine, sites):
        engine.save_content(_record(targets=("wp-main",), content_type="article"))
        with pytest.raises(TargetNotEnabledError):
            engine.push_to_target("c1", "ghost-blog")
        with pytest.raises(UnknownSiteError):
            engine.push_to_target("c1", "nowhere")
        with pytest.raises(ContentNotFoundError):
            engine.push_to_target("missing", "wp-main")

        sites["wp-main"].content_types = ["page"]
        with pytest.raises(TargetNotEnabledError, match="content type"):
            engine.push_to_target("c1", "wp-main")

    def test_inbound_only_site_is_skipped_on_fan_out(self, engine, sites):
        sites["ghost-blog"].direction = SyncDirection.INBOUND
        results = engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        assert [r.platform for r in results] == ["wp-main"]

    def test_other_organization_is_skipped(self, engine):
        results = engine.save_content(_record(organization_id="acme"))
        assert results == []


class TestRetries:
    def test_transient_failure_backs_off(self, engine, adapters, clock):
        engine.save_content(_record())
        _fail_times(adapters["wp-main"], "create", TransientAdapterError("wp-main", "HTTP 503", 503))
        summary = engine.drain()
        assert summary.retried == 1
        event = engine.state.list_events(content_id="c1")[0]
        assert event.status == EventStatus.QUEUED
        assert event.attempt_count == 1
        assert "HTTP 503" in event.last_error

        # Not due yet
        assert engine.drain().claimed == 0
        clock.advance(1)
        assert engine.drain().succeeded == 1
        assert engine.state.get_mapping("c1", "wp-main").status == MappingStatus.SYNCED

    def test_empty_rate_limit_bucket_requeues(self, db, sites, adapters, clock):
        now = [0.0]
        dispatcher = AdapterDispatcher(
            limiter_overrides={"wp-main": RateLimiterConfig(tokens_per_second=1.0, max_tokens=1.0, initial_tokens=0.0)},
            clock=lambda: now[0],
        )
        engine = SyncEngine(db, sites, adapters, settings=SyncSettings(backoff_seconds=[1.0]),
                            dispatcher=dispatcher, clock=clock)
        engine.save_content(_record())

        summary = engine.drain()
        assert summary.retried == 1
        event = engine.state.list_events(content_id="c1")[0]
        assert event.status == EventStatus.QUEUED
        assert event.attempt_count == 1
        assert "rate limit exceeded" in event.last_error
        assert adapters["wp-main"].calls == []
        assert "wp-main" not in dispatcher.breaker_states()

        now[0] = 1.0
        clock.advance(1)
        assert engine.drain().succeeded == 1
        assert adapters["wp-main"].calls == [("create", "c1")]

    def test_exhausted_attempts_fail(self, engine, adapters, clock):
        engine.save_content(_record())
        _fail_times(adapters["wp-main"], "create", TransientAdapterError("wp-main", "timeout"), times=3)
        engine.drain()
        clock.advance(1)
        engine.drain()
        clock.advance(5)
        summary = engine.drain()
        assert summary.failed == 1
        event = engine.state.list_events(content_id="c1")[0]
        assert event.status == EventStatus.FAILED
        assert event.attempt_count == 3
        assert engine.state.get_mapping("c1", "wp-main").status == MappingStatus.FAILED

    def test_permanent_failure_is_not_retried(self, engine, adapters):
        engine.save_content(_record())
        _fail_times(adapters["wp-main"], "create", PermanentAdapterError("wp-main", "HTTP 400: bad title", 400))
        summary = engine.drain()
        assert summary.failed == 1
        event = engine.state.list_events(content_id="c1")[0]
        assert event.attempt_count == 1
        mapping = engine.state.get_mapping("c1", "wp-main")
        assert mapping.status == MappingStatus.FAILED
        assert "bad title" in mapping.last_error

    def test_retry_event_requeues_failed(self, engine, adapters):
        engine.save_content(_record())
        _fail_times(adapters["wp-main"], "create", PermanentAdapterError("wp-main", "HTTP 400", 400))
        engine.drain()
        event = engine.state.list_events(content_id="c1")[0]

        retried = engine.retry_event(event.id)
        assert retried.status == EventStatus.QUEUED
        assert retried.attempt_count == 0
        assert engine.state.get_mapping("c1", "wp-main").status == MappingStatus.PENDING
        assert engine.drain().succeeded == 1

    def test_retry_event_errors(self, engine):
        engine.save_content(_record())
        event = engine.state.list_events(content_id="c1")[0]
        with pytest.raises(InvalidTransitionError):
            engine.retry_event(event.id)
        with pytest.raises(EventNotFoundError):
            engine.retry_event(9999)

    def test_failures_are_recorded_in_delivery_log(self, db, sites, adapters, clock):
        log = DeliveryLog()
        engine = SyncEngine(db, sites, adapters, dispatcher=AdapterDispatcher(delivery_log=log), clock=clock)
        engine.save_content(_record())
        _fail_times(adapters["wp-main"], "create", TransientAdapterError("wp-main", "HTTP 502", 502))
        engine.drain()
        assert [r.status for r in log.get_by_subject("c1")] == ["retry"]


class TestDelete:
    def test_delete_removes_external_entity(self, engine, adapters):
        external_id = _synced(engine, _record())
        results = engine.delete_content("c1")
        assert [r.operation for r in results] == ["delete"]
        assert engine.content.get("c1") is None
        assert engine.drain().succeeded == 1
        assert adapters["wp-main"].calls[-1] == ("delete", external_id)
        assert adapters["wp-main"].entity_count == 0

    def test_delete_of_missing_entity_succeeds(self, engine, adapters):
        external_id = _synced(engine, _record())
        adapters["wp-main"]._entities.pop(external_id)
        engine.delete_content("c1")
        summary = engine.drain()
        assert summary.succeeded == 1
        assert summary.failed == 0

    def test_delete_before_first_sync_collapses(self, engine, adapters):
        engine.save_content(_record())
        results = engine.delete_content("c1")
        assert results[0].action == "collapsed"
        engine.drain()
        assert adapters["wp-main"].calls == []

    def test_delete_unknown_content(self, engine):
        with pytest.raises(ContentNotFoundError):
            engine.delete_content("missing")


class TestConcurrentDrain:
    def test_each_event_is_processed_once(self, db, sites, adapters, clock):
        first = SyncEngine(db, sites, adapters, settings=SyncSettings(workers=4), clock=clock)
        second = SyncEngine(db, sites, adapters, settings=SyncSettings(workers=4), clock=clock)
        for i in range(12):
            first.save_content(_record(f"c{i}", targets=("wp-main", "ghost-blog")))

        barrier = threading.Barrier(2)
        summaries = []

        def run(engine):
            barrier.wait()
            summaries.append(engine.drain())

        threads = [threading.Thread(target=run, args=(e,)) for e in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(s.succeeded for s in summaries) == 24
        assert len(adapters["wp-main"].calls) == 12
        assert len(adapters["ghost-blog"].calls) == 12
        assert first.state.count_by_status() == {"succeeded": 24}


class TestIngest:
    def test_bad_signature_is_rejected_without_writes(self, db, sites, adapters, clock):
        log = DeliveryLog()
        engine = SyncEngine(db, sites, adapters, dispatcher=AdapterDispatcher(delivery_log=log), clock=clock)
        body, _ = _wp_webhook("create", 7)
        with pytest.raises(SignatureError):
            engine.ingest("wp-main", "sha256=" + "0" * 64, body)
        with pytest.raises(SignatureError):
            engine.ingest("wp-main", None, body)
        assert engine.content.list_records() == []
        assert engine.state.find_by_external_id("wp-main", "post:7") is None
        assert [r.error for r in log.get_failures()] == ["signature mismatch", "missing signature"]

    def test_missing_secret_rejects(self, engine, sites):
        sites["wp-main"].webhook_secret = ""
        body, sig = _wp_webhook("create", 7)
        with pytest.raises(SignatureError, match="no webhook secret"):
            engine.ingest("wp-main", sig, body)

    def test_unknown_site(self, engine):
        with pytest.raises(UnknownSiteError):
            engine.ingest("nowhere", "x", b"{}")

    def test_new_entity_creates_record(self, engine):
        body, sig = _wp_webhook("create", 7, title="From WordPress", status="publish")
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "created"
        assert result.external_id == "post:7"
        record = engine.content.get(result.content_id)
        assert record.title == "From WordPress"
        assert record.status == ContentStatus.PUBLISHED
        assert record.origin_platform == "wp-main"
        mapping = engine.state.get_mapping(record.id, "wp-main")
        assert mapping.external_id == "post:7"
        assert mapping.status == MappingStatus.SYNCED
        # Nothing is pushed back to the origin
        assert engine.drain().claimed == 0

    def test_replay_is_a_noop(self, engine):
        body, sig = _wp_webhook("create", 7)
        first = engine.ingest("wp-main", sig, body)
        second = engine.ingest("wp-main", sig, body)
        assert second.action == "duplicate"
        assert second.content_id == first.content_id
        assert len(engine.content.list_records()) == 1

    def test_concurrent_duplicate_create_is_reported_as_duplicate(self, engine, monkeypatch):
        body, sig = _wp_webhook("create", 7)
        first = engine.ingest("wp-main", sig, body)

        # The second delivery read "no mapping" before the first one committed.
        lookup = engine.state.find_by_external_id
        calls = {"n": 0}

        def racing_lookup(platform, external_id):
            calls["n"] += 1
            return None if calls["n"] == 1 else lookup(platform, external_id)

        monkeypatch.setattr(engine.state, "find_by_external_id", racing_lookup)
        second = engine.ingest("wp-main", sig, body)
        assert second.action == "duplicate"
        assert second.content_id == first.content_id
        assert len(engine.content.list_records()) == 1

    def test_winning_inbound_change_replaces_queued_push(self, engine, adapters, clock):
        external_id = _synced(engine, _record())
        clock.advance(60)
        record = engine.content.get("c1")
        record.title = "Local edit"
        engine.save_content(record)

        body, sig = _wp_webhook("update", 1, title="Remote edit", modified="2026-03-02T12:05:00")
        assert engine.ingest("wp-main", sig, body).action == "updated"
        assert engine.state.queued_event("c1", "wp-main") is None

        engine.drain()
        assert adapters["wp-main"].calls == [("create", "c1")]
        assert engine.content.get("c1").title == "Remote edit"
        target = engine.sync_status("c1")["targets"][0]
        assert target["in_sync"] is True
        assert target["pending"] is False
        assert external_id == "post:1"

    def test_echo_of_own_push_is_duplicate(self, engine):
        _synced(engine, _record())
        body, sig = _wp_webhook("update", 1)
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "duplicate"
        assert engine.drain().claimed == 0

    def test_inbound_update_fans_out_but_not_to_origin(self, engine, adapters):
        engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        engine.drain()
        ghost_id = engine.state.get_mapping("c1", "ghost-blog").external_id

        body, sig = _wp_webhook("update", 1, title="Edited in WordPress")
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "updated"
        assert result.fanned_out == ["ghost-blog"]
        assert engine.content.get("c1").title == "Edited in WordPress"
        assert engine.push_to_target("c1", "wp-main").action == "noop"

        engine.drain()
        assert adapters["ghost-blog"]._entities[ghost_id]["title"] == "Edited in WordPress"
        assert adapters["wp-main"].calls == [("create", "c1")]

    def test_older_remote_change_loses(self, engine):
        _synced(engine, _record())
        body, sig = _wp_webhook("update", 1, title="Stale", modified="2026-03-02T11:00:00")
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "conflict"
        assert engine.content.get("c1").title == "Hello"

    def test_tie_goes_to_local_by_default(self, engine):
        _synced(engine, _record())
        body, sig = _wp_webhook("update", 1, title="Same instant", modified="2026-03-02T12:00:00")
        assert engine.ingest("wp-main", sig, body).action == "conflict"

    def test_tie_break_remote(self, db, sites, adapters, clock):
        engine = SyncEngine(db, sites, adapters, settings=SyncSettings(tie_break="remote"), clock=clock)
        _synced(engine, _record())
        body, sig = _wp_webhook("update", 1, title="Same instant", modified="2026-03-02T12:00:00")
        assert engine.ingest("wp-main", sig, body).action == "updated"
        assert engine.content.get("c1").title == "Same instant"

    def test_inbound_delete_archives(self, engine):
        engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        engine.drain()
        body, sig = _wp_webhook("deleted", 1)
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "archived"
        assert result.fanned_out == ["ghost-blog"]
        record = engine.content.get("c1")
        assert record.status == ContentStatus.ARCHIVED
        assert not record.publishing_options.is_enabled("wp-main")

        again = engine.ingest("wp-main", sig, body)
        assert again.action == "duplicate"

    def test_delete_of_unknown_entity_is_ignored(self, engine):
        body, sig = _wp_webhook("deleted", 99)
        assert engine.ingest("wp-main", sig, body).action == "ignored"

    def test_outbound_only_site_ignores_webhooks(self, engine, sites):
        sites["wp-main"].direction = SyncDirection.OUTBOUND
        body, sig = _wp_webhook("create", 7)
        assert engine.ingest("wp-main", sig, body).action == "ignored"
        assert engine.content.list_records() == []

    def test_inbound_creation_can_be_disabled(self, engine, sites):
        sites["wp-main"].allow_ingest_create = False
        body, sig = _wp_webhook("create", 7)
        result = engine.ingest("wp-main", sig, body)
        assert result.action == "ignored"
        assert "creation disabled" in result.reason

    def test_handshake(self, engine):
        assert engine.handshake("wp-main", {"challenge": "abc"}) == {"challenge": "abc"}
        with pytest.raises(UnknownSiteError):
            engine.handshake("nowhere", {})


class TestOperatorActions:
    def test_force_resolve_remote_pulls_external_version(self, engine, adapters):
        external_id = _synced(engine, _record())
        adapters["wp-main"]._entities[external_id]["title"] = "Edited remotely"
        result = engine.force_resolve("c1", "wp-main", prefer="remote")
        assert result["action"] == "updated"
        assert engine.content.get("c1").title == "Edited remotely"

    def test_force_resolve_local_repushes(self, engine):
        _synced(engine, _record())
        result = engine.force_resolve("c1", "wp-main", prefer="local")
        assert result["action"] == "queued"

    def test_force_resolve_rejects_unknown_preference(self, engine):
        _synced(engine, _record())
        with pytest.raises(ValueError):
            engine.force_resolve("c1", "wp-main", prefer="newest")

    def test_sync_status(self, engine):
        engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        engine.drain()
        record = engine.content.get("c1")
        record.title = "Changed"
        engine.save_content(record)

        status = engine.sync_status("c1")
        targets = {t["platform"]: t for t in status["targets"]}
        assert targets["wp-main"]["status"] == "synced"
        assert targets["wp-main"]["in_sync"] is False
        assert targets["wp-main"]["pending"] is True
        assert targets["ghost-blog"]["external_id"].startswith("post:")

    def test_push_all(self, engine):
        engine.save_content(_record(targets=("wp-main", "ghost-blog")))
        engine.drain()
        results = engine.push_all("c1")
        assert [r.action for r in results] == ["noop", "noop"]
        forced = engine.push_all("c1", force=True)
        assert {r.operation for r in forced} == {SyncOperation.UPDATE.value}
