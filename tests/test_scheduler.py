"""Tests for the publishing scheduler."""

import threading
from datetime import datetime, timedelta, timezone

import pytest
from posse_sync.bluesky import BlueskyClient
from posse_sync.config import SchedulerSettings
from posse_sync.errors import (
    ContentNotFoundError,
    InvalidTransitionError,
    PermanentAdapterError,
    PostNotFoundError,
    TargetNotEnabledError,
    TransientAdapterError,
)
from posse_sync.facebook import FacebookClient
from posse_sync.linkedin import LinkedInClient
from posse_sync.models import ContentRecord, PostPayload, PostStatus, SchedulingRule
from posse_sync.scheduler import DeriveOptions, PublishingScheduler, next_slot
from posse_sync.store import ContentStore

UTC = timezone.utc


@pytest.fixture
def socials(accounts):
    return {
        "linkedin": LinkedInClient(accounts["linkedin"]),
        "facebook": FacebookClient(accounts["facebook"]),
        "bluesky": BlueskyClient(accounts["bluesky"]),
    }


@pytest.fixture
def scheduler(db, socials, accounts, clock):
    return PublishingScheduler(
        db, socials, accounts=accounts,
        settings=SchedulerSettings(max_retries=2, retry_delay=300.0, workers=2),
        clock=clock,
    )


@pytest.fixture
def article(db):
    record = ContentRecord(
        id="c1",
        title="Shipping the sync engine",
        body="<p>Long body</p>",
        excerpt="How we keep three CMSs in step without loops. " * 12,
    )
    ContentStore(db).save(record)
    return record


def _fail_times(adapter, exc, times=1):
    original = adapter.publish
    state = {"left": times}

    def wrapper(*args):
        if state["left"] > 0:
            state["left"] -= 1
            raise exc
        return original(*args)

    adapter.publish = wrapper


class TestNextSlot:
    def test_later_the_same_day(self):
        rule = SchedulingRule(platform="facebook", hour=15)
        after = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        assert next_slot(rule, after) == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)

    def test_rolls_to_next_day(self):
        rule = SchedulingRule(platform="bluesky", hour=9)
        after = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        assert next_slot(rule, after) == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)

    def test_strictly_after(self):
        rule = SchedulingRule(platform="bluesky", hour=9)
        after = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        assert next_slot(rule, after) == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)

    def test_skips_weekends(self):
        rule = SchedulingRule(platform="linkedin", hour=12, exclude_weekends=True)
        friday_afternoon = datetime(2026, 3, 6, 13, 0, tzinfo=UTC)
        assert next_slot(rule, friday_afternoon) == datetime(2026, 3, 9, 12, 0, tzinfo=UTC)

    def test_weekends_allowed_by_default(self):
        rule = SchedulingRule(platform="facebook", hour=12)
        friday_afternoon = datetime(2026, 3, 6, 13, 0, tzinfo=UTC)
        assert next_slot(rule, friday_afternoon).weekday() == 5

    def test_rule_timezone(self):
        rule = SchedulingRule(platform="linkedin", hour=9, timezone="America/New_York")
        after = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        # 09:00 EST is 14:00 UTC
        assert next_slot(rule, after) == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


class TestDerivePosts:
    def test_one_post_per_platform(self, scheduler, article, clock):
        posts = scheduler.derive_posts("c1", ["linkedin", "facebook", "bluesky"])
        by_platform = {p.platform: p for p in posts}
        assert sorted(by_platform) == ["bluesky", "facebook", "linkedin"]
        assert all(p.status == PostStatus.SCHEDULED and p.content_id == "c1" for p in posts)
        assert by_platform["linkedin"].account_ref == "urn:li:organization:42"
        # Default rules: facebook 15:00, linkedin 12:00 weekdays, bluesky 09:00
        assert by_platform["facebook"].scheduled_time == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
        assert by_platform["linkedin"].scheduled_time == datetime(2026, 3, 3, 12, 0, tzinfo=UTC)
        assert by_platform["bluesky"].scheduled_time == datetime(2026, 3, 3, 9, 0, tzinfo=UTC)

    def test_bluesky_text_fits_limit(self, scheduler, article):
        options = DeriveOptions(link_url="https://example.com/sync", hashtags=["python", "posse"])
        post = scheduler.derive_posts("c1", ["bluesky"], options)[0]
        text = post.post_payload.text
        assert len(text) <= 300
        assert text.endswith("https://example.com/sync")
        assert "#python #posse" in text

    def test_explicit_time_and_text(self, scheduler, article, clock):
        when = clock.now + timedelta(hours=1)
        options = DeriveOptions(scheduled_time=when, texts={"linkedin": "Custom words"})
        post = scheduler.derive_posts("c1", ["linkedin"], options)[0]
        assert post.scheduled_time == when
        assert post.post_payload.text == "Custom words"

    def test_rules_from_config(self, db, socials, clock, article):
        rules = {"bluesky": SchedulingRule(platform="bluesky", hour=18, minute=30)}
        scheduler = PublishingScheduler(db, socials, rules=rules, clock=clock)
        post = scheduler.derive_posts("c1", ["bluesky"])[0]
        assert post.scheduled_time == datetime(2026, 3, 2, 18, 30, tzinfo=UTC)

    def test_options_from_dict(self):
        options = DeriveOptions.from_dict({"scheduled_time": "2026-03-02T15:00:00Z", "hashtags": ["a"]})
        assert options.scheduled_time == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
        assert options.hashtags == ["a"]

    def test_errors(self, scheduler, article):
        with pytest.raises(ContentNotFoundError):
            scheduler.derive_posts("missing", ["linkedin"])
        with pytest.raises(TargetNotEnabledError):
            scheduler.derive_posts("c1", ["mastodon"])

    def test_unknown_platform_creates_nothing(self, scheduler, article):
        with pytest.raises(TargetNotEnabledError, match="mastodon"):
            scheduler.derive_posts("c1", ["linkedin", "mastodon"])
        assert scheduler.list_posts(content_id="c1") == []


class TestProcessDuePosts:
    def test_only_due_posts_are_published(self, scheduler, socials, clock):
        due = scheduler.schedule_post("linkedin", "Now", scheduled_time=clock.now)
        later = scheduler.schedule_post("linkedin", "Later", scheduled_time=clock.now + timedelta(hours=2))
        summary = scheduler.process_due_posts()
        assert summary.processed == 1
        assert summary.published == 1
        published = scheduler.get_post(due.id)
        assert published.status == PostStatus.PUBLISHED
        assert published.platform_post_id == "mock-linkedin-1"
        assert published.published_time == clock.now
        assert scheduler.get_post(later.id).status == PostStatus.SCHEDULED

    def test_second_pass_makes_no_calls(self, scheduler, socials, clock):
        scheduler.schedule_post("facebook", "Once", scheduled_time=clock.now)
        scheduler.process_due_posts()
        summary = scheduler.process_due_posts()
        assert summary.processed == 0
        assert socials["facebook"].post_count == 1

    def test_concurrent_passes_publish_once(self, db, socials, accounts, clock):
        first = PublishingScheduler(db, socials, accounts=accounts, clock=clock)
        second = PublishingScheduler(db, socials, accounts=accounts, clock=clock)
        for i in range(10):
            first.schedule_post("bluesky", f"Post {i}", scheduled_time=clock.now)

        barrier = threading.Barrier(2)
        summaries = []

        def run(scheduler):
            barrier.wait()
            summaries.append(scheduler.process_due_posts())

        threads = [threading.Thread(target=run, args=(s,)) for s in (first, second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(s.published for s in summaries) == 10
        assert socials["bluesky"].post_count == 10
        assert len(first.list_posts(status=PostStatus.PUBLISHED)) == 10

    def test_transient_failure_reschedules(self, scheduler, socials, clock):
        post = scheduler.schedule_post("linkedin", "Retry me", scheduled_time=clock.now)
        _fail_times(socials["linkedin"], TransientAdapterError("linkedin", "HTTP 503", 503))
        summary = scheduler.process_due_posts()
        assert summary.retried == 1
        retried = scheduler.get_post(post.id)
        assert retried.status == PostStatus.SCHEDULED
        assert retried.retry_count == 1
        assert retried.scheduled_time == clock.now + timedelta(seconds=300)
        assert "HTTP 503" in retried.error_message

        clock.advance(300)
        assert scheduler.process_due_posts().published == 1

    def test_retries_exhaust_to_failed(self, scheduler, socials, clock):
        post = scheduler.schedule_post("linkedin", "Never", scheduled_time=clock.now)
        _fail_times(socials["linkedin"], TransientAdapterError("linkedin", "timeout"), times=10)
        outcomes = []
        for _ in range(3):
            summary = scheduler.process_due_posts()
            outcomes.append((summary.retried, summary.failed))
            clock.advance(300)
        assert outcomes == [(1, 0), (1, 0), (0, 1)]
        failed = scheduler.get_post(post.id)
        assert failed.status == PostStatus.FAILED
        assert failed.retry_count == 3
        assert scheduler.process_due_posts().processed == 0

    def test_permanent_failure_fails_immediately(self, scheduler, socials, clock):
        post = scheduler.schedule_post("bluesky", "Bad", scheduled_time=clock.now)
        _fail_times(socials["bluesky"], PermanentAdapterError("bluesky", "HTTP 400", 400))
        assert scheduler.process_due_posts().failed == 1
        assert scheduler.get_post(post.id).status == PostStatus.FAILED

    def test_stale_claim_is_released(self, scheduler, clock):
        post = scheduler.schedule_post("facebook", "Stuck", scheduled_time=clock.now)
        assert scheduler.posts.claim(post.id, "dead-worker", clock.now)
        assert scheduler.process_due_posts().processed == 0

        later = clock.now + timedelta(seconds=601)
        summary = scheduler.process_due_posts(now=later)
        assert summary.published == 1

    def test_finish_requires_matching_token(self, scheduler, clock):
        post = scheduler.schedule_post("facebook", "Mine", scheduled_time=clock.now)
        scheduler.posts.claim(post.id, "token-a", clock.now)
        assert not scheduler.posts.mark_published(post.id, "token-b", "x", clock.now)
        assert scheduler.posts.mark_published(post.id, "token-a", "x", clock.now)


class TestOperatorActions:
    def test_cancel_scheduled(self, scheduler, clock):
        post = scheduler.schedule_post("linkedin", "Cancel me", scheduled_time=clock.now)
        cancelled = scheduler.cancel_post(post.id)
        assert cancelled.status == PostStatus.CANCELLED
        assert scheduler.process_due_posts().processed == 0

    def test_cannot_cancel_published(self, scheduler, clock):
        post = scheduler.schedule_post("linkedin", "Done", scheduled_time=clock.now)
        scheduler.process_due_posts()
        with pytest.raises(InvalidTransitionError):
            scheduler.cancel_post(post.id)

    def test_cancel_missing(self, scheduler):
        with pytest.raises(PostNotFoundError):
            scheduler.cancel_post("nope")

    def test_edit_post(self, scheduler, clock):
        post = scheduler.schedule_post("linkedin", "Draft", scheduled_time=clock.now + timedelta(hours=1))
        edited = scheduler.edit_post(post.id, payload=PostPayload(text="Final"), scheduled_time=clock.now)
        assert edited.post_payload.text == "Final"
        assert edited.scheduled_time == clock.now

    def test_claimed_post_cannot_be_cancelled_or_edited(self, scheduler, clock):
        post = scheduler.schedule_post("linkedin", "In flight", scheduled_time=clock.now)
        assert scheduler.posts.claim(post.id, "worker-1", clock.now)

        with pytest.raises(InvalidTransitionError, match="claimed"):
            scheduler.cancel_post(post.id)
        with pytest.raises(InvalidTransitionError, match="claimed"):
            scheduler.edit_post(post.id, payload=PostPayload(text="Too late"))
        with pytest.raises(InvalidTransitionError):
            scheduler.edit_post(post.id, scheduled_time=clock.now + timedelta(hours=1))

        current = scheduler.get_post(post.id)
        assert current.status == PostStatus.CLAIMED
        assert current.post_payload.text == "In flight"
        assert current.scheduled_time == clock.now
        assert scheduler.posts.mark_published(post.id, "worker-1", "li-1", clock.now)

    def test_retry_failed_post(self, scheduler, socials, clock):
        post = scheduler.schedule_post("bluesky", "Again", scheduled_time=clock.now)
        _fail_times(socials["bluesky"], PermanentAdapterError("bluesky", "HTTP 400", 400))
        scheduler.process_due_posts()
        retried = scheduler.retry_post(post.id)
        assert retried.status == PostStatus.SCHEDULED
        assert retried.retry_count == 0
        assert scheduler.process_due_posts().published == 1
        with pytest.raises(InvalidTransitionError):
            scheduler.retry_post(post.id)

    def test_list_posts_filters(self, scheduler, clock):
        scheduler.schedule_post("linkedin", "A", scheduled_time=clock.now)
        scheduler.schedule_post("facebook", "B", scheduled_time=clock.now + timedelta(days=2))
        assert [p.platform for p in scheduler.list_posts(platform="facebook")] == ["facebook"]
        assert len(scheduler.list_posts(until=clock.now + timedelta(days=1))) == 1
        assert len(scheduler.list_posts(status=PostStatus.SCHEDULED)) == 2

    def test_analytics(self, scheduler, socials, clock):
        scheduler.schedule_post("linkedin", "A", scheduled_time=clock.now)
        scheduler.schedule_post("linkedin", "B", scheduled_time=clock.now)
        scheduler.schedule_post("bluesky", "C", scheduled_time=clock.now)
        scheduler.schedule_post("facebook", "D", scheduled_time=clock.now + timedelta(days=1))
        _fail_times(socials["bluesky"], PermanentAdapterError("bluesky", "HTTP 400", 400))
        scheduler.process_due_posts()

        stats = scheduler.analytics()
        assert stats["total"] == 4
        assert stats["by_status"]["published"] == 2
        assert stats["by_status"]["failed"] == 1
        assert stats["by_status"]["scheduled"] == 1
        assert stats["success_rate"] == pytest.approx(0.6667)
        assert stats["by_platform"]["linkedin"] == {"published": 2}
