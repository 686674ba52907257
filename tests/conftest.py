"""Shared fixtures: a controllable clock, a temp database, three sites,
and a recorder standing in for urllib.request.urlopen."""

import io
import json
import logging
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone

import pytest
import structlog
from posse_sync.config import AccountConfig, SiteConfig, SyncSettings
from posse_sync.dispatch import AdapterDispatcher
from posse_sync.drupal import DrupalClient
from posse_sync.ghost import GhostClient
from posse_sync.store import Database
from posse_sync.sync_engine import SyncEngine
from posse_sync.wordpress import WordPressClient


@pytest.fixture(autouse=True, scope="session")
def _quiet_logs():
    # CLI tests parse stdout as JSON
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    # A Monday
    return FakeClock(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "posse.db")


@pytest.fixture
def sites():
    return {
        "wp-main": SiteConfig(
            name="wp-main", kind="wordpress", base_url="https://wp.example.com",
            webhook_secret="wp-secret", api_token="wp-token",
        ),
        "drupal-docs": SiteConfig(
            name="drupal-docs", kind="drupal", base_url="https://docs.example.com",
            webhook_secret="drupal-secret",
        ),
        "ghost-blog": SiteConfig(
            name="ghost-blog", kind="ghost", base_url="https://ghost.example.com",
            webhook_secret="ghost-secret", signature_header="X-Ghost-Signature",
            api_token="abc123:deadbeef0102030405060708090a0b0c",
        ),
    }


@pytest.fixture
def adapters(sites):
    return {
        "wp-main": WordPressClient(sites["wp-main"]),
        "drupal-docs": DrupalClient(sites["drupal-docs"]),
        "ghost-blog": GhostClient(sites["ghost-blog"]),
    }


@pytest.fixture
def engine(db, sites, adapters, clock):
    settings = SyncSettings(max_attempts=3, backoff_seconds=[1.0, 5.0], workers=2)
    return SyncEngine(db, sites, adapters, settings=settings, dispatcher=AdapterDispatcher(), clock=clock)


@pytest.fixture
def accounts():
    return {
        "linkedin": AccountConfig(platform="linkedin", account_ref="urn:li:organization:42", access_token="t"),
        "facebook": AccountConfig(platform="facebook", account_ref="1234567890", access_token="t"),
        "bluesky": AccountConfig(platform="bluesky", handle="test.bsky.social", app_password="pw"),
    }


class FakeResponse:
    def __init__(self, payload=None, headers=None) -> None:
        self._raw = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self.headers = headers or {}

    def read(self) -> bytes:
        return self._raw

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> bool:
        return False


class HttpRecorder:
    """Replays queued responses and keeps every urllib Request it was sent."""

    def __init__(self) -> None:
        self.requests: list[urllib.request.Request] = []
        self._responses: list[tuple] = []

    def queue(self, payload=None, status: int = 200, headers=None) -> None:
        self._responses.append((payload, status, headers))

    def __call__(self, req, timeout=None):
        self.requests.append(req)
        payload, status, headers = self._responses.pop(0)
        if status >= 400:
            body = io.BytesIO(json.dumps(payload or {}).encode("utf-8"))
            raise urllib.error.HTTPError(req.full_url, status, "error", None, body)
        return FakeResponse(payload, headers)

    def body(self, index: int = -1):
        return json.loads(self.requests[index].data)


@pytest.fixture
def http(monkeypatch):
    recorder = HttpRecorder()
    monkeypatch.setattr(urllib.request, "urlopen", recorder)
    return recorder
