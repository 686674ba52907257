"""Bluesky (AT Protocol) publisher.

Sessions are created with the account's app password and cached. The
session is shared by concurrent workers and replaced under a lock; a
post rejected with an expired token refreshes the session once and
retries.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any

from posse_sync.config import AccountConfig
from posse_sync.errors import AdapterError, PermanentAdapterError
from posse_sync.http import request_json
from posse_sync.models import PostPayload
from posse_sync.platforms import SocialAdapter

DEFAULT_SERVICE_URL = "https://bsky.social"
POST_COLLECTION = "app.bsky.feed.post"


class BlueskyClient(SocialAdapter):
    """Client for posting to Bluesky via the AT Protocol."""

    platform = "bluesky"
    max_chars = 300

    def __init__(self, account: AccountConfig, live: bool = False, timeout: float = 30.0) -> None:
        super().__init__(live=live, timeout=timeout)
        self.account = account
        self._service_url = (account.service_url or DEFAULT_SERVICE_URL).rstrip("/")
        self._session_lock = threading.Lock()
        self._session: dict[str, Any] | None = None

    def _create_session(self) -> dict[str, Any]:
        """Authenticate and create an AT Protocol session."""
        if not self.account.handle or not self.account.app_password:
            raise PermanentAdapterError(self.platform, "handle and app_password are required")
        session = request_json(
            self.platform, "POST",
            f"{self._service_url}/xrpc/com.atproto.server.createSession",
            body={"identifier": self.account.handle, "password": self.account.app_password},
            timeout=self._timeout,
        )
        if "did" not in session or "accessJwt" not in session:
            raise PermanentAdapterError(self.platform, "session response missing did/accessJwt")
        return session

    def _get_session(self, stale: dict[str, Any] | None = None) -> dict[str, Any]:
        """Return the cached session, replacing it if it is missing or equals stale."""
        with self._session_lock:
            if self._session is None or self._session is stale:
                self._session = self._create_session()
            return self._session

    def build_record(self, payload: PostPayload) -> dict[str, Any]:
        record: dict[str, Any] = {
            "$type": POST_COLLECTION,
            "text": payload.text,
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        if payload.link_url:
            record["embed"] = {
                "$type": "app.bsky.embed.external",
                "external": {"uri": payload.link_url, "title": payload.title, "description": ""},
            }
        return record

    def _create_record(self, session: dict[str, Any], record: dict[str, Any]) -> dict[str, Any]:
        return request_json(
            self.platform, "POST",
            f"{self._service_url}/xrpc/com.atproto.repo.createRecord",
            body={"repo": session["did"], "collection": POST_COLLECTION, "record": record},
            headers={"Authorization": f"Bearer {session['accessJwt']}"},
            timeout=self._timeout,
        )

    def _publish_live(self, payload: PostPayload, account_ref: str) -> str:
        if not 0 < len(payload.text) <= self.max_chars:
            raise PermanentAdapterError(self.platform, "post text is empty or exceeds 300 characters")
        record = self.build_record(payload)
        session = self._get_session()
        try:
            result = self._create_record(session, record)
        except AdapterError as exc:
            if exc.status_code != 401 and "ExpiredToken" not in str(exc):
                raise
            session = self._get_session(stale=session)
            result = self._create_record(session, record)
        return result["uri"]
