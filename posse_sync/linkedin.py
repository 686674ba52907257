"""LinkedIn publisher using the UGC Posts API."""

from __future__ import annotations

from typing import Any

from posse_sync.config import AccountConfig
from posse_sync.errors import PermanentAdapterError
from posse_sync.http import request_json
from posse_sync.models import PostPayload
from posse_sync.platforms import SocialAdapter

API_URL = "https://api.linkedin.com/v2/ugcPosts"

VISIBILITY = {
    "public": "PUBLIC",
    "connections": "CONNECTIONS",
}


class LinkedInClient(SocialAdapter):
    """Publishes share posts on behalf of a member or organization URN."""

    platform = "linkedin"
    max_chars = 3000

    def __init__(self, account: AccountConfig, live: bool = False, timeout: float = 30.0) -> None:
        super().__init__(live=live, timeout=timeout)
        self.account = account

    def build_body(self, payload: PostPayload, author: str) -> dict[str, Any]:
        share: dict[str, Any] = {
            "shareCommentary": {"text": payload.text},
            "shareMediaCategory": "NONE",
        }
        if payload.link_url:
            share["shareMediaCategory"] = "ARTICLE"
            share["media"] = [{
                "status": "READY",
                "originalUrl": payload.link_url,
                "title": {"text": payload.title},
            }]
        elif payload.media_assets:
            share["shareMediaCategory"] = "IMAGE"
            share["media"] = [{"status": "READY", "media": asset} for asset in payload.media_assets]
        return {
            "author": author,
            "lifecycleState": "PUBLISHED",
            "specificContent": {"com.linkedin.ugc.ShareContent": share},
            "visibility": {
                "com.linkedin.ugc.MemberNetworkVisibility": VISIBILITY.get(payload.visibility, "PUBLIC"),
            },
        }

    def _publish_live(self, payload: PostPayload, account_ref: str) -> str:
        author = account_ref or self.account.account_ref
        if not author:
            raise PermanentAdapterError(self.platform, "no author URN configured")
        result = request_json(
            self.platform, "POST", API_URL,
            body=self.build_body(payload, author),
            headers={
                "Authorization": f"Bearer {self.account.access_token}",
                "X-Restli-Protocol-Version": "2.0.0",
            },
            timeout=self._timeout,
        )
        headers = {k.lower(): v for k, v in result.get("_headers", {}).items()}
        post_id = headers.get("x-restli-id") or result.get("id")
        if not post_id:
            raise PermanentAdapterError(self.platform, "response carried no post id")
        return str(post_id)
