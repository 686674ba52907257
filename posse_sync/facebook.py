"""Facebook Page publisher using the Graph API."""

from __future__ import annotations

from typing import Any

from posse_sync.config import AccountConfig
from posse_sync.errors import PermanentAdapterError
from posse_sync.http import request_json
from posse_sync.models import PostPayload
from posse_sync.platforms import SocialAdapter

GRAPH_URL = "https://graph.facebook.com/v19.0"


class FacebookClient(SocialAdapter):
    """Publishes to a Facebook Page feed with a page access token.

    Posts with media go to the page's /photos edge (first asset only);
    everything else goes to /feed.
    """

    platform = "facebook"
    max_chars = 63206

    def __init__(self, account: AccountConfig, live: bool = False, timeout: float = 30.0) -> None:
        super().__init__(live=live, timeout=timeout)
        self.account = account

    def build_request(self, payload: PostPayload, page_id: str) -> tuple[str, dict[str, Any]]:
        if payload.media_assets:
            return f"{GRAPH_URL}/{page_id}/photos", {
                "url": payload.media_assets[0],
                "caption": payload.text,
            }
        params: dict[str, Any] = {"message": payload.text}
        if payload.link_url:
            params["link"] = payload.link_url
        return f"{GRAPH_URL}/{page_id}/feed", params

    def _publish_live(self, payload: PostPayload, account_ref: str) -> str:
        page_id = account_ref or self.account.account_ref
        if not page_id:
            raise PermanentAdapterError(self.platform, "no page id configured")
        url, params = self.build_request(payload, page_id)
        params["access_token"] = self.account.access_token
        result = request_json(self.platform, "POST", url, params=params, timeout=self._timeout)
        post_id = result.get("post_id") or result.get("id")
        if not post_id:
            raise PermanentAdapterError(self.platform, "response carried no post id")
        return str(post_id)
