"""HTTP surface: webhooks, trigger endpoints, post management and status views.

The trigger endpoints (/scheduler/process, /sync/process) are safe to hit
from several cron sources at once; claims in the store decide who works
on each item.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, cast

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from posse_sync import __version__
from posse_sync.errors import (
    ContentNotFoundError,
    EventNotFoundError,
    InvalidTransitionError,
    PayloadError,
    PostNotFoundError,
    SignatureError,
    SyncError,
    TargetNotEnabledError,
    UnknownSiteError,
)
from posse_sync.factory import Services
from posse_sync.models import PostStatus
from posse_sync.scheduler import DeriveOptions

logger = structlog.get_logger(__name__)

ERROR_STATUS: list[tuple[type[SyncError], int]] = [
    (SignatureError, 401),
    (UnknownSiteError, 404),
    (ContentNotFoundError, 404),
    (PostNotFoundError, 404),
    (EventNotFoundError, 404),
    (PayloadError, 400),
    (InvalidTransitionError, 409),
    (TargetNotEnabledError, 422),
]


class SyncRequest(BaseModel):
    platform: str | None = None
    force: bool = False


class DeriveRequest(BaseModel):
    platforms: list[str] | None = None
    link_url: str = ""
    hashtags: list[str] = []
    media_assets: list[str] = []
    visibility: str = "public"
    scheduled_time: datetime | None = None
    texts: dict[str, str] = {}


class PostRequest(BaseModel):
    platform: str
    text: str
    scheduled_time: datetime | None = None
    media_assets: list[str] = []
    visibility: str = "public"
    link_url: str = ""
    organization_id: str = "default"


class PostEdit(BaseModel):
    text: str | None = None
    media_assets: list[str] | None = None
    visibility: str | None = None
    link_url: str | None = None
    scheduled_time: datetime | None = None


def _utc(value: datetime | None) -> datetime | None:
    # Naive times in request bodies are taken as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def sync_error_handler(request: Request, exc: SyncError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    # Signature failures get a fixed message so the response reveals nothing.
    detail = "invalid signature" if isinstance(exc, SignatureError) else str(exc)
    return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": detail})


def create_app(services: Services) -> FastAPI:
    """Create the FastAPI application around an already wired Services bundle."""
    app = FastAPI(title="posse-sync", version=__version__)
    app.state.services = services
    app.add_exception_handler(
        SyncError,
        cast(Callable[[Request, Exception], Awaitable[Response]], sync_error_handler),
    )

    engine = services.engine
    scheduler = services.scheduler

    @app.post("/webhooks/{site}")
    async def receive_webhook(site: str, request: Request) -> dict[str, Any]:
        site_cfg = services.config.get_site(site)
        if site_cfg is None:
            raise UnknownSiteError(site)
        raw_body = await request.body()
        signature = request.headers.get(site_cfg.signature_header)
        result = await run_in_threadpool(engine.ingest, site, signature, raw_body)
        return result.to_dict()

    @app.get("/webhooks/{site}")
    def webhook_handshake(site: str, request: Request) -> dict[str, Any]:
        return engine.handshake(site, dict(request.query_params))

    @app.api_route("/scheduler/process", methods=["GET", "POST"])
    def process_posts() -> dict[str, int]:
        return scheduler.process_due_posts().to_dict()

    @app.api_route("/sync/process", methods=["GET", "POST"])
    def process_sync_queue() -> dict[str, int]:
        return engine.drain().to_dict()

    @app.post("/sync/events/{event_id}/retry")
    def retry_sync_event(event_id: int) -> dict[str, Any]:
        return engine.retry_event(event_id).to_dict()

    @app.post("/content/{content_id}/sync")
    def sync_content(content_id: str, body: SyncRequest | None = None) -> dict[str, Any]:
        body = body or SyncRequest()
        if body.platform:
            results = [engine.push_to_target(content_id, body.platform, force=body.force)]
        else:
            results = engine.push_all(content_id, force=body.force)
        return {"content_id": content_id, "results": [r.to_dict() for r in results]}

    @app.get("/content/{content_id}/sync-status")
    def content_sync_status(content_id: str) -> dict[str, Any]:
        return engine.sync_status(content_id)

    @app.post("/content/{content_id}/posts", status_code=201)
    def derive_posts(content_id: str, body: DeriveRequest) -> dict[str, Any]:
        options = DeriveOptions(
            link_url=body.link_url,
            hashtags=body.hashtags,
            media_assets=body.media_assets,
            visibility=body.visibility,
            scheduled_time=_utc(body.scheduled_time),
            texts=body.texts,
        )
        platforms = body.platforms or sorted(services.config.accounts)
        if not platforms:
            raise PayloadError("no social platforms requested or configured")
        posts = scheduler.derive_posts(content_id, platforms, options)
        return {"content_id": content_id, "posts": [p.to_dict() for p in posts], "count": len(posts)}

    @app.get("/posts")
    def list_posts(
        platform: str | None = None,
        status: PostStatus | None = None,
        content_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        posts = scheduler.list_posts(
            platform=platform, status=status, content_id=content_id,
            since=since, until=until, limit=limit,
        )
        return {"posts": [p.to_dict() for p in posts], "count": len(posts)}

    @app.get("/posts/{post_id}")
    def get_post(post_id: str) -> dict[str, Any]:
        return scheduler.get_post(post_id).to_dict()

    @app.post("/posts", status_code=201)
    def create_post(body: PostRequest) -> dict[str, Any]:
        post = scheduler.schedule_post(
            body.platform, body.text,
            scheduled_time=_utc(body.scheduled_time),
            media_assets=body.media_assets,
            visibility=body.visibility,
            link_url=body.link_url,
            organization_id=body.organization_id,
        )
        return post.to_dict()

    @app.patch("/posts/{post_id}")
    def edit_post(post_id: str, body: PostEdit) -> dict[str, Any]:
        changes = {
            name: value
            for name, value in body.model_dump(exclude={"scheduled_time"}).items()
            if value is not None
        }
        if not changes and body.scheduled_time is None:
            raise PayloadError("edit changes nothing")
        payload = replace(scheduler.get_post(post_id).post_payload, **changes) if changes else None
        return scheduler.edit_post(post_id, payload, _utc(body.scheduled_time)).to_dict()

    @app.post("/posts/{post_id}/cancel")
    def cancel_post(post_id: str) -> dict[str, Any]:
        return scheduler.cancel_post(post_id).to_dict()

    @app.post("/posts/{post_id}/retry")
    def retry_post(post_id: str) -> dict[str, Any]:
        return scheduler.retry_post(post_id).to_dict()

    @app.get("/analytics")
    def analytics(since: datetime | None = None) -> dict[str, Any]:
        return scheduler.analytics(since)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "live_mode": services.config.live_mode,
            "sites": sorted(services.config.sites),
            "sync_queue": engine.state.count_by_status(),
            "circuits": services.dispatcher.breaker_states(),
        }

    return app
