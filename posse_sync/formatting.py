"""Shape canonical content into per-platform social post payloads."""

from __future__ import annotations

from typing import Iterable

from posse_sync.models import ContentRecord, PostPayload

PLATFORM_LIMITS = {
    "linkedin": 3000,
    "facebook": 63206,
    "bluesky": 300,
}
ELLIPSIS = "..."


def truncate_at_word(text: str, limit: int) -> str:
    """Cut text to at most limit characters, preferring a word boundary."""
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return text[:limit]
    trunc_at = text.rfind(" ", 0, limit - len(ELLIPSIS))
    if trunc_at <= 0:
        trunc_at = limit - len(ELLIPSIS)
    return text[:trunc_at].rstrip() + ELLIPSIS


def compose_text(
    main: str,
    limit: int,
    link_url: str = "",
    hashtags: Iterable[str] = (),
) -> str:
    """Join main text, hashtags and link, truncating only the main text.

    The link and hashtags are kept whole; if they alone do not fit, the
    whole message is truncated instead.
    """
    tags = " ".join(t if t.startswith("#") else f"#{t}" for t in hashtags if t)
    suffix = "\n\n".join(part for part in (tags, link_url) if part)
    if not suffix:
        return truncate_at_word(main, limit)
    available = limit - len(suffix) - 2
    if available <= len(ELLIPSIS):
        return truncate_at_word(f"{main}\n\n{suffix}", limit)
    return f"{truncate_at_word(main, available)}\n\n{suffix}"


def format_post(
    record: ContentRecord,
    platform: str,
    link_url: str = "",
    hashtags: Iterable[str] = (),
    media_assets: Iterable[str] = (),
    visibility: str = "public",
    text: str | None = None,
) -> PostPayload:
    """Build the payload for one platform from a content record.

    Defaults to the title followed by the excerpt; text replaces both.
    """
    if text is None:
        text = f"{record.title}\n\n{record.excerpt}" if record.excerpt else record.title
    limit = PLATFORM_LIMITS.get(platform, PLATFORM_LIMITS["linkedin"])
    return PostPayload(
        text=compose_text(text.strip(), limit, link_url=link_url, hashtags=hashtags),
        media_assets=list(media_assets),
        visibility=visibility,
        link_url=link_url,
        title=record.title,
    )
