"""CLI entry point for posse-sync.

Usage:
    posse-sync serve [--host HOST] [--port PORT]
    posse-sync worker [--interval SECONDS] [--with-scheduler]
    posse-sync process-posts
    posse-sync drain [--limit N]
    posse-sync push CONTENT_ID [--platform SITE] [--force]
    posse-sync derive CONTENT_ID [--platform NAME ...] [--at ISO_DATETIME] [--link URL] [--hashtag TAG ...]
    posse-sync retry (--event ID | --post ID)
    posse-sync analytics [--since ISO_DATE]
    posse-sync log [--failures]
    posse-sync status
"""

from __future__ import annotations

import argparse
import json
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from posse_sync.config import SyncConfig, load_config
from posse_sync.errors import SyncError
from posse_sync.factory import Services, build_services
from posse_sync.log import configure_logging
from posse_sync.scheduler import DeriveOptions

logger = structlog.get_logger(__name__)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_serve(services: Services, host: str, port: int) -> None:
    import uvicorn

    from posse_sync.api import create_app

    uvicorn.run(create_app(services), host=host, port=port, log_config=None)


def cmd_worker(services: Services, interval: float | None, with_scheduler: bool) -> None:
    stop = threading.Event()
    interval = services.config.sync.worker_interval if interval is None else interval
    logger.info("worker_started", interval=interval, with_scheduler=with_scheduler)
    try:
        while not stop.is_set():
            services.engine.drain()
            if with_scheduler:
                services.scheduler.process_due_posts()
            stop.wait(interval)
    except KeyboardInterrupt:
        logger.info("worker_stopped")


def cmd_process_posts(services: Services) -> None:
    _print_json(services.scheduler.process_due_posts().to_dict())


def cmd_drain(services: Services, limit: int | None) -> None:
    _print_json(services.engine.drain(limit).to_dict())


def cmd_push(services: Services, content_id: str, platform: str | None, force: bool) -> None:
    if platform:
        results = [services.engine.push_to_target(content_id, platform, force=force)]
    else:
        results = services.engine.push_all(content_id, force=force)
    for r in results:
        print(f"  [{r.action.upper()}] {r.platform}: {r.operation or '-'} (event {r.event_id or '-'})")


def cmd_derive(
    services: Services,
    content_id: str,
    platforms: list[str] | None,
    at: datetime | None,
    link_url: str,
    hashtags: list[str] | None,
) -> None:
    if at is not None and at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    options = DeriveOptions(link_url=link_url, hashtags=hashtags or [], scheduled_time=at)
    platforms = platforms or sorted(services.config.accounts)
    posts = services.scheduler.derive_posts(content_id, platforms, options)
    if not posts:
        print("No social accounts configured; nothing scheduled")
    for post in posts:
        print(f"  [SCHEDULED] {post.platform}: {post.id} at {post.scheduled_time.isoformat()}")


def cmd_retry(services: Services, event_id: int | None, post_id: str | None) -> None:
    if event_id is not None:
        _print_json(services.engine.retry_event(event_id).to_dict())
    else:
        _print_json(services.scheduler.retry_post(post_id).to_dict())


def cmd_analytics(services: Services, since: str | None) -> None:
    since_dt = datetime.fromisoformat(since) if since else None
    _print_json(services.scheduler.analytics(since_dt))


def cmd_log(services: Services, failures_only: bool) -> None:
    log = services.delivery_log
    records = log.get_failures() if failures_only else log.all_records
    print(f"{'Failures' if failures_only else 'All records'}: {len(records)}")
    for r in records:
        detail = r.external_id or r.error or "N/A"
        print(f"  [{r.status}] {r.kind} {r.platform} / {r.subject_id}: {detail}")


def cmd_status(cfg: SyncConfig, services: Services) -> None:
    print(f"Live mode: {cfg.live_mode}")
    print(f"Database:  {cfg.database_path}")
    for name, site in sorted(cfg.sites.items()):
        secret = "secret set" if site.webhook_secret else "NO SECRET"
        print(f"Site {name}: {site.kind} {site.base_url} [{site.direction.value}, {secret}]")
    for platform in ("linkedin", "facebook", "bluesky"):
        print(f"{platform.capitalize():9} {'configured' if platform in cfg.accounts else 'not configured'}")
    counts = services.engine.state.count_by_status()
    print("Sync queue: " + (", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "empty"))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="posse-sync", description="Content sync and social scheduling")
    parser.add_argument("--config", type=Path, default=None, help="Config YAML file")
    sub = parser.add_subparsers(dest="command")

    serve_p = sub.add_parser("serve", help="Run the HTTP service")
    serve_p.add_argument("--host", default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)

    worker_p = sub.add_parser("worker", help="Drain the sync queue on an interval")
    worker_p.add_argument("--interval", type=float, default=None)
    worker_p.add_argument("--with-scheduler", action="store_true",
                          help="Also publish due posts on each pass")

    sub.add_parser("process-posts", help="Publish due scheduled posts once")

    drain_p = sub.add_parser("drain", help="Process due sync events once")
    drain_p.add_argument("--limit", type=int, default=None)

    push_p = sub.add_parser("push", help="Queue a push of one content record")
    push_p.add_argument("content_id")
    push_p.add_argument("--platform", default=None, help="Single target site (default: all enabled)")
    push_p.add_argument("--force", action="store_true", help="Push even if the target is up to date")

    derive_p = sub.add_parser("derive", help="Schedule social posts derived from a content record")
    derive_p.add_argument("content_id")
    derive_p.add_argument("--platform", action="append", dest="platforms",
                          help="Social platform, repeatable (default: all configured accounts)")
    derive_p.add_argument("--at", type=datetime.fromisoformat, default=None,
                          help="ISO datetime for every post (default: each platform's rule)")
    derive_p.add_argument("--link", default="", help="Link appended to each post")
    derive_p.add_argument("--hashtag", action="append", dest="hashtags")

    retry_p = sub.add_parser("retry", help="Retry a failed sync event or post")
    target = retry_p.add_mutually_exclusive_group(required=True)
    target.add_argument("--event", type=int, dest="event_id")
    target.add_argument("--post", dest="post_id")

    analytics_p = sub.add_parser("analytics", help="Posting statistics")
    analytics_p.add_argument("--since", default=None, help="ISO date or datetime")

    log_p = sub.add_parser("log", help="View delivery log")
    log_p.add_argument("--failures", action="store_true")

    sub.add_parser("status", help="Show configuration status")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    try:
        cfg = load_config(args.config)
    except SyncError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(cfg.log_level, cfg.log_json)
    services = build_services(cfg)

    try:
        if args.command == "serve":
            cmd_serve(services, args.host, args.port)
        elif args.command == "worker":
            cmd_worker(services, args.interval, args.with_scheduler)
        elif args.command == "process-posts":
            cmd_process_posts(services)
        elif args.command == "drain":
            cmd_drain(services, args.limit)
        elif args.command == "push":
            cmd_push(services, args.content_id, args.platform, args.force)
        elif args.command == "derive":
            cmd_derive(services, args.content_id, args.platforms, args.at, args.link, args.hashtags)
        elif args.command == "retry":
            cmd_retry(services, args.event_id, args.post_id)
        elif args.command == "analytics":
            cmd_analytics(services, args.since)
        elif args.command == "log":
            cmd_log(services, args.failures)
        elif args.command == "status":
            cmd_status(cfg, services)
    except SyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
