"""Configuration loader for posse-sync.

Loads a YAML config file with environment variable overrides.
All env vars use the POSSE_SYNC_ prefix. Per-site secrets can be
supplied as POSSE_SYNC_SITE_<NAME>_WEBHOOK_SECRET and
POSSE_SYNC_SITE_<NAME>_API_TOKEN, where <NAME> is the site key
upper-cased with dashes turned into underscores.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from posse_sync.errors import ConfigError
from posse_sync.models import SchedulingRule, SyncDirection
from posse_sync.rate_limiter import RateLimiterConfig

ENV_PREFIX = "POSSE_SYNC_"

SITE_KINDS = ("wordpress", "drupal", "ghost")
SOCIAL_PLATFORMS = ("linkedin", "facebook", "bluesky")
DEFAULT_SIGNATURE_HEADERS = {"ghost": "X-Ghost-Signature"}

DEFAULT_RULES: dict[str, SchedulingRule] = {
    "facebook": SchedulingRule(platform="facebook", hour=15, minute=0),
    "linkedin": SchedulingRule(platform="linkedin", hour=12, minute=0, exclude_weekends=True),
    "bluesky": SchedulingRule(platform="bluesky", hour=9, minute=0),
}


@dataclass
class SiteConfig:
    """One external website CMS that content syncs with."""
    name: str
    kind: str
    base_url: str
    organization_id: str = "default"
    api_token: str = ""
    webhook_secret: str = ""
    signature_header: str = "X-CMS-Signature"
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    content_types: list[str] = field(default_factory=list)
    allow_ingest_create: bool = True

    def accepts_content_type(self, content_type: str) -> bool:
        return not self.content_types or content_type in self.content_types


@dataclass
class AccountConfig:
    """Credentials for one social platform account."""
    platform: str
    account_ref: str = ""
    access_token: str = ""
    handle: str = ""
    app_password: str = ""
    service_url: str = ""


@dataclass
class SyncSettings:
    max_attempts: int = 5
    backoff_seconds: list[float] = field(default_factory=lambda: [1.0, 5.0, 15.0])
    backoff_ceiling: float = 60.0
    claim_timeout: float = 300.0
    workers: int = 4
    tie_break: str = "local"
    worker_interval: float = 5.0


@dataclass
class SchedulerSettings:
    max_retries: int = 3
    retry_delay: float = 300.0
    claim_timeout: float = 600.0
    workers: int = 4


@dataclass
class SyncConfig:
    """Unified configuration for all posse-sync components."""
    database_path: str = "posse_sync.db"
    delivery_log_path: str = "delivery_log.json"
    live_mode: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    request_timeout: float = 30.0
    sites: dict[str, SiteConfig] = field(default_factory=dict)
    accounts: dict[str, AccountConfig] = field(default_factory=dict)
    scheduling_rules: dict[str, SchedulingRule] = field(default_factory=lambda: dict(DEFAULT_RULES))
    sync: SyncSettings = field(default_factory=SyncSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    rate_limits: dict[str, RateLimiterConfig] = field(default_factory=dict)

    def get_site(self, name: str) -> SiteConfig | None:
        return self.sites.get(name)


def load_config(path: Path | None = None) -> SyncConfig:
    """Load config from YAML file with env var overrides.

    Env vars override YAML values. Mapping:
      POSSE_SYNC_DATABASE_PATH → database_path
      POSSE_SYNC_DELIVERY_LOG_PATH → delivery_log_path
      POSSE_SYNC_LIVE_MODE → live_mode
      POSSE_SYNC_LOG_LEVEL → log_level
      POSSE_SYNC_LOG_JSON → log_json
      POSSE_SYNC_SITE_<NAME>_WEBHOOK_SECRET → sites.<name>.webhook_secret
      POSSE_SYNC_SITE_<NAME>_API_TOKEN → sites.<name>.api_token
      POSSE_SYNC_<PLATFORM>_ACCESS_TOKEN → accounts.<platform>.access_token
    """
    raw: dict[str, Any] = {}
    if path and path.exists():
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path}: top-level YAML must be a mapping")
        raw = loaded

    sites = {
        name: _build_site(name, data)
        for name, data in (raw.get("sites") or {}).items()
    }
    accounts = {
        platform: _build_account(platform, data)
        for platform, data in (raw.get("accounts") or {}).items()
    }
    rules = dict(DEFAULT_RULES)
    for platform, data in (raw.get("scheduling_rules") or {}).items():
        rules[platform] = _build_rule(platform, data)

    rate_limits = {
        platform: _build_rate_limit(platform, data)
        for platform, data in (raw.get("rate_limits") or {}).items()
    }

    sync_raw = raw.get("sync") or {}
    sched_raw = raw.get("scheduler") or {}

    cfg = SyncConfig(
        database_path=_env_or("DATABASE_PATH", raw.get("database_path", "posse_sync.db")),
        delivery_log_path=_env_or("DELIVERY_LOG_PATH", raw.get("delivery_log_path", "delivery_log.json")),
        live_mode=_env_bool("LIVE_MODE", bool(raw.get("live_mode", False))),
        log_level=_env_or("LOG_LEVEL", raw.get("log_level", "INFO")).upper(),
        log_json=_env_bool("LOG_JSON", bool(raw.get("log_json", False))),
        request_timeout=float(raw.get("request_timeout", 30.0)),
        sites=sites,
        accounts=accounts,
        scheduling_rules=rules,
        rate_limits=rate_limits,
        sync=SyncSettings(
            max_attempts=int(sync_raw.get("max_attempts", 5)),
            backoff_seconds=[float(s) for s in sync_raw.get("backoff_seconds", [1, 5, 15])],
            backoff_ceiling=float(sync_raw.get("backoff_ceiling", 60.0)),
            claim_timeout=float(sync_raw.get("claim_timeout", 300.0)),
            workers=int(sync_raw.get("workers", 4)),
            tie_break=str(sync_raw.get("tie_break", "local")),
            worker_interval=float(sync_raw.get("worker_interval", 5.0)),
        ),
        scheduler=SchedulerSettings(
            max_retries=int(sched_raw.get("max_retries", 3)),
            retry_delay=float(sched_raw.get("retry_delay", 300.0)),
            claim_timeout=float(sched_raw.get("claim_timeout", 600.0)),
            workers=int(sched_raw.get("workers", 4)),
        ),
    )

    if cfg.sync.tie_break not in ("local", "remote"):
        raise ConfigError(f"sync.tie_break must be 'local' or 'remote', got {cfg.sync.tie_break!r}")
    if cfg.sync.max_attempts < 1:
        raise ConfigError("sync.max_attempts must be at least 1")

    return cfg


def _build_site(name: str, data: dict[str, Any]) -> SiteConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"sites.{name} must be a mapping")
    kind = data.get("kind", "")
    if kind not in SITE_KINDS:
        raise ConfigError(f"sites.{name}.kind must be one of {', '.join(SITE_KINDS)}, got {kind!r}")
    if not data.get("base_url"):
        raise ConfigError(f"sites.{name}.base_url is required")
    try:
        direction = SyncDirection(data.get("direction", "bidirectional"))
    except ValueError as exc:
        raise ConfigError(f"sites.{name}.direction: {exc}") from exc

    env_key = f"SITE_{name.upper().replace('-', '_')}"
    return SiteConfig(
        name=name,
        kind=kind,
        base_url=str(data["base_url"]).rstrip("/"),
        organization_id=str(data.get("organization_id", "default")),
        api_token=_env_or(f"{env_key}_API_TOKEN", data.get("api_token", "")),
        webhook_secret=_env_or(f"{env_key}_WEBHOOK_SECRET", data.get("webhook_secret", "")),
        signature_header=data.get("signature_header", DEFAULT_SIGNATURE_HEADERS.get(kind, "X-CMS-Signature")),
        direction=direction,
        content_types=list(data.get("content_types") or []),
        allow_ingest_create=bool(data.get("allow_ingest_create", True)),
    )


def _build_account(platform: str, data: dict[str, Any]) -> AccountConfig:
    if platform not in SOCIAL_PLATFORMS:
        raise ConfigError(f"accounts.{platform}: unsupported platform")
    data = data or {}
    return AccountConfig(
        platform=platform,
        account_ref=str(data.get("account_ref", "")),
        access_token=_env_or(f"{platform.upper()}_ACCESS_TOKEN", data.get("access_token", "")),
        handle=data.get("handle", ""),
        app_password=_env_or(f"{platform.upper()}_APP_PASSWORD", data.get("app_password", "")),
        service_url=data.get("service_url", ""),
    )


def _build_rule(platform: str, data: dict[str, Any]) -> SchedulingRule:
    data = data or {}
    hour = int(data.get("hour", DEFAULT_RULES.get(platform, SchedulingRule(platform, 12)).hour))
    minute = int(data.get("minute", 0))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ConfigError(f"scheduling_rules.{platform}: invalid time {hour}:{minute}")
    tz_name = str(data.get("timezone", "UTC"))
    try:
        ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise ConfigError(f"scheduling_rules.{platform}: unknown timezone {tz_name!r}") from exc
    return SchedulingRule(
        platform=platform,
        hour=hour,
        minute=minute,
        timezone=tz_name,
        exclude_weekends=bool(data.get("exclude_weekends", False)),
    )


def _build_rate_limit(platform: str, data: dict[str, Any]) -> RateLimiterConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"rate_limits.{platform} must be a mapping")
    try:
        rate = float(data.get("tokens_per_second", 1.0))
        burst = float(data.get("max_tokens", 10.0))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"rate_limits.{platform}: {exc}") from exc
    if rate <= 0 or burst < 1:
        raise ConfigError(f"rate_limits.{platform}: tokens_per_second must be positive and max_tokens at least 1")
    return RateLimiterConfig(tokens_per_second=rate, max_tokens=burst)


def _env_or(suffix: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{suffix}", default)


def _env_bool(suffix: str, default: bool) -> bool:
    val = os.environ.get(f"{ENV_PREFIX}{suffix}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")
