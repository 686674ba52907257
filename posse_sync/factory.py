"""Factory for building the sync engine and scheduler from a SyncConfig.

Shared by the CLI commands and the HTTP service so both wire adapters,
the resilience layer and the delivery log the same way.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from posse_sync.bluesky import BlueskyClient
from posse_sync.config import AccountConfig, SiteConfig, SyncConfig
from posse_sync.delivery_log import DeliveryLog
from posse_sync.dispatch import AdapterDispatcher
from posse_sync.drupal import DrupalClient
from posse_sync.facebook import FacebookClient
from posse_sync.ghost import GhostClient
from posse_sync.linkedin import LinkedInClient
from posse_sync.platforms import SocialAdapter, WebsiteAdapter
from posse_sync.scheduler import PublishingScheduler
from posse_sync.store import Database
from posse_sync.sync_engine import SyncEngine
from posse_sync.wordpress import WordPressClient

WEBSITE_ADAPTERS: dict[str, type[WebsiteAdapter]] = {
    "wordpress": WordPressClient,
    "drupal": DrupalClient,
    "ghost": GhostClient,
}

SOCIAL_ADAPTERS: dict[str, type[SocialAdapter]] = {
    "linkedin": LinkedInClient,
    "facebook": FacebookClient,
    "bluesky": BlueskyClient,
}


@dataclass
class Services:
    """Everything a CLI command or HTTP handler needs."""
    config: SyncConfig
    db: Database
    engine: SyncEngine
    scheduler: PublishingScheduler
    dispatcher: AdapterDispatcher
    delivery_log: DeliveryLog


def build_website_adapter(site: SiteConfig, live: bool = False, timeout: float = 30.0) -> WebsiteAdapter:
    return WEBSITE_ADAPTERS[site.kind](site, live=live, timeout=timeout)


def build_social_adapter(account: AccountConfig, live: bool = False, timeout: float = 30.0) -> SocialAdapter:
    return SOCIAL_ADAPTERS[account.platform](account, live=live, timeout=timeout)


def build_services(
    cfg: SyncConfig,
    delivery_log: DeliveryLog | None = None,
) -> Services:
    """Build the engine and scheduler from a SyncConfig.

    Args:
        cfg: Loaded configuration (sites, accounts, live_mode, paths).
        delivery_log: Optional pre-built delivery log. If None, one is
            constructed from cfg.delivery_log_path.

    Returns:
        A fully wired Services bundle sharing one database and dispatcher.
    """
    if delivery_log is None:
        log_path = Path(cfg.delivery_log_path) if cfg.delivery_log_path else None
        delivery_log = DeliveryLog(log_path)

    db = Database(cfg.database_path)
    limits = dict(cfg.rate_limits)
    dispatcher = AdapterDispatcher(
        limiter_config=limits.pop("default", None),
        limiter_overrides=limits,
        delivery_log=delivery_log,
    )

    websites = {
        name: build_website_adapter(site, live=cfg.live_mode, timeout=cfg.request_timeout)
        for name, site in cfg.sites.items()
    }
    socials = {
        platform: build_social_adapter(account, live=cfg.live_mode, timeout=cfg.request_timeout)
        for platform, account in cfg.accounts.items()
    }

    engine = SyncEngine(db, cfg.sites, websites, settings=cfg.sync, dispatcher=dispatcher)
    scheduler = PublishingScheduler(
        db, socials,
        accounts=cfg.accounts,
        rules=cfg.scheduling_rules,
        settings=cfg.scheduler,
        dispatcher=dispatcher,
    )
    return Services(
        config=cfg, db=db, engine=engine, scheduler=scheduler,
        dispatcher=dispatcher, delivery_log=delivery_log,
    )
