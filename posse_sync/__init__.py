"""posse-sync: canonical content sync and multi-channel post scheduling.

Keeps canonical content records in step with website CMSs (WordPress,
Drupal, Ghost) and publishes derived posts to social platforms
(LinkedIn, Facebook, Bluesky) on a per-platform schedule.
"""

__version__ = "0.1.0"

from posse_sync.config import SyncConfig, load_config
from posse_sync.delivery_log import DeliveryLog, DeliveryRecord
from posse_sync.factory import Services, build_services
from posse_sync.models import ContentRecord, PostPayload, PublishingOptions, ScheduledPost
from posse_sync.scheduler import PublishingScheduler
from posse_sync.sync_engine import SyncEngine

__all__ = [
    "ContentRecord",
    "DeliveryLog",
    "DeliveryRecord",
    "PostPayload",
    "PublishingOptions",
    "PublishingScheduler",
    "ScheduledPost",
    "Services",
    "SyncConfig",
    "SyncEngine",
    "build_services",
    "load_config",
]
