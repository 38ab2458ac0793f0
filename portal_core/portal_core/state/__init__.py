"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from portal_core.state.database import acquire_advisory_lock, get_engine
from portal_core.state.repository import (
    ActivityRepository,
    FileRepository,
    JobRunRepository,
    NotificationRepository,
    PortalRepository,
    SubscriptionRepository,
    UpdateRepository,
    UserRepository,
)

__all__ = [
    "ActivityRepository",
    "FileRepository",
    "JobRunRepository",
    "NotificationRepository",
    "PortalRepository",
    "SubscriptionRepository",
    "UpdateRepository",
    "UserRepository",
    "acquire_advisory_lock",
    "get_engine",
]
