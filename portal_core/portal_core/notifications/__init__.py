"""Notification routing: type mapping, message templates and deep links."""

from portal_core.notifications.constants import DEDUP_WINDOW_HOURS, REMINDER_HORIZON_DAYS
from portal_core.notifications.routing import (
    ACTIVITY_NOTIFICATION_TYPES,
    build_link,
    build_message,
    extract_update_id,
    notification_type_for,
    portal_root,
    reply_link_fragment,
    update_link_fragment,
)

__all__ = [
    "ACTIVITY_NOTIFICATION_TYPES",
    "DEDUP_WINDOW_HOURS",
    "REMINDER_HORIZON_DAYS",
    "build_link",
    "build_message",
    "extract_update_id",
    "notification_type_for",
    "portal_root",
    "reply_link_fragment",
    "update_link_fragment",
]
