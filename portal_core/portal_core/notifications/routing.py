"""Pure routing rules for notifications.

Three tables decide what a notification looks like:

* :data:`ACTIVITY_NOTIFICATION_TYPES` -- which activity types notify at
  all.  Anything absent maps to ``None`` (no notification).
* :func:`build_message` -- per-type message template with a generic
  fallback when the specific field is missing from ``meta``.
* :func:`build_link` -- per-type deep link into the portal UI.

Meta keys are accepted in either snake_case (as written to the activity
log) or camelCase (as sent by the web client).
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

from portal_core.models.events import ActivityType, NotificationType
from portal_core.notifications.constants import REMINDER_HORIZON_DAYS

ACTIVITY_NOTIFICATION_TYPES: Mapping[ActivityType, NotificationType] = {
    ActivityType.REPLY_CREATED: NotificationType.NEW_COMMENT,
    ActivityType.FILE_UPLOADED: NotificationType.FILE_UPLOADED,
    ActivityType.PORTAL_UPDATED: NotificationType.PORTAL_UPDATED,
    ActivityType.UPDATE_CREATED: NotificationType.NEW_UPDATE,
}

_UPDATE_ID_RE = re.compile(r"/update/([^/?#]+)")

_DEFAULT_ACTOR_NAME = "Someone"

# snake_case key -> camelCase alias
_META_ALIASES: dict[str, str] = {
    "update_id": "updateId",
    "reply_id": "replyId",
    "parent_update_id": "parentUpdateId",
    "file_name": "fileName",
    "update_title": "updateTitle",
    "parent_update_title": "parentUpdateTitle",
    "portal_name": "portalName",
}


def notification_type_for(activity_type: ActivityType | str) -> NotificationType | None:
    """Map an activity type to the notification it produces, if any."""
    try:
        activity = ActivityType(activity_type)
    except ValueError:
        return None
    return ACTIVITY_NOTIFICATION_TYPES.get(activity)


def _meta(meta: Mapping[str, Any] | None, key: str) -> str | None:
    if not meta:
        return None
    value = meta.get(key)
    if value in (None, ""):
        alias = _META_ALIASES.get(key)
        value = meta.get(alias) if alias else None
    if value in (None, ""):
        return None
    return str(value)


def portal_root(portal_id: str) -> str:
    return f"/portal/{portal_id}"


def update_link_fragment(update_id: str) -> str:
    """Path fragment that every link to *update_id* contains."""
    return f"/update/{update_id}"


def reply_link_fragment(reply_id: str) -> str:
    """Anchor that every link to the reply *reply_id* ends with."""
    return f"#reply-{reply_id}"


def build_link(
    portal_id: str,
    notification_type: NotificationType | str,
    meta: Mapping[str, Any] | None = None,
) -> str:
    """Compose the deep link for a notification.

    Comment links point at the parent update and, when the reply id is
    known, at the reply anchor within it.  File links point at the update
    the file was attached to, else the portal's file list.

    When ``parent_update_id`` is present, ``update_id`` names the reply (the
    shape the activity log writes for replies) and the link targets the
    parent update.
    """
    base = portal_root(portal_id)
    ntype = NotificationType(notification_type)
    update_id = _meta(meta, "update_id")
    parent_id = _meta(meta, "parent_update_id")
    reply_id = _meta(meta, "reply_id")
    if parent_id:
        reply_id = reply_id or update_id
        update_id = parent_id

    if ntype is NotificationType.NEW_COMMENT:
        if update_id and reply_id:
            return f"{base}{update_link_fragment(update_id)}{reply_link_fragment(reply_id)}"
        if update_id:
            return f"{base}{update_link_fragment(update_id)}"
        return base

    if ntype is NotificationType.FILE_UPLOADED:
        if update_id:
            return f"{base}{update_link_fragment(update_id)}"
        return f"{base}/files"

    if ntype is NotificationType.NEW_UPDATE:
        if update_id:
            return f"{base}{update_link_fragment(update_id)}"
        return base

    # portal_updated, deadline_reminder
    return base


def build_message(
    notification_type: NotificationType | str,
    meta: Mapping[str, Any] | None = None,
    actor_name: str | None = None,
    *,
    horizon_days: int = REMINDER_HORIZON_DAYS,
) -> str:
    """Compose the human-readable notification text."""
    ntype = NotificationType(notification_type)
    actor = actor_name or _DEFAULT_ACTOR_NAME

    if ntype is NotificationType.NEW_COMMENT:
        title = _meta(meta, "parent_update_title")
        if title:
            return f'{actor} replied to "{title}"'
        return f"{actor} left a new comment"

    if ntype is NotificationType.FILE_UPLOADED:
        file_name = _meta(meta, "file_name")
        if file_name:
            return f'{actor} uploaded "{file_name}"'
        return f"{actor} uploaded a new file"

    if ntype is NotificationType.PORTAL_UPDATED:
        portal_name = _meta(meta, "portal_name")
        if portal_name:
            return f'Portal "{portal_name}" was updated'
        return "Portal was updated"

    if ntype is NotificationType.NEW_UPDATE:
        title = _meta(meta, "update_title")
        if title:
            return f'{actor} posted "{title}"'
        return f"{actor} posted a new update"

    portal_name = _meta(meta, "portal_name")
    if portal_name:
        return f"Reminder: The deadline for project '{portal_name}' is in {horizon_days} days."
    return f"Project deadline reminder: {horizon_days} days remaining"


def extract_update_id(link: str | None) -> str | None:
    """Return the update id embedded in a deep link, or ``None``."""
    if not link:
        return None
    match = _UPDATE_ID_RE.search(link)
    return match.group(1) if match else None
