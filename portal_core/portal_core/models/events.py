"""Enumerations for portal participants, activity events and notifications."""

from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Account role.  Freelancers own portals; clients are invited into them."""

    FREELANCER = "freelancer"
    CLIENT = "client"


class PortalStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class ActivityType(str, Enum):
    """Domain events recorded in the append-only activity log."""

    UPLOAD = "upload"
    COMMENT = "comment"
    STATUS_CHANGE = "status_change"
    UPDATE_CREATED = "update_created"
    REPLY_CREATED = "reply_created"
    FILE_UPLOADED = "file_uploaded"
    FILE_DELETED = "file_deleted"
    UPDATE_DELETED = "update_deleted"
    REPLY_DELETED = "reply_deleted"
    PORTAL_CREATED = "portal_created"
    PORTAL_UPDATED = "portal_updated"
    SHARED_LINK_CREATED = "shared_link_created"


class NotificationType(str, Enum):
    """User-facing notification kinds (a subset of activity semantics)."""

    NEW_COMMENT = "new_comment"
    FILE_UPLOADED = "file_uploaded"
    PORTAL_UPDATED = "portal_updated"
    NEW_UPDATE = "new_update"
    DEADLINE_REMINDER = "deadline_reminder"
