"""Request and response models for the portal API.

Wire keys are camelCase (``unreadCount``, ``markAllAsRead``); handlers
work with the snake_case attribute names.  Routers import from here to
avoid duplication.
"""

from __future__ import annotations

from datetime import date
from typing import Any

from portal_core.models.events import PortalStatus
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialising with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationResponse(CamelModel):
    id: str
    user_id: str
    portal_id: str | None = None
    type: str
    message: str
    link: str | None = None
    is_read: bool
    created_at: str | None = None


class NotificationListResponse(CamelModel):
    """One page of the caller's notifications, newest first."""

    notifications: list[NotificationResponse] = Field(default_factory=list)
    total: int
    unread_count: int
    page: int
    limit: int
    has_more: bool


class UnreadCountResponse(CamelModel):
    unread_count: int


class MarkNotificationsRequest(CamelModel):
    """Exactly one of the three fields selects what to mark as read."""

    notification_id: str | None = None
    mark_all_as_read: bool = False
    mark_by_link: str | None = None


class MarkNotificationsResponse(CamelModel):
    success: bool
    message: str
    updated: int = 0


# ---------------------------------------------------------------------------
# Portals
# ---------------------------------------------------------------------------


class CreatePortalRequest(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str | None = None
    client_id: str | None = None
    due_date: date | None = None
    status: PortalStatus = PortalStatus.ACTIVE


class UpdatePortalRequest(CamelModel):
    """Partial update; only fields present in the body are changed."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = None
    client_id: str | None = None
    due_date: date | None = None
    status: PortalStatus | None = None


class PortalResponse(CamelModel):
    id: str
    name: str
    description: str | None = None
    created_by: str
    client_id: str | None = None
    status: str
    due_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


# ---------------------------------------------------------------------------
# Updates, replies and files
# ---------------------------------------------------------------------------


class FileAttachment(CamelModel):
    """File metadata for an object already written to storage."""

    file_name: str = Field(..., min_length=1)
    file_url: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    file_type: str | None = None


class CreateFileRequest(FileAttachment):
    portal_id: str
    update_id: str | None = None


class FileResponse(CamelModel):
    id: str
    portal_id: str
    user_id: str
    update_id: str | None = None
    file_name: str
    file_url: str
    file_type: str | None = None
    file_size: int
    created_at: str | None = None


class CreateUpdateRequest(CamelModel):
    portal_id: str
    title: str | None = Field(default=None, max_length=200)
    content: str = Field(..., min_length=1)
    files: list[FileAttachment] = Field(default_factory=list)


class CreateReplyRequest(CamelModel):
    content: str = Field(..., min_length=1)
    files: list[FileAttachment] = Field(default_factory=list)


class UpdateResponse(CamelModel):
    id: str
    portal_id: str
    user_id: str
    title: str | None = None
    content: str
    parent_update_id: str | None = None
    created_at: str | None = None
    files: list[FileResponse] = Field(default_factory=list)


class DeleteUpdateResponse(CamelModel):
    deleted_updates: int
    deleted_files: int
    deleted_notifications: int


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobStatusResponse(CamelModel):
    name: str
    cron: str
    next_run_at: str | None = None
    last_run_on: str | None = None
    last_started_at: str | None = None
    last_finished_at: str | None = None
    last_status: str | None = None
    last_result: dict[str, Any] | None = None


class ReminderSweepResponse(CamelModel):
    target_date: str
    candidates: int
    skipped_recent: int
    created: int
    failed: int
