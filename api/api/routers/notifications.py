"""Notification endpoints: list, unread count, and mark-as-read."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from api.dependencies import CurrentUserDep, SessionDep
from api.schemas import (
    MarkNotificationsRequest,
    MarkNotificationsResponse,
    NotificationListResponse,
    UnreadCountResponse,
)
from api.services.notification_service import NotificationReader

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    session: SessionDep,
    user: CurrentUserDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = Query(default=False, alias="unreadOnly"),
) -> dict[str, Any]:
    """Return the caller's notifications, newest first."""
    reader = NotificationReader(session, user.id)
    return await reader.list(page, limit, unread_only=unread_only)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(session: SessionDep, user: CurrentUserDep) -> dict[str, Any]:
    return {"unread_count": await NotificationReader(session, user.id).unread_count()}


@router.put("", response_model=MarkNotificationsResponse)
async def mark_notifications(
    body: MarkNotificationsRequest,
    session: SessionDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    """Mark one, all, or link-matching notifications as read.

    Exactly one of ``notificationId``, ``markAllAsRead: true`` or
    ``markByLink`` must be given.  Repeating a request succeeds and reports
    zero rows updated.
    """
    selectors = [
        body.notification_id is not None,
        body.mark_all_as_read,
        body.mark_by_link is not None,
    ]
    if sum(selectors) != 1:
        raise HTTPException(
            status_code=400,
            detail="Provide exactly one of notificationId, markAllAsRead or markByLink",
        )

    reader = NotificationReader(session, user.id)
    if body.mark_all_as_read:
        updated = await reader.mark_all_read()
        message = "All notifications marked as read"
    elif body.notification_id is not None:
        updated = await reader.mark_read(body.notification_id)
        message = "Notification marked as read"
    else:
        try:
            updated = await reader.mark_read_by_link(body.mark_by_link or "")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        message = "Matching notifications marked as read"

    return {"success": True, "message": message, "updated": updated}
