"""Notification fan-out and per-user notification reads.

:class:`NotificationFanout` turns one activity into notification rows for
everyone on the portal except the actor.  It writes into the caller's
session so the domain mutation, its activity row and its notifications
commit or roll back together.

:class:`NotificationReader` is the per-user read side used by the
notifications router.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from portal_core.models.events import ActivityType, NotificationType
from portal_core.notifications.constants import REMINDER_HORIZON_DAYS
from portal_core.notifications.routing import build_link, build_message, notification_type_for
from portal_core.state.repository import NotificationRepository, PortalRepository, UserRepository
from portal_core.state.tables import NotificationTable, PortalTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import NOTIFICATIONS_CREATED_TOTAL

logger = logging.getLogger(__name__)


class NotificationFanout:
    """Create notifications for portal activity.

    Parameters
    ----------
    horizon_days:
        Days-ahead figure quoted in deadline reminder messages.
    """

    def __init__(self, *, horizon_days: int = REMINDER_HORIZON_DAYS) -> None:
        self._horizon_days = horizon_days

    async def create_notification(
        self,
        session: AsyncSession,
        portal_id: str,
        actor_user_id: str,
        activity_type: ActivityType | str,
        meta: Mapping[str, Any] | None = None,
    ) -> list[NotificationTable]:
        """Fan an activity out to the portal's freelancer and client.

        Returns the rows added to *session*; empty when the activity type
        does not notify, when the portal or actor no longer exists, or when
        the actor is the only participant.

        Raises
        ------
        RuntimeError
            If *session* has no open transaction.  Notifications written
            outside the mutation's transaction could outlive a rollback.
        """
        _require_transaction(session)

        ntype = notification_type_for(activity_type)
        if ntype is None:
            return []

        portal = await PortalRepository(session).get(portal_id)
        if portal is None:
            logger.warning("Skipping %s notification: portal %s not found", ntype.value, portal_id)
            return []

        users = await UserRepository(session).get_many([actor_user_id, portal.created_by, portal.client_id or ""])
        actor = users.get(actor_user_id)
        if actor is None:
            logger.warning("Skipping %s notification: actor %s not found", ntype.value, actor_user_id)
            return []

        recipients: list[str] = []
        for uid in (portal.created_by, portal.client_id):
            if uid and uid != actor_user_id and uid in users and uid not in recipients:
                recipients.append(uid)
        if not recipients:
            return []

        meta = dict(meta or {})
        meta.setdefault("portal_name", portal.name)
        message = build_message(ntype, meta, actor.name, horizon_days=self._horizon_days)
        link = build_link(portal_id, ntype, meta)

        rows = [
            NotificationTable(
                user_id=uid,
                portal_id=portal_id,
                type=ntype.value,
                message=message,
                link=link,
                is_read=False,
            )
            for uid in recipients
        ]
        await NotificationRepository(session).add_many(rows)
        NOTIFICATIONS_CREATED_TOTAL.labels(type=ntype.value).inc(len(rows))
        logger.debug("Created %d %s notification(s) for portal %s", len(rows), ntype.value, portal_id)
        return rows

    def build_deadline_reminder(
        self,
        portal: PortalTable,
        *,
        created_at: datetime | None = None,
    ) -> NotificationTable:
        """Build the freelancer-only reminder row for *portal* (not yet added)."""
        ntype = NotificationType.DEADLINE_REMINDER
        meta = {"portal_name": portal.name}
        return NotificationTable(
            created_at=created_at or datetime.now(UTC),
            user_id=portal.created_by,
            portal_id=portal.id,
            type=ntype.value,
            message=build_message(ntype, meta, horizon_days=self._horizon_days),
            link=build_link(portal.id, ntype, meta),
            is_read=False,
        )

    async def create_deadline_reminder(
        self,
        session: AsyncSession,
        portal: PortalTable,
        *,
        created_at: datetime | None = None,
    ) -> NotificationTable:
        """Add a deadline reminder for the portal's freelancer to *session*."""
        _require_transaction(session)
        row = self.build_deadline_reminder(portal, created_at=created_at)
        await NotificationRepository(session).add_many([row])
        NOTIFICATIONS_CREATED_TOTAL.labels(type=row.type).inc()
        return row


def _require_transaction(session: AsyncSession) -> None:
    if not session.in_transaction():
        raise RuntimeError("Notifications must be created inside the caller's open transaction")


def serialize_notification(row: NotificationTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "portal_id": row.portal_id,
        "type": row.type,
        "message": row.message,
        "link": row.link,
        "is_read": row.is_read,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class NotificationReader:
    """Read and acknowledge one user's notifications.

    Every mark operation is scoped to the user and only flips unread rows,
    so repeating a call is harmless and reports zero rows changed.
    """

    def __init__(self, session: AsyncSession, user_id: str) -> None:
        self._user_id = user_id
        self._repo = NotificationRepository(session)

    async def list(self, page: int = 1, limit: int = 20, *, unread_only: bool = False) -> dict[str, Any]:
        """Return one page of notifications, newest first, with counters."""
        page = max(page, 1)
        limit = max(1, min(limit, 100))
        rows = await self._repo.list_for_user(
            self._user_id,
            limit=limit,
            offset=(page - 1) * limit,
            unread_only=unread_only,
        )
        total = await self._repo.count_for_user(self._user_id, unread_only=unread_only)
        unread = await self._repo.count_for_user(self._user_id, unread_only=True)
        return {
            "notifications": [serialize_notification(r) for r in rows],
            "total": total,
            "unread_count": unread,
            "page": page,
            "limit": limit,
            "has_more": page * limit < total,
        }

    async def unread_count(self) -> int:
        return await self._repo.count_for_user(self._user_id, unread_only=True)

    async def mark_read(self, notification_id: str) -> int:
        return await self._repo.mark_read(self._user_id, notification_id)

    async def mark_all_read(self) -> int:
        return await self._repo.mark_all_read(self._user_id)

    async def mark_read_by_link(self, fragment: str) -> int:
        """Mark unread notifications whose link contains *fragment* literally."""
        if not fragment:
            raise ValueError("Link fragment must not be empty")
        return await self._repo.mark_read_by_link(self._user_id, fragment)
