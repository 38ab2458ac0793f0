"""Activity log writer.

Appends one row per portal event and hands the same event to the
notification fan-out, both inside the caller's transaction.
"""

from __future__ import annotations

import logging
from typing import Any

from portal_core.models.events import ActivityType
from portal_core.state.repository import ActivityRepository
from portal_core.state.tables import ActivityTable, NotificationTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)


class ActivityService:
    """Record portal activity and trigger notifications for it."""

    def __init__(self, session: AsyncSession, fanout: NotificationFanout) -> None:
        self._session = session
        self._fanout = fanout
        self._repo = ActivityRepository(session)

    async def record(
        self,
        portal_id: str,
        user_id: str,
        activity_type: ActivityType,
        meta: dict[str, Any] | None = None,
    ) -> tuple[ActivityTable, list[NotificationTable]]:
        """Append the activity, then fan it out.

        Returns the activity row and any notifications created for it.
        """
        activity = await self._repo.append(portal_id, user_id, activity_type.value, meta)
        notifications = await self._fanout.create_notification(
            self._session,
            portal_id,
            user_id,
            activity_type,
            meta,
        )
        logger.debug(
            "Recorded %s on portal %s (%d notification(s))",
            activity_type.value,
            portal_id,
            len(notifications),
        )
        return activity, notifications
