"""Daily deadline reminder sweep.

Finds active portals due exactly ``horizon_days`` from today and sends the
portal's freelancer one reminder, unless a reminder for that portal was
already sent within the dedup window.  Clients are never reminded.

Each reminder is inserted in its own savepoint: a failure for one portal is
logged and counted while the others still go out.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from portal_core.config import Settings
from portal_core.models.events import NotificationType, PortalStatus
from portal_core.notifications.constants import DEDUP_WINDOW_HOURS, REMINDER_HORIZON_DAYS
from portal_core.state.repository import NotificationRepository, PortalRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import REMINDER_SWEEP_TOTAL
from api.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)


class DeadlineReminderSweep:
    """Send deadline reminders for portals due soon.

    Parameters
    ----------
    session:
        Session for the sweep.  The caller commits.
    fanout:
        Builds the reminder rows.
    horizon_days:
        How many days ahead of the due date to remind.
    dedup_hours:
        Minimum gap between two reminders for the same portal.
    timezone:
        IANA zone used to decide what "today" is.
    """

    def __init__(
        self,
        session: AsyncSession,
        fanout: NotificationFanout,
        *,
        horizon_days: int = REMINDER_HORIZON_DAYS,
        dedup_hours: int = DEDUP_WINDOW_HOURS,
        timezone: str = "UTC",
    ) -> None:
        self._session = session
        self._fanout = fanout
        self._horizon = timedelta(days=horizon_days)
        self._dedup_window = timedelta(hours=dedup_hours)
        self._tz = ZoneInfo(timezone)
        self._portals = PortalRepository(session)
        self._notifications = NotificationRepository(session)

    async def run(self, today: date | None = None, now: datetime | None = None) -> dict[str, Any]:
        """Run one sweep and return its counters."""
        now = now or datetime.now(UTC)
        today = today or now.astimezone(self._tz).date()
        target = today + self._horizon

        candidates = await self._portals.list_due_on(target, status=PortalStatus.ACTIVE.value)
        recent = await self._notifications.portals_notified_since(
            [p.id for p in candidates],
            NotificationType.DEADLINE_REMINDER.value,
            now - self._dedup_window,
        )

        created = 0
        failed = 0
        for portal in candidates:
            if portal.id in recent:
                continue
            try:
                async with self._session.begin_nested():
                    await self._fanout.create_deadline_reminder(self._session, portal, created_at=now)
                created += 1
            except SQLAlchemyError:
                failed += 1
                logger.error("Deadline reminder failed for portal %s", portal.id, exc_info=True)

        result = {
            "target_date": target.isoformat(),
            "candidates": len(candidates),
            "skipped_recent": len(recent),
            "created": created,
            "failed": failed,
        }
        REMINDER_SWEEP_TOTAL.labels(outcome="created").inc(created)
        REMINDER_SWEEP_TOTAL.labels(outcome="skipped_recent").inc(len(recent))
        REMINDER_SWEEP_TOTAL.labels(outcome="failed").inc(failed)
        logger.info("Deadline reminder sweep complete: %s", result)
        return result

    @classmethod
    def from_settings(
        cls,
        session: AsyncSession,
        fanout: NotificationFanout,
        settings: Settings,
    ) -> DeadlineReminderSweep:
        return cls(
            session,
            fanout,
            horizon_days=settings.reminder_horizon_days,
            dedup_hours=settings.reminder_dedup_hours,
            timezone=settings.reminder_timezone,
        )
