"""Tests for api.services.deadline_reminders.DeadlineReminderSweep."""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
from portal_core.config import load_settings
from portal_core.state.repository import NotificationRepository
from portal_core.state.tables import NotificationTable
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from api.services.deadline_reminders import DeadlineReminderSweep
from api.services.notification_service import NotificationFanout

TODAY = date(2026, 6, 1)
NOW = datetime(2026, 6, 1, 9, 0, tzinfo=UTC)
DUE = TODAY + timedelta(days=7)


async def _reminders(session) -> list[NotificationTable]:
    result = await session.execute(
        select(NotificationTable).where(NotificationTable.type == "deadline_reminder").order_by(NotificationTable.id)
    )
    return list(result.scalars().all())


async def _sent_at(session, user_id: str, portal_id: str, when: datetime) -> None:
    await NotificationRepository(session).add_many(
        [
            NotificationTable(
                user_id=user_id,
                portal_id=portal_id,
                type="deadline_reminder",
                message="earlier reminder",
                link=f"/portal/{portal_id}",
                created_at=when,
            )
        ]
    )
    await session.commit()


class TestDeadlineReminderSweep:
    @pytest.mark.asyncio
    async def test_reminds_freelancer_for_portals_due_at_horizon(self, db_session, seed) -> None:
        freelancer = await seed.user("freelancer")
        client = await seed.user("client")
        due = await seed.portal(freelancer.id, client.id, name="Launch", due_date=DUE)
        await seed.portal(freelancer.id, client.id, name="Done", due_date=DUE, status="completed")
        await seed.portal(freelancer.id, client.id, name="Later", due_date=DUE + timedelta(days=1))
        await seed.portal(freelancer.id, client.id, name="Undated")

        result = await DeadlineReminderSweep(db_session, NotificationFanout()).run(today=TODAY, now=NOW)
        await db_session.commit()

        assert result == {
            "target_date": "2026-06-08",
            "candidates": 1,
            "skipped_recent": 0,
            "created": 1,
            "failed": 0,
        }
        [reminder] = await _reminders(db_session)
        assert reminder.user_id == freelancer.id
        assert reminder.portal_id == due.id
        assert reminder.message == "Reminder: The deadline for project 'Launch' is in 7 days."

    @pytest.mark.asyncio
    async def test_dedup_window(self, db_session, seed) -> None:
        freelancer = await seed.user("freelancer")
        recent = await seed.portal(freelancer.id, name="Recent", due_date=DUE)
        stale = await seed.portal(freelancer.id, name="Stale", due_date=DUE)
        await _sent_at(db_session, freelancer.id, recent.id, NOW - timedelta(hours=2))
        await _sent_at(db_session, freelancer.id, stale.id, NOW - timedelta(hours=30))

        result = await DeadlineReminderSweep(db_session, NotificationFanout()).run(today=TODAY, now=NOW)
        await db_session.commit()

        assert result["candidates"] == 2
        assert result["skipped_recent"] == 1
        assert result["created"] == 1
        new = [r for r in await _reminders(db_session) if r.created_at == NOW]
        assert [r.portal_id for r in new] == [stale.id]

    @pytest.mark.asyncio
    async def test_second_run_same_day_creates_nothing(self, db_session, seed) -> None:
        freelancer = await seed.user("freelancer")
        await seed.portal(freelancer.id, due_date=DUE)
        sweep = DeadlineReminderSweep(db_session, NotificationFanout())

        first = await sweep.run(today=TODAY, now=NOW)
        await db_session.commit()
        second = await sweep.run(today=TODAY, now=NOW + timedelta(minutes=5))
        await db_session.commit()

        assert first["created"] == 1
        assert second["created"] == 0
        assert second["skipped_recent"] == 1
        assert len(await _reminders(db_session)) == 1

    @pytest.mark.asyncio
    async def test_custom_horizon_and_window(self, db_session, seed) -> None:
        freelancer = await seed.user("freelancer")
        portal = await seed.portal(freelancer.id, due_date=TODAY + timedelta(days=3))
        await _sent_at(db_session, freelancer.id, portal.id, NOW - timedelta(hours=2))

        result = await DeadlineReminderSweep(
            db_session,
            NotificationFanout(horizon_days=3),
            horizon_days=3,
            dedup_hours=1,
        ).run(today=TODAY, now=NOW)

        assert result["created"] == 1
        assert result["target_date"] == "2026-06-04"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, db_session, seed, caplog, metric) -> None:
        freelancer = await seed.user("freelancer")
        portals = [await seed.portal(freelancer.id, name=f"P{i}", due_date=DUE) for i in range(3)]
        bad = portals[1]

        fanout = NotificationFanout()
        original = fanout.create_deadline_reminder

        async def flaky(session, portal, **kwargs):
            if portal.id == bad.id:
                raise OperationalError("INSERT INTO notifications", {}, Exception("disk I/O error"))
            return await original(session, portal, **kwargs)

        fanout.create_deadline_reminder = flaky  # type: ignore[method-assign]
        failed_before = metric("clientportal_deadline_reminders_total", {"outcome": "failed"})

        with caplog.at_level(logging.ERROR, logger="api.services.deadline_reminders"):
            result = await DeadlineReminderSweep(db_session, fanout).run(today=TODAY, now=NOW)
        await db_session.commit()

        assert result["created"] == 2
        assert result["failed"] == 1
        assert {r.portal_id for r in await _reminders(db_session)} == {portals[0].id, portals[2].id}
        assert bad.id in caplog.text
        assert metric("clientportal_deadline_reminders_total", {"outcome": "failed"}) == failed_before + 1

    @pytest.mark.asyncio
    async def test_no_candidates(self, db_session) -> None:
        result = await DeadlineReminderSweep(db_session, NotificationFanout()).run(today=TODAY, now=NOW)
        assert result["candidates"] == 0
        assert result["created"] == 0

    @pytest.mark.asyncio
    async def test_today_defaults_to_now_in_zone(self, db_session, seed) -> None:
        freelancer = await seed.user("freelancer")
        await seed.portal(freelancer.id, due_date=DUE)
        result = await DeadlineReminderSweep(db_session, NotificationFanout()).run(now=NOW)
        assert result["target_date"] == DUE.isoformat()
        assert result["created"] == 1

    def test_from_settings(self) -> None:
        settings = load_settings(reminder_horizon_days=3, reminder_dedup_hours=12)
        sweep = DeadlineReminderSweep.from_settings(MagicMock(), NotificationFanout(), settings)
        assert sweep._horizon == timedelta(days=3)
        assert sweep._dedup_window == timedelta(hours=12)
