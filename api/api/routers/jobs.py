"""Maintenance job endpoints: schedule status and the manual reminder trigger."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter
from portal_core.state.repository import JobRunRepository

from api.dependencies import CoreSettingsDep, CurrentUserDep, FanoutDep, FreelancerDep, SessionDep, get_job_scheduler
from api.schemas import JobStatusResponse, ReminderSweepResponse
from api.services.deadline_reminders import DeadlineReminderSweep
from api.services.job_scheduler import DEADLINE_REMINDERS_JOB

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[JobStatusResponse])
async def list_jobs(session: SessionDep, _user: CurrentUserDep) -> list[dict[str, Any]]:
    """Cron schedule and last outcome of each maintenance job."""
    scheduler = get_job_scheduler()
    if scheduler is None:
        rows = await JobRunRepository(session).list_all()
        return [
            {
                "name": row.job_name,
                "cron": "",
                "last_run_on": row.last_run_on.isoformat() if row.last_run_on else None,
                "last_started_at": row.last_started_at.isoformat() if row.last_started_at else None,
                "last_finished_at": row.last_finished_at.isoformat() if row.last_finished_at else None,
                "last_status": row.last_status,
                "last_result": row.last_result,
            }
            for row in rows
        ]
    return await scheduler.status(session)


@router.post("/deadline-reminders", response_model=ReminderSweepResponse)
async def run_deadline_reminders(
    session: SessionDep,
    fanout: FanoutDep,
    core_settings: CoreSettingsDep,
    user: FreelancerDep,
) -> dict[str, Any]:
    """Run the deadline reminder sweep now.

    The dedup window still applies, so a manual run right after the
    scheduled one creates nothing.  The run is recorded without claiming
    the scheduler's slot.
    """
    logger.info("Manual deadline reminder sweep triggered by %s", user.id)
    result = await DeadlineReminderSweep.from_settings(session, fanout, core_settings).run()
    await JobRunRepository(session).record_finish(
        DEADLINE_REMINDERS_JOB,
        status="success",
        result={**result, "trigger": "manual"},
        finished_at=datetime.now(UTC),
    )
    return result
