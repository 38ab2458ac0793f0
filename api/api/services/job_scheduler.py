"""Background scheduler for the daily maintenance jobs.

Runs as an ``asyncio`` task that wakes once a minute and runs every job
whose cron slot has arrived.  Only a small cron subset is supported (hourly,
daily, weekly), which covers the reminder and cleanup cadence without a
cron parser dependency.

Several API instances may run the scheduler at once.  Before running a
slot, an instance claims it with a conditional update on ``job_runs``; only
the instance whose update hit a row runs the job.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from portal_core.config import Settings
from portal_core.state.repository import JobRunRepository
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import APISettings
from api.middleware.prometheus import JOB_RUNS_TOTAL
from api.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

JobRunner = Callable[[AsyncSession], Awaitable[dict[str, Any]]]

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Return the first slot of *cron_expression* strictly after *from_time*.

    Supported forms:

    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- every day at *H*:*M*.
    * ``M H * * D`` -- every week on day *D* (0=Sunday) at *H*:*M*.

    Raises
    ------
    ValueError
        If the expression is not one of the supported forms or a field is
        out of range.
    """
    expr = cron_expression.strip()

    match = _HOURLY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, cron_expression)
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    match = _DAILY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, cron_expression)
        hour = _field(match.group(2), 23, cron_expression)
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    match = _WEEKLY_RE.match(expr)
    if match:
        minute = _field(match.group(1), 59, cron_expression)
        hour = _field(match.group(2), 23, cron_expression)
        cron_dow = _field(match.group(3), 6, cron_expression)
        # cron counts from Sunday=0, Python's weekday() from Monday=0.
        python_dow = (cron_dow - 1) % 7

        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


def validate_cron(cron_expression: str) -> str:
    """Return *cron_expression* unchanged if :func:`compute_next_run` accepts it."""
    compute_next_run(cron_expression, datetime(2000, 1, 1, tzinfo=UTC))
    return cron_expression


def _field(raw: str, maximum: int, expr: str) -> int:
    value = int(raw)
    if value > maximum:
        raise ValueError(f"Cron field {value} out of range in '{expr}'")
    return value


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScheduledJob:
    """A named job, its cron cadence and the coroutine that runs it."""

    name: str
    cron: str
    run: JobRunner


class JobScheduler:
    """AsyncIO background task for scheduled jobs.

    Parameters
    ----------
    session_factory:
        Creates one session per claim and one per job run.
    jobs:
        Jobs to schedule.  Cron expressions are validated up front.
    poll_interval:
        Seconds between checks for due jobs.
    clock:
        Returns the current UTC time; overridable in tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        jobs: Sequence[ScheduledJob],
        *,
        poll_interval: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._jobs = {job.name: job for job in jobs}
        self._poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(UTC))
        now = self._clock()
        self._next_runs = {job.name: compute_next_run(job.cron, now) for job in jobs}
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def next_run_at(self, job_name: str) -> datetime | None:
        return self._next_runs.get(job_name)

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("JobScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobScheduler started with jobs=%s", sorted(self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("JobScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("JobScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("JobScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_interval)

    async def tick(self) -> list[str]:
        """Run every job whose slot has arrived.  Returns the names that ran."""
        now = self._clock()
        ran: list[str] = []
        for name, job in self._jobs.items():
            slot = self._next_runs[name]
            if now < slot:
                continue
            # A claim that errors leaves the slot due so the next tick retries it.
            outcome = await self.run_job(job, slot=slot)
            self._next_runs[name] = compute_next_run(job.cron, now)
            if outcome is not None:
                ran.append(name)
        return ran

    async def run_job(self, job: ScheduledJob, *, slot: datetime) -> dict[str, Any] | None:
        """Claim *slot* for *job* and run it.

        Returns the job's result, or ``None`` when another instance already
        claimed the slot.  A failing job is logged and recorded as
        ``failed``; the exception does not reach the loop.
        """
        started = self._clock()
        async with self._session_factory() as session:
            claimed = await JobRunRepository(session).claim(job.name, slot, now=started)
            await session.commit()
        if not claimed:
            logger.info("Job %s slot %s already claimed elsewhere; skipping", job.name, slot.isoformat())
            JOB_RUNS_TOTAL.labels(job=job.name, status="skipped").inc()
            return None

        logger.info("Running scheduled job %s (slot %s)", job.name, slot.isoformat(), extra={"job": job.name})
        status = "success"
        result: dict[str, Any]
        try:
            async with self._session_factory() as session:
                result = await job.run(session)
                await session.commit()
        except Exception as exc:
            logger.error("Scheduled job %s failed: %s", job.name, exc, exc_info=True, extra={"job": job.name})
            status = "failed"
            result = {"error": type(exc).__name__}

        async with self._session_factory() as session:
            await JobRunRepository(session).record_finish(
                job.name,
                status=status,
                result=result,
                finished_at=self._clock(),
            )
            await session.commit()
        JOB_RUNS_TOTAL.labels(job=job.name, status=status).inc()
        return result

    async def status(self, session: AsyncSession) -> list[dict[str, Any]]:
        """Schedule and last-run state of every job, for the jobs endpoint."""
        rows = {row.job_name: row for row in await JobRunRepository(session).list_all()}
        out: list[dict[str, Any]] = []
        for name, job in sorted(self._jobs.items()):
            row = rows.get(name)
            next_run = self._next_runs.get(name)
            out.append(
                {
                    "name": name,
                    "cron": job.cron,
                    "next_run_at": next_run.isoformat() if next_run else None,
                    "last_run_on": row.last_run_on.isoformat() if row and row.last_run_on else None,
                    "last_started_at": (
                        row.last_started_at.isoformat() if row and row.last_started_at else None
                    ),
                    "last_finished_at": (
                        row.last_finished_at.isoformat() if row and row.last_finished_at else None
                    ),
                    "last_status": row.last_status if row else None,
                    "last_result": row.last_result if row else None,
                }
            )
        return out


# ---------------------------------------------------------------------------
# Default jobs
# ---------------------------------------------------------------------------

DEADLINE_REMINDERS_JOB = "deadline_reminders"
ORPHAN_NOTIFICATIONS_JOB = "orphan_notifications"


def build_default_jobs(
    api_settings: APISettings,
    core_settings: Settings,
    fanout: NotificationFanout,
) -> list[ScheduledJob]:
    """The deadline reminder sweep and the orphan notification sweep."""
    from api.services.deadline_reminders import DeadlineReminderSweep
    from api.services.orphan_reconciler import OrphanReconciler

    async def _deadline_reminders(session: AsyncSession) -> dict[str, Any]:
        return await DeadlineReminderSweep.from_settings(session, fanout, core_settings).run()

    async def _orphan_notifications(session: AsyncSession) -> dict[str, Any]:
        return await OrphanReconciler(session).reconcile()

    return [
        ScheduledJob(DEADLINE_REMINDERS_JOB, api_settings.deadline_reminder_cron, _deadline_reminders),
        ScheduledJob(ORPHAN_NOTIFICATIONS_JOB, api_settings.orphan_sweep_cron, _orphan_notifications),
    ]
