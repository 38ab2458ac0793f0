"""Repository classes providing access to the client portal state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from portal_core.state.tables import (
    ActivityTable,
    FileTable,
    JobRunTable,
    NotificationTable,
    PortalTable,
    SubscriptionTable,
    UpdateTable,
    UserTable,
)

logger = logging.getLogger(__name__)

_MAX_NOTIFICATION_PAGE_SIZE = 100


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters.

    Handles the backslash escape character itself first, then the ``%`` and
    ``_`` wildcards.  Patterns built from the result must be compiled with
    ``escape="\\\\"``; SQLite has no default escape character.
    """
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _contains(column: Any, fragment: str) -> Any:
    return column.like(f"%{_escape_like(fragment)}%", escape="\\")


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# UserRepository
# ---------------------------------------------------------------------------


class UserRepository:
    """Lookup and creation for the ``users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, email: str, *, name: str | None = None, role: str = "client") -> UserTable:
        row = UserTable(email=email.lower().strip(), name=name, role=role)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, user_id: str) -> UserTable | None:
        return await self._session.get(UserTable, user_id)

    async def get_many(self, user_ids: Iterable[str]) -> dict[str, UserTable]:
        """Fetch several users at once, keyed by id.  Unknown ids are omitted."""
        ids = {uid for uid in user_ids if uid}
        if not ids:
            return {}
        result = await self._session.execute(select(UserTable).where(UserTable.id.in_(ids)))
        return {row.id: row for row in result.scalars().all()}


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Read and write subscription rows mirrored from the billing provider."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        user_id: str,
        plan_id: str,
        *,
        ends_at: datetime,
        starts_at: datetime | None = None,
        is_active: bool = True,
    ) -> SubscriptionTable:
        row = SubscriptionTable(
            user_id=user_id,
            plan_id=plan_id,
            starts_at=starts_at or datetime.now(UTC),
            ends_at=ends_at,
            is_active=is_active,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_current(self, user_id: str, *, now: datetime | None = None) -> SubscriptionTable | None:
        """Return the most recently started active subscription that has not ended.

        Expired and inactive rows are ignored; ``None`` means the user is on
        the default plan.
        """
        now = now or datetime.now(UTC)
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.user_id == user_id,
                SubscriptionTable.is_active.is_(True),
                SubscriptionTable.ends_at > now,
            )
            .order_by(SubscriptionTable.starts_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def cancel(self, subscription_id: str, *, canceled_at: datetime | None = None) -> bool:
        stmt = (
            update(SubscriptionTable)
            .where(SubscriptionTable.id == subscription_id, SubscriptionTable.is_active.is_(True))
            .values(is_active=False, canceled_at=canceled_at or datetime.now(UTC))
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# PortalRepository
# ---------------------------------------------------------------------------


class PortalRepository:
    """CRUD operations for the ``portals`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        name: str,
        created_by: str,
        *,
        client_id: str | None = None,
        description: str | None = None,
        status: str = "active",
        due_date: date | None = None,
    ) -> PortalTable:
        row = PortalTable(
            name=name,
            created_by=created_by,
            client_id=client_id,
            description=description,
            status=status,
            due_date=due_date,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, portal_id: str) -> PortalTable | None:
        return await self._session.get(PortalTable, portal_id)

    async def update_fields(self, portal: PortalTable, changes: dict[str, Any]) -> PortalTable:
        """Apply *changes* to *portal* and flush.  Unknown keys raise ``ValueError``."""
        for key, value in changes.items():
            if key not in {"name", "description", "status", "due_date", "client_id"}:
                raise ValueError(f"Portal field {key!r} cannot be updated")
            setattr(portal, key, value)
        portal.updated_at = datetime.now(UTC)
        await self._session.flush()
        return portal

    async def list_for_user(self, user_id: str) -> list[PortalTable]:
        """Portals the user owns or is the client of, newest first."""
        stmt = (
            select(PortalTable)
            .where(or_(PortalTable.created_by == user_id, PortalTable.client_id == user_id))
            .order_by(PortalTable.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_owned_by(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(PortalTable).where(PortalTable.created_by == user_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def list_due_on(self, target: date, *, status: str = "active") -> list[PortalTable]:
        """Portals in *status* whose due date falls exactly on *target*."""
        stmt = (
            select(PortalTable)
            .where(PortalTable.status == status, PortalTable.due_date == target)
            .order_by(PortalTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UpdateRepository
# ---------------------------------------------------------------------------


class UpdateRepository:
    """CRUD operations for the ``updates`` table (updates and replies)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        portal_id: str,
        user_id: str,
        *,
        content: str,
        title: str | None = None,
        parent_update_id: str | None = None,
    ) -> UpdateTable:
        row = UpdateTable(
            portal_id=portal_id,
            user_id=user_id,
            title=title,
            content=content,
            parent_update_id=parent_update_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, update_id: str) -> UpdateTable | None:
        return await self._session.get(UpdateTable, update_id)

    async def count_top_level(self, portal_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(UpdateTable)
            .where(UpdateTable.portal_id == portal_id, UpdateTable.parent_update_id.is_(None))
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def existing_ids(self, update_ids: Iterable[str]) -> set[str]:
        """Return the subset of *update_ids* that still exist."""
        ids = set(update_ids)
        if not ids:
            return set()
        result = await self._session.execute(select(UpdateTable.id).where(UpdateTable.id.in_(ids)))
        return set(result.scalars().all())

    async def list_reply_ids(self, update_id: str) -> list[str]:
        result = await self._session.execute(
            select(UpdateTable.id).where(UpdateTable.parent_update_id == update_id)
        )
        return list(result.scalars().all())

    async def delete(self, update_ids: Sequence[str]) -> int:
        """Delete updates by id and return how many rows went.

        Replies inside the batch are removed before their parents so the
        ``ON DELETE CASCADE`` on ``parent_update_id`` never hides them from
        the count.
        """
        ids = list(update_ids)
        if not ids:
            return 0
        replies = await self._session.execute(
            delete(UpdateTable).where(UpdateTable.id.in_(ids), UpdateTable.parent_update_id.in_(ids))
        )
        rest = await self._session.execute(delete(UpdateTable).where(UpdateTable.id.in_(ids)))
        return replies.rowcount + rest.rowcount  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# FileRepository
# ---------------------------------------------------------------------------


class FileRepository:
    """File metadata rows and the storage aggregates derived from them."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        portal_id: str,
        user_id: str,
        *,
        file_name: str,
        file_url: str,
        file_size: int,
        file_type: str | None = None,
        update_id: str | None = None,
    ) -> FileTable:
        row = FileTable(
            portal_id=portal_id,
            user_id=user_id,
            update_id=update_id,
            file_name=file_name,
            file_url=file_url,
            file_type=file_type,
            file_size=file_size,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def count_for_portal(self, portal_id: str) -> int:
        stmt = select(func.count()).select_from(FileTable).where(FileTable.portal_id == portal_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def delete_for_updates(self, update_ids: Sequence[str]) -> int:
        """Delete file rows attached to any of *update_ids*."""
        if not update_ids:
            return 0
        result = await self._session.execute(delete(FileTable).where(FileTable.update_id.in_(list(update_ids))))
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def total_bytes_for_owner(self, owner_id: str) -> int:
        """Sum of file sizes across every portal *owner_id* created."""
        stmt = (
            select(func.coalesce(func.sum(FileTable.file_size), 0))
            .select_from(FileTable)
            .join(PortalTable, PortalTable.id == FileTable.portal_id)
            .where(PortalTable.created_by == owner_id)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# ActivityRepository
# ---------------------------------------------------------------------------


class ActivityRepository:
    """Append-only access to the ``activities`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        portal_id: str,
        user_id: str,
        activity_type: str,
        meta: dict[str, Any] | None = None,
    ) -> ActivityTable:
        row = ActivityTable(portal_id=portal_id, user_id=user_id, type=activity_type, meta=meta)
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# NotificationRepository
# ---------------------------------------------------------------------------


class NotificationRepository:
    """Access to the ``notifications`` table.

    Per-user reads and mark operations always filter on the recipient, so a
    caller can never observe or modify another user's rows.  Mark operations
    only touch unread rows and return the number of rows changed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add_many(self, rows: Sequence[NotificationTable]) -> list[NotificationTable]:
        self._session.add_all(rows)
        await self._session.flush()
        return list(rows)

    async def list_for_user(
        self,
        user_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        unread_only: bool = False,
    ) -> list[NotificationTable]:
        """Return a page of the user's notifications, newest first."""
        limit = max(1, min(limit, _MAX_NOTIFICATION_PAGE_SIZE))
        stmt = select(NotificationTable).where(NotificationTable.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationTable.is_read.is_(False))
        stmt = (
            stmt.order_by(NotificationTable.created_at.desc(), NotificationTable.id.desc())
            .limit(limit)
            .offset(max(offset, 0))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str, *, unread_only: bool = False) -> int:
        stmt = select(func.count()).select_from(NotificationTable).where(NotificationTable.user_id == user_id)
        if unread_only:
            stmt = stmt.where(NotificationTable.is_read.is_(False))
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def mark_read(self, user_id: str, notification_id: str) -> int:
        stmt = (
            update(NotificationTable)
            .where(
                NotificationTable.id == notification_id,
                NotificationTable.user_id == user_id,
                NotificationTable.is_read.is_(False),
            )
            .values(is_read=True)
        )
        result = await self._session.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def mark_all_read(self, user_id: str) -> int:
        stmt = (
            update(NotificationTable)
            .where(NotificationTable.user_id == user_id, NotificationTable.is_read.is_(False))
            .values(is_read=True)
        )
        result = await self._session.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def mark_read_by_link(self, user_id: str, fragment: str) -> int:
        """Mark the user's unread notifications whose link contains *fragment*."""
        stmt = (
            update(NotificationTable)
            .where(
                NotificationTable.user_id == user_id,
                NotificationTable.is_read.is_(False),
                _contains(NotificationTable.link, fragment),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def list_linked_to_updates(self, marker: str = "/update/") -> list[tuple[str, str]]:
        """Return ``(id, link)`` for every notification whose link contains *marker*."""
        stmt = (
            select(NotificationTable.id, NotificationTable.link)
            .where(_contains(NotificationTable.link, marker))
            .order_by(NotificationTable.id)
        )
        result = await self._session.execute(stmt)
        return [(row.id, row.link) for row in result.all()]

    async def delete(self, notification_id: str) -> int:
        result = await self._session.execute(delete(NotificationTable).where(NotificationTable.id == notification_id))
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def delete_by_link_fragment(self, fragment: str) -> int:
        """Delete every notification (any recipient) whose link contains *fragment*."""
        stmt = (
            delete(NotificationTable)
            .where(_contains(NotificationTable.link, fragment))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined, return-value]

    async def portals_notified_since(
        self,
        portal_ids: Iterable[str],
        notification_type: str,
        since: datetime,
    ) -> set[str]:
        """Return the subset of *portal_ids* with a *notification_type* row created after *since*."""
        ids = set(portal_ids)
        if not ids:
            return set()
        stmt = (
            select(NotificationTable.portal_id)
            .where(
                NotificationTable.portal_id.in_(ids),
                NotificationTable.type == notification_type,
                NotificationTable.created_at > since,
            )
            .distinct()
        )
        result = await self._session.execute(stmt)
        return {pid for pid in result.scalars().all() if pid is not None}


# ---------------------------------------------------------------------------
# JobRunRepository
# ---------------------------------------------------------------------------


class JobRunRepository:
    """Persisted last-run markers for scheduled jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_name: str) -> JobRunTable | None:
        return await self._session.get(JobRunTable, job_name)

    async def list_all(self) -> list[JobRunTable]:
        result = await self._session.execute(select(JobRunTable).order_by(JobRunTable.job_name))
        return list(result.scalars().all())

    async def claim(self, job_name: str, slot: datetime, *, now: datetime | None = None) -> bool:
        """Claim the run of *job_name* scheduled at *slot*.

        The marker row is created on first use.  The claim is a conditional
        update that only succeeds while ``last_started_at`` is older than
        *slot*, so when several instances race for the same slot exactly one
        of them sees an affected row.
        """
        now = now or datetime.now(UTC)
        await _dialect_upsert_nothing(
            self._session,
            JobRunTable,
            {"job_name": job_name},
            index_elements=["job_name"],
        )
        stmt = (
            update(JobRunTable)
            .where(
                JobRunTable.job_name == job_name,
                or_(JobRunTable.last_started_at.is_(None), JobRunTable.last_started_at < slot),
            )
            .values(
                last_run_on=slot.date(),
                last_started_at=now,
                last_status="running",
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def record_finish(
        self,
        job_name: str,
        *,
        status: str,
        result: dict[str, Any] | None = None,
        started_at: datetime | None = None,
        finished_at: datetime | None = None,
    ) -> None:
        """Store the outcome of a run, creating the marker row if needed."""
        finished_at = finished_at or datetime.now(UTC)
        row = await self.get(job_name)
        if row is None:
            row = JobRunTable(job_name=job_name)
            self._session.add(row)
        if started_at is not None:
            row.last_started_at = started_at
            row.last_run_on = started_at.date()
        row.last_finished_at = finished_at
        row.last_status = status
        row.last_result = result
        await self._session.flush()
