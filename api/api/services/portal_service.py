"""Portal, update, reply and file operations.

Every mutation here runs inside the request's session: the entitlement
check, the domain write, its activity row and the resulting notifications
commit together or not at all.  Plan-gated writes take the owner's
advisory lock before checking so concurrent requests cannot both pass a
check for the last free slot.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date
from typing import Any

from portal_core.models.entitlement import EntitlementResult
from portal_core.models.events import ActivityType, PortalStatus, UserRole
from portal_core.notifications.routing import reply_link_fragment, update_link_fragment
from portal_core.plans.registry import PlanRegistry
from portal_core.state.repository import (
    FileRepository,
    NotificationRepository,
    PortalRepository,
    UpdateRepository,
    UserRepository,
)
from portal_core.state.tables import FileTable, PortalTable, UpdateTable
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.activity_service import ActivityService
from api.services.entitlement_service import EntitlementService
from api.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

# Portal columns a partial update may change but never clear.
_REQUIRED_PORTAL_FIELDS = ("name", "status")


class EntitlementDeniedError(Exception):
    """A plan limit blocked the operation.  Carries the check's result."""

    def __init__(self, result: EntitlementResult) -> None:
        super().__init__(result.reason or "Not allowed on your current plan.")
        self.result = result


class NotFoundError(LookupError):
    """A portal or update named in the request does not exist."""


class PortalNotFoundError(NotFoundError):
    pass


class UpdateNotFoundError(NotFoundError):
    pass


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def portal_to_dict(row: PortalTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "created_by": row.created_by,
        "client_id": row.client_id,
        "status": row.status,
        "due_date": _iso(row.due_date),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def file_to_dict(row: FileTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "portal_id": row.portal_id,
        "user_id": row.user_id,
        "update_id": row.update_id,
        "file_name": row.file_name,
        "file_url": row.file_url,
        "file_type": row.file_type,
        "file_size": row.file_size,
        "created_at": _iso(row.created_at),
    }


def update_to_dict(row: UpdateTable, files: Sequence[FileTable] = ()) -> dict[str, Any]:
    return {
        "id": row.id,
        "portal_id": row.portal_id,
        "user_id": row.user_id,
        "title": row.title,
        "content": row.content,
        "parent_update_id": row.parent_update_id,
        "created_at": _iso(row.created_at),
        "files": [file_to_dict(f) for f in files],
    }


# ---------------------------------------------------------------------------
# PortalService
# ---------------------------------------------------------------------------


class PortalService:
    """Business operations on portals and their content.

    Parameters
    ----------
    session:
        The request's session.  Nothing here commits; the session
        dependency commits on success and rolls back on any exception.
    registry:
        Plan tiers for entitlement checks.
    fanout:
        Notification fan-out used by the activity log.
    """

    def __init__(self, session: AsyncSession, registry: PlanRegistry, fanout: NotificationFanout) -> None:
        self._session = session
        self._entitlements = EntitlementService(session, registry)
        self._activity = ActivityService(session, fanout)
        self._users = UserRepository(session)
        self._portals = PortalRepository(session)
        self._updates = UpdateRepository(session)
        self._files = FileRepository(session)
        self._notifications = NotificationRepository(session)

    # -- lookups ---------------------------------------------------------

    async def _get_portal(self, portal_id: str) -> PortalTable:
        portal = await self._portals.get(portal_id)
        if portal is None:
            raise PortalNotFoundError(f"Portal {portal_id} not found")
        return portal

    async def _get_member_portal(self, portal_id: str, user_id: str) -> PortalTable:
        """Return the portal if *user_id* is its freelancer or its client."""
        portal = await self._get_portal(portal_id)
        if user_id not in (portal.created_by, portal.client_id):
            raise PermissionError("You do not have access to this portal")
        return portal

    async def list_portals(self, user_id: str) -> list[dict[str, Any]]:
        return [portal_to_dict(p) for p in await self._portals.list_for_user(user_id)]

    async def get_portal(self, user_id: str, portal_id: str) -> dict[str, Any]:
        return portal_to_dict(await self._get_member_portal(portal_id, user_id))

    # -- portals ---------------------------------------------------------

    async def create_portal(
        self,
        owner_id: str,
        *,
        name: str,
        description: str | None = None,
        client_id: str | None = None,
        due_date: date | None = None,
        status: PortalStatus = PortalStatus.ACTIVE,
    ) -> dict[str, Any]:
        """Create a portal owned by *owner_id*, subject to the client limit.

        Raises
        ------
        PermissionError
            If the owner is not a freelancer.
        EntitlementDeniedError
            If the owner's plan has no free client slot.
        ValueError
            If *client_id* does not name a client account.
        """
        owner = await self._users.get(owner_id)
        if owner is None or owner.role != UserRole.FREELANCER.value:
            raise PermissionError("Only freelancers can create portals")

        if client_id is not None:
            client = await self._users.get(client_id)
            if client is None or client.role != UserRole.CLIENT.value:
                raise ValueError("client_id must reference a client account")

        await self._entitlements.lock_for(owner_id, "create_portal")
        result = await self._entitlements.can_create_portal(owner_id)
        if not result.allowed:
            raise EntitlementDeniedError(result)

        portal = await self._portals.create(
            name,
            owner_id,
            client_id=client_id,
            description=description,
            status=status.value,
            due_date=due_date,
        )
        await self._activity.record(portal.id, owner_id, ActivityType.PORTAL_CREATED, {"portal_name": name})
        logger.info("Portal %s created by %s", portal.id, owner_id)
        return portal_to_dict(portal)

    async def update_portal(self, actor_id: str, portal_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply *changes* to a portal the actor owns and notify the client."""
        portal = await self._get_portal(portal_id)
        if portal.created_by != actor_id:
            raise PermissionError("Only the portal owner can update it")
        cleared = [key for key in _REQUIRED_PORTAL_FIELDS if key in changes and changes[key] is None]
        if cleared:
            raise ValueError(f"Cannot clear required portal field(s): {', '.join(cleared)}")
        if not changes:
            return portal_to_dict(portal)

        if isinstance(changes.get("status"), PortalStatus):
            changes["status"] = changes["status"].value
        old_status = portal.status
        await self._portals.update_fields(portal, changes)

        meta: dict[str, Any] = {"portal_name": portal.name, "changes": sorted(changes)}
        if portal.status != old_status:
            meta["old_status"] = old_status
            meta["new_status"] = portal.status
        await self._activity.record(portal.id, actor_id, ActivityType.PORTAL_UPDATED, meta)
        return portal_to_dict(portal)

    # -- updates and replies ---------------------------------------------

    async def post_update(
        self,
        actor_id: str,
        portal_id: str,
        *,
        content: str,
        title: str | None = None,
        files: Sequence[dict[str, Any]] = (),
    ) -> dict[str, Any]:
        """Post a top-level update, optionally with file attachments."""
        portal = await self._get_member_portal(portal_id, actor_id)

        await self._entitlements.lock_for(portal.created_by, "post_update")
        result = await self._entitlements.can_post_update(portal_id)
        if not result.allowed:
            raise EntitlementDeniedError(result)

        update = await self._updates.create(portal_id, actor_id, content=content, title=title)
        attached = await self._attach_files(portal, actor_id, update, files)
        await self._activity.record(
            portal_id,
            actor_id,
            ActivityType.UPDATE_CREATED,
            {"update_id": update.id, "update_title": title},
        )
        return update_to_dict(update, attached)

    async def post_reply(
        self,
        actor_id: str,
        parent_update_id: str,
        *,
        content: str,
        files: Sequence[dict[str, Any]] = (),
    ) -> dict[str, Any]:
        """Reply to a top-level update."""
        parent = await self._updates.get(parent_update_id)
        if parent is None:
            raise UpdateNotFoundError(f"Update {parent_update_id} not found")
        if parent.parent_update_id is not None:
            raise ValueError("Replies can only be posted to top-level updates")
        portal = await self._get_member_portal(parent.portal_id, actor_id)

        reply = await self._updates.create(
            portal.id,
            actor_id,
            content=content,
            parent_update_id=parent.id,
        )
        attached = await self._attach_files(portal, actor_id, reply, files)
        await self._activity.record(
            portal.id,
            actor_id,
            ActivityType.REPLY_CREATED,
            {
                "update_id": reply.id,
                "parent_update_id": parent.id,
                "parent_update_title": parent.title,
            },
        )
        return update_to_dict(reply, attached)

    async def delete_update(self, actor_id: str, update_id: str) -> dict[str, int]:
        """Delete an update with its replies, attachments and notifications.

        Notifications linking to the update, or anchored on any deleted
        reply, are removed in the same transaction.
        """
        update = await self._updates.get(update_id)
        if update is None:
            raise UpdateNotFoundError(f"Update {update_id} not found")
        portal = await self._get_portal(update.portal_id)
        if actor_id not in (update.user_id, portal.created_by):
            raise PermissionError("Only the author or the portal owner can delete this update")

        ids = [update.id, *await self._updates.list_reply_ids(update.id)]
        deleted_notifications = 0
        for uid in ids:
            deleted_notifications += await self._notifications.delete_by_link_fragment(update_link_fragment(uid))
            deleted_notifications += await self._notifications.delete_by_link_fragment(reply_link_fragment(uid))
        deleted_files = await self._files.delete_for_updates(ids)
        deleted_updates = await self._updates.delete(ids)

        activity = ActivityType.REPLY_DELETED if update.parent_update_id else ActivityType.UPDATE_DELETED
        await self._activity.record(
            portal.id,
            actor_id,
            activity,
            {"update_id": update_id, "update_title": update.title},
        )
        logger.info(
            "Deleted update %s (%d rows, %d files, %d notifications)",
            update_id,
            deleted_updates,
            deleted_files,
            deleted_notifications,
        )
        return {
            "deleted_updates": deleted_updates,
            "deleted_files": deleted_files,
            "deleted_notifications": deleted_notifications,
        }

    # -- files -----------------------------------------------------------

    async def upload_file(
        self,
        actor_id: str,
        portal_id: str,
        *,
        file_name: str,
        file_url: str,
        file_size: int,
        file_type: str | None = None,
        update_id: str | None = None,
    ) -> dict[str, Any]:
        """Record an uploaded file, checked against the portal owner's plan."""
        portal = await self._get_member_portal(portal_id, actor_id)
        update: UpdateTable | None = None
        if update_id is not None:
            update = await self._updates.get(update_id)
            if update is None or update.portal_id != portal_id:
                raise UpdateNotFoundError(f"Update {update_id} not found in portal {portal_id}")

        row = await self._store_file(
            portal,
            actor_id,
            {"file_name": file_name, "file_url": file_url, "file_size": file_size, "file_type": file_type},
            update,
        )
        return file_to_dict(row)

    async def _attach_files(
        self,
        portal: PortalTable,
        actor_id: str,
        update: UpdateTable,
        files: Sequence[dict[str, Any]],
    ) -> list[FileTable]:
        return [await self._store_file(portal, actor_id, f, update) for f in files]

    async def _store_file(
        self,
        portal: PortalTable,
        actor_id: str,
        file: dict[str, Any],
        update: UpdateTable | None,
    ) -> FileTable:
        size = int(file["file_size"])
        await self._entitlements.lock_for(portal.created_by, "upload_file")
        result = await self._entitlements.can_upload_files_to_portal(actor_id, size, portal.id)
        if not result.allowed:
            raise EntitlementDeniedError(result)

        row = await self._files.create(
            portal.id,
            actor_id,
            file_name=file["file_name"],
            file_url=file["file_url"],
            file_size=size,
            file_type=file.get("file_type"),
            update_id=update.id if update else None,
        )
        meta: dict[str, Any] = {
            "file_name": row.file_name,
            "file_size": row.file_size,
            "file_type": row.file_type,
        }
        if update is not None:
            meta["update_id"] = update.id
            if update.parent_update_id:
                meta["parent_update_id"] = update.parent_update_id
        await self._activity.record(portal.id, actor_id, ActivityType.FILE_UPLOADED, meta)
        return row
