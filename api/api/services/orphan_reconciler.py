"""Sweep notifications whose linked update no longer exists.

Deleting an update removes its notifications explicitly, but rows can
still be orphaned by deletes that bypass that path (cascades, manual
cleanup).  The reconciler finds every notification linking to
``/update/<id>``, checks the id against the ``updates`` table and deletes
the stragglers.  Each deletion runs in its own savepoint so one failure is
logged and counted without aborting the sweep.
"""

from __future__ import annotations

import logging
from typing import Any

from portal_core.notifications.routing import extract_update_id
from portal_core.state.repository import NotificationRepository, UpdateRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import ORPHAN_NOTIFICATIONS_DELETED_TOTAL

logger = logging.getLogger(__name__)


class OrphanReconciler:
    """Delete notifications that point at deleted updates."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._notifications = NotificationRepository(session)
        self._updates = UpdateRepository(session)

    async def reconcile(self) -> dict[str, Any]:
        """Run one sweep.

        Returns
        -------
        dict
            ``scanned`` notifications with an update link, ``deleted``
            orphans and per-row ``errors``.
        """
        linked = await self._notifications.list_linked_to_updates()
        by_update: dict[str, list[str]] = {}
        for notification_id, link in linked:
            update_id = extract_update_id(link)
            if update_id is not None:
                by_update.setdefault(update_id, []).append(notification_id)

        existing = await self._updates.existing_ids(by_update)
        orphans = [nid for uid, nids in by_update.items() if uid not in existing for nid in nids]

        deleted = 0
        errors = 0
        for notification_id in orphans:
            try:
                async with self._session.begin_nested():
                    deleted += await self._notifications.delete(notification_id)
            except SQLAlchemyError:
                errors += 1
                logger.error("Failed to delete orphan notification %s", notification_id, exc_info=True)

        if deleted:
            ORPHAN_NOTIFICATIONS_DELETED_TOTAL.inc(deleted)
        result = {"scanned": len(linked), "deleted": deleted, "errors": errors}
        logger.info("Orphan notification sweep complete: %s", result)
        return result
