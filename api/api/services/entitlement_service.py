"""Plan-tier entitlement checks evaluated against live usage.

Every ``can_*`` method resolves the relevant user's current plan, recomputes
the usage it depends on, and returns an :class:`EntitlementResult`.  Denials
are values; only persistence failures raise.

Limit semantics::

    count limits:       allowed iff usage + 1 <= limit
    storage limits:     allowed iff stored_bytes + size_bytes <= limit_bytes
    single-file limits: allowed iff size_bytes <= limit_bytes
    None:               always allowed

Uploads into a portal are checked against the plan of the portal's owner,
never the uploader's: a client on the free plan can upload into a portal
owned by a freelancer on a paid plan.

The service is a read gate.  Callers that must close the check-then-write
race call :meth:`EntitlementService.lock_for` first, inside the transaction
that performs the gated write.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from portal_core.models.entitlement import (
    CountUsage,
    EntitlementResult,
    OverLimitReport,
    PlanUsage,
    ResolvedPlan,
    StorageUsage,
    UpgradeRecommendation,
)
from portal_core.plans.registry import (
    PlanFeature,
    PlanRegistry,
    bytes_to_mb,
    format_storage_size,
    is_within_limit,
    mb_to_bytes,
    usage_percentage,
    would_exceed_limit,
)
from portal_core.state.database import acquire_advisory_lock
from portal_core.state.repository import (
    FileRepository,
    PortalRepository,
    SubscriptionRepository,
    UpdateRepository,
)
from sqlalchemy.ext.asyncio import AsyncSession

from api.middleware.prometheus import ENTITLEMENT_DENIALS_TOTAL

logger = logging.getLogger(__name__)

# Team size is the freelancer alone until team seats exist.
_TEAM_SIZE = 1

_APPROACHING_LIMIT_PCT = 80.0


class EntitlementService:
    """Answer "may this user do X?" for the plan-gated actions.

    Parameters
    ----------
    session:
        Session used for usage queries.  When the check gates a write, pass
        the session of the write's transaction.
    registry:
        Plan tiers, injected at process start.
    clock:
        Returns the current UTC time; overridable in tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: PlanRegistry,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._registry = registry
        self._clock = clock or (lambda: datetime.now(UTC))
        self._subscriptions = SubscriptionRepository(session)
        self._portals = PortalRepository(session)
        self._files = FileRepository(session)
        self._updates = UpdateRepository(session)

    # ------------------------------------------------------------------
    # Plan resolution
    # ------------------------------------------------------------------

    async def resolve_plan(self, user_id: str) -> ResolvedPlan:
        """Return the user's effective plan.

        The most recently started subscription that is active and has not
        ended wins.  No such subscription means the default (free) tier.
        An unrecognised plan id also falls back to the default tier.
        """
        subscription = await self._subscriptions.get_current(user_id, now=self._clock())
        if subscription is None:
            return ResolvedPlan(tier=self._registry.default_tier)

        if subscription.plan_id not in self._registry:
            logger.warning(
                "Unknown plan id %r on subscription %s; using %s",
                subscription.plan_id,
                subscription.id,
                self._registry.default_tier.id,
            )
            return ResolvedPlan(tier=self._registry.default_tier)

        return ResolvedPlan(
            tier=self._registry.get(subscription.plan_id),
            subscription_id=subscription.id,
            ends_at=subscription.ends_at,
        )

    async def lock_for(self, owner_id: str, action: str) -> None:
        """Serialise concurrent gated writes for ``(owner_id, action)``.

        Must be called inside the transaction that performs the write.  The
        lock is released when that transaction ends.
        """
        await acquire_advisory_lock(self._session, "entitlement", owner_id, action)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    async def can_create_portal(self, user_id: str) -> EntitlementResult:
        plan = await self.resolve_plan(user_id)
        limit = plan.tier.max_clients
        count = await self._portals.count_owned_by(user_id)

        if would_exceed_limit(count, 1, limit):
            over = not is_within_limit(count, limit)
            suffix = (
                "You are currently over your limit."
                if over
                else "Creating another portal would exceed your limit."
            )
            return self._deny(
                "create_portal",
                f"You've reached your plan's client limit ({limit}). {suffix}",
                current_usage=count,
                limit=limit,
            )
        return EntitlementResult.allow()

    async def can_upload_files(self, user_id: str, size_bytes: int) -> EntitlementResult:
        """Check a user's own storage and single-file caps for an upload."""
        plan = await self.resolve_plan(user_id)
        return await self._check_upload(plan, user_id, size_bytes, scope="your")

    async def can_upload_files_to_portal(
        self,
        uploader_id: str,
        size_bytes: int,
        portal_id: str,
    ) -> EntitlementResult:
        """Check an upload into *portal_id* against the portal owner's plan."""
        portal = await self._portals.get(portal_id)
        if portal is None:
            return EntitlementResult.deny("Portal not found.", upgrade_required=False)

        owner_id = portal.created_by
        plan = await self.resolve_plan(owner_id)
        logger.debug(
            "Upload check uploader=%s portal=%s owner=%s plan=%s",
            uploader_id,
            portal_id,
            owner_id,
            plan.plan_id,
        )

        result = await self._check_upload(plan, owner_id, size_bytes, scope="this portal's")
        if not result.allowed:
            return result

        max_files = plan.tier.max_files_per_portal
        file_count = await self._files.count_for_portal(portal_id)
        if would_exceed_limit(file_count, 1, max_files):
            return self._deny(
                "upload_file",
                f"This portal has reached its file limit ({max_files}).",
                current_usage=file_count,
                limit=max_files,
            )
        return EntitlementResult.allow()

    async def can_post_update(self, portal_id: str) -> EntitlementResult:
        """Check the portal owner's per-portal update limit."""
        portal = await self._portals.get(portal_id)
        if portal is None:
            return EntitlementResult.deny("Portal not found.", upgrade_required=False)

        plan = await self.resolve_plan(portal.created_by)
        limit = plan.tier.max_updates_per_portal
        if limit is None:
            return EntitlementResult.allow()

        count = await self._updates.count_top_level(portal_id)
        if would_exceed_limit(count, 1, limit):
            return self._deny(
                "post_update",
                f"This portal has reached its update limit ({limit}).",
                current_usage=count,
                limit=limit,
            )
        return EntitlementResult.allow()

    async def can_invite_team_member(self, user_id: str) -> EntitlementResult:
        plan = await self.resolve_plan(user_id)
        if not plan.tier.can_add_team:
            return self._deny("invite_team_member", "Team invites are not available on your current plan.")

        limit = plan.tier.max_team_members
        if would_exceed_limit(_TEAM_SIZE, 1, limit):
            return self._deny(
                "invite_team_member",
                f"You've reached your plan's team member limit ({limit}).",
                current_usage=_TEAM_SIZE,
                limit=limit,
            )
        return EntitlementResult.allow()

    async def can_access_feature(self, user_id: str, feature: PlanFeature) -> EntitlementResult:
        plan = await self.resolve_plan(user_id)
        if plan.tier.has_feature(feature):
            return EntitlementResult.allow()
        return self._deny(f"feature:{feature.value}", "This feature is not available on your current plan.")

    # ------------------------------------------------------------------
    # Usage reporting
    # ------------------------------------------------------------------

    async def get_plan_usage(self, user_id: str) -> PlanUsage:
        plan = await self.resolve_plan(user_id)
        tier = plan.tier

        client_count = await self._portals.count_owned_by(user_id)
        storage_mb = bytes_to_mb(await self._files.total_bytes_for_owner(user_id))

        return PlanUsage(
            plan_id=tier.id,
            plan_name=tier.name,
            is_free_plan=plan.is_free_plan,
            ends_at=plan.ends_at,
            clients=_count_usage(client_count, tier.max_clients),
            storage=StorageUsage(
                current_mb=storage_mb,
                limit_mb=tier.max_storage_mb,
                can_upload=is_within_limit(storage_mb, tier.max_storage_mb),
                is_over_limit=not is_within_limit(storage_mb, tier.max_storage_mb),
                usage_percentage=usage_percentage(storage_mb, tier.max_storage_mb),
                formatted_current=format_storage_size(storage_mb),
                formatted_limit=(
                    "Unlimited" if tier.max_storage_mb is None else format_storage_size(tier.max_storage_mb)
                ),
            ),
            team=_count_usage(_TEAM_SIZE, tier.max_team_members),
        )

    async def check_over_limits(self, user_id: str) -> OverLimitReport:
        """Report which dimensions exceed the plan, for warning banners."""
        usage = await self.get_plan_usage(user_id)
        over: list[str] = []
        if usage.clients.is_over_limit:
            over.append("clients")
        if usage.storage.is_over_limit:
            over.append("storage")
        if usage.team.is_over_limit:
            over.append("team")

        if not over:
            return OverLimitReport(is_over_limit=False)

        if len(over) == 1:
            message = f"You're over your plan's {over[0]} limit."
        else:
            message = f"You're over your plan's {' and '.join(over)} limits."
        message += " Upgrade to restore full access."
        return OverLimitReport(is_over_limit=True, over_limit_types=over, message=message)

    async def get_upgrade_recommendation(self, user_id: str) -> UpgradeRecommendation:
        usage = await self.get_plan_usage(user_id)
        next_tier = self._registry.next_tier(usage.plan_id)

        if next_tier is None:
            return UpgradeRecommendation(
                should_upgrade=False,
                reason="You're on our highest plan with unlimited features.",
                current_plan=usage.plan_id,
            )

        if usage.clients.is_over_limit or usage.storage.is_over_limit or usage.team.is_over_limit:
            unlimited = next_tier.max_clients is None and next_tier.max_storage_mb is None
            benefit = "unlimited access" if unlimited else "higher limits"
            return UpgradeRecommendation(
                should_upgrade=True,
                recommended_plan=next_tier.id,
                reason=f"You're over your current plan's limits. Upgrade to {next_tier.id} for {benefit}.",
                current_plan=usage.plan_id,
            )

        if (
            usage.clients.usage_percentage > _APPROACHING_LIMIT_PCT
            or usage.storage.usage_percentage > _APPROACHING_LIMIT_PCT
        ):
            return UpgradeRecommendation(
                should_upgrade=True,
                recommended_plan=next_tier.id,
                reason=(
                    f"You're approaching your plan's limits. "
                    f"Consider upgrading to {next_tier.id} for more capacity."
                ),
                current_plan=usage.plan_id,
            )

        return UpgradeRecommendation(
            should_upgrade=False,
            reason="You're within your plan's limits.",
            current_plan=usage.plan_id,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _check_upload(
        self,
        plan: ResolvedPlan,
        owner_id: str,
        size_bytes: int,
        *,
        scope: str,
    ) -> EntitlementResult:
        tier = plan.tier

        if tier.max_storage_mb is not None:
            stored = await self._files.total_bytes_for_owner(owner_id)
            if would_exceed_limit(stored, size_bytes, mb_to_bytes(tier.max_storage_mb)):
                return self._deny(
                    "upload_file",
                    f"This upload would exceed {scope} storage limit. "
                    f"Using {format_storage_size(bytes_to_mb(stored))} "
                    f"of {format_storage_size(tier.max_storage_mb)}.",
                    current_usage=bytes_to_mb(stored),
                    limit=tier.max_storage_mb,
                )

        if tier.max_file_size_mb is not None and size_bytes > mb_to_bytes(tier.max_file_size_mb):
            size_mb = bytes_to_mb(size_bytes)
            return self._deny(
                "upload_file",
                f"File size ({format_storage_size(size_mb)}) exceeds {scope} limit "
                f"of {format_storage_size(tier.max_file_size_mb)}.",
                current_usage=size_mb,
                limit=tier.max_file_size_mb,
            )

        return EntitlementResult.allow()

    @staticmethod
    def _deny(
        action: str,
        reason: str,
        *,
        current_usage: float | None = None,
        limit: float | None = None,
    ) -> EntitlementResult:
        ENTITLEMENT_DENIALS_TOTAL.labels(action=action).inc()
        logger.info("Entitlement denied action=%s usage=%s limit=%s", action, current_usage, limit)
        return EntitlementResult.deny(reason, current_usage=current_usage, limit=limit)


def _count_usage(current: int, limit: int | None) -> CountUsage:
    return CountUsage(
        current=current,
        limit=limit,
        can_add=not would_exceed_limit(current, 1, limit),
        is_over_limit=not is_within_limit(current, limit),
        usage_percentage=usage_percentage(current, limit),
    )
