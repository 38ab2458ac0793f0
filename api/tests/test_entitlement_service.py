"""Tests for api.services.entitlement_service.EntitlementService."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from portal_core.plans.registry import BYTES_PER_MB, PlanFeature, PlanRegistry, PlanTier
from portal_core.state.repository import FileRepository, SubscriptionRepository

from api.services.entitlement_service import EntitlementService

MB = BYTES_PER_MB


async def _store(session, portal_id: str, user_id: str, size: int) -> None:
    await FileRepository(session).create(portal_id, user_id, file_name="f", file_url="s3://f", file_size=size)
    await session.commit()


# ---------------------------------------------------------------------------
# Plan resolution
# ---------------------------------------------------------------------------


class TestResolvePlan:
    @pytest.mark.asyncio
    async def test_no_subscription_is_free(self, db_session, seed) -> None:
        user = await seed.user()
        plan = await EntitlementService(db_session, PlanRegistry.default()).resolve_plan(user.id)
        assert plan.plan_id == "free"
        assert plan.is_free_plan

    @pytest.mark.asyncio
    async def test_active_subscription(self, db_session, seed) -> None:
        user = await seed.user()
        sub = await seed.subscribe(user.id, "pro")
        plan = await EntitlementService(db_session, PlanRegistry.default()).resolve_plan(user.id)
        assert plan.plan_id == "pro"
        assert plan.subscription_id == sub.id
        assert plan.ends_at is not None

    @pytest.mark.asyncio
    async def test_expired_subscription_is_free(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "agency", days=-1)
        plan = await EntitlementService(db_session, PlanRegistry.default()).resolve_plan(user.id)
        assert plan.plan_id == "free"

    @pytest.mark.asyncio
    async def test_clock_decides_expiry(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "pro", days=10)
        later = datetime.now(UTC) + timedelta(days=11)
        service = EntitlementService(db_session, PlanRegistry.default(), clock=lambda: later)
        assert (await service.resolve_plan(user.id)).plan_id == "free"

    @pytest.mark.asyncio
    async def test_unknown_plan_id_falls_back(self, db_session, seed, caplog) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "enterprise-legacy")
        with caplog.at_level(logging.WARNING, logger="api.services.entitlement_service"):
            plan = await EntitlementService(db_session, PlanRegistry.default()).resolve_plan(user.id)
        assert plan.plan_id == "free"
        assert "enterprise-legacy" in caplog.text

    @pytest.mark.asyncio
    async def test_newest_of_overlapping_subscriptions_wins(self, db_session, seed) -> None:
        user = await seed.user()
        now = datetime.now(UTC)
        repo = SubscriptionRepository(db_session)
        await repo.create(user.id, "agency", starts_at=now - timedelta(days=90), ends_at=now + timedelta(days=5))
        await repo.create(user.id, "pro", starts_at=now - timedelta(days=1), ends_at=now + timedelta(days=30))
        await db_session.commit()

        plan = await EntitlementService(db_session, PlanRegistry.default()).resolve_plan(user.id)
        assert plan.plan_id == "pro"


# ---------------------------------------------------------------------------
# Portal creation
# ---------------------------------------------------------------------------


class TestCanCreatePortal:
    @pytest.mark.asyncio
    async def test_free_first_portal_allowed(self, db_session, seed) -> None:
        user = await seed.user()
        result = await EntitlementService(db_session, PlanRegistry.default()).can_create_portal(user.id)
        assert result.allowed
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_free_second_portal_denied(self, db_session, seed, metric) -> None:
        user = await seed.user()
        await seed.portal(user.id)
        before = metric("clientportal_entitlement_denials_total", {"action": "create_portal"})

        result = await EntitlementService(db_session, PlanRegistry.default()).can_create_portal(user.id)

        assert not result.allowed
        assert result.upgrade_required
        assert "client limit (1)" in result.reason
        assert "Creating another portal would exceed your limit." in result.reason
        assert result.current_usage == 1
        assert result.limit == 1
        assert metric("clientportal_entitlement_denials_total", {"action": "create_portal"}) == before + 1

    @pytest.mark.asyncio
    async def test_over_limit_after_downgrade(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.portal(user.id, name="A")
        await seed.portal(user.id, name="B")
        result = await EntitlementService(db_session, PlanRegistry.default()).can_create_portal(user.id)
        assert not result.allowed
        assert "You are currently over your limit." in result.reason

    @pytest.mark.asyncio
    async def test_pro_limit_boundary(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "pro")
        for i in range(4):
            await seed.portal(user.id, name=f"P{i}")
        service = EntitlementService(db_session, PlanRegistry.default())

        assert (await service.can_create_portal(user.id)).allowed
        await seed.portal(user.id, name="P4")
        assert not (await service.can_create_portal(user.id)).allowed

    @pytest.mark.asyncio
    async def test_unlimited_plan_at_ten_thousand_portals(self, mock_session) -> None:
        service = EntitlementService(mock_session, PlanRegistry.default())
        sub = MagicMock(plan_id="agency", id="sub-1", ends_at=datetime(2027, 1, 1, tzinfo=UTC))
        with (
            patch.object(service._subscriptions, "get_current", AsyncMock(return_value=sub)),
            patch.object(service._portals, "count_owned_by", AsyncMock(return_value=10_000)),
        ):
            result = await service.can_create_portal("agency-user")
        assert result.allowed


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


class TestUploads:
    @pytest.mark.asyncio
    async def test_upload_checked_against_portal_owner_plan(self, db_session, seed) -> None:
        owner = await seed.user("freelancer")
        await seed.subscribe(owner.id, "pro")
        client = await seed.user("client")
        portal = await seed.portal(owner.id, client.id)
        service = EntitlementService(db_session, PlanRegistry.default())

        # 20 MB exceeds the client's own free tier but not the owner's pro tier.
        assert not (await service.can_upload_files(client.id, 20 * MB)).allowed
        assert (await service.can_upload_files_to_portal(client.id, 20 * MB, portal.id)).allowed

    @pytest.mark.asyncio
    async def test_single_file_cap(self, db_session, seed) -> None:
        owner = await seed.user()
        portal = await seed.portal(owner.id)
        service = EntitlementService(db_session, PlanRegistry.default())

        assert (await service.can_upload_files_to_portal(owner.id, 5 * MB, portal.id)).allowed
        result = await service.can_upload_files_to_portal(owner.id, 6 * MB, portal.id)
        assert not result.allowed
        assert result.reason == "File size (6 MB) exceeds this portal's limit of 5 MB."

    @pytest.mark.asyncio
    async def test_own_single_file_cap_is_inclusive(self, db_session, seed) -> None:
        user = await seed.user()
        service = EntitlementService(db_session, PlanRegistry.default())

        assert (await service.can_upload_files(user.id, 5 * MB)).allowed
        result = await service.can_upload_files(user.id, 5 * MB + 1)
        assert not result.allowed
        assert result.upgrade_required
        assert result.limit == 5
        assert result.reason.endswith("exceeds your limit of 5 MB.")

    @pytest.mark.asyncio
    async def test_storage_boundary_is_inclusive(self, db_session, seed) -> None:
        owner = await seed.user()
        first = await seed.portal(owner.id, name="A")
        second = await seed.portal(owner.id, name="B")
        # Storage is counted across every portal the owner created.
        await _store(db_session, first.id, owner.id, 50 * MB)
        await _store(db_session, second.id, owner.id, 46 * MB)
        service = EntitlementService(db_session, PlanRegistry.default())

        assert (await service.can_upload_files_to_portal(owner.id, 4 * MB, first.id)).allowed
        result = await service.can_upload_files_to_portal(owner.id, 4 * MB + 1, first.id)
        assert not result.allowed
        assert "storage limit" in result.reason
        assert result.limit == 100

    @pytest.mark.asyncio
    async def test_files_per_portal_cap(self, db_session, seed) -> None:
        owner = await seed.user()
        portal = await seed.portal(owner.id)
        registry = PlanRegistry([PlanTier(id="tiny", name="Tiny", max_files_per_portal=1)], default_plan_id="tiny")
        service = EntitlementService(db_session, registry)

        assert (await service.can_upload_files_to_portal(owner.id, 10, portal.id)).allowed
        await _store(db_session, portal.id, owner.id, 10)
        result = await service.can_upload_files_to_portal(owner.id, 10, portal.id)
        assert not result.allowed
        assert "file limit (1)" in result.reason

    @pytest.mark.asyncio
    async def test_missing_portal(self, db_session, seed) -> None:
        user = await seed.user()
        result = await EntitlementService(db_session, PlanRegistry.default()).can_upload_files_to_portal(
            user.id, 1, "no-such-portal"
        )
        assert not result.allowed
        assert result.upgrade_required is False


# ---------------------------------------------------------------------------
# Updates, team, features
# ---------------------------------------------------------------------------


class TestOtherChecks:
    @pytest.mark.asyncio
    async def test_updates_unlimited_by_default(self, db_session, seed) -> None:
        owner = await seed.user()
        portal = await seed.portal(owner.id)
        await seed.update(portal.id, owner.id)
        assert (await EntitlementService(db_session, PlanRegistry.default()).can_post_update(portal.id)).allowed

    @pytest.mark.asyncio
    async def test_update_limit_counts_top_level_only(self, db_session, seed) -> None:
        owner = await seed.user()
        portal = await seed.portal(owner.id)
        registry = PlanRegistry([PlanTier(id="tiny", name="Tiny", max_updates_per_portal=1)], default_plan_id="tiny")
        service = EntitlementService(db_session, registry)

        top = await seed.update(portal.id, owner.id)
        await seed.update(portal.id, owner.id, title=None, parent_update_id=top.id)
        result = await service.can_post_update(portal.id)
        assert not result.allowed
        assert result.current_usage == 1

    @pytest.mark.asyncio
    async def test_team_invites(self, db_session, seed) -> None:
        free_user = await seed.user(name="Free")
        pro_user = await seed.user(name="Pro")
        await seed.subscribe(pro_user.id, "pro")
        service = EntitlementService(db_session, PlanRegistry.default())

        denied = await service.can_invite_team_member(free_user.id)
        assert not denied.allowed
        assert denied.reason == "Team invites are not available on your current plan."
        assert (await service.can_invite_team_member(pro_user.id)).allowed

    @pytest.mark.asyncio
    async def test_team_seat_limit(self, db_session, seed) -> None:
        user = await seed.user()
        registry = PlanRegistry(
            [PlanTier(id="duo", name="Duo", can_add_team=True, max_team_members=1)], default_plan_id="duo"
        )
        result = await EntitlementService(db_session, registry).can_invite_team_member(user.id)
        assert not result.allowed
        assert "team member limit (1)" in result.reason

    @pytest.mark.asyncio
    async def test_feature_access(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "pro")
        service = EntitlementService(db_session, PlanRegistry.default())
        assert (await service.can_access_feature(user.id, PlanFeature.CUSTOM_BRANDING)).allowed
        assert not (await service.can_access_feature(user.id, PlanFeature.WHITE_LABEL)).allowed


# ---------------------------------------------------------------------------
# Usage reporting
# ---------------------------------------------------------------------------


class TestUsageReporting:
    @pytest.mark.asyncio
    async def test_plan_usage(self, db_session, seed) -> None:
        user = await seed.user()
        portal = await seed.portal(user.id)
        await _store(db_session, portal.id, user.id, 50 * MB)

        usage = await EntitlementService(db_session, PlanRegistry.default()).get_plan_usage(user.id)

        assert usage.plan_id == "free"
        assert usage.plan_name == "Free Plan"
        assert usage.is_free_plan
        assert usage.clients.current == 1
        assert usage.clients.can_add is False
        assert usage.clients.is_over_limit is False
        assert usage.clients.usage_percentage == 100.0
        assert usage.storage.current_mb == 50.0
        assert usage.storage.formatted_current == "50 MB"
        assert usage.storage.formatted_limit == "100 MB"
        assert usage.storage.usage_percentage == 50.0
        assert usage.team.current == 1

    @pytest.mark.asyncio
    async def test_unlimited_usage_serialises_camel_case(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "agency")
        usage = await EntitlementService(db_session, PlanRegistry.default()).get_plan_usage(user.id)

        body = usage.model_dump(by_alias=True)
        assert body["planId"] == "agency"
        assert body["isFreePlan"] is False
        assert body["storage"]["formattedLimit"] == "Unlimited"
        assert body["clients"]["limit"] is None
        assert body["clients"]["usagePercentage"] == 0.0

    @pytest.mark.asyncio
    async def test_over_limits_report(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.portal(user.id, name="A")
        await seed.portal(user.id, name="B")

        report = await EntitlementService(db_session, PlanRegistry.default()).check_over_limits(user.id)
        assert report.is_over_limit
        assert report.over_limit_types == ["clients"]
        assert report.message == "You're over your plan's clients limit. Upgrade to restore full access."

    @pytest.mark.asyncio
    async def test_within_limits_report(self, db_session, seed) -> None:
        user = await seed.user()
        report = await EntitlementService(db_session, PlanRegistry.default()).check_over_limits(user.id)
        assert not report.is_over_limit
        assert report.over_limit_types == []


class TestUpgradeRecommendation:
    @pytest.mark.asyncio
    async def test_over_limit_recommends_next_tier(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.portal(user.id, name="A")
        await seed.portal(user.id, name="B")
        rec = await EntitlementService(db_session, PlanRegistry.default()).get_upgrade_recommendation(user.id)
        assert rec.should_upgrade
        assert rec.recommended_plan == "pro"
        assert rec.reason == "You're over your current plan's limits. Upgrade to pro for higher limits."

    @pytest.mark.asyncio
    async def test_approaching_limits(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "pro")
        portal = await seed.portal(user.id)
        await _store(db_session, portal.id, user.id, 900 * MB)
        rec = await EntitlementService(db_session, PlanRegistry.default()).get_upgrade_recommendation(user.id)
        assert rec.should_upgrade
        assert rec.recommended_plan == "agency"
        assert "approaching" in rec.reason

    @pytest.mark.asyncio
    async def test_comfortable_usage(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "pro")
        await seed.portal(user.id)
        rec = await EntitlementService(db_session, PlanRegistry.default()).get_upgrade_recommendation(user.id)
        assert not rec.should_upgrade
        assert rec.current_plan == "pro"

    @pytest.mark.asyncio
    async def test_top_tier(self, db_session, seed) -> None:
        user = await seed.user()
        await seed.subscribe(user.id, "agency")
        rec = await EntitlementService(db_session, PlanRegistry.default()).get_upgrade_recommendation(user.id)
        assert not rec.should_upgrade
        assert rec.recommended_plan is None
        assert rec.reason == "You're on our highest plan with unlimited features."
