"""Plan usage and limit endpoints for the caller's own plan."""

from __future__ import annotations

from fastapi import APIRouter
from portal_core.models.entitlement import (
    EntitlementResult,
    OverLimitReport,
    PlanUsage,
    UpgradeRecommendation,
)

from api.dependencies import CurrentUserDep, PlanRegistryDep, SessionDep
from api.services.entitlement_service import EntitlementService

router = APIRouter(prefix="/plan-limits", tags=["plan-limits"])


@router.get("", response_model=PlanUsage)
async def get_plan_limits(session: SessionDep, registry: PlanRegistryDep, user: CurrentUserDep) -> PlanUsage:
    """Current plan and usage against each of its limits."""
    return await EntitlementService(session, registry).get_plan_usage(user.id)


@router.get("/check-portal-creation", response_model=EntitlementResult)
async def check_portal_creation(
    session: SessionDep,
    registry: PlanRegistryDep,
    user: CurrentUserDep,
) -> EntitlementResult:
    return await EntitlementService(session, registry).can_create_portal(user.id)


@router.get("/check-over-limits", response_model=OverLimitReport)
async def check_over_limits(session: SessionDep, registry: PlanRegistryDep, user: CurrentUserDep) -> OverLimitReport:
    return await EntitlementService(session, registry).check_over_limits(user.id)


@router.get("/upgrade-recommendation", response_model=UpgradeRecommendation)
async def upgrade_recommendation(
    session: SessionDep,
    registry: PlanRegistryDep,
    user: CurrentUserDep,
) -> UpgradeRecommendation:
    return await EntitlementService(session, registry).get_upgrade_recommendation(user.id)
