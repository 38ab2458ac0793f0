"""Portal endpoints.  Creation is gated on the owner's client limit."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from api.dependencies import CurrentUserDep, FanoutDep, FreelancerDep, PlanRegistryDep, SessionDep
from api.schemas import CreatePortalRequest, PortalResponse, UpdatePortalRequest
from api.services.portal_service import PortalService

router = APIRouter(prefix="/portals", tags=["portals"])


@router.get("", response_model=list[PortalResponse])
async def list_portals(
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> list[dict[str, Any]]:
    """Portals the caller owns or is the client of."""
    return await PortalService(session, registry, fanout).list_portals(user.id)


@router.post("", response_model=PortalResponse, status_code=201)
async def create_portal(
    body: CreatePortalRequest,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: FreelancerDep,
) -> dict[str, Any]:
    """Create a portal.  Returns 403 ``{error, upgradeRequired}`` at the plan limit."""
    service = PortalService(session, registry, fanout)
    return await service.create_portal(
        user.id,
        name=body.name,
        description=body.description,
        client_id=body.client_id,
        due_date=body.due_date,
        status=body.status,
    )


@router.get("/{portal_id}", response_model=PortalResponse)
async def get_portal(
    portal_id: str,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    return await PortalService(session, registry, fanout).get_portal(user.id, portal_id)


@router.put("/{portal_id}", response_model=PortalResponse)
async def update_portal(
    portal_id: str,
    body: UpdatePortalRequest,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    """Update portal details; the client is notified of the change."""
    service = PortalService(session, registry, fanout)
    return await service.update_portal(user.id, portal_id, body.model_dump(exclude_unset=True))
