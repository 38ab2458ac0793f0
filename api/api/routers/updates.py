"""Update and reply endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from api.dependencies import CurrentUserDep, FanoutDep, PlanRegistryDep, SessionDep
from api.schemas import CreateReplyRequest, CreateUpdateRequest, DeleteUpdateResponse, UpdateResponse
from api.services.portal_service import PortalService

router = APIRouter(prefix="/updates", tags=["updates"])


@router.post("", response_model=UpdateResponse, status_code=201)
async def create_update(
    body: CreateUpdateRequest,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    """Post an update.  Attachments are checked against the portal owner's plan."""
    service = PortalService(session, registry, fanout)
    return await service.post_update(
        user.id,
        body.portal_id,
        content=body.content,
        title=body.title,
        files=[f.model_dump() for f in body.files],
    )


@router.post("/{update_id}/replies", response_model=UpdateResponse, status_code=201)
async def create_reply(
    update_id: str,
    body: CreateReplyRequest,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    service = PortalService(session, registry, fanout)
    return await service.post_reply(
        user.id,
        update_id,
        content=body.content,
        files=[f.model_dump() for f in body.files],
    )


@router.delete("/{update_id}", response_model=DeleteUpdateResponse)
async def delete_update(
    update_id: str,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    """Delete an update, its replies and every notification linking to them."""
    return await PortalService(session, registry, fanout).delete_update(user.id, update_id)
