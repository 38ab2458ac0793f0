"""File metadata endpoint.  Uploads count against the portal owner's plan."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter

from api.dependencies import CurrentUserDep, FanoutDep, PlanRegistryDep, SessionDep
from api.schemas import CreateFileRequest, FileResponse
from api.services.portal_service import PortalService

router = APIRouter(prefix="/files", tags=["files"])


@router.post("", response_model=FileResponse, status_code=201)
async def create_file(
    body: CreateFileRequest,
    session: SessionDep,
    registry: PlanRegistryDep,
    fanout: FanoutDep,
    user: CurrentUserDep,
) -> dict[str, Any]:
    service = PortalService(session, registry, fanout)
    return await service.upload_file(
        user.id,
        body.portal_id,
        file_name=body.file_name,
        file_url=body.file_url,
        file_size=body.file_size,
        file_type=body.file_type,
        update_id=body.update_id,
    )
