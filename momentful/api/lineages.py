from uuid import UUID

from fastapi import APIRouter

from momentful.api.deps import CurrentUser, Services
from momentful.schemas.artifact import LineageView, TimelineView

router = APIRouter()


@router.get("/projects/{project_id}/lineages", response_model=list[LineageView], response_model_by_alias=True)
async def list_lineages(project_id: UUID, current_user: CurrentUser, services: Services):
    return list(await services.orchestrator.lineages(project_id, current_user.id))


@router.get("/lineages/{lineage_id}/timeline", response_model=TimelineView, response_model_by_alias=True)
async def get_timeline(lineage_id: UUID, current_user: CurrentUser, services: Services):
    """Node/edge graph of everything generated from one original upload."""
    return await services.orchestrator.timeline(lineage_id, current_user.id)
