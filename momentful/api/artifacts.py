"""Edited image and generated video endpoints.

Lists are served through the query cache, so they reflect optimistic
writes and reconcile after every create or delete.
"""

from uuid import UUID

from fastapi import APIRouter, status

from momentful.api.deps import CurrentUser, Services
from momentful.schemas.artifact import ArtifactView

router = APIRouter()


# =============================================================================
# Edited images
# =============================================================================


@router.get(
    "/projects/{project_id}/edited-images",
    response_model=list[ArtifactView],
    response_model_by_alias=True,
)
async def list_project_edited_images(project_id: UUID, current_user: CurrentUser, services: Services):
    return list(await services.orchestrator.edited_images(current_user.id, project_id=project_id))


@router.get(
    "/assets/{asset_id}/edited-images",
    response_model=list[ArtifactView],
    response_model_by_alias=True,
)
async def list_source_edited_images(asset_id: UUID, current_user: CurrentUser, services: Services):
    return list(await services.orchestrator.edited_images(current_user.id, source_asset_id=asset_id))


@router.get(
    "/lineages/{lineage_id}/edited-images",
    response_model=list[ArtifactView],
    response_model_by_alias=True,
)
async def list_lineage_edited_images(lineage_id: UUID, current_user: CurrentUser, services: Services):
    return list(await services.orchestrator.edited_images(current_user.id, lineage_id=lineage_id))


@router.delete("/edited-images/{image_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_edited_image(image_id: UUID, current_user: CurrentUser, services: Services) -> None:
    await services.orchestrator.delete_edited_image(image_id, current_user.id)


# =============================================================================
# Generated videos
# =============================================================================


@router.get(
    "/projects/{project_id}/generated-videos",
    response_model=list[ArtifactView],
    response_model_by_alias=True,
)
async def list_generated_videos(project_id: UUID, current_user: CurrentUser, services: Services):
    return list(await services.orchestrator.generated_videos(project_id, current_user.id))


@router.delete("/generated-videos/{video_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_generated_video(video_id: UUID, current_user: CurrentUser, services: Services) -> None:
    await services.orchestrator.delete_generated_video(video_id, current_user.id)
