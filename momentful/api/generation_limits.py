from fastapi import APIRouter

from momentful.api.deps import CurrentUser, Services
from momentful.schemas.artifact import GenerationLimitsView

router = APIRouter()


@router.get("/generation-limits", response_model=GenerationLimitsView, response_model_by_alias=True)
async def get_generation_limits(current_user: CurrentUser, services: Services):
    """Remaining image/video generations for the caller, provisioning defaults on first use."""
    limits = await services.quota.get_limits(current_user.id)
    return GenerationLimitsView(
        images_remaining=limits.images_remaining,
        videos_remaining=limits.videos_remaining,
        images_limit=limits.images_limit,
        videos_limit=limits.videos_limit,
    )
