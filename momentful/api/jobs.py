"""Generation job endpoints.

POST /api/jobs starts a job and returns its id at once; clients poll
GET /api/jobs/{id}, which also saves the output the first time the job is
seen as succeeded. POST /api/generations runs the whole flow in one request.
"""

import logging

from fastapi import APIRouter

from momentful.api.deps import CurrentUser, Services
from momentful.exceptions import ForbiddenError
from momentful.schemas.generation import CreateJobRequest, CreateJobResponse, GenerationOutcome, JobStatusView

logger = logging.getLogger(__name__)
router = APIRouter()


def _check_owner(body: CreateJobRequest, user_id: str) -> None:
    if body.user_id is not None and body.user_id != user_id:
        raise ForbiddenError("userId does not match the authenticated user")


@router.post("/jobs", response_model=CreateJobResponse, response_model_by_alias=True)
async def create_job(body: CreateJobRequest, current_user: CurrentUser, services: Services):
    _check_owner(body, current_user.id)
    submitted = await services.orchestrator.submit(body.to_generation_request(current_user.id))
    return CreateJobResponse(task_id=submitted.job_id)


@router.get("/jobs/{job_id}", response_model=JobStatusView, response_model_by_alias=True)
async def get_job(job_id: str, current_user: CurrentUser, services: Services):
    return await services.orchestrator.refresh(job_id, current_user.id)


@router.post("/jobs/{job_id}/save", response_model=JobStatusView, response_model_by_alias=True)
async def retry_save(job_id: str, current_user: CurrentUser, services: Services):
    """Retry materialization for a job that generated but was not saved."""
    return await services.orchestrator.retry_save(job_id, current_user.id)


@router.post("/generations", response_model=GenerationOutcome, response_model_by_alias=True)
async def run_generation(body: CreateJobRequest, current_user: CurrentUser, services: Services):
    _check_owner(body, current_user.id)
    outcome = await services.orchestrator.run(body.to_generation_request(current_user.id))
    if outcome.error is not None:
        logger.info(f"Generation ended as {outcome.kind.value}: [{outcome.error.code}] {outcome.error.message}")
    return outcome
