"""Runway image and video generation client."""

import logging

import httpx

from momentful.constants.models import (
    RUNWAY_DEFAULT_RATIO,
    RUNWAY_IMAGE_RATIOS,
    RUNWAY_VIDEO_DURATIONS,
    RUNWAY_VIDEO_RATIOS,
    Provider,
    ResourceType,
)
from momentful.exceptions import ProviderRejectedError
from momentful.schemas.provider import JobStatus, ProviderJob, ProviderRequest
from momentful.services.providers.base import ProviderClient, parse_timestamp

logger = logging.getLogger(__name__)

RUNWAY_STATUSES = {
    "PENDING": JobStatus.QUEUED,
    "THROTTLED": JobStatus.QUEUED,
    "RUNNING": JobStatus.RUNNING,
    "SUCCEEDED": JobStatus.SUCCEEDED,
    "FAILED": JobStatus.FAILED,
    "CANCELLED": JobStatus.CANCELED,
}


class RunwayClient(ProviderClient):
    provider = Provider.RUNWAY

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = "https://api.dev.runwayml.com/v1",
        api_version: str = "2024-11-06",
    ) -> None:
        super().__init__(http, base_url=base_url, api_key=api_key)
        self._api_version = api_version

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["X-Runway-Version"] = self._api_version
        return headers

    def _image_ratio(self, ratio: str | None) -> str:
        if ratio in RUNWAY_IMAGE_RATIOS:
            return ratio
        if ratio:
            logger.warning(f"Unsupported Runway image ratio {ratio}, using {RUNWAY_DEFAULT_RATIO}")
        return RUNWAY_DEFAULT_RATIO

    def _video_ratio(self, model_id: str, ratio: str | None) -> str:
        supported = RUNWAY_VIDEO_RATIOS.get(model_id, frozenset({RUNWAY_DEFAULT_RATIO}))
        if ratio in supported:
            return ratio
        if ratio:
            logger.warning(f"Unsupported Runway {model_id} ratio {ratio}, using {RUNWAY_DEFAULT_RATIO}")
        return RUNWAY_DEFAULT_RATIO

    async def submit(self, request: ProviderRequest) -> str:
        self._validate(request)

        if request.resource_type == ResourceType.VIDEO:
            path = "/image_to_video"
            body = {
                "model": request.model_id,
                "promptImage": request.source_url,
                "promptText": request.prompt_text,
                "ratio": self._video_ratio(request.model_id, request.ratio),
                "duration": RUNWAY_VIDEO_DURATIONS.get(request.model_id, 4),
            }
        else:
            path = "/text_to_image"
            body = {
                "model": request.model_id,
                "promptText": request.prompt_text,
                "ratio": self._image_ratio(request.ratio),
                "referenceImages": [{"uri": request.source_url, "tag": "source"}],
            }

        data = await self._send("POST", path, body)
        task_id = data.get("id")
        if not task_id:
            raise ProviderRejectedError(self.provider.value, 502, "Runway response did not include a task id")
        logger.info(f"Runway task {task_id} created ({request.resource_type.value}, {request.model_id})")
        return str(task_id)

    async def poll_once(self, job_id: str) -> ProviderJob:
        data = await self._send("GET", f"/tasks/{job_id}")

        raw_status = str(data.get("status", "")).upper()
        status = RUNWAY_STATUSES.get(raw_status)
        if status is None:
            logger.warning(f"Unknown Runway status {raw_status!r} for task {job_id}, treating as running")
            status = JobStatus.RUNNING

        error_detail = None
        if status in (JobStatus.FAILED, JobStatus.CANCELED):
            failure = data.get("failure") or "Runway task did not complete"
            code = data.get("failureCode")
            error_detail = f"{failure} ({code})" if code else failure

        progress = data.get("progress")
        if isinstance(progress, (int, float)):
            progress = min(max(float(progress), 0.0), 1.0)
        else:
            progress = None

        return ProviderJob(
            job_id=job_id,
            provider=self.provider,
            status=status,
            progress=progress,
            output=data.get("output") or None,
            error_detail=error_detail,
            created_at=parse_timestamp(data.get("createdAt")),
        )
