"""Replicate prediction client (FLUX Kontext image edits)."""

import logging
import math
from typing import Any

import httpx

from momentful.constants.models import (
    REPLICATE_ASPECT_RATIOS,
    Provider,
    ResourceType,
)
from momentful.exceptions import ProviderRejectedError, ValidationError
from momentful.schemas.provider import JobStatus, ProviderJob, ProviderRequest
from momentful.services.providers.base import ProviderClient, parse_timestamp

logger = logging.getLogger(__name__)

REPLICATE_STATUSES = {
    "starting": JobStatus.QUEUED,
    "processing": JobStatus.RUNNING,
    "succeeded": JobStatus.SUCCEEDED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.CANCELED,
    "aborted": JobStatus.CANCELED,
}


def to_aspect_ratio(ratio: str | None) -> str:
    """Reduce a 'W:H' or 'WxH' hint to one of Replicate's aspect ratios."""
    if not ratio:
        return "match_input_image"
    if ratio in REPLICATE_ASPECT_RATIOS:
        return ratio

    sep = ":" if ":" in ratio else "x"
    try:
        width, height = (int(p) for p in ratio.split(sep))
    except ValueError:
        return "match_input_image"
    if width <= 0 or height <= 0:
        return "match_input_image"

    divisor = math.gcd(width, height)
    reduced = f"{width // divisor}:{height // divisor}"
    return reduced if reduced in REPLICATE_ASPECT_RATIOS else "match_input_image"


def _normalize_output(output: Any) -> str | list[str] | None:
    if output is None:
        return None
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        urls = [item for item in output if isinstance(item, str)]
        return urls or None
    if isinstance(output, dict):
        for key in ("url", "image", "imageUrl", "image_url"):
            if isinstance(output.get(key), str):
                return output[key]
    return None


class ReplicateClient(ProviderClient):
    provider = Provider.REPLICATE

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        api_key: str,
        base_url: str = "https://api.replicate.com/v1",
        output_format: str = "png",
        safety_tolerance: int = 2,
    ) -> None:
        super().__init__(http, base_url=base_url, api_key=api_key)
        self._output_format = output_format
        self._safety_tolerance = safety_tolerance

    def _build_input(self, request: ProviderRequest) -> dict[str, Any]:
        return {
            "prompt": request.prompt_text,
            "input_image": request.source_url,
            "aspect_ratio": to_aspect_ratio(request.ratio),
            "output_format": self._output_format,
            "safety_tolerance": self._safety_tolerance,
        }

    async def submit(self, request: ProviderRequest) -> str:
        self._validate(request)
        if request.resource_type != ResourceType.IMAGE:
            raise ValidationError("Replicate models only support image generation")

        input_payload = self._build_input(request)
        if ":" in request.model_id:
            # owner/name:version pins an exact model version
            version = request.model_id.split(":", 1)[1]
            data = await self._send("POST", "/predictions", {"version": version, "input": input_payload})
        else:
            data = await self._send("POST", f"/models/{request.model_id}/predictions", {"input": input_payload})

        prediction_id = data.get("id")
        if not prediction_id:
            raise ProviderRejectedError(self.provider.value, 502, "Replicate response did not include a prediction id")
        logger.info(f"Replicate prediction {prediction_id} created ({request.model_id})")
        return str(prediction_id)

    async def poll_once(self, job_id: str) -> ProviderJob:
        data = await self._send("GET", f"/predictions/{job_id}")

        raw_status = str(data.get("status", ""))
        status = REPLICATE_STATUSES.get(raw_status)
        if status is None:
            logger.warning(f"Unknown Replicate status {raw_status!r} for {job_id}, treating as running")
            status = JobStatus.RUNNING

        error_detail = None
        if status in (JobStatus.FAILED, JobStatus.CANCELED):
            error = data.get("error")
            error_detail = str(error) if error else f"Prediction {raw_status}"

        return ProviderJob(
            job_id=job_id,
            provider=self.provider,
            status=status,
            output=_normalize_output(data.get("output")) if status == JobStatus.SUCCEEDED else None,
            error_detail=error_detail,
            created_at=parse_timestamp(data.get("created_at")),
        )
