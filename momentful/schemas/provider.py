from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from momentful.constants.models import Provider, ResourceType


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED)


class ProviderJob(BaseModel):
    """Normalized view of one provider-side job, as last read from the provider."""

    model_config = {"frozen": True}

    job_id: str
    provider: Provider
    status: JobStatus
    progress: float | None = Field(default=None, ge=0.0, le=1.0)
    output: str | list[str] | None = None
    error_detail: str | None = None
    created_at: datetime | None = None

    @property
    def output_url(self) -> str | None:
        """First output URL, if any."""
        if isinstance(self.output, list):
            return self.output[0] if self.output else None
        return self.output


@dataclass(frozen=True)
class ProviderRequest:
    """What a provider needs to start a job."""

    resource_type: ResourceType
    model_id: str
    prompt_text: str
    source_url: str
    ratio: str | None = None
