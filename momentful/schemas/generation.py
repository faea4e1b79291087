"""Generation request, job status and outcome models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from momentful.constants.error_codes import ErrorKind
from momentful.constants.models import ResourceType
from momentful.schemas.artifact import ArtifactView
from momentful.schemas.errors import ErrorInfo
from momentful.schemas.provider import JobStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@dataclass(frozen=True)
class GenerationRequest:
    """One user action. Immutable once submitted."""

    resource_type: ResourceType
    source_reference: str
    prompt_text: str
    owner_id: str
    project_id: uuid.UUID
    model_id: str | None = None
    ratio: str | None = None
    source_asset_id: uuid.UUID | None = None
    parent_id: uuid.UUID | None = None
    lineage_id: uuid.UUID | None = None
    name: str | None = None
    context: dict[str, Any] | None = field(default=None, hash=False, compare=False)


class CreateJobRequest(CamelModel):
    """Body of POST /api/jobs."""

    resource_type: Literal["image", "video"]
    source_reference: str
    prompt_text: str
    model_id: str | None = None
    ratio: str | None = None
    user_id: str | None = None
    project_id: uuid.UUID
    source_asset_id: uuid.UUID | None = None
    parent_id: uuid.UUID | None = None
    lineage_id: uuid.UUID | None = None
    name: str | None = None
    context: dict[str, Any] | None = None

    @field_validator("prompt_text", "source_reference")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("ratio")
    @classmethod
    def _ratio_shape(cls, v: str | None) -> str | None:
        if v is None or v == "match_input_image":
            return v
        sep = ":" if ":" in v else "x"
        parts = v.split(sep)
        if len(parts) != 2 or not all(p.isdigit() and int(p) > 0 for p in parts):
            raise ValueError("ratio must look like 'W:H'")
        return v

    @model_validator(mode="after")
    def _single_origin(self) -> "CreateJobRequest":
        if (self.source_asset_id is None) == (self.parent_id is None):
            raise ValueError("exactly one of sourceAssetId or parentId is required")
        return self

    def to_generation_request(self, owner_id: str) -> GenerationRequest:
        return GenerationRequest(
            resource_type=ResourceType(self.resource_type),
            source_reference=self.source_reference,
            prompt_text=self.prompt_text,
            owner_id=owner_id,
            project_id=self.project_id,
            model_id=self.model_id,
            ratio=self.ratio,
            source_asset_id=self.source_asset_id,
            parent_id=self.parent_id,
            lineage_id=self.lineage_id,
            name=self.name,
            context=self.context,
        )


@dataclass(frozen=True)
class SubmittedJob:
    """A job accepted by a provider and recorded locally."""

    job_id: str
    provider: str
    model_id: str
    resource_type: ResourceType
    remaining_after: int | None
    video_id: uuid.UUID | None = None


class CreateJobResponse(CamelModel):
    task_id: str
    status: Literal["processing"] = "processing"


class JobStatusView(CamelModel):
    """ProviderJob-shaped status body plus the local save state."""

    id: str
    provider: str
    resource_type: ResourceType
    status: JobStatus
    progress: float | None = None
    output: str | list[str] | None = None
    error: str | None = None
    created_at: datetime | None = None
    saved: bool = False
    artifact_id: uuid.UUID | None = None
    storage_path: str | None = None
    width: int | None = None
    height: int | None = None
    duration_ms: int | None = None
    save_error: ErrorInfo | None = None


class OutcomeKind(str, Enum):
    SAVED = "saved"
    GENERATED_NOT_SAVED = "generated_not_saved"
    FAILED = "failed"


class GenerationOutcome(CamelModel):
    """Terminal result of one end-to-end generation."""

    kind: OutcomeKind
    job_id: str | None = None
    poll_state: str | None = None
    output_url: str | None = None
    artifact: ArtifactView | None = None
    error: ErrorInfo | None = None
    warnings: list[str] = []

    @property
    def saved(self) -> bool:
        return self.kind == OutcomeKind.SAVED

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None
