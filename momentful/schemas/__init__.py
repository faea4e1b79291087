from momentful.schemas.artifact import ArtifactView, GenerationLimitsView, LineageView, TimelineView
from momentful.schemas.errors import ErrorInfo
from momentful.schemas.generation import (
    CreateJobRequest,
    CreateJobResponse,
    GenerationOutcome,
    GenerationRequest,
    JobStatusView,
    OutcomeKind,
)
from momentful.schemas.provider import JobStatus, ProviderJob, ProviderRequest

__all__ = [
    "ArtifactView",
    "CreateJobRequest",
    "CreateJobResponse",
    "ErrorInfo",
    "GenerationLimitsView",
    "GenerationOutcome",
    "GenerationRequest",
    "JobStatus",
    "JobStatusView",
    "LineageView",
    "OutcomeKind",
    "ProviderJob",
    "ProviderRequest",
    "TimelineView",
]
