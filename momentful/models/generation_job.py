import uuid

from sqlalchemy import JSON, Float, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from momentful.models.base import Base, TimestampMixin, UUIDMixin

JOB_PROCESSING = "processing"
JOB_MATERIALIZING = "materializing"
JOB_SAVED = "saved"
JOB_SAVE_FAILED = "save_failed"
JOB_FAILED = "failed"
JOB_CANCELED = "canceled"
JOB_TIMED_OUT = "timed_out"

# A job in one of these states may (re)start materialization
CLAIMABLE_JOB_STATUSES = (JOB_PROCESSING, JOB_TIMED_OUT, JOB_SAVE_FAILED)


class GenerationJob(Base, UUIDMixin, TimestampMixin):
    """Local record of a job submitted to a generation provider."""

    __tablename__ = "generation_jobs"

    provider_job_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(20), nullable=False)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    source_asset_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    lineage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    prompt_text: Mapped[str] = mapped_column(Text, nullable=False)
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    ratio: Mapped[str | None] = mapped_column(String(50), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    # Status: processing, materializing, saved, save_failed, failed, canceled, timed_out
    status: Mapped[str] = mapped_column(String(50), default=JOB_PROCESSING, index=True)
    progress: Mapped[float | None] = mapped_column(Float, nullable=True)

    output_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    # edited_images.id or generated_videos.id once saved
    artifact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GenerationJob {self.provider}:{self.provider_job_id} ({self.status})>"
