import uuid

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from momentful.models.base import Base, TimestampMixin, UUIDMixin

# Exactly one lineage anchor: an original upload or a prior generated artifact
SINGLE_ORIGIN_CHECK = (
    "(source_asset_id IS NOT NULL AND parent_id IS NULL) OR "
    "(source_asset_id IS NULL AND parent_id IS NOT NULL)"
)

VIDEO_PROCESSING = "processing"
VIDEO_COMPLETED = "completed"
VIDEO_FAILED = "failed"


class EditedImage(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "edited_images"
    __table_args__ = (
        CheckConstraint(SINGLE_ORIGIN_CHECK, name="ck_edited_images_single_origin"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    source_asset_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    lineage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lineages.id", ondelete="SET NULL"), nullable=True, index=True
    )

    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(100), nullable=True)

    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<EditedImage {self.id} ({self.storage_path})>"


class GeneratedVideo(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "generated_videos"
    __table_args__ = (
        CheckConstraint(SINGLE_ORIGIN_CHECK, name="ck_generated_videos_single_origin"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    source_asset_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    parent_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    lineage_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("lineages.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # Status: processing, completed, failed
    status: Mapped[str] = mapped_column(String(20), default=VIDEO_PROCESSING, index=True)
    provider_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Empty until the output is stored
    storage_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    thumbnail_path: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)

    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<GeneratedVideo {self.id} ({self.status})>"
