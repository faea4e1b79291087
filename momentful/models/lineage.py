import uuid

from sqlalchemy import JSON, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from momentful.models.base import Base, TimestampMixin, UUIDMixin


class Lineage(Base, UUIDMixin, TimestampMixin):
    """Groups every artifact derived from one original upload."""

    __tablename__ = "lineages"

    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    root_media_asset_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    lineage_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Lineage {self.id} root={self.root_media_asset_id}>"


class MediaAsset(Base, UUIDMixin, TimestampMixin):
    """Original upload that generated artifacts descend from."""

    __tablename__ = "media_assets"

    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # Type: image, video
    file_type: Mapped[str] = mapped_column(String(20), nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lineage_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<MediaAsset {self.id} ({self.file_type})>"
