import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ArtifactView(BaseModel):
    """Immutable snapshot of a generated artifact, as held in query caches."""

    model_config = ConfigDict(
        frozen=True, from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    id: uuid.UUID
    kind: Literal["edited_image", "generated_video"]
    project_id: uuid.UUID
    user_id: str
    source_asset_id: uuid.UUID | None = None
    parent_id: uuid.UUID | None = None
    lineage_id: uuid.UUID | None = None
    storage_path: str | None = None
    thumbnail_path: str | None = None
    width: int | None = None
    height: int | None = None
    duration_ms: int | None = None
    prompt: str
    ai_model: str
    name: str | None = None
    # Videos only: processing, completed, failed
    status: str | None = None
    created_at: datetime
    # True while the entry is a speculative cache write
    pending: bool = False

    @classmethod
    def from_edited_image(cls, row) -> "ArtifactView":
        return cls(
            id=row.id,
            kind="edited_image",
            project_id=row.project_id,
            user_id=row.user_id,
            source_asset_id=row.source_asset_id,
            parent_id=row.parent_id,
            lineage_id=row.lineage_id,
            storage_path=row.storage_path,
            width=row.width,
            height=row.height,
            prompt=row.prompt,
            ai_model=row.ai_model,
            name=row.name,
            created_at=row.created_at,
        )

    @classmethod
    def from_generated_video(cls, row) -> "ArtifactView":
        return cls(
            id=row.id,
            kind="generated_video",
            project_id=row.project_id,
            user_id=row.user_id,
            source_asset_id=row.source_asset_id,
            parent_id=row.parent_id,
            lineage_id=row.lineage_id,
            storage_path=row.storage_path,
            thumbnail_path=row.thumbnail_path,
            width=row.width,
            height=row.height,
            duration_ms=row.duration_ms,
            prompt=row.prompt,
            ai_model=row.ai_model,
            name=row.name,
            status=row.status,
            created_at=row.created_at,
        )


class LineageView(BaseModel):
    model_config = ConfigDict(
        frozen=True, from_attributes=True, alias_generator=to_camel, populate_by_name=True
    )

    id: uuid.UUID
    project_id: uuid.UUID
    user_id: str
    root_media_asset_id: uuid.UUID
    name: str | None = None
    created_at: datetime


class TimelineNode(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: uuid.UUID
    type: Literal["media_asset", "edited_image", "generated_video"]
    storage_path: str | None = None
    thumbnail_path: str | None = None
    prompt: str | None = None
    status: str | None = None
    created_at: datetime


class TimelineEdge(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    source: uuid.UUID
    target: uuid.UUID


class TimelineView(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    lineage_id: uuid.UUID
    nodes: tuple[TimelineNode, ...] = ()
    edges: tuple[TimelineEdge, ...] = ()


class GenerationLimitsView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    images_remaining: int
    videos_remaining: int
    images_limit: int
    videos_limit: int
