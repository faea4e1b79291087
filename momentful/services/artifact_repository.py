"""Database access for generation jobs, artifacts and lineages.

Every public method opens its own short session. Writes that follow a
successful generation raise PersistenceFailedError so the caller can report
"generated but not saved" instead of a hard failure; reads let database
errors propagate.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from momentful.constants.models import ResourceType
from momentful.exceptions import (
    ForbiddenError,
    InvalidSourceReferenceError,
    LineageNotFoundError,
    PersistenceFailedError,
)
from momentful.models.artifact import VIDEO_COMPLETED, VIDEO_FAILED, VIDEO_PROCESSING, EditedImage, GeneratedVideo
from momentful.models.generation_job import (
    CLAIMABLE_JOB_STATUSES,
    JOB_MATERIALIZING,
    JOB_PROCESSING,
    JOB_SAVE_FAILED,
    JOB_SAVED,
    GenerationJob,
)
from momentful.models.lineage import Lineage, MediaAsset
from momentful.schemas.artifact import ArtifactView, LineageView, TimelineEdge, TimelineNode, TimelineView
from momentful.schemas.generation import GenerationRequest
from momentful.services.materializer import MaterializedArtifact

logger = logging.getLogger(__name__)


class ArtifactRepository:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    @asynccontextmanager
    async def _writing(self, action: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_maker() as db:
                yield db
        except SQLAlchemyError as e:
            logger.error(f"Database error while {action}: {e}")
            raise PersistenceFailedError() from e

    # =========================================================================
    # Origin and lineage
    # =========================================================================

    async def validate_origin(self, request: GenerationRequest) -> None:
        """Check that the request's parent, source asset and lineage belong to its owner."""
        async with self._session_maker() as db:
            if request.parent_id is not None:
                parent = await self._find_artifact(db, request.parent_id)
                if parent is None:
                    raise InvalidSourceReferenceError(f"Parent artifact not found: {request.parent_id}")
                if parent.user_id != request.owner_id:
                    raise ForbiddenError("Parent artifact belongs to another user")
            if request.source_asset_id is not None:
                asset = await db.get(MediaAsset, request.source_asset_id)
                if asset is not None and asset.user_id != request.owner_id:
                    raise ForbiddenError("Source asset belongs to another user")
            if request.lineage_id is not None:
                lineage = await db.get(Lineage, request.lineage_id)
                if lineage is not None and lineage.user_id != request.owner_id:
                    raise ForbiddenError("Lineage belongs to another user")

    async def _find_artifact(self, db: AsyncSession, artifact_id: uuid.UUID) -> EditedImage | GeneratedVideo | None:
        image = await db.get(EditedImage, artifact_id)
        if image is not None:
            return image
        return await db.get(GeneratedVideo, artifact_id)

    async def _lineage_for_source(self, user_id: str, project_id: uuid.UUID, source_asset_id: uuid.UUID) -> uuid.UUID:
        """Get or create the lineage rooted at ``source_asset_id``."""
        async with self._writing(f"creating lineage for asset {source_asset_id}") as db:
            lineage_id = await db.scalar(
                select(Lineage.id).where(Lineage.root_media_asset_id == source_asset_id)
            )
            if lineage_id is not None:
                return lineage_id

            asset = await db.get(MediaAsset, source_asset_id)
            if asset is not None and asset.lineage_id is not None:
                return asset.lineage_id

            lineage = Lineage(
                project_id=project_id,
                user_id=user_id,
                root_media_asset_id=source_asset_id,
                name=asset.file_name if asset is not None else None,
            )
            db.add(lineage)
            try:
                await db.flush()
                if asset is not None:
                    asset.lineage_id = lineage.id
                await db.commit()
            except IntegrityError:
                # Another request created the lineage first
                await db.rollback()
                return await db.scalar(
                    select(Lineage.id).where(Lineage.root_media_asset_id == source_asset_id)
                )
            logger.info(f"Created lineage {lineage.id} rooted at asset {source_asset_id}")
            return lineage.id

    async def derive_lineage(self, request: GenerationRequest) -> uuid.UUID | None:
        if request.lineage_id is not None:
            return request.lineage_id
        if request.parent_id is not None:
            async with self._writing(f"reading parent {request.parent_id}") as db:
                parent = await self._find_artifact(db, request.parent_id)
                return parent.lineage_id if parent is not None else None
        if request.source_asset_id is not None:
            return await self._lineage_for_source(request.owner_id, request.project_id, request.source_asset_id)
        return None

    # =========================================================================
    # Jobs
    # =========================================================================

    async def record_submission(
        self,
        request: GenerationRequest,
        *,
        provider: str,
        provider_job_id: str,
        model_id: str,
        lineage_id: uuid.UUID | None,
        video_id: uuid.UUID | None = None,
    ) -> ArtifactView | None:
        """Record a submitted job, plus its ``processing`` video row for video jobs."""
        async with self._writing(f"recording job {provider_job_id}") as db:
            job = GenerationJob(
                provider_job_id=provider_job_id,
                provider=provider,
                resource_type=request.resource_type.value,
                user_id=request.owner_id,
                project_id=request.project_id,
                source_asset_id=request.source_asset_id,
                parent_id=request.parent_id,
                lineage_id=lineage_id,
                prompt_text=request.prompt_text,
                model_id=model_id,
                ratio=request.ratio,
                name=request.name,
                context=request.context,
                status=JOB_PROCESSING,
            )
            db.add(job)

            video = None
            if request.resource_type == ResourceType.VIDEO:
                video = GeneratedVideo(
                    id=video_id or uuid.uuid4(),
                    project_id=request.project_id,
                    user_id=request.owner_id,
                    source_asset_id=request.source_asset_id,
                    parent_id=request.parent_id,
                    lineage_id=lineage_id,
                    status=VIDEO_PROCESSING,
                    provider_job_id=provider_job_id,
                    prompt=request.prompt_text,
                    ai_model=model_id,
                    name=request.name,
                )
                db.add(video)
                job.artifact_id = video.id

            await db.commit()
            logger.info(f"Recorded {provider} job {provider_job_id} for user {request.owner_id}")
            return ArtifactView.from_generated_video(video) if video is not None else None

    async def get_job(self, provider_job_id: str) -> GenerationJob | None:
        async with self._session_maker() as db:
            result = await db.execute(
                select(GenerationJob).where(GenerationJob.provider_job_id == provider_job_id)
            )
            return result.scalar_one_or_none()

    async def claim_job(self, provider_job_id: str) -> bool:
        """Atomically move a job into ``materializing``. False if someone else holds it."""
        async with self._writing(f"claiming job {provider_job_id}") as db:
            result = await db.execute(
                update(GenerationJob)
                .where(
                    GenerationJob.provider_job_id == provider_job_id,
                    GenerationJob.status.in_(CLAIMABLE_JOB_STATUSES),
                )
                .values(status=JOB_MATERIALIZING)
                .returning(GenerationJob.id)
            )
            claimed = result.scalar_one_or_none() is not None
            await db.commit()
        return claimed

    async def update_job(self, provider_job_id: str, **values) -> None:
        async with self._writing(f"updating job {provider_job_id}") as db:
            await db.execute(
                update(GenerationJob).where(GenerationJob.provider_job_id == provider_job_id).values(**values)
            )
            await db.commit()

    async def mark_saved(self, provider_job_id: str, artifact_id: uuid.UUID) -> None:
        await self.update_job(
            provider_job_id, status=JOB_SAVED, artifact_id=artifact_id, progress=1.0, error_detail=None
        )

    async def mark_save_failed(self, provider_job_id: str, detail: str) -> None:
        """Best effort: a job stuck in ``materializing`` is logged, not raised."""
        try:
            await self.update_job(provider_job_id, status=JOB_SAVE_FAILED, error_detail=detail)
        except PersistenceFailedError:
            logger.error(f"Could not mark job {provider_job_id} as save_failed")

    # =========================================================================
    # Artifacts
    # =========================================================================

    async def create_edited_image(
        self, artifact_id: uuid.UUID, job: GenerationJob, artifact: MaterializedArtifact
    ) -> ArtifactView:
        async with self._writing(f"saving edited image for job {job.provider_job_id}") as db:
            image = EditedImage(
                id=artifact_id,
                project_id=job.project_id,
                user_id=job.user_id,
                source_asset_id=job.source_asset_id,
                parent_id=job.parent_id,
                lineage_id=job.lineage_id,
                storage_path=artifact.storage_path,
                width=artifact.width,
                height=artifact.height,
                file_size=artifact.size_bytes,
                mime_type=artifact.content_type,
                prompt=job.prompt_text,
                ai_model=job.model_id,
                name=job.name,
            )
            db.add(image)
            await db.commit()
            logger.info(f"Saved edited image {image.id} at {image.storage_path}")
            return ArtifactView.from_edited_image(image)

    async def complete_video(self, video_id: uuid.UUID, artifact: MaterializedArtifact) -> ArtifactView:
        async with self._writing(f"completing video {video_id}") as db:
            video = await db.get(GeneratedVideo, video_id)
            if video is None:
                raise PersistenceFailedError(f"Video row {video_id} is missing")
            video.status = VIDEO_COMPLETED
            video.storage_path = artifact.storage_path
            video.thumbnail_path = artifact.thumbnail_path
            video.duration_ms = artifact.duration_ms
            video.width = artifact.width
            video.height = artifact.height
            video.file_size = artifact.size_bytes
            video.error_message = None
            await db.commit()
            logger.info(f"Video {video_id} completed at {video.storage_path}")
            return ArtifactView.from_generated_video(video)

    async def fail_video(self, video_id: uuid.UUID, message: str) -> ArtifactView | None:
        async with self._writing(f"failing video {video_id}") as db:
            video = await db.get(GeneratedVideo, video_id)
            if video is None:
                return None
            video.status = VIDEO_FAILED
            video.error_message = message
            await db.commit()
            return ArtifactView.from_generated_video(video)

    async def get_edited_image(self, image_id: uuid.UUID, user_id: str) -> ArtifactView | None:
        async with self._session_maker() as db:
            image = await db.get(EditedImage, image_id)
            if image is None or image.user_id != user_id:
                return None
            return ArtifactView.from_edited_image(image)

    async def get_generated_video(self, video_id: uuid.UUID, user_id: str) -> ArtifactView | None:
        async with self._session_maker() as db:
            video = await db.get(GeneratedVideo, video_id)
            if video is None or video.user_id != user_id:
                return None
            return ArtifactView.from_generated_video(video)

    async def get_artifact_for_job(self, job: GenerationJob) -> ArtifactView | None:
        if job.artifact_id is None:
            return None
        if job.resource_type == ResourceType.VIDEO.value:
            return await self.get_generated_video(job.artifact_id, job.user_id)
        return await self.get_edited_image(job.artifact_id, job.user_id)

    async def delete_edited_image(self, image_id: uuid.UUID) -> None:
        async with self._writing(f"deleting edited image {image_id}") as db:
            await db.execute(delete(EditedImage).where(EditedImage.id == image_id))
            await db.commit()

    async def delete_generated_video(self, video_id: uuid.UUID) -> None:
        async with self._writing(f"deleting generated video {video_id}") as db:
            await db.execute(delete(GeneratedVideo).where(GeneratedVideo.id == video_id))
            await db.commit()

    # =========================================================================
    # Lists
    # =========================================================================

    async def list_edited_images(
        self,
        user_id: str,
        *,
        project_id: uuid.UUID | None = None,
        source_asset_id: uuid.UUID | None = None,
        lineage_id: uuid.UUID | None = None,
    ) -> tuple[ArtifactView, ...]:
        query = select(EditedImage).where(EditedImage.user_id == user_id)
        if project_id is not None:
            query = query.where(EditedImage.project_id == project_id)
        if source_asset_id is not None:
            query = query.where(EditedImage.source_asset_id == source_asset_id)
        if lineage_id is not None:
            query = query.where(EditedImage.lineage_id == lineage_id)

        async with self._session_maker() as db:
            result = await db.execute(query.order_by(EditedImage.created_at.desc()))
            return tuple(ArtifactView.from_edited_image(row) for row in result.scalars().all())

    async def list_generated_videos(self, user_id: str, project_id: uuid.UUID) -> tuple[ArtifactView, ...]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(GeneratedVideo)
                .where(GeneratedVideo.user_id == user_id, GeneratedVideo.project_id == project_id)
                .order_by(GeneratedVideo.created_at.desc())
            )
            return tuple(ArtifactView.from_generated_video(row) for row in result.scalars().all())

    async def list_lineages(self, user_id: str, project_id: uuid.UUID) -> tuple[LineageView, ...]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(Lineage)
                .where(Lineage.user_id == user_id, Lineage.project_id == project_id)
                .order_by(Lineage.created_at.desc())
            )
            return tuple(LineageView.model_validate(row) for row in result.scalars().all())

    async def get_timeline(self, lineage_id: uuid.UUID, user_id: str) -> TimelineView:
        """Every artifact in a lineage as a graph rooted at the original upload.

        Nodes are ordered by creation time. An artifact's incoming edge comes
        from its parent when it has one, otherwise from the root asset.
        """
        async with self._session_maker() as db:
            lineage = await db.get(Lineage, lineage_id)
            if lineage is None or lineage.user_id != user_id:
                raise LineageNotFoundError(str(lineage_id))

            root = await db.get(MediaAsset, lineage.root_media_asset_id)
            images = (
                await db.execute(select(EditedImage).where(EditedImage.lineage_id == lineage_id))
            ).scalars().all()
            videos = (
                await db.execute(select(GeneratedVideo).where(GeneratedVideo.lineage_id == lineage_id))
            ).scalars().all()

        nodes = [
            TimelineNode(
                id=lineage.root_media_asset_id,
                type="media_asset",
                storage_path=root.storage_path if root is not None else None,
                created_at=root.created_at if root is not None else lineage.created_at,
            )
        ]
        edges = []
        for image in images:
            nodes.append(
                TimelineNode(
                    id=image.id,
                    type="edited_image",
                    storage_path=image.storage_path,
                    prompt=image.prompt,
                    created_at=image.created_at,
                )
            )
            edges.append(TimelineEdge(source=image.parent_id or lineage.root_media_asset_id, target=image.id))
        for video in videos:
            nodes.append(
                TimelineNode(
                    id=video.id,
                    type="generated_video",
                    storage_path=video.storage_path,
                    thumbnail_path=video.thumbnail_path,
                    prompt=video.prompt,
                    status=video.status,
                    created_at=video.created_at,
                )
            )
            edges.append(TimelineEdge(source=video.parent_id or lineage.root_media_asset_id, target=video.id))

        # Root first, then artifacts in creation order
        nodes[1:] = sorted(nodes[1:], key=lambda node: node.created_at)
        order = {node.id: i for i, node in enumerate(nodes)}
        edges.sort(key=lambda edge: order.get(edge.target, len(order)))
        return TimelineView(lineage_id=lineage_id, nodes=tuple(nodes), edges=tuple(edges))
