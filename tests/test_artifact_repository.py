"""Tests for job, artifact and lineage persistence."""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from momentful.constants.models import ResourceType
from momentful.exceptions import (
    ForbiddenError,
    InvalidSourceReferenceError,
    LineageNotFoundError,
    PersistenceFailedError,
)
from momentful.models.artifact import EditedImage
from momentful.models.lineage import Lineage, MediaAsset
from momentful.schemas.generation import GenerationRequest
from momentful.services.artifact_repository import ArtifactRepository
from momentful.services.materializer import MaterializedArtifact
from tests.fakes import OTHER_USER_ID, USER_ID


@pytest.fixture
def repository(session_maker) -> ArtifactRepository:
    return ArtifactRepository(session_maker)


def _request(project_id, *, resource_type=ResourceType.IMAGE, owner_id=USER_ID, **origin) -> GenerationRequest:
    return GenerationRequest(
        resource_type=resource_type,
        source_reference=f"{owner_id}/{project_id}/photo.png",
        prompt_text="make it sunset",
        owner_id=owner_id,
        project_id=project_id,
        **origin,
    )


def _materialized(path: str = "user-1/p/1-edited.png") -> MaterializedArtifact:
    return MaterializedArtifact(
        bucket="edited-images",
        storage_path=path,
        content_type="image/png",
        size_bytes=1234,
        width=640,
        height=360,
    )


async def _saved_image(repository, project_id, job_id: str, **origin):
    request = _request(project_id, **origin)
    lineage_id = await repository.derive_lineage(request)
    await repository.record_submission(
        request, provider="replicate", provider_job_id=job_id, model_id="flux", lineage_id=lineage_id
    )
    job = await repository.get_job(job_id)
    return await repository.create_edited_image(uuid.uuid4(), job, _materialized(f"user-1/p/{job_id}.png"))


# =============================================================================
# Single origin
# =============================================================================


class TestSingleOrigin:
    @pytest.mark.asyncio
    async def test_row_without_origin_is_rejected(self, session_maker, project_id):
        async with session_maker() as db:
            db.add(
                EditedImage(
                    project_id=project_id,
                    user_id=USER_ID,
                    storage_path="user-1/p/x.png",
                    prompt="p",
                    ai_model="m",
                )
            )
            with pytest.raises(IntegrityError):
                await db.commit()

    @pytest.mark.asyncio
    async def test_row_with_both_origins_is_rejected(self, session_maker, project_id, source_asset_id):
        async with session_maker() as db:
            db.add(
                EditedImage(
                    project_id=project_id,
                    user_id=USER_ID,
                    source_asset_id=source_asset_id,
                    parent_id=uuid.uuid4(),
                    storage_path="user-1/p/x.png",
                    prompt="p",
                    ai_model="m",
                )
            )
            with pytest.raises(IntegrityError):
                await db.commit()

    @pytest.mark.asyncio
    async def test_repository_reports_persistence_failure(self, repository, project_id, source_asset_id):
        await repository.record_submission(
            _request(project_id, source_asset_id=source_asset_id),
            provider="replicate",
            provider_job_id="pred-1",
            model_id="flux",
            lineage_id=None,
        )
        job = await repository.get_job("pred-1")
        job.source_asset_id = None

        with pytest.raises(PersistenceFailedError):
            await repository.create_edited_image(uuid.uuid4(), job, _materialized())


# =============================================================================
# Origin checks and lineage
# =============================================================================


class TestLineage:
    @pytest.mark.asyncio
    async def test_source_lineage_is_created_once(self, repository, project_id, source_asset_id):
        request = _request(project_id, source_asset_id=source_asset_id)

        first = await repository.derive_lineage(request)
        second = await repository.derive_lineage(request)

        assert first is not None
        assert first == second

    @pytest.mark.asyncio
    async def test_lineage_links_the_media_asset(self, repository, session_maker, project_id, source_asset_id):
        async with session_maker() as db:
            db.add(
                MediaAsset(
                    id=source_asset_id,
                    project_id=project_id,
                    user_id=USER_ID,
                    storage_path=f"{USER_ID}/{project_id}/beach.png",
                    file_name="beach.png",
                    file_type="image",
                )
            )
            await db.commit()

        lineage_id = await repository.derive_lineage(_request(project_id, source_asset_id=source_asset_id))

        async with session_maker() as db:
            asset = await db.get(MediaAsset, source_asset_id)
            lineage = await db.get(Lineage, lineage_id)
        assert asset.lineage_id == lineage_id
        assert lineage.name == "beach.png"
        assert lineage.root_media_asset_id == source_asset_id

    @pytest.mark.asyncio
    async def test_explicit_lineage_wins(self, repository, project_id, source_asset_id):
        lineage_id = uuid.uuid4()

        derived = await repository.derive_lineage(
            _request(project_id, source_asset_id=source_asset_id, lineage_id=lineage_id)
        )

        assert derived == lineage_id

    @pytest.mark.asyncio
    async def test_child_inherits_parent_lineage(self, repository, project_id, source_asset_id):
        parent = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        derived = await repository.derive_lineage(_request(project_id, parent_id=parent.id))

        assert derived == parent.lineage_id

    @pytest.mark.asyncio
    async def test_missing_parent(self, repository, project_id):
        with pytest.raises(InvalidSourceReferenceError):
            await repository.validate_origin(_request(project_id, parent_id=uuid.uuid4()))

    @pytest.mark.asyncio
    async def test_foreign_parent(self, repository, project_id, source_asset_id):
        parent = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        with pytest.raises(ForbiddenError):
            await repository.validate_origin(_request(project_id, parent_id=parent.id, owner_id=OTHER_USER_ID))

    @pytest.mark.asyncio
    async def test_foreign_source_asset(self, repository, session_maker, project_id, source_asset_id):
        async with session_maker() as db:
            db.add(
                MediaAsset(
                    id=source_asset_id,
                    project_id=project_id,
                    user_id=OTHER_USER_ID,
                    storage_path="user-2/p/x.png",
                    file_type="image",
                )
            )
            await db.commit()

        with pytest.raises(ForbiddenError):
            await repository.validate_origin(_request(project_id, source_asset_id=source_asset_id))

    @pytest.mark.asyncio
    async def test_foreign_lineage(self, repository, project_id, source_asset_id):
        theirs = await repository.derive_lineage(
            _request(project_id, source_asset_id=source_asset_id, owner_id=OTHER_USER_ID)
        )

        with pytest.raises(ForbiddenError):
            await repository.validate_origin(
                _request(project_id, source_asset_id=uuid.uuid4(), lineage_id=theirs)
            )

    @pytest.mark.asyncio
    async def test_own_lineage_is_accepted(self, repository, project_id, source_asset_id):
        mine = await repository.derive_lineage(_request(project_id, source_asset_id=source_asset_id))

        await repository.validate_origin(_request(project_id, source_asset_id=uuid.uuid4(), lineage_id=mine))


# =============================================================================
# Jobs
# =============================================================================


class TestJobs:
    @pytest.mark.asyncio
    async def test_video_submission_creates_processing_row(self, repository, project_id, source_asset_id):
        video_id = uuid.uuid4()

        view = await repository.record_submission(
            _request(project_id, resource_type=ResourceType.VIDEO, source_asset_id=source_asset_id),
            provider="runway",
            provider_job_id="task-1",
            model_id="veo3.1_fast",
            lineage_id=None,
            video_id=video_id,
        )

        assert view.id == video_id
        assert view.status == "processing"
        job = await repository.get_job("task-1")
        assert job.artifact_id == video_id
        assert job.resource_type == "video"

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, repository, project_id, source_asset_id):
        await repository.record_submission(
            _request(project_id, source_asset_id=source_asset_id),
            provider="replicate",
            provider_job_id="pred-1",
            model_id="flux",
            lineage_id=None,
        )

        assert await repository.claim_job("pred-1") is True
        assert await repository.claim_job("pred-1") is False

        await repository.mark_save_failed("pred-1", "upload refused")
        assert await repository.claim_job("pred-1") is True

    @pytest.mark.asyncio
    async def test_mark_save_failed_never_raises(self, repository):
        with patch.object(repository, "update_job", AsyncMock(side_effect=PersistenceFailedError())):
            await repository.mark_save_failed("pred-1", "upload refused")

    @pytest.mark.asyncio
    async def test_artifact_reads_are_owner_checked(self, repository, project_id, source_asset_id):
        image = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        assert (await repository.get_edited_image(image.id, USER_ID)).id == image.id
        assert await repository.get_edited_image(image.id, OTHER_USER_ID) is None


# =============================================================================
# Timeline
# =============================================================================


class TestTimeline:
    @pytest.mark.asyncio
    async def test_unknown_lineage(self, repository):
        with pytest.raises(LineageNotFoundError):
            await repository.get_timeline(uuid.uuid4(), USER_ID)

    @pytest.mark.asyncio
    async def test_foreign_lineage(self, repository, project_id, source_asset_id):
        image = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        with pytest.raises(LineageNotFoundError):
            await repository.get_timeline(image.lineage_id, OTHER_USER_ID)

    @pytest.mark.asyncio
    async def test_root_is_synthesized_without_asset_row(self, repository, project_id, source_asset_id):
        image = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        timeline = await repository.get_timeline(image.lineage_id, USER_ID)

        root = timeline.nodes[0]
        assert root.id == source_asset_id
        assert root.type == "media_asset"
        assert root.storage_path is None

    @pytest.mark.asyncio
    async def test_nodes_and_edges(self, repository, session_maker, project_id, source_asset_id):
        first = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)
        second = await _saved_image(repository, project_id, "pred-2", source_asset_id=source_asset_id)
        child = await _saved_image(repository, project_id, "pred-3", parent_id=first.id)

        # creation order decides node order, not insertion order
        base = datetime(2025, 1, 1, tzinfo=timezone.utc)
        async with session_maker() as db:
            for offset, artifact in ((3, first), (1, second), (5, child)):
                row = await db.get(EditedImage, artifact.id)
                row.created_at = base + timedelta(minutes=offset)
            await db.commit()

        timeline = await repository.get_timeline(first.lineage_id, USER_ID)

        assert [node.id for node in timeline.nodes] == [source_asset_id, second.id, first.id, child.id]
        assert [(edge.source, edge.target) for edge in timeline.edges] == [
            (source_asset_id, second.id),
            (source_asset_id, first.id),
            (first.id, child.id),
        ]

    @pytest.mark.asyncio
    async def test_lineages_for_project(self, repository, project_id, source_asset_id):
        image = await _saved_image(repository, project_id, "pred-1", source_asset_id=source_asset_id)

        lineages = await repository.list_lineages(USER_ID, project_id)

        assert [lineage.id for lineage in lineages] == [image.lineage_id]
        assert await repository.list_lineages(OTHER_USER_ID, project_id) == ()
