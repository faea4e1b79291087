"""End-to-end generation flows through the orchestrator.

Providers, storage and the polling clock are fakes; the database is real
(SQLite in memory) so claims, lineages and quota run their actual queries.
"""

import asyncio
import uuid
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import update

from momentful.cache import keys
from momentful.constants.error_codes import ErrorKind
from momentful.constants.models import ResourceType
from momentful.exceptions import (
    ArtifactNotFoundError,
    ForbiddenError,
    JobNotFoundError,
    JobTrackingError,
    PersistenceFailedError,
    ProviderBillingLimitError,
    ProviderUnreachableError,
    QuotaExceededError,
    StorageError,
    UnsupportedModelError,
    ValidationError,
)
from momentful.models.generation_limit import GenerationLimit
from momentful.schemas.generation import GenerationRequest, OutcomeKind
from momentful.schemas.provider import JobStatus
from momentful.services.orchestrator import NOT_SAVED_WARNING
from momentful.utils.media_info import MediaInfo
from tests.fakes import OTHER_USER_ID, USER_ID, png_bytes

IMAGE_URL = "https://replicate.test/out/pred-1.png"
VIDEO_URL = "https://runway.test/out/task-1.mp4"


def _image_request(project_id, source_asset_id=None, **kwargs) -> GenerationRequest:
    return GenerationRequest(
        resource_type=ResourceType.IMAGE,
        source_reference=kwargs.pop("source_reference", f"{USER_ID}/{project_id}/photo.png"),
        prompt_text=kwargs.pop("prompt_text", "make it sunset"),
        owner_id=kwargs.pop("owner_id", USER_ID),
        project_id=project_id,
        source_asset_id=source_asset_id,
        **kwargs,
    )


def _video_request(project_id, source_asset_id) -> GenerationRequest:
    return GenerationRequest(
        resource_type=ResourceType.VIDEO,
        source_reference=f"{USER_ID}/{project_id}/photo.png",
        prompt_text="slow pan across the beach",
        owner_id=USER_ID,
        project_id=project_id,
        source_asset_id=source_asset_id,
        ratio="1280:720",
    )


async def _set_images_remaining(services, remaining: int) -> None:
    await services.quota.get_limits(USER_ID)
    async with services.session_maker() as db:
        await db.execute(
            update(GenerationLimit).where(GenerationLimit.user_id == USER_ID).values(images_remaining=remaining)
        )
        await db.commit()


@pytest.fixture
def serve_image(artifact_server, image_provider):
    artifact_server.serve(IMAGE_URL, png_bytes(640, 360))
    image_provider.script(JobStatus.SUCCEEDED, output=IMAGE_URL)


@pytest.fixture
def video_tools():
    def fake_frame(video_path, output_path, offset, width):
        with open(output_path, "wb") as f:
            f.write(b"jpeg")

    with (
        patch(
            "momentful.services.materializer.get_video_info",
            return_value=MediaInfo(width=1280, height=720, duration_ms=4000),
        ),
        patch("momentful.services.materializer.extract_video_frame", side_effect=fake_frame),
    ):
        yield


# =============================================================================
# Quota and submission
# =============================================================================


class TestSubmission:
    @pytest.mark.asyncio
    async def test_last_unit_then_quota_exceeded(
        self,
        services,
        project_id,
        source_asset_id,
        serve_image,
        image_provider,
    ):
        await _set_images_remaining(services, 1)
        request = _image_request(project_id, source_asset_id)

        first = await services.orchestrator.run(request)
        second = await services.orchestrator.run(request)

        assert first.kind == OutcomeKind.SAVED
        assert second.kind == OutcomeKind.FAILED
        assert second.error.kind == ErrorKind.QUOTA_EXCEEDED
        assert len(image_provider.submitted) == 1
        assert (await services.quota.get_limits(USER_ID)).images_remaining == 0

    @pytest.mark.asyncio
    async def test_quota_exceeded_is_raised_by_submit(self, services, project_id, source_asset_id, image_provider):
        await _set_images_remaining(services, 0)

        with pytest.raises(QuotaExceededError):
            await services.orchestrator.submit(_image_request(project_id, source_asset_id))
        assert image_provider.submitted == []

    @pytest.mark.asyncio
    async def test_submit_records_job_and_signs_source(
        self,
        services,
        project_id,
        source_asset_id,
        storage,
        image_provider,
    ):
        submitted = await services.orchestrator.submit(_image_request(project_id, source_asset_id, ratio="16:9"))

        assert submitted.job_id == "pred-1"
        assert submitted.remaining_after == 9
        assert storage.calls[0] == ("sign", "user-uploads", f"{USER_ID}/{project_id}/photo.png")
        assert image_provider.submitted[0].source_url.startswith("https://storage.test/user-uploads/")
        job = await services.repository.get_job("pred-1")
        assert job.status == "processing"
        assert job.lineage_id is not None

    @pytest.mark.asyncio
    async def test_bad_source_is_rejected_before_quota(self, services, project_id, source_asset_id, image_provider):
        request = _image_request(project_id, source_asset_id, source_reference=f"{OTHER_USER_ID}/p/photo.png")

        with pytest.raises(ForbiddenError):
            await services.orchestrator.submit(request)

        assert (await services.quota.get_limits(USER_ID)).images_remaining == 10
        assert image_provider.submitted == []

    @pytest.mark.asyncio
    async def test_unsupported_model(self, services, project_id, source_asset_id):
        with pytest.raises(UnsupportedModelError):
            await services.orchestrator.submit(_image_request(project_id, source_asset_id, model_id="dall-e-9"))

    @pytest.mark.asyncio
    async def test_origin_is_required(self, services, project_id):
        with pytest.raises(ValidationError):
            await services.orchestrator.submit(_image_request(project_id, None))

    @pytest.mark.asyncio
    async def test_provider_failure_keeps_the_charge(self, services, project_id, source_asset_id, image_provider):
        image_provider.submit_error = ProviderBillingLimitError("replicate", title="Limit", detail="No credits")

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error.kind == ErrorKind.PROVIDER_BILLING_LIMIT
        assert (await services.quota.get_limits(USER_ID)).images_remaining == 9

    @pytest.mark.asyncio
    async def test_untracked_submission(self, services, project_id, source_asset_id):
        with patch.object(
            services.repository, "record_submission", AsyncMock(side_effect=PersistenceFailedError())
        ):
            with pytest.raises(JobTrackingError):
                await services.orchestrator.submit(_image_request(project_id, source_asset_id))


# =============================================================================
# End to end
# =============================================================================


class TestRun:
    @pytest.mark.asyncio
    async def test_polls_then_saves(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        image_provider,
        scheduler,
        storage,
    ):
        artifact_server.serve(IMAGE_URL, png_bytes(640, 360))
        image_provider.script(JobStatus.RUNNING, JobStatus.RUNNING, JobStatus.SUCCEEDED, output=IMAGE_URL)
        seen = []

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id), on_progress=seen.append)

        assert outcome.kind == OutcomeKind.SAVED
        assert outcome.saved
        assert outcome.output_url == IMAGE_URL
        assert len(seen) == 2
        assert scheduler.sleeps == [2.0, 2.0]

        artifact = outcome.artifact
        assert (artifact.width, artifact.height) == (640, 360)
        assert artifact.source_asset_id == source_asset_id
        assert ("edited-images", artifact.storage_path) in storage.objects

        job = await services.repository.get_job("pred-1")
        assert job.status == "saved"
        assert job.artifact_id == artifact.id
        assert job.output_url == IMAGE_URL

        images = await services.orchestrator.edited_images(USER_ID, project_id=project_id)
        assert [image.id for image in images] == [artifact.id]

    @pytest.mark.asyncio
    async def test_storage_failure_is_generated_not_saved(
        self,
        services,
        project_id,
        source_asset_id,
        serve_image,
        storage,
    ):
        scope = keys.edited_images_by_project(project_id, USER_ID)
        await services.orchestrator.edited_images(USER_ID, project_id=project_id)
        storage.fail_upload = StorageError("bucket is read-only", reason="permission")

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.GENERATED_NOT_SAVED
        assert outcome.warnings == [NOT_SAVED_WARNING]
        assert outcome.output_url == IMAGE_URL
        assert outcome.error_kind == ErrorKind.MATERIALIZATION_FAILED
        assert outcome.error.code == "ARTIFACT_STORAGE_FAILED"
        assert services.query_client.get_query_data(scope) == ()
        assert not services.query_client.is_invalidated(scope)
        assert (await services.repository.get_job("pred-1")).status == "save_failed"

    @pytest.mark.asyncio
    async def test_retry_save_after_storage_failure(self, services, project_id, source_asset_id, serve_image, storage):
        storage.fail_upload = StorageError("unavailable", reason="unavailable", retryable=True)
        await services.orchestrator.run(_image_request(project_id, source_asset_id))
        storage.fail_upload = None

        view = await services.orchestrator.retry_save("pred-1", USER_ID)

        assert view.saved
        assert view.artifact_id is not None
        assert view.save_error is None
        assert (view.width, view.height) == (640, 360)

    @pytest.mark.asyncio
    async def test_provider_failure(self, services, project_id, source_asset_id, image_provider):
        image_provider.script(JobStatus.RUNNING, JobStatus.FAILED)

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error_kind == ErrorKind.GENERATION_FAILED
        assert (await services.repository.get_job("pred-1")).status == "failed"

    @pytest.mark.asyncio
    async def test_timeout_then_late_success(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        image_provider,
    ):
        image_provider.script(JobStatus.RUNNING)

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error.kind == ErrorKind.POLLING_TIMED_OUT
        assert len(image_provider.polled) == 5
        assert (await services.repository.get_job("pred-1")).status == "timed_out"

        artifact_server.serve(IMAGE_URL, png_bytes())
        image_provider.script(JobStatus.SUCCEEDED, output=IMAGE_URL)
        view = await services.orchestrator.refresh("pred-1", USER_ID)

        assert view.saved

    @pytest.mark.asyncio
    async def test_unreachable_provider_then_late_success(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        image_provider,
    ):
        image_provider.script(ProviderUnreachableError("replicate"))

        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.error.kind == ErrorKind.PROVIDER_UNREACHABLE
        assert len(image_provider.polled) == 3
        # unknown provider state: the job stays claimable
        assert (await services.repository.get_job("pred-1")).status == "timed_out"

        artifact_server.serve(IMAGE_URL, png_bytes())
        image_provider.script(JobStatus.SUCCEEDED, output=IMAGE_URL)
        view = await services.orchestrator.refresh("pred-1", USER_ID)

        assert view.saved
        assert view.artifact_id is not None


# =============================================================================
# Status refresh
# =============================================================================


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_saves_succeeded_job(self, services, project_id, source_asset_id, serve_image):
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        view = await services.orchestrator.refresh("pred-1", USER_ID)

        assert view.status == JobStatus.SUCCEEDED
        assert view.saved
        assert view.output == IMAGE_URL
        assert view.storage_path is not None

    @pytest.mark.asyncio
    async def test_repeated_refresh_saves_once(self, services, project_id, source_asset_id, serve_image, storage):
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        first = await services.orchestrator.refresh("pred-1", USER_ID)
        second = await services.orchestrator.refresh("pred-1", USER_ID)

        uploads = [call for call in storage.calls if call[0] == "upload"]
        assert len(uploads) == 1
        assert first.artifact_id == second.artifact_id

    @pytest.mark.asyncio
    async def test_stale_job_cannot_claim_twice(self, services, project_id, source_asset_id, serve_image):
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))
        job = await services.repository.get_job("pred-1")
        provider_job = await services.providers.get(job.provider).poll_once("pred-1")

        first = await services.orchestrator.complete(job, provider_job)
        second = await services.orchestrator.complete(job, provider_job)

        assert first.saved and first.claimed
        assert second.claimed is False
        images = await services.repository.list_edited_images(USER_ID, project_id=project_id)
        assert len(images) == 1

    @pytest.mark.asyncio
    async def test_running_job_reports_progress(self, services, project_id, source_asset_id, image_provider):
        image_provider.script(JobStatus.RUNNING)
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        view = await services.orchestrator.refresh("pred-1", USER_ID)

        assert view.status == JobStatus.RUNNING
        assert view.progress == 0.5
        assert not view.saved
        assert (await services.repository.get_job("pred-1")).progress == 0.5

    @pytest.mark.asyncio
    async def test_foreign_job_is_not_found(self, services, project_id, source_asset_id, image_provider):
        image_provider.script(JobStatus.RUNNING)
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        with pytest.raises(JobNotFoundError):
            await services.orchestrator.refresh("pred-1", OTHER_USER_ID)

    @pytest.mark.asyncio
    async def test_retry_save_requires_success(self, services, project_id, source_asset_id, image_provider):
        image_provider.script(JobStatus.RUNNING)
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        with pytest.raises(ValidationError):
            await services.orchestrator.retry_save("pred-1", USER_ID)

    @pytest.mark.asyncio
    async def test_cancelled_save_can_be_retried(self, services, project_id, source_asset_id, serve_image, storage):
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        with patch(
            "momentful.services.orchestrator.ArtifactMaterializer.materialize",
            AsyncMock(side_effect=asyncio.CancelledError()),
        ):
            with pytest.raises(asyncio.CancelledError):
                await services.orchestrator.refresh("pred-1", USER_ID)

        job = await services.repository.get_job("pred-1")
        assert job.status == "save_failed"
        assert job.error_detail == "Save interrupted (CancelledError)"

        view = await services.orchestrator.retry_save("pred-1", USER_ID)

        assert view.saved
        assert view.save_error is None
        assert len([call for call in storage.calls if call[0] == "upload"]) == 1

    @pytest.mark.asyncio
    async def test_unexpected_save_error_releases_claim(self, services, project_id, source_asset_id, serve_image):
        await services.orchestrator.submit(_image_request(project_id, source_asset_id))

        with patch(
            "momentful.services.materializer.get_image_info",
            side_effect=RuntimeError("decoder crashed"),
        ):
            with pytest.raises(RuntimeError):
                await services.orchestrator.refresh("pred-1", USER_ID)

        assert (await services.repository.get_job("pred-1")).status == "save_failed"
        view = await services.orchestrator.refresh("pred-1", USER_ID)

        assert view.saved


# =============================================================================
# Videos
# =============================================================================


class TestVideos:
    @pytest.mark.asyncio
    async def test_processing_row_then_completed(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        video_provider,
        video_tools,
    ):
        artifact_server.serve(VIDEO_URL, b"mp4-bytes", content_type="video/mp4")
        video_provider.script(JobStatus.RUNNING, JobStatus.SUCCEEDED, output=VIDEO_URL)
        await services.orchestrator.generated_videos(project_id, USER_ID)

        submitted = await services.orchestrator.submit(_video_request(project_id, source_asset_id))

        videos = await services.orchestrator.generated_videos(project_id, USER_ID)
        assert [(v.id, v.status, v.pending) for v in videos] == [(submitted.video_id, "processing", False)]

        view = await services.orchestrator.refresh("task-1", USER_ID)
        assert view.status == JobStatus.RUNNING
        view = await services.orchestrator.refresh("task-1", USER_ID)

        assert view.saved
        assert view.artifact_id == submitted.video_id
        assert view.duration_ms == 4000
        videos = await services.orchestrator.generated_videos(project_id, USER_ID)
        assert videos[0].status == "completed"
        assert videos[0].thumbnail_path is not None

    @pytest.mark.asyncio
    async def test_failed_video_marks_row_failed(self, services, project_id, source_asset_id, video_provider):
        video_provider.script(JobStatus.FAILED)

        outcome = await services.orchestrator.run(_video_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.FAILED
        videos = await services.repository.list_generated_videos(USER_ID, project_id)
        assert videos[0].status == "failed"

    @pytest.mark.asyncio
    async def test_timed_out_video_stays_processing(self, services, project_id, source_asset_id, video_provider):
        video_provider.script(JobStatus.RUNNING)

        await services.orchestrator.run(_video_request(project_id, source_asset_id))

        videos = await services.repository.list_generated_videos(USER_ID, project_id)
        assert videos[0].status == "processing"

    @pytest.mark.asyncio
    async def test_unreachable_video_stays_processing(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        video_provider,
        video_tools,
    ):
        video_provider.script(ProviderUnreachableError("runway"))

        await services.orchestrator.run(_video_request(project_id, source_asset_id))

        assert (await services.repository.list_generated_videos(USER_ID, project_id))[0].status == "processing"

        artifact_server.serve(VIDEO_URL, b"mp4-bytes", content_type="video/mp4")
        video_provider.script(JobStatus.SUCCEEDED, output=VIDEO_URL)
        view = await services.orchestrator.refresh("task-1", USER_ID)

        assert view.saved
        assert (await services.repository.list_generated_videos(USER_ID, project_id))[0].status == "completed"

    @pytest.mark.asyncio
    async def test_unsaved_video_can_be_retried(
        self,
        services,
        project_id,
        source_asset_id,
        artifact_server,
        video_provider,
        video_tools,
    ):
        artifact_server.serve(VIDEO_URL, b"gone", status_code=404)
        video_provider.script(JobStatus.SUCCEEDED, output=VIDEO_URL)

        outcome = await services.orchestrator.run(_video_request(project_id, source_asset_id))

        assert outcome.kind == OutcomeKind.GENERATED_NOT_SAVED
        assert outcome.error.code == "ARTIFACT_DOWNLOAD_FAILED"
        assert (await services.repository.list_generated_videos(USER_ID, project_id))[0].status == "failed"

        artifact_server.serve(VIDEO_URL, b"mp4-bytes", content_type="video/mp4")
        view = await services.orchestrator.retry_save("task-1", USER_ID)

        assert view.saved
        assert (await services.repository.list_generated_videos(USER_ID, project_id))[0].status == "completed"


# =============================================================================
# Lineage and deletes
# =============================================================================


class TestLineageAndDeletes:
    @pytest.mark.asyncio
    async def test_refinement_joins_parent_lineage(
        self,
        services,
        project_id,
        source_asset_id,
        serve_image,
        image_provider,
        storage,
    ):
        first = await services.orchestrator.run(_image_request(project_id, source_asset_id))
        parent = first.artifact
        image_provider.job_id = "pred-2"

        second = await services.orchestrator.run(
            _image_request(project_id, parent_id=parent.id, source_reference=parent.storage_path)
        )

        child = second.artifact
        assert child.lineage_id == parent.lineage_id
        assert child.parent_id == parent.id
        assert ("sign", "edited-images", parent.storage_path) in storage.calls

        timeline = await services.orchestrator.timeline(parent.lineage_id, USER_ID)
        assert [node.id for node in timeline.nodes] == [source_asset_id, parent.id, child.id]
        assert [(edge.source, edge.target) for edge in timeline.edges] == [
            (source_asset_id, parent.id),
            (parent.id, child.id),
        ]

    @pytest.mark.asyncio
    async def test_foreign_parent_is_forbidden(self, services, project_id, source_asset_id, serve_image):
        first = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        with pytest.raises(ForbiddenError):
            await services.orchestrator.submit(
                _image_request(
                    project_id,
                    parent_id=first.artifact.id,
                    owner_id=OTHER_USER_ID,
                    source_reference=f"{OTHER_USER_ID}/p/x.png",
                )
            )

    @pytest.mark.asyncio
    async def test_delete_on_cold_cache(self, services, project_id, source_asset_id, serve_image, storage):
        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))
        artifact = outcome.artifact
        services.query_client.clear()

        await services.orchestrator.delete_edited_image(artifact.id, USER_ID)

        assert ("delete", "edited-images", (artifact.storage_path,)) in storage.calls
        assert await services.repository.get_edited_image(artifact.id, USER_ID) is None
        assert services.query_client.find_keys(()) == []

    @pytest.mark.asyncio
    async def test_delete_removes_from_warm_list(self, services, project_id, source_asset_id, serve_image):
        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))
        assert len(await services.orchestrator.edited_images(USER_ID, project_id=project_id)) == 1

        await services.orchestrator.delete_edited_image(outcome.artifact.id, USER_ID)

        assert await services.orchestrator.edited_images(USER_ID, project_id=project_id) == ()

    @pytest.mark.asyncio
    async def test_failed_storage_delete_keeps_row(self, services, project_id, source_asset_id, serve_image, storage):
        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))
        storage.fail_delete = StorageError("denied", reason="permission")

        with pytest.raises(StorageError):
            await services.orchestrator.delete_edited_image(outcome.artifact.id, USER_ID)

        assert await services.repository.get_edited_image(outcome.artifact.id, USER_ID) is not None

    @pytest.mark.asyncio
    async def test_foreign_delete_is_not_found(self, services, project_id, source_asset_id, serve_image):
        outcome = await services.orchestrator.run(_image_request(project_id, source_asset_id))

        with pytest.raises(ArtifactNotFoundError):
            await services.orchestrator.delete_edited_image(outcome.artifact.id, OTHER_USER_ID)

    @pytest.mark.asyncio
    async def test_delete_video(self, services, project_id, source_asset_id, video_provider, storage):
        video_provider.script(JobStatus.RUNNING)
        submitted = await services.orchestrator.submit(_video_request(project_id, source_asset_id))

        await services.orchestrator.delete_generated_video(submitted.video_id, USER_ID)

        assert not any(call[0] == "delete" for call in storage.calls)
        assert await services.repository.list_generated_videos(USER_ID, project_id) == ()

    @pytest.mark.asyncio
    async def test_unknown_artifact_delete(self, services):
        with pytest.raises(ArtifactNotFoundError):
            await services.orchestrator.delete_generated_video(uuid.uuid4(), USER_ID)
