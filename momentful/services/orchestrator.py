"""Generation orchestrator.

    validate -> resolve source -> reserve quota -> provider submit -> record job
      -> poll -> claim -> materialize -> persist (cache mutation) -> mark saved

Everything after a successful generation is best effort in the sense that a
failure there never turns the generation itself into a failure: the job is
marked ``save_failed`` and the caller learns it was generated but not saved.
Quota is not refunded when the provider fails.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass

from momentful.cache.artifact_cache import ArtifactCache
from momentful.constants.models import Provider, ResourceType
from momentful.exceptions import (
    ArtifactDownloadError,
    ArtifactNotFoundError,
    GenerationCanceledError,
    GenerationFailedError,
    JobNotFoundError,
    JobTrackingError,
    MaterializationFailedError,
    MomentfulError,
    PersistenceFailedError,
    PollingTimedOutError,
    ProviderUnreachableError,
    QuotaExceededError,
    ValidationError,
)
from momentful.models.artifact import VIDEO_FAILED
from momentful.models.base import utcnow
from momentful.models.generation_job import (
    CLAIMABLE_JOB_STATUSES,
    JOB_CANCELED,
    JOB_FAILED,
    JOB_PROCESSING,
    JOB_SAVE_FAILED,
    JOB_SAVED,
    JOB_TIMED_OUT,
    GenerationJob,
)
from momentful.schemas.artifact import ArtifactView
from momentful.schemas.errors import ErrorInfo
from momentful.schemas.generation import (
    GenerationOutcome,
    GenerationRequest,
    JobStatusView,
    OutcomeKind,
    SubmittedJob,
)
from momentful.schemas.provider import JobStatus, ProviderJob, ProviderRequest
from momentful.services.artifact_repository import ArtifactRepository
from momentful.services.materializer import ArtifactMaterializer
from momentful.services.polling import PollingEngine, PollResult, PollState, ProgressCallback, Scheduler
from momentful.services.providers.registry import ProviderRegistry
from momentful.services.quota_guard import QuotaGuard
from momentful.services.source_resolver import SourceResolver
from momentful.services.storage_service import StorageService

logger = logging.getLogger(__name__)

NOT_SAVED_WARNING = "Your content was generated but not saved. You may retry saving."


@dataclass(frozen=True)
class SaveResult:
    saved: bool
    artifact: ArtifactView | None = None
    error: MomentfulError | None = None
    # False when another caller holds the materialization claim
    claimed: bool = True


@dataclass(frozen=True)
class PollingConfig:
    interval: float = 2.0
    image_max_attempts: int = 120
    video_max_attempts: int = 60
    max_consecutive_errors: int = 3

    def max_attempts(self, resource_type: ResourceType) -> int:
        if resource_type == ResourceType.VIDEO:
            return self.video_max_attempts
        return self.image_max_attempts


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        quota: QuotaGuard,
        providers: ProviderRegistry,
        resolver: SourceResolver,
        materializer: ArtifactMaterializer,
        repository: ArtifactRepository,
        cache: ArtifactCache,
        storage: StorageService,
        uploads_bucket: str,
        edited_images_bucket: str,
        polling: PollingConfig | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._quota = quota
        self._providers = providers
        self._resolver = resolver
        self._materializer = materializer
        self._repository = repository
        self._cache = cache
        self._storage = storage
        self._uploads_bucket = uploads_bucket
        self._edited_images_bucket = edited_images_bucket
        self._polling = polling or PollingConfig()
        self._scheduler = scheduler

    # =========================================================================
    # Submit
    # =========================================================================

    def _validate(self, request: GenerationRequest) -> None:
        if not request.prompt_text.strip():
            raise ValidationError("promptText is required")
        if not request.source_reference.strip():
            raise ValidationError("sourceReference is required")
        if (request.source_asset_id is None) == (request.parent_id is None):
            raise ValidationError("Exactly one of sourceAssetId or parentId is required")

    async def submit(self, request: GenerationRequest) -> SubmittedJob:
        """Charge quota and start a provider job. Raises MomentfulError subclasses."""
        self._validate(request)
        client, model_id = self._providers.resolve(request.resource_type, request.model_id)
        await self._repository.validate_origin(request)

        # Refinements of generated images read from the edited images bucket
        bucket = self._edited_images_bucket if request.parent_id else self._uploads_bucket
        source_url = await self._resolver.resolve(request.source_reference, request.owner_id, bucket=bucket)

        reservation = await self._quota.reserve(request.owner_id, request.resource_type)
        if not reservation.allowed:
            raise QuotaExceededError(request.resource_type.value)

        job_id = await client.submit(
            ProviderRequest(
                resource_type=request.resource_type,
                model_id=model_id,
                prompt_text=request.prompt_text,
                source_url=source_url,
                ratio=request.ratio,
            )
        )
        logger.info(
            f"Submitted {request.resource_type.value} job {job_id} to {client.provider.value} "
            f"({model_id}) for user {request.owner_id}"
        )

        video_id = uuid.uuid4() if request.resource_type == ResourceType.VIDEO else None
        try:
            lineage_id = await self._repository.derive_lineage(request)
            await self._record(request, client.provider, job_id, model_id, lineage_id, video_id)
        except PersistenceFailedError as e:
            logger.error(f"Provider job {job_id} was submitted but could not be recorded: {e}", exc_info=True)
            raise JobTrackingError(f"Generation {job_id} was submitted but could not be tracked") from e

        return SubmittedJob(
            job_id=job_id,
            provider=client.provider.value,
            model_id=model_id,
            resource_type=request.resource_type,
            remaining_after=reservation.remaining_after,
            video_id=video_id,
        )

    async def _record(
        self,
        request: GenerationRequest,
        provider: Provider,
        job_id: str,
        model_id: str,
        lineage_id: uuid.UUID | None,
        video_id: uuid.UUID | None,
    ) -> None:
        async def commit():
            return await self._repository.record_submission(
                request,
                provider=provider.value,
                provider_job_id=job_id,
                model_id=model_id,
                lineage_id=lineage_id,
                video_id=video_id,
            )

        if video_id is None:
            await commit()
            return

        placeholder = ArtifactView(
            id=video_id,
            kind="generated_video",
            project_id=request.project_id,
            user_id=request.owner_id,
            source_asset_id=request.source_asset_id,
            parent_id=request.parent_id,
            lineage_id=lineage_id,
            prompt=request.prompt_text,
            ai_model=model_id,
            name=request.name,
            status="processing",
            created_at=utcnow(),
            pending=True,
        )
        await self._cache.create_artifact(placeholder, commit)

    # =========================================================================
    # Status and completion
    # =========================================================================

    async def _owned_job(self, job_id: str, user_id: str) -> GenerationJob:
        job = await self._repository.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    async def refresh(self, job_id: str, user_id: str) -> JobStatusView:
        """Poll the provider once and, if the job succeeded, save its output."""
        job = await self._owned_job(job_id, user_id)
        client = self._providers.get(job.provider)
        provider_job = await client.poll_once(job_id)

        save: SaveResult | None = None
        if provider_job.status == JobStatus.SUCCEEDED:
            if job.status in CLAIMABLE_JOB_STATUSES:
                save = await self.complete(job, provider_job)
        elif provider_job.status in (JobStatus.FAILED, JobStatus.CANCELED):
            if job.status == JOB_PROCESSING:
                await self._record_failure(job, provider_job.status, provider_job.error_detail)
        elif provider_job.progress is not None and job.status == JOB_PROCESSING:
            await self._record_progress(job_id, provider_job)

        job = await self._repository.get_job(job_id) or job
        return await self._status_view(job, provider_job, save)

    async def _status_view(
        self, job: GenerationJob, provider_job: ProviderJob, save: SaveResult | None
    ) -> JobStatusView:
        artifact = save.artifact if save is not None and save.artifact is not None else None
        if artifact is None and job.status == JOB_SAVED:
            artifact = await self._repository.get_artifact_for_job(job)

        save_error: ErrorInfo | None = None
        if save is not None and save.error is not None:
            save_error = save.error.to_error_info()
        elif job.status == JOB_SAVE_FAILED:
            save_error = MaterializationFailedError(job.error_detail).to_error_info()

        return JobStatusView(
            id=provider_job.job_id,
            provider=provider_job.provider.value,
            resource_type=ResourceType(job.resource_type),
            status=provider_job.status,
            progress=provider_job.progress,
            output=provider_job.output,
            error=provider_job.error_detail,
            created_at=provider_job.created_at,
            saved=job.status == JOB_SAVED,
            artifact_id=artifact.id if artifact is not None else None,
            storage_path=artifact.storage_path if artifact is not None else None,
            width=artifact.width if artifact is not None else None,
            height=artifact.height if artifact is not None else None,
            duration_ms=artifact.duration_ms if artifact is not None else None,
            save_error=save_error,
        )

    async def complete(self, job: GenerationJob, provider_job: ProviderJob) -> SaveResult:
        """Materialize and persist a succeeded job's output exactly once."""
        if not await self._repository.claim_job(job.provider_job_id):
            logger.info(f"Job {job.provider_job_id} is already being saved or was saved")
            return SaveResult(saved=job.status == JOB_SAVED, claimed=False)

        output_url = provider_job.output_url
        try:
            if not output_url:
                raise ArtifactDownloadError("Provider reported success without an output URL")
            await self._repository.update_job(job.provider_job_id, output_url=output_url)
            artifact = await self._save(job, output_url)
        except (MaterializationFailedError, PersistenceFailedError) as e:
            logger.warning(f"Job {job.provider_job_id} generated but not saved: [{e.code}] {e.message}")
            await self._repository.mark_save_failed(job.provider_job_id, e.message)
            if job.resource_type == ResourceType.VIDEO.value and job.artifact_id is not None:
                await self._fail_video(job.artifact_id, e.message)
            return SaveResult(saved=False, error=e)
        except BaseException as e:
            # Cancelled or unexpected: hand the claim back so a retry can save it
            logger.error(f"Saving job {job.provider_job_id} was interrupted: {e!r}")
            await asyncio.shield(
                self._repository.mark_save_failed(job.provider_job_id, f"Save interrupted ({type(e).__name__})")
            )
            raise

        try:
            await self._repository.mark_saved(job.provider_job_id, artifact.id)
        except PersistenceFailedError as e:
            # The artifact row exists; only the job bookkeeping is behind
            logger.error(f"Saved artifact {artifact.id} but could not mark job {job.provider_job_id}: {e}")
        return SaveResult(saved=True, artifact=artifact)

    async def _save(self, job: GenerationJob, output_url: str) -> ArtifactView:
        resource_type = ResourceType(job.resource_type)
        materialized = await self._materializer.materialize(
            output_url, job.user_id, str(job.project_id), resource_type
        )

        if resource_type == ResourceType.VIDEO:
            if job.artifact_id is None:
                raise PersistenceFailedError(f"Job {job.provider_job_id} has no video row")
            video_id = job.artifact_id
            updated = ArtifactView(
                id=video_id,
                kind="generated_video",
                project_id=job.project_id,
                user_id=job.user_id,
                source_asset_id=job.source_asset_id,
                parent_id=job.parent_id,
                lineage_id=job.lineage_id,
                storage_path=materialized.storage_path,
                thumbnail_path=materialized.thumbnail_path,
                width=materialized.width,
                height=materialized.height,
                duration_ms=materialized.duration_ms,
                prompt=job.prompt_text,
                ai_model=job.model_id,
                name=job.name,
                status="completed",
                created_at=job.created_at,
                pending=True,
            )
            return await self._cache.replace_artifact(
                updated, lambda: self._repository.complete_video(video_id, materialized)
            )

        artifact_id = uuid.uuid4()
        placeholder = ArtifactView(
            id=artifact_id,
            kind="edited_image",
            project_id=job.project_id,
            user_id=job.user_id,
            source_asset_id=job.source_asset_id,
            parent_id=job.parent_id,
            lineage_id=job.lineage_id,
            storage_path=materialized.storage_path,
            width=materialized.width,
            height=materialized.height,
            prompt=job.prompt_text,
            ai_model=job.model_id,
            name=job.name,
            created_at=utcnow(),
            pending=True,
        )
        try:
            return await self._cache.create_artifact(
                placeholder, lambda: self._repository.create_edited_image(artifact_id, job, materialized)
            )
        except PersistenceFailedError:
            logger.error(
                f"Stored {materialized.bucket}/{materialized.storage_path} has no database row "
                f"(job {job.provider_job_id})"
            )
            raise

    async def retry_save(self, job_id: str, user_id: str) -> JobStatusView:
        """Re-run materialization for a job that generated but did not save."""
        job = await self._owned_job(job_id, user_id)
        client = self._providers.get(job.provider)
        provider_job = await client.poll_once(job_id)
        if provider_job.status != JobStatus.SUCCEEDED:
            raise ValidationError(f"Job {job_id} has not succeeded (status: {provider_job.status.value})")

        save = None
        if job.status != JOB_SAVED:
            save = await self.complete(job, provider_job)
        job = await self._repository.get_job(job_id) or job
        return await self._status_view(job, provider_job, save)

    async def _record_progress(self, job_id: str, provider_job: ProviderJob) -> None:
        try:
            await self._repository.update_job(job_id, progress=provider_job.progress)
        except PersistenceFailedError:
            logger.warning(f"Could not record progress for job {job_id}")

    async def _record_failure(self, job: GenerationJob, status: JobStatus | PollState, detail: str | None) -> None:
        job_status = {"canceled": JOB_CANCELED, "timed_out": JOB_TIMED_OUT}.get(status.value, JOB_FAILED)
        logger.info(f"Job {job.provider_job_id} ended as {job_status}: {detail}")
        try:
            await self._repository.update_job(job.provider_job_id, status=job_status, error_detail=detail)
        except PersistenceFailedError:
            logger.error(f"Could not record {job_status} for job {job.provider_job_id}")

        # A timed-out video may still finish, so its row stays processing
        if job_status != JOB_TIMED_OUT and job.resource_type == ResourceType.VIDEO.value and job.artifact_id:
            await self._fail_video(job.artifact_id, detail or f"Generation {job_status}")

    async def _fail_video(self, video_id: uuid.UUID, message: str) -> None:
        try:
            view = await self._repository.fail_video(video_id, message)
        except PersistenceFailedError:
            logger.error(f"Could not mark video {video_id} as {VIDEO_FAILED}")
            return
        if view is not None:
            await self._cache.invalidate_artifact(view)

    # =========================================================================
    # End to end
    # =========================================================================

    async def run(self, request: GenerationRequest, on_progress: ProgressCallback | None = None) -> GenerationOutcome:
        """Submit, poll and save one generation. Returns a tagged outcome, never raises MomentfulError."""
        try:
            submitted = await self.submit(request)
        except MomentfulError as e:
            return GenerationOutcome(kind=OutcomeKind.FAILED, error=e.to_error_info())

        job_id = submitted.job_id
        client = self._providers.get(submitted.provider)

        async def progress(provider_job: ProviderJob) -> None:
            if provider_job.progress is not None:
                await self._record_progress(job_id, provider_job)
            if on_progress is not None:
                result = on_progress(provider_job)
                if inspect.isawaitable(result):
                    await result

        engine = PollingEngine(
            client.poll_once,
            job_id,
            interval=self._polling.interval,
            max_attempts=self._polling.max_attempts(submitted.resource_type),
            scheduler=self._scheduler,
            on_progress=progress,
            max_consecutive_errors=self._polling.max_consecutive_errors,
        )
        result = await engine.run()
        return await self._finish(submitted, result)

    async def _finish(self, submitted: SubmittedJob, result: PollResult) -> GenerationOutcome:
        job_id = submitted.job_id
        job = await self._repository.get_job(job_id)
        if job is None:
            error = JobTrackingError(f"Job {job_id} disappeared while polling")
            return GenerationOutcome(kind=OutcomeKind.FAILED, job_id=job_id, error=error.to_error_info())

        if result.state == PollState.SUCCEEDED and result.job is not None:
            save = await self.complete(job, result.job)
            if save.saved:
                artifact = save.artifact or await self._repository.get_artifact_for_job(job)
                return GenerationOutcome(
                    kind=OutcomeKind.SAVED,
                    job_id=job_id,
                    poll_state=result.state.value,
                    output_url=result.output_url,
                    artifact=artifact,
                )
            error = save.error or MaterializationFailedError()
            return GenerationOutcome(
                kind=OutcomeKind.GENERATED_NOT_SAVED,
                job_id=job_id,
                poll_state=result.state.value,
                output_url=result.output_url,
                error=error.to_error_info(),
                warnings=[NOT_SAVED_WARNING],
            )

        recorded_state = result.state
        if result.state == PollState.TIMED_OUT:
            error = PollingTimedOutError(submitted.provider, job_id, result.attempts)
        elif result.state == PollState.CANCELED:
            error = GenerationCanceledError(submitted.provider, result.error_detail)
        elif isinstance(result.error, ProviderUnreachableError):
            # The provider job may still finish, so keep it claimable like a timeout
            error = result.error
            recorded_state = PollState.TIMED_OUT
        elif result.error is not None:
            error = result.error
        else:
            error = GenerationFailedError(submitted.provider, result.error_detail)

        await self._record_failure(job, recorded_state, error.message)
        return GenerationOutcome(
            kind=OutcomeKind.FAILED,
            job_id=job_id,
            poll_state=result.state.value,
            error=error.to_error_info(),
        )

    # =========================================================================
    # Deletes and reads
    # =========================================================================

    async def delete_edited_image(self, image_id: uuid.UUID, user_id: str) -> None:
        image = await self._repository.get_edited_image(image_id, user_id)
        if image is None:
            raise ArtifactNotFoundError(str(image_id))

        async def commit() -> None:
            await self._storage.delete(self._materializer.bucket_for(ResourceType.IMAGE), [image.storage_path])
            await self._repository.delete_edited_image(image_id)

        await self._cache.delete_artifact(image, commit)
        logger.info(f"Deleted edited image {image_id}")

    async def delete_generated_video(self, video_id: uuid.UUID, user_id: str) -> None:
        video = await self._repository.get_generated_video(video_id, user_id)
        if video is None:
            raise ArtifactNotFoundError(str(video_id))

        async def commit() -> None:
            # External URLs are not ours to delete
            if video.storage_path and not video.storage_path.startswith("http"):
                await self._storage.delete(
                    self._materializer.bucket_for(ResourceType.VIDEO), [video.storage_path]
                )
            await self._repository.delete_generated_video(video_id)

        await self._cache.delete_artifact(video, commit)
        logger.info(f"Deleted generated video {video_id}")

    async def edited_images(
        self,
        user_id: str,
        *,
        project_id: uuid.UUID | None = None,
        source_asset_id: uuid.UUID | None = None,
        lineage_id: uuid.UUID | None = None,
    ) -> tuple[ArtifactView, ...]:
        if project_id is not None:
            return await self._cache.edited_images_for_project(project_id, user_id)
        if source_asset_id is not None:
            return await self._cache.edited_images_for_source(source_asset_id, user_id)
        if lineage_id is not None:
            return await self._cache.edited_images_for_lineage(lineage_id, user_id)
        raise ValidationError("A project, source asset or lineage is required")

    async def generated_videos(self, project_id: uuid.UUID, user_id: str) -> tuple[ArtifactView, ...]:
        return await self._cache.generated_videos_for_project(project_id, user_id)

    async def timeline(self, lineage_id: uuid.UUID, user_id: str):
        return await self._cache.timeline(lineage_id, user_id)

    async def lineages(self, project_id: uuid.UUID, user_id: str):
        return await self._cache.lineages_for_project(project_id, user_id)
