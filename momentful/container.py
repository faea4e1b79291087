"""Process-lifetime service wiring.

One ``GenerationServices`` is built per process (in the FastAPI lifespan)
and passed by reference; nothing reaches collaborators through module-level
globals. Tests build their own with fakes swapped in.
"""

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from momentful.cache.artifact_cache import ArtifactCache
from momentful.cache.query_client import QueryClient
from momentful.config import Settings
from momentful.constants.models import Provider
from momentful.services.artifact_repository import ArtifactRepository
from momentful.services.materializer import ArtifactMaterializer
from momentful.services.orchestrator import GenerationOrchestrator, PollingConfig
from momentful.services.polling import Scheduler
from momentful.services.providers.registry import ProviderRegistry
from momentful.services.providers.replicate import ReplicateClient
from momentful.services.providers.runway import RunwayClient
from momentful.services.quota_guard import QuotaGuard
from momentful.services.source_resolver import SourceResolver
from momentful.services.storage_service import StorageService, create_storage_service

logger = logging.getLogger(__name__)


@dataclass
class GenerationServices:
    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    http: httpx.AsyncClient
    storage: StorageService
    quota: QuotaGuard
    providers: ProviderRegistry
    repository: ArtifactRepository
    query_client: QueryClient
    cache: ArtifactCache
    orchestrator: GenerationOrchestrator
    engine: AsyncEngine | None = None

    async def aclose(self) -> None:
        await self.http.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def create_provider_registry(settings: Settings, http: httpx.AsyncClient) -> ProviderRegistry:
    return ProviderRegistry(
        {
            Provider.RUNWAY: RunwayClient(
                http,
                api_key=settings.runway_api_key,
                base_url=settings.runway_base_url,
                api_version=settings.runway_api_version,
            ),
            Provider.REPLICATE: ReplicateClient(
                http,
                api_key=settings.replicate_api_token,
                base_url=settings.replicate_base_url,
            ),
        }
    )


def build_services(
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    engine: AsyncEngine | None = None,
    http: httpx.AsyncClient | None = None,
    storage: StorageService | None = None,
    providers: ProviderRegistry | None = None,
    scheduler: Scheduler | None = None,
) -> GenerationServices:
    http = http or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
    storage = storage or create_storage_service(settings)
    providers = providers or create_provider_registry(settings, http)

    quota = QuotaGuard(
        session_maker,
        default_images_limit=settings.default_images_limit,
        default_videos_limit=settings.default_videos_limit,
    )
    resolver = SourceResolver(
        storage,
        bucket=settings.user_uploads_bucket,
        ttl_seconds=settings.signed_url_ttl_seconds,
        max_ttl_seconds=settings.signed_url_max_ttl_seconds,
    )
    materializer = ArtifactMaterializer(
        http,
        storage,
        images_bucket=settings.edited_images_bucket,
        videos_bucket=settings.generated_videos_bucket,
        thumbnails_bucket=settings.thumbnails_bucket,
        download_timeout=settings.download_timeout_seconds,
        max_bytes=settings.max_artifact_size_mb * 1024 * 1024,
        thumbnail_width=settings.thumbnail_width,
        thumbnail_offset_seconds=settings.thumbnail_offset_seconds,
    )
    repository = ArtifactRepository(session_maker)
    query_client = QueryClient(stale_time=settings.cache_stale_seconds, gc_time=settings.cache_gc_seconds)
    cache = ArtifactCache(query_client, repository)
    orchestrator = GenerationOrchestrator(
        quota=quota,
        providers=providers,
        resolver=resolver,
        materializer=materializer,
        repository=repository,
        cache=cache,
        storage=storage,
        uploads_bucket=settings.user_uploads_bucket,
        edited_images_bucket=settings.edited_images_bucket,
        polling=PollingConfig(
            interval=settings.poll_interval_seconds,
            image_max_attempts=settings.image_max_poll_attempts,
            video_max_attempts=settings.video_max_poll_attempts,
            max_consecutive_errors=settings.max_consecutive_poll_errors,
        ),
        scheduler=scheduler,
    )
    logger.info(f"Services ready (storage={settings.storage_type}, environment={settings.environment})")
    return GenerationServices(
        settings=settings,
        session_maker=session_maker,
        http=http,
        storage=storage,
        quota=quota,
        providers=providers,
        repository=repository,
        query_client=query_client,
        cache=cache,
        orchestrator=orchestrator,
        engine=engine,
    )
