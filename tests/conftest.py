"""
Pytest fixtures for momentful tests.

Everything runs in-process: SQLite in memory (shared through StaticPool),
scripted providers, in-memory storage and a virtual polling clock.
"""

import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from momentful.config import Settings
from momentful.constants.models import Provider
from momentful.container import build_services
from momentful.models import Base
from momentful.models.database import create_session_maker
from momentful.services.providers.registry import ProviderRegistry
from tests.fakes import USER_ID, ArtifactServer, FakeProvider, FakeScheduler, FakeStorage


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        local_storage_path=str(tmp_path / "storage"),
        dev_mode=True,
        dev_user_id=USER_ID,
        poll_interval_seconds=2.0,
        image_max_poll_attempts=5,
        video_max_poll_attempts=5,
        default_images_limit=10,
        default_videos_limit=5,
    )


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_session_maker(engine)


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def scheduler() -> FakeScheduler:
    return FakeScheduler()


@pytest.fixture
def image_provider() -> FakeProvider:
    return FakeProvider(Provider.REPLICATE, job_id="pred-1")


@pytest.fixture
def video_provider() -> FakeProvider:
    return FakeProvider(Provider.RUNWAY, job_id="task-1")


@pytest.fixture
def artifact_server() -> ArtifactServer:
    return ArtifactServer()


@pytest_asyncio.fixture
async def services(settings, session_maker, storage, scheduler, image_provider, video_provider, artifact_server):
    http = httpx.AsyncClient(transport=httpx.MockTransport(artifact_server))
    services = build_services(
        settings,
        session_maker,
        http=http,
        storage=storage,
        providers=ProviderRegistry({Provider.REPLICATE: image_provider, Provider.RUNWAY: video_provider}),
        scheduler=scheduler,
    )
    yield services
    await http.aclose()


@pytest.fixture
def project_id() -> uuid.UUID:
    return uuid.UUID("00000000-0000-4000-8000-000000000001")


@pytest.fixture
def source_asset_id() -> uuid.UUID:
    return uuid.UUID("00000000-0000-4000-8000-0000000000a1")
