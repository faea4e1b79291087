"""Tests for source resolution and local storage signing."""

import asyncio
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import pytest

from momentful.exceptions import ForbiddenError, InvalidSourceReferenceError, StorageError
from momentful.services.source_resolver import SourceResolver, looks_like_storage_path
from momentful.services.storage_service import LocalStorageService
from momentful.utils.signed_url import sign_storage_path, verify_storage_signature
from tests.fakes import USER_ID, FakeStorage


@pytest.fixture
def resolver(storage: FakeStorage) -> SourceResolver:
    return SourceResolver(storage, bucket="user-uploads", ttl_seconds=300)


@pytest.fixture
def local_storage(tmp_path) -> LocalStorageService:
    return LocalStorageService(str(tmp_path), "http://localhost:8000/", "secret")


# =============================================================================
# Source References
# =============================================================================


class TestSourceResolver:
    @pytest.mark.asyncio
    async def test_external_url_passes_through(self, resolver, storage):
        url = await resolver.resolve("  https://example.com/photo.jpg ", USER_ID)

        assert url == "https://example.com/photo.jpg"
        assert storage.calls == []

    @pytest.mark.asyncio
    async def test_storage_path_is_signed_in_uploads_bucket(self, resolver, storage):
        url = await resolver.resolve(f"{USER_ID}/project-1/photo.png", USER_ID)

        assert url == f"https://storage.test/user-uploads/{USER_ID}/project-1/photo.png?ttl=300"
        assert storage.calls == [("sign", "user-uploads", f"{USER_ID}/project-1/photo.png")]

    @pytest.mark.asyncio
    async def test_explicit_bucket(self, resolver, storage):
        await resolver.resolve(f"{USER_ID}/project-1/1-edited.png", USER_ID, bucket="edited-images")

        assert storage.calls[0][1] == "edited-images"

    @pytest.mark.asyncio
    async def test_ttl_is_capped(self, storage):
        resolver = SourceResolver(storage, bucket="user-uploads", ttl_seconds=3600, max_ttl_seconds=600)

        url = await resolver.resolve(f"{USER_ID}/p/photo.png", USER_ID)

        assert url.endswith("?ttl=600")

    @pytest.mark.asyncio
    async def test_foreign_path_is_forbidden(self, resolver, storage):
        with pytest.raises(ForbiddenError):
            await resolver.resolve("user-2/project-1/photo.png", USER_ID)
        assert storage.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reference",
        [
            "photo.png",
            "ftp://example.com/photo.png",
            f"{USER_ID}/../user-2/photo.png",
            f"{USER_ID}//project/photo.png",
        ],
    )
    async def test_malformed_reference(self, resolver, reference):
        with pytest.raises(InvalidSourceReferenceError):
            await resolver.resolve(reference, USER_ID)

    @pytest.mark.asyncio
    async def test_missing_object_is_invalid_reference(self, local_storage):
        resolver = SourceResolver(local_storage, bucket="user-uploads")

        with pytest.raises(InvalidSourceReferenceError) as exc_info:
            await resolver.resolve(f"{USER_ID}/p/missing.png", USER_ID)
        assert exc_info.value.status_code == 400
        assert exc_info.value.__cause__.reason == "not_found"

    @pytest.mark.asyncio
    async def test_signing_failure_propagates(self, local_storage):
        resolver = SourceResolver(local_storage, bucket="user-uploads")
        denied = StorageError("denied", reason="permission")

        with patch.object(local_storage, "create_signed_url", AsyncMock(side_effect=denied)):
            with pytest.raises(StorageError) as exc_info:
                await resolver.resolve(f"{USER_ID}/p/photo.png", USER_ID)
        assert exc_info.value.reason == "permission"

    def test_storage_path_shape(self):
        assert looks_like_storage_path("a/b/c.png")
        assert not looks_like_storage_path("a/c.png")
        assert not looks_like_storage_path("https://a/b/c.png")


# =============================================================================
# Local Storage
# =============================================================================


class TestLocalStorage:
    @pytest.mark.asyncio
    async def test_upload_and_signed_url(self, local_storage):
        await local_storage.upload("user-uploads", f"{USER_ID}/p/photo.png", b"data")

        url = await local_storage.create_signed_url("user-uploads", f"{USER_ID}/p/photo.png", 60)

        parsed = urlparse(url)
        assert parsed.path == f"/api/storage/files/user-uploads/{USER_ID}/p/photo.png"
        query = parse_qs(parsed.query)
        local_storage.verify_signature(
            "user-uploads", f"{USER_ID}/p/photo.png", int(query["expires"][0]), query["signature"][0]
        )

    @pytest.mark.asyncio
    async def test_delete_runs_off_the_event_loop(self, local_storage):
        path = f"{USER_ID}/p/photo.png"
        await local_storage.upload("edited-images", path, b"data")
        file_path = local_storage.get_file_path("edited-images", path)

        with patch(
            "momentful.services.storage_service.asyncio.to_thread", wraps=asyncio.to_thread
        ) as to_thread:
            await local_storage.delete("edited-images", [path])

        to_thread.assert_called_once()
        assert to_thread.call_args.args[0].__self__ == file_path
        assert not file_path.exists()

    @pytest.mark.asyncio
    async def test_delete_missing_object_is_quiet(self, local_storage):
        await local_storage.delete("edited-images", [f"{USER_ID}/p/none.png"])

    @pytest.mark.asyncio
    async def test_traversal_is_rejected(self, local_storage):
        with pytest.raises(StorageError) as exc_info:
            await local_storage.upload("user-uploads", "../etc/passwd", b"x")
        assert exc_info.value.reason == "invalid_path"

    def test_expired_signature(self):
        signature = sign_storage_path("b", "p/x.png", 100, "secret")

        with pytest.raises(ValueError, match="expired"):
            verify_storage_signature("b", "p/x.png", 100, signature, "secret", now=101)

    def test_tampered_path(self):
        signature = sign_storage_path("b", "p/x.png", 100, "secret")

        with pytest.raises(ValueError, match="Invalid"):
            verify_storage_signature("b", "p/y.png", 100, signature, "secret", now=50)
