"""Bucket-aware object storage.

LocalStorageService keeps files on disk for development and serves them
through ``/api/storage/files``. GCSStorageService talks to Google Cloud
Storage; its blocking SDK calls run in worker threads.
"""

import asyncio
import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

from momentful.config import Settings
from momentful.exceptions import StorageError
from momentful.utils.signed_url import sign_storage_path, verify_storage_signature

logger = logging.getLogger(__name__)


class StorageService(Protocol):
    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str: ...

    def get_public_url(self, bucket: str, path: str) -> str: ...

    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str: ...

    async def delete(self, bucket: str, paths: list[str]) -> None: ...


def _validate_key(path: str) -> None:
    if not path or path.startswith("/") or ".." in path.split("/"):
        raise StorageError(f"Invalid storage path: {path}", reason="invalid_path")


class LocalStorageService:
    """Local file storage for development without GCS."""

    def __init__(self, base_path: str, public_base_url: str, signing_secret: str) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")
        self._signing_secret = signing_secret

    def get_file_path(self, bucket: str, path: str) -> Path:
        """Get the actual file path for serving."""
        _validate_key(path)
        return self.base_path / bucket / path

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        full_path = self.get_file_path(bucket, path)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(full_path.write_bytes, data)
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{path}: {e}", reason="io") from e
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url}/api/storage/files/{bucket}/{quote(path)}"

    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        if not self.get_file_path(bucket, path).exists():
            raise StorageError(f"Object not found: {bucket}/{path}", reason="not_found")
        expires_at = int(time.time()) + ttl_seconds
        signature = sign_storage_path(bucket, path, expires_at, self._signing_secret)
        query = urlencode({"expires": expires_at, "signature": signature})
        return f"{self.get_public_url(bucket, path)}?{query}"

    async def delete(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            full_path = self.get_file_path(bucket, path)
            try:
                await asyncio.to_thread(full_path.unlink)
            except FileNotFoundError:
                logger.info(f"Skipping delete of missing object {bucket}/{path}")
            except OSError as e:
                raise StorageError(f"Failed to delete {bucket}/{path}: {e}", reason="io") from e

    def verify_signature(self, bucket: str, path: str, expires_at: int, signature: str) -> None:
        verify_storage_signature(bucket, path, expires_at, signature, self._signing_secret)


def _storage_error_from_gcs(e: Exception, bucket: str, path: str) -> StorageError:
    """Classify a google-api-core error by its HTTP code."""
    code = getattr(e, "code", None)
    if code == 403:
        return StorageError(f"Permission denied for {bucket}/{path}", reason="permission")
    if code == 404:
        return StorageError(f"Object not found: {bucket}/{path}", reason="not_found")
    if code == 413:
        return StorageError(f"Object too large: {bucket}/{path}", reason="too_large")
    if code == 429 or (isinstance(code, int) and code >= 500):
        return StorageError(f"Storage temporarily unavailable: {e}", reason="unavailable", retryable=True)
    return StorageError(f"Storage operation failed for {bucket}/{path}: {e}")


class GCSStorageService:
    """Google Cloud Storage service for production."""

    def __init__(self, project_id: str = "") -> None:
        from google.auth import compute_engine, default
        from google.auth.transport import requests as auth_requests
        from google.cloud import storage

        self._client = storage.Client(project=project_id) if project_id else storage.Client()
        self._credentials, _ = default()
        self._auth_request = auth_requests.Request()
        self._service_account_email: str | None = None
        self._sign_with_token = isinstance(self._credentials, compute_engine.Credentials)

        # Cloud Run credentials cannot sign locally; sign through IAM with an access token
        if self._sign_with_token:
            self._credentials.refresh(self._auth_request)
            self._service_account_email = self._credentials.service_account_email
        elif hasattr(self._credentials, "service_account_email"):
            self._service_account_email = self._credentials.service_account_email

    def _blob(self, bucket: str, path: str):
        _validate_key(path)
        return self._client.bucket(bucket).blob(path)

    async def upload(
        self, bucket: str, path: str, data: bytes, content_type: str | None = None
    ) -> str:
        from google.api_core import exceptions as gcs_exceptions

        blob = self._blob(bucket, path)
        try:
            await asyncio.to_thread(blob.upload_from_string, data, content_type=content_type)
        except gcs_exceptions.GoogleAPICallError as e:
            raise _storage_error_from_gcs(e, bucket, path) from e
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"https://storage.googleapis.com/{bucket}/{quote(path)}"

    def _sign(self, blob, ttl_seconds: int) -> str:
        kwargs = {}
        if self._sign_with_token:
            if not self._credentials.valid:
                self._credentials.refresh(self._auth_request)
            kwargs = {
                "service_account_email": self._service_account_email,
                "access_token": self._credentials.token,
            }
        return blob.generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=ttl_seconds),
            method="GET",
            **kwargs,
        )

    async def create_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        from google.api_core import exceptions as gcs_exceptions
        from google.auth import exceptions as auth_exceptions

        blob = self._blob(bucket, path)
        try:
            return await asyncio.to_thread(self._sign, blob, ttl_seconds)
        except (gcs_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError) as e:
            raise _storage_error_from_gcs(e, bucket, path) from e

    async def delete(self, bucket: str, paths: list[str]) -> None:
        from google.api_core import exceptions as gcs_exceptions

        for path in paths:
            blob = self._blob(bucket, path)
            try:
                await asyncio.to_thread(blob.delete)
            except gcs_exceptions.NotFound:
                logger.info(f"Skipping delete of missing object {bucket}/{path}")
            except gcs_exceptions.GoogleAPICallError as e:
                raise _storage_error_from_gcs(e, bucket, path) from e


def create_storage_service(settings: Settings) -> StorageService:
    if settings.storage_type == "gcs":
        return GCSStorageService(settings.gcs_project_id)
    return LocalStorageService(
        settings.local_storage_path,
        settings.public_base_url,
        settings.storage_signing_secret,
    )
