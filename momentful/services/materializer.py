"""Artifact materialization: provider output URL -> stored, measured object.

Measurements come from the downloaded bytes, never from provider metadata.
Media is measured before upload so unreadable output is never stored.
Each failure mode raises its own MaterializationFailedError subclass:

- ArtifactDownloadError: the output could not be fetched
- ArtifactStorageError: the object store refused the upload
- ArtifactMediaError: the bytes are not a readable image/video
"""

import asyncio
import logging
import os
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

from momentful.constants.models import ResourceType
from momentful.exceptions import (
    ArtifactDownloadError,
    ArtifactMediaError,
    ArtifactStorageError,
    StorageError,
)
from momentful.services.storage_service import StorageService
from momentful.utils.media_info import MediaInfo, extract_video_frame, get_image_info, get_video_info

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
    "video/webm": "webm",
}
EXTENSION_CONTENT_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
}
DEFAULT_EXTENSIONS = {ResourceType.IMAGE: "png", ResourceType.VIDEO: "mp4"}
PATH_KINDS = {ResourceType.IMAGE: "edited", ResourceType.VIDEO: "video"}


@dataclass(frozen=True)
class MaterializedArtifact:
    bucket: str
    storage_path: str
    content_type: str
    size_bytes: int
    width: int
    height: int
    duration_ms: int | None = None
    thumbnail_path: str | None = None


def build_storage_path(owner_id: str, project_id: str, timestamp_ms: int, kind: str, ext: str) -> str:
    return f"{owner_id}/{project_id}/{timestamp_ms}-{kind}.{ext}"


def resolve_extension(content_type: str | None, url: str, resource_type: ResourceType) -> str:
    """Pick a file extension from the content type, then the URL, then a default."""
    if content_type:
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type.split(";", 1)[0].strip().lower())
        if ext:
            return ext
    suffix = os.path.splitext(urlparse(url).path)[1].lstrip(".").lower()
    if suffix in EXTENSION_CONTENT_TYPES:
        return "jpg" if suffix == "jpeg" else suffix
    return DEFAULT_EXTENSIONS[resource_type]


class ArtifactMaterializer:
    def __init__(
        self,
        http: httpx.AsyncClient,
        storage: StorageService,
        *,
        images_bucket: str,
        videos_bucket: str,
        thumbnails_bucket: str,
        download_timeout: float = 120.0,
        max_bytes: int = 500 * 1024 * 1024,
        thumbnail_width: int = 320,
        thumbnail_offset_seconds: float = 1.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._storage = storage
        self._buckets = {ResourceType.IMAGE: images_bucket, ResourceType.VIDEO: videos_bucket}
        self._thumbnails_bucket = thumbnails_bucket
        self._download_timeout = download_timeout
        self._max_bytes = max_bytes
        self._thumbnail_width = thumbnail_width
        self._thumbnail_offset_seconds = thumbnail_offset_seconds
        self._clock = clock

    def bucket_for(self, resource_type: ResourceType) -> str:
        return self._buckets[resource_type]

    async def materialize(
        self,
        output_url: str,
        owner_id: str,
        project_id: str,
        resource_type: ResourceType,
    ) -> MaterializedArtifact:
        data, content_type = await self._download(output_url)

        thumbnail: bytes | None = None
        if resource_type == ResourceType.VIDEO:
            info, thumbnail = await asyncio.to_thread(self._inspect_video, data)
        else:
            try:
                info = await asyncio.to_thread(get_image_info, data)
            except ValueError as e:
                raise ArtifactMediaError(f"Generated image could not be read: {e}") from e

        ext = resolve_extension(content_type, output_url, resource_type)
        content_type = EXTENSION_CONTENT_TYPES.get(ext, content_type or "application/octet-stream")
        timestamp_ms = int(self._clock() * 1000)
        path = build_storage_path(owner_id, project_id, timestamp_ms, PATH_KINDS[resource_type], ext)
        bucket = self._buckets[resource_type]

        try:
            await self._storage.upload(bucket, path, data, content_type)
        except StorageError as e:
            logger.error(f"Upload of {bucket}/{path} failed ({e.reason}): {e.message}")
            raise ArtifactStorageError(
                f"Your content was generated but could not be saved ({e.reason}). You may retry saving."
            ) from e
        logger.info(f"Stored {resource_type.value} artifact at {bucket}/{path} ({len(data)} bytes)")

        thumbnail_path = None
        if thumbnail is not None:
            thumbnail_path = await self._upload_thumbnail(thumbnail, owner_id, project_id, timestamp_ms)

        return MaterializedArtifact(
            bucket=bucket,
            storage_path=path,
            content_type=content_type,
            size_bytes=len(data),
            width=info.width,
            height=info.height,
            duration_ms=info.duration_ms,
            thumbnail_path=thumbnail_path,
        )

    async def _download(self, url: str) -> tuple[bytes, str | None]:
        chunks: list[bytes] = []
        size = 0
        try:
            async with self._http.stream(
                "GET", url, follow_redirects=True, timeout=self._download_timeout
            ) as response:
                if response.status_code >= 400:
                    raise ArtifactDownloadError(
                        f"Generated output could not be downloaded (HTTP {response.status_code})"
                    )
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self._max_bytes:
                        raise ArtifactDownloadError("Generated output exceeds the maximum artifact size")
                    chunks.append(chunk)
                content_type = response.headers.get("content-type")
        except httpx.HTTPError as e:
            logger.error(f"Download of generated output failed: {e}")
            raise ArtifactDownloadError(f"Generated output could not be downloaded: {e}") from e

        if size == 0:
            raise ArtifactDownloadError("Generated output was empty")
        return b"".join(chunks), content_type

    def _inspect_video(self, data: bytes) -> tuple[MediaInfo, bytes | None]:
        """Measure a video and grab a thumbnail frame. Runs in a worker thread."""
        with tempfile.TemporaryDirectory(prefix="momentful-") as tmp:
            video_path = os.path.join(tmp, "artifact.mp4")
            with open(video_path, "wb") as f:
                f.write(data)

            try:
                info = get_video_info(video_path)
            except RuntimeError as e:
                raise ArtifactMediaError(f"Generated video could not be read: {e}") from e

            thumb_path = os.path.join(tmp, "thumbnail.jpg")
            offset = self._thumbnail_offset_seconds
            if info.duration_ms is not None and info.duration_ms < offset * 1000:
                offset = 0.0
            try:
                extract_video_frame(video_path, thumb_path, offset, self._thumbnail_width)
                with open(thumb_path, "rb") as f:
                    thumbnail = f.read()
            except (RuntimeError, OSError) as e:
                logger.warning(f"Thumbnail extraction failed, continuing without one: {e}")
                thumbnail = None

        return info, thumbnail

    async def _upload_thumbnail(
        self, data: bytes, owner_id: str, project_id: str, timestamp_ms: int
    ) -> str | None:
        path = f"{owner_id}/{project_id}/thumbnail-{timestamp_ms}.jpg"
        try:
            await self._storage.upload(self._thumbnails_bucket, path, data, "image/jpeg")
        except StorageError as e:
            logger.warning(f"Thumbnail upload failed, continuing without one: {e.message}")
            return None
        return path
