"""Turns a user's source reference into a URL a provider can fetch."""

import logging

from momentful.exceptions import ForbiddenError, InvalidSourceReferenceError, StorageError
from momentful.services.storage_service import StorageService

logger = logging.getLogger(__name__)


def validate_storage_path(path: str, owner_id: str) -> None:
    """Reject paths outside the owner's folder or with traversal segments."""
    if ".." in path or "//" in path:
        raise InvalidSourceReferenceError("Storage path must not contain '..' or '//'")
    if not path.startswith(f"{owner_id}/"):
        raise ForbiddenError("Storage path does not belong to the current user")


def looks_like_storage_path(reference: str) -> bool:
    """``{owner}/{project}/{file}`` style paths, never URLs."""
    if reference.startswith(("http://", "https://")):
        return False
    return len([segment for segment in reference.split("/") if segment]) >= 3


class SourceResolver:
    def __init__(
        self,
        storage: StorageService,
        *,
        bucket: str,
        ttl_seconds: int = 300,
        max_ttl_seconds: int = 600,
    ) -> None:
        self._storage = storage
        self._bucket = bucket
        self._ttl_seconds = min(ttl_seconds, max_ttl_seconds)

    async def resolve(self, reference: str, owner_id: str, bucket: str | None = None) -> str:
        """Return an http(s) URL for ``reference``.

        External URLs pass through unchanged; storage paths become short-lived
        signed URLs in ``bucket`` (the uploads bucket by default).
        """
        reference = reference.strip()
        if reference.startswith(("http://", "https://")):
            return reference
        if not looks_like_storage_path(reference):
            raise InvalidSourceReferenceError(
                "sourceReference must be an http(s) URL or a storage path like {userId}/{projectId}/{file}"
            )

        validate_storage_path(reference, owner_id)
        bucket = bucket or self._bucket
        try:
            url = await self._storage.create_signed_url(bucket, reference, self._ttl_seconds)
        except StorageError as e:
            if e.reason == "not_found":
                raise InvalidSourceReferenceError(f"Source object not found: {reference}") from e
            logger.error(f"Could not sign source {bucket}/{reference}: {e.message}")
            raise
        logger.debug(f"Signed source {reference} for {self._ttl_seconds}s")
        return url
