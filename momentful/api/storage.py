"""Local storage file serving for development.

Signed URLs minted by LocalStorageService point here; the signature and
expiry are checked before anything is read from disk.
"""

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from momentful.api.deps import Services
from momentful.exceptions import ForbiddenError, StorageError
from momentful.services.materializer import EXTENSION_CONTENT_TYPES
from momentful.services.storage_service import LocalStorageService

router = APIRouter()


@router.get("/files/{bucket}/{storage_path:path}")
async def get_file(bucket: str, storage_path: str, services: Services, expires: int, signature: str):
    """Serve files from local storage."""
    storage = services.storage
    if not isinstance(storage, LocalStorageService):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Local storage not enabled",
        )

    try:
        storage.verify_signature(bucket, storage_path, expires, signature)
    except ValueError as e:
        raise ForbiddenError(str(e)) from e

    try:
        file_path = storage.get_file_path(bucket, storage_path)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    if not file_path.exists():
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )

    ext = file_path.suffix.lower().lstrip(".")
    media_type = EXTENSION_CONTENT_TYPES.get(ext, "application/octet-stream")
    return FileResponse(
        path=str(file_path),
        media_type=media_type,
        filename=file_path.name,
    )
