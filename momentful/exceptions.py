"""Custom exceptions for the momentful backend.

Every exception carries an ErrorKind so that callers branch on the taxonomy
rather than on exception identity, plus the HTTP status and body the API
layer renders for it.
"""

from typing import Any

from momentful.constants.error_codes import ErrorKind, get_error_spec
from momentful.schemas.errors import ErrorInfo


class MomentfulError(Exception):
    """Base exception for all momentful application errors."""

    code: str = "INTERNAL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        suggested_fix: str | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.suggested_fix = suggested_fix
        super().__init__(self.message)

    def to_body(self) -> dict[str, Any]:
        """JSON body returned to HTTP callers."""
        return {"error": self.message}

    def to_error_info(self) -> ErrorInfo:
        spec = get_error_spec(self.code)
        return ErrorInfo(
            code=self.code,
            kind=self.kind,
            message=self.message,
            retryable=spec.get("retryable", False),
            suggested_action=spec.get("suggested_action"),
            suggested_endpoint=spec.get("suggested_endpoint"),
            suggested_fix=self.suggested_fix or spec.get("suggested_fix"),
        )


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(MomentfulError):
    """Missing or malformed input."""

    code = "VALIDATION_ERROR"
    kind = ErrorKind.VALIDATION
    status_code = 400
    message = "Invalid request"


class InvalidSourceReferenceError(ValidationError):
    code = "INVALID_SOURCE_REFERENCE"
    message = "Invalid source reference"


class UnsupportedModelError(ValidationError):
    code = "UNSUPPORTED_MODEL"

    def __init__(self, model_id: str, resource_type: str):
        super().__init__(f"Unsupported {resource_type} model: {model_id}")
        self.model_id = model_id


# =============================================================================
# Auth Errors (401 / 403)
# =============================================================================


class AuthError(MomentfulError):
    code = "UNAUTHORIZED"
    kind = ErrorKind.AUTH
    status_code = 401
    message = "Unauthorized"


class ForbiddenError(MomentfulError):
    code = "FORBIDDEN"
    kind = ErrorKind.FORBIDDEN
    status_code = 403
    message = "Forbidden"


class QuotaExceededError(MomentfulError):
    """The user has no remaining generations of the requested type."""

    code = "QUOTA_EXCEEDED"
    kind = ErrorKind.QUOTA_EXCEEDED
    status_code = 403

    def __init__(self, resource_type: str, remaining: int = 0):
        self.resource_type = resource_type
        self.remaining = remaining
        self.title = f"{resource_type.capitalize()} generation limit reached"
        detail = (
            f"You've maxed out your {resource_type} credits :(\n"
            "Message the Momentful crew at hello@momentful.ai to unlock more."
        )
        super().__init__(detail)

    def to_body(self) -> dict[str, Any]:
        return {"error": self.title, "message": self.message, "remaining": self.remaining}


# =============================================================================
# Not Found Errors (404)
# =============================================================================


class ResourceNotFoundError(MomentfulError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class JobNotFoundError(ResourceNotFoundError):
    code = "JOB_NOT_FOUND"
    message = "Job not found"

    def __init__(self, job_id: str | None = None):
        super().__init__(f"Job not found: {job_id}" if job_id else None)


class ArtifactNotFoundError(ResourceNotFoundError):
    code = "ARTIFACT_NOT_FOUND"
    message = "Artifact not found"

    def __init__(self, artifact_id: str | None = None):
        super().__init__(f"Artifact not found: {artifact_id}" if artifact_id else None)


class LineageNotFoundError(ResourceNotFoundError):
    code = "LINEAGE_NOT_FOUND"
    message = "Lineage not found"

    def __init__(self, lineage_id: str | None = None):
        super().__init__(f"Lineage not found: {lineage_id}" if lineage_id else None)


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(MomentfulError):
    """Base class for failures reported by or about a generation provider."""

    def __init__(self, provider: str, message: str | None = None, **kwargs: Any):
        self.provider = provider
        super().__init__(message, **kwargs)


class ProviderBillingLimitError(ProviderError):
    """Provider answered 402. Title and detail are forwarded verbatim."""

    code = "PROVIDER_BILLING_LIMIT"
    kind = ErrorKind.PROVIDER_BILLING_LIMIT
    status_code = 402

    def __init__(self, provider: str, title: str | None = None, detail: str | None = None):
        self.title = title or "Monthly spend limit reached"
        self.detail = detail or "Payment required. Please check your account billing settings."
        super().__init__(provider, self.detail)

    def to_body(self) -> dict[str, Any]:
        return {"error": "Payment Required", "title": self.title, "detail": self.detail}


class ProviderRejectedError(ProviderError):
    """Non-2xx response other than 402. The provider's status is forwarded."""

    code = "PROVIDER_REJECTED"
    kind = ErrorKind.PROVIDER_REJECTED

    def __init__(self, provider: str, status_code: int, detail: str):
        self.detail = detail
        super().__init__(provider, detail, status_code=status_code)


class ProviderUnreachableError(ProviderError):
    code = "PROVIDER_UNREACHABLE"
    kind = ErrorKind.PROVIDER_UNREACHABLE
    status_code = 500
    message = "Generation provider is unreachable"


class GenerationFailedError(ProviderError):
    """Provider job reached the failed state."""

    code = "GENERATION_FAILED"
    kind = ErrorKind.GENERATION_FAILED
    status_code = 500
    message = "Generation failed"


class GenerationCanceledError(ProviderError):
    code = "GENERATION_CANCELED"
    kind = ErrorKind.GENERATION_CANCELED
    status_code = 500
    message = "Generation was canceled"


class PollingTimedOutError(ProviderError):
    code = "POLLING_TIMED_OUT"
    kind = ErrorKind.POLLING_TIMED_OUT
    status_code = 500

    def __init__(self, provider: str, job_id: str, attempts: int):
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(
            provider,
            f"Generation did not finish after {attempts} status checks. "
            "It may still complete; check the job status later.",
        )


# =============================================================================
# Save Errors (generation succeeded, result not saved)
# =============================================================================


class MaterializationFailedError(MomentfulError):
    """Generated output could not be turned into a stored artifact."""

    code = "MATERIALIZATION_FAILED"
    kind = ErrorKind.MATERIALIZATION_FAILED
    status_code = 200
    message = "Your content was generated but not saved. You may retry saving."
    reason: str = "unknown"


class ArtifactDownloadError(MaterializationFailedError):
    code = "ARTIFACT_DOWNLOAD_FAILED"
    reason = "download"


class ArtifactStorageError(MaterializationFailedError):
    code = "ARTIFACT_STORAGE_FAILED"
    reason = "storage"


class ArtifactMediaError(MaterializationFailedError):
    code = "ARTIFACT_MEDIA_INVALID"
    reason = "media"


class PersistenceFailedError(MomentfulError):
    code = "PERSISTENCE_FAILED"
    kind = ErrorKind.PERSISTENCE_FAILED
    status_code = 200
    message = "Your content was generated but not saved. You may retry saving."


class JobTrackingError(PersistenceFailedError):
    """A submitted provider job could not be recorded locally."""

    status_code = 500
    message = "Generation was submitted but could not be tracked"


# =============================================================================
# Infrastructure Errors
# =============================================================================


class StorageError(MomentfulError):
    """Object store refused or failed an operation."""

    code = "STORAGE_ERROR"
    kind = ErrorKind.STORAGE
    status_code = 500
    message = "Storage operation failed"

    def __init__(self, message: str | None = None, *, reason: str = "unknown", retryable: bool = False):
        self.reason = reason
        self.retryable = retryable
        super().__init__(message)


class CacheReconciliationError(MomentfulError):
    """Invalidation or refetch failed. Logged, never surfaced."""

    code = "CACHE_RECONCILIATION_FAILED"
    kind = ErrorKind.CACHE_RECONCILIATION_FAILED
