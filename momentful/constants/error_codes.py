"""Error kinds and error codes dictionary.

ERROR_CODES is the single source of truth for error codes, their
retryability and suggested recovery actions. Exception handlers and the
generation outcome use it to build machine-readable error payloads.
"""

from enum import Enum
from typing import TypedDict


class ErrorKind(str, Enum):
    """Stable taxonomy that callers branch on."""

    VALIDATION = "validation_error"
    AUTH = "auth_error"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_BILLING_LIMIT = "provider_billing_limit"
    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    GENERATION_FAILED = "generation_failed"
    GENERATION_CANCELED = "generation_canceled"
    POLLING_TIMED_OUT = "polling_timed_out"
    MATERIALIZATION_FAILED = "materialization_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    STORAGE = "storage_error"
    CACHE_RECONCILIATION_FAILED = "cache_reconciliation_failed"
    INTERNAL = "internal_error"


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    retryable: bool
    suggested_action: str
    suggested_endpoint: str
    suggested_fix: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Request errors (not retryable as-is)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "retryable": False,
        "suggested_fix": "Check the request fields and try again",
    },
    "INVALID_SOURCE_REFERENCE": {
        "retryable": False,
        "suggested_fix": "Use an http(s) URL or a storage path under your own user folder",
    },
    "UNSUPPORTED_MODEL": {
        "retryable": False,
        "suggested_fix": "Pick one of the supported model ids for this resource type",
    },
    "UNAUTHORIZED": {
        "retryable": False,
        "suggested_fix": "Sign in again and retry with a fresh token",
    },
    "FORBIDDEN": {
        "retryable": False,
    },
    "JOB_NOT_FOUND": {
        "retryable": False,
    },
    "ARTIFACT_NOT_FOUND": {
        "retryable": True,
        "suggested_action": "refresh_list",
    },
    "LINEAGE_NOT_FOUND": {
        "retryable": True,
        "suggested_action": "refresh_list",
    },
    # ==========================================================================
    # Quota and billing
    # ==========================================================================
    "QUOTA_EXCEEDED": {
        "retryable": False,
        "suggested_action": "contact_support",
        "suggested_fix": "Message the Momentful crew at hello@momentful.ai to unlock more",
    },
    "PROVIDER_BILLING_LIMIT": {
        "retryable": False,
        "suggested_fix": "Check the provider account billing settings",
    },
    # ==========================================================================
    # Provider errors
    # ==========================================================================
    "PROVIDER_REJECTED": {
        "retryable": False,
    },
    "PROVIDER_UNREACHABLE": {
        "retryable": True,
        "suggested_action": "retry_generation",
    },
    "GENERATION_FAILED": {
        "retryable": True,
        "suggested_action": "retry_generation",
    },
    "GENERATION_CANCELED": {
        "retryable": True,
        "suggested_action": "retry_generation",
    },
    "POLLING_TIMED_OUT": {
        "retryable": True,
        "suggested_action": "check_job_status",
        "suggested_endpoint": "GET /api/jobs/{job_id}",
    },
    # ==========================================================================
    # Save errors (generation already succeeded)
    # ==========================================================================
    "MATERIALIZATION_FAILED": {
        "retryable": True,
        "suggested_action": "retry_save",
        "suggested_endpoint": "POST /api/jobs/{job_id}/save",
    },
    "ARTIFACT_DOWNLOAD_FAILED": {
        "retryable": True,
        "suggested_action": "retry_save",
        "suggested_endpoint": "POST /api/jobs/{job_id}/save",
    },
    "ARTIFACT_STORAGE_FAILED": {
        "retryable": True,
        "suggested_action": "retry_save",
        "suggested_endpoint": "POST /api/jobs/{job_id}/save",
        "suggested_fix": "Free up storage space or check bucket permissions",
    },
    "ARTIFACT_MEDIA_INVALID": {
        "retryable": False,
        "suggested_action": "retry_generation",
    },
    "PERSISTENCE_FAILED": {
        "retryable": True,
        "suggested_action": "retry_save",
        "suggested_endpoint": "POST /api/jobs/{job_id}/save",
    },
    # ==========================================================================
    # Infrastructure
    # ==========================================================================
    "STORAGE_ERROR": {
        "retryable": True,
    },
    "CACHE_RECONCILIATION_FAILED": {
        "retryable": True,
    },
    "INTERNAL_ERROR": {
        "retryable": False,
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification for a code, or an empty spec."""
    return ERROR_CODES.get(code, {})
