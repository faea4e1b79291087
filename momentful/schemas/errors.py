from pydantic import BaseModel

from momentful.constants.error_codes import ErrorKind


class ErrorInfo(BaseModel):
    """Machine-readable description of a failure."""

    code: str
    kind: ErrorKind
    message: str
    retryable: bool = False
    suggested_action: str | None = None
    suggested_endpoint: str | None = None
    suggested_fix: str | None = None
