"""Error envelope returned by every failing endpoint."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from secret_broker.secrets.types import FailureKind


class ErrorCode(str, Enum):
    """Machine-readable error codes."""

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INVALID_REQUEST = "invalid_request"
    NOT_FOUND = "not_found"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INTERNAL_ERROR = "internal_error"

    @classmethod
    def for_failure(cls, kind: FailureKind) -> "ErrorCode":
        return _FAILURE_CODES[kind]

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


# A backend refusing our credentials surfaces to the caller as forbidden
_FAILURE_CODES = {
    FailureKind.NOT_FOUND: ErrorCode.NOT_FOUND,
    FailureKind.UNAUTHORIZED: ErrorCode.FORBIDDEN,
    FailureKind.UNAVAILABLE: ErrorCode.SERVICE_UNAVAILABLE,
    FailureKind.RATE_LIMITED: ErrorCode.RATE_LIMITED,
    FailureKind.CONFLICT: ErrorCode.CONFLICT,
    FailureKind.INTERNAL: ErrorCode.INTERNAL_ERROR,
}

_STATUS_CODES = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.CONFLICT: 409,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}


class APIError(BaseModel):
    """Error response body. Never carries secret values."""

    error_code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable error message")
    details: dict[str, Any] | None = Field(
        default=None, description="Additional error context"
    )
    request_id: str = Field(..., description="Request ID for tracing (UUIDv7)")
    timestamp: datetime = Field(..., description="When the error occurred")

    model_config = {"json_schema_extra": {"example": {
        "error_code": "forbidden",
        "message": "Access denied for billing: no policy rule grants write on app/db",
        "details": {"path": "app/db", "failure_kind": "unauthorized"},
        "request_id": "019478f2-1234-7000-8000-abcdef123456",
        "timestamp": "2026-01-30T12:00:00Z",
    }}}


def error_response(
    code: ErrorCode,
    message: str,
    request_id: UUID | str | None,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render an APIError with the status code that belongs to ``code``."""
    rid = str(request_id) if request_id is not None else "unknown"
    body = APIError(
        error_code=code.value,
        message=message,
        details=details,
        request_id=rid,
        timestamp=datetime.now(UTC),
    )
    return JSONResponse(
        status_code=code.status_code,
        content=body.model_dump(mode="json"),
        headers={"X-Request-ID": rid, **(headers or {})},
    )
