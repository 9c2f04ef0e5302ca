"""Translate exceptions escaping the routers into APIError responses."""

from collections.abc import Callable
from typing import Any, NamedTuple

from fastapi import Request, Response
from pydantic import ValidationError
from starlette.middleware.base import BaseHTTPMiddleware

from secret_broker.api.schemas.errors import ErrorCode, error_response
from secret_broker.config.settings import get_settings
from secret_broker.core.exceptions import AuthenticationError
from secret_broker.core.logging import get_logger
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretsError,
    SecretsRateLimitedError,
    SecretVersionConflictError,
)
from secret_broker.secrets.types import FailureKind

logger = get_logger("secret_broker.api.errors")


class ErrorDescription(NamedTuple):
    code: ErrorCode
    message: str
    details: dict[str, Any] | None = None
    headers: dict[str, str] | None = None


def describe_broker_error(exc: SecretsError) -> ErrorDescription:
    """Describe a broker failure by its failure kind."""
    details: dict[str, Any] = {"failure_kind": exc.kind.value}
    headers: dict[str, str] = {}

    if isinstance(exc, (SecretNotFoundError, SecretVersionConflictError)):
        details["path"] = exc.path
    if isinstance(exc, SecretVersionConflictError):
        details["expected_version"] = exc.expected_version
        details["current_version"] = exc.current_version
    if isinstance(exc, SecretsRateLimitedError) and exc.retry_after_seconds:
        headers["Retry-After"] = str(int(exc.retry_after_seconds))

    # Internal messages may name backend internals
    message = "Internal server error" if exc.kind is FailureKind.INTERNAL else str(exc)
    return ErrorDescription(ErrorCode.for_failure(exc.kind), message, details, headers)


def describe(exc: Exception) -> ErrorDescription:
    if isinstance(exc, AuthenticationError):
        return ErrorDescription(
            ErrorCode.UNAUTHORIZED, exc.reason, headers={"WWW-Authenticate": "Bearer"}
        )
    if isinstance(exc, SecretsError):
        return describe_broker_error(exc)
    if isinstance(exc, ValidationError):
        return ErrorDescription(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        )
    if isinstance(exc, ValueError):
        # Malformed secret paths
        return ErrorDescription(ErrorCode.INVALID_REQUEST, str(exc))

    details = {"type": type(exc).__name__} if get_settings().DEBUG else None
    return ErrorDescription(ErrorCode.INTERNAL_ERROR, "Internal server error", details)


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Catch exceptions from inner layers and render the APIError envelope.

    Sits outside authentication, so 401s are rendered here too; those
    carry ``request_id: "unknown"`` because no request ID exists yet.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            description = describe(exc)
            if description.code.status_code >= 500:
                logger.error(
                    "request_failed",
                    method=request.method,
                    route=request.url.path,
                    error=repr(exc),
                )
            return error_response(
                description.code,
                description.message,
                getattr(request.state, "request_id", None),
                details=description.details,
                headers=description.headers,
            )
