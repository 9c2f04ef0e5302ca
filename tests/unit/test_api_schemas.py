"""Tests for API schemas and error descriptions."""

import json

import pytest
from pydantic import ValidationError

from secret_broker.api.middleware.errors import describe
from secret_broker.api.schemas.errors import ErrorCode, error_response
from secret_broker.api.schemas.health import HealthStatus
from secret_broker.api.schemas.secrets import WriteSecretRequest
from secret_broker.core.exceptions import AuthenticationError
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
)
from secret_broker.secrets.types import FailureKind


class TestErrorCodes:
    """Tests for failure kind to HTTP mapping."""

    @pytest.mark.parametrize(
        ("kind", "status_code"),
        [
            (FailureKind.NOT_FOUND, 404),
            (FailureKind.UNAUTHORIZED, 403),
            (FailureKind.UNAVAILABLE, 503),
            (FailureKind.RATE_LIMITED, 429),
            (FailureKind.CONFLICT, 409),
            (FailureKind.INTERNAL, 500),
        ],
    )
    def test_status_for_failure_kind(self, kind: FailureKind, status_code: int) -> None:
        assert ErrorCode.for_failure(kind).status_code == status_code

    def test_error_response_without_request_id(self) -> None:
        response = error_response(ErrorCode.UNAUTHORIZED, "Missing Authorization header", None)

        body = json.loads(response.body)
        assert response.status_code == 401
        assert body["request_id"] == "unknown"
        assert response.headers["X-Request-ID"] == "unknown"


class TestDescribe:
    """Tests for exception descriptions."""

    def test_authentication(self) -> None:
        description = describe(AuthenticationError("Invalid bearer token"))

        assert description.code is ErrorCode.UNAUTHORIZED
        assert description.headers == {"WWW-Authenticate": "Bearer"}

    def test_not_found_details(self) -> None:
        description = describe(SecretNotFoundError("app/db"))

        assert description.details == {"failure_kind": "not_found", "path": "app/db"}

    def test_retry_after(self) -> None:
        description = describe(SecretsRateLimitedError("slow down", retry_after_seconds=2.5))

        assert description.headers == {"Retry-After": "2"}

    def test_unavailable_message_kept(self) -> None:
        description = describe(SecretsUnavailableError("vault timed out"))

        assert description.code is ErrorCode.SERVICE_UNAVAILABLE
        assert "vault timed out" in description.message

    def test_invalid_path(self) -> None:
        assert describe(ValueError("bad path")).code is ErrorCode.INVALID_REQUEST


class TestSchemas:
    """Tests for request and health models."""

    def test_write_requires_data(self) -> None:
        with pytest.raises(ValidationError):
            WriteSecretRequest(data={})

    def test_worst_status(self) -> None:
        assert HealthStatus.worst([HealthStatus.HEALTHY, HealthStatus.DEGRADED]) is HealthStatus.DEGRADED
        assert HealthStatus.worst([HealthStatus.DEGRADED, HealthStatus.UNHEALTHY]) is HealthStatus.UNHEALTHY
        assert HealthStatus.worst([]) is HealthStatus.HEALTHY
