"""API request and response schemas."""

from .errors import APIError, ErrorCode
from .health import (
    BrokerDetails,
    ComponentHealth,
    HealthResponse,
    HealthStatus,
    ReadinessResponse,
)
from .secrets import SecretResponse, WriteSecretRequest, WriteSecretResponse

__all__ = [
    "APIError",
    "BrokerDetails",
    "ComponentHealth",
    "ErrorCode",
    "HealthResponse",
    "HealthStatus",
    "ReadinessResponse",
    "SecretResponse",
    "WriteSecretRequest",
    "WriteSecretResponse",
]
