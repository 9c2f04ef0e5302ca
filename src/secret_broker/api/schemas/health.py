"""Liveness and readiness payloads."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @classmethod
    def worst(cls, statuses: list["HealthStatus"]) -> "HealthStatus":
        """Unhealthy beats degraded beats healthy."""
        for candidate in (cls.UNHEALTHY, cls.DEGRADED):
            if candidate in statuses:
                return candidate
        return cls.HEALTHY


class HealthResponse(BaseModel):
    """Liveness: the process is up and serving."""

    status: HealthStatus
    version: str
    timestamp: datetime


class ComponentHealth(BaseModel):
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = Field(default=None, description="Probe round trip")


class BrokerDetails(BaseModel):
    backend: str = Field(..., description="Configured backend name")
    cache_entries: int = Field(..., description="Entries currently in the lease cache")
    policy_rules: int = Field(..., description="Loaded policy rules")


class ReadinessResponse(HealthResponse):
    """Readiness: the backend answers and audit records are being written."""

    backend: ComponentHealth
    audit: ComponentHealth
    details: BrokerDetails

    model_config = {"json_schema_extra": {"example": {
        "status": "degraded",
        "version": "0.1.0",
        "timestamp": "2026-01-30T12:00:00Z",
        "backend": {"status": "healthy", "message": "vault reachable", "latency_ms": 4.2},
        "audit": {"status": "degraded", "message": "3 missed records"},
        "details": {"backend": "vault", "cache_entries": 12, "policy_rules": 8},
    }}}
