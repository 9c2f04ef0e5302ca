"""Probe and scrape endpoints. None of them require authentication."""

import time
from datetime import UTC, datetime

from fastapi import APIRouter, Response, status
from prometheus_client import CONTENT_TYPE_LATEST

from secret_broker.api.dependencies import BrokerDep
from secret_broker.api.schemas.health import (
    BrokerDetails,
    ComponentHealth,
    HealthResponse,
    HealthStatus,
    ReadinessResponse,
)
from secret_broker.observability.metrics import get_metrics
from secret_broker.secrets.broker import Broker

router = APIRouter(tags=["health"])

APP_VERSION = "0.1.0"


@router.get("/health", response_model=HealthResponse, summary="Liveness probe")
async def health_check() -> HealthResponse:
    """Always 200 while the process serves requests; the backend is not probed."""
    return HealthResponse(
        status=HealthStatus.HEALTHY, version=APP_VERSION, timestamp=datetime.now(UTC)
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness probe",
    responses={503: {"model": ReadinessResponse, "description": "Backend unreachable"}},
)
async def health_ready(broker: BrokerDep, response: Response) -> ReadinessResponse:
    """Probe the backend and report audit health.

    503 when the backend does not answer within its timeout. Missed audit
    records only degrade the status so traffic keeps flowing while the
    failure counter alerts.
    """
    backend = await probe_backend(broker)
    audit = audit_health(broker)

    overall = HealthStatus.worst([backend.status, audit.status])
    if overall is HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        status=overall,
        version=APP_VERSION,
        timestamp=datetime.now(UTC),
        backend=backend,
        audit=audit,
        details=BrokerDetails(
            backend=broker.backend.name,
            cache_entries=len(broker.cache),
            policy_rules=len(broker.gate.rules),
        ),
    )


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)


async def probe_backend(broker: Broker) -> ComponentHealth:
    started = time.perf_counter()
    reachable = await broker.health_check()
    latency_ms = round((time.perf_counter() - started) * 1000, 2)

    name = broker.backend.name
    return ComponentHealth(
        status=HealthStatus.HEALTHY if reachable else HealthStatus.UNHEALTHY,
        message=f"{name} reachable" if reachable else f"{name} unreachable",
        latency_ms=latency_ms,
    )


def audit_health(broker: Broker) -> ComponentHealth:
    missed = broker.recorder.missed_records
    return ComponentHealth(
        status=HealthStatus.DEGRADED if missed else HealthStatus.HEALTHY,
        message=f"{missed} missed records",
    )
