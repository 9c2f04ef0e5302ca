"""Prometheus metrics for secret broker observability.

This module provides Prometheus metrics for monitoring:
- Broker requests by operation and outcome
- Backend call latency and failure kinds
- Lease cache hits and misses
- Audit records that could not be written
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram, generate_latest

if TYPE_CHECKING:
    from collections.abc import Generator

__all__ = [
    "AUDIT_WRITE_FAILURES",
    "BACKEND_CALL_DURATION",
    "BROKER_REQUESTS",
    "CACHE_LOOKUPS",
    "get_metrics",
    "observe_backend_call",
    "record_broker_request",
]

PREFIX = "secret_broker"

BROKER_REQUESTS = Counter(
    f"{PREFIX}_requests_total",
    "Broker requests by operation and outcome",
    ["operation", "outcome", "error_kind"],
)

BACKEND_CALL_DURATION = Histogram(
    f"{PREFIX}_backend_call_duration_seconds",
    "Latency of calls to the secret backend",
    ["backend", "operation", "status"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

CACHE_LOOKUPS = Counter(
    f"{PREFIX}_cache_lookups_total",
    "Lease cache lookups by result",
    ["result"],
)

# A missed audit record is an alertable condition
AUDIT_WRITE_FAILURES = Counter(
    f"{PREFIX}_audit_write_failures_total",
    "Audit events that could not be written to the configured sink",
    ["sink"],
)


def get_metrics(registry: CollectorRegistry | None = None) -> bytes:
    """Get current metrics in Prometheus format."""
    return generate_latest(registry or REGISTRY)


def record_broker_request(operation: str, outcome: str, error_kind: str | None = None) -> None:
    """Count one completed broker request."""
    BROKER_REQUESTS.labels(
        operation=operation, outcome=outcome, error_kind=error_kind or "none"
    ).inc()


@contextmanager
def observe_backend_call(backend: str, operation: str) -> Generator[dict[str, Any], None, None]:
    """Context manager for observing backend call duration.

    Yields:
        Context dict; ``duration_ms`` is filled in on exit.
    """
    context: dict[str, Any] = {"status": "success"}
    start_time = time.perf_counter()

    try:
        yield context
    except Exception:
        context["status"] = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        context["duration_ms"] = duration * 1000
        BACKEND_CALL_DURATION.labels(
            backend=backend, operation=operation, status=context["status"]
        ).observe(duration)
