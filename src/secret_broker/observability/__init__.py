"""Observability module for the secret broker.

Prometheus metrics for broker requests, backend calls and audit
write failures.
"""

from secret_broker.observability.metrics import (
    AUDIT_WRITE_FAILURES,
    BACKEND_CALL_DURATION,
    BROKER_REQUESTS,
    CACHE_LOOKUPS,
    get_metrics,
    observe_backend_call,
    record_broker_request,
)

__all__ = [
    "AUDIT_WRITE_FAILURES",
    "BACKEND_CALL_DURATION",
    "BROKER_REQUESTS",
    "CACHE_LOOKUPS",
    "get_metrics",
    "observe_backend_call",
    "record_broker_request",
]
