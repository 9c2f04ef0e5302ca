"""Access log middleware."""

import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from secret_broker.core.logging import get_logger

logger = get_logger("secret_broker.api.access")

# Probe and scrape traffic is logged at debug level only
QUIET_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def client_address(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Emit one ``http_request`` event per request.

    Bodies are never logged; secret access is covered by the audit trail.
    Runs outermost, so it also sees 401 responses from authentication.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        status_code = response.status_code
        if request.url.path in QUIET_PATHS and status_code < 500:
            log = logger.debug
        elif status_code >= 500:
            log = logger.error
        elif status_code >= 400:
            log = logger.warning
        else:
            log = logger.info

        caller = getattr(request.state, "caller", None)
        log(
            "http_request",
            method=request.method,
            route=request.url.path,
            status_code=status_code,
            duration_ms=elapsed_ms,
            request_id=response.headers.get("X-Request-ID", "unknown"),
            caller=caller.principal if caller is not None else None,
            client_ip=client_address(request),
        )
        return response
