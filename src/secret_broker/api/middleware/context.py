"""Request ID assignment and request context propagation."""

from collections.abc import Callable
from contextlib import nullcontext

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from uuid_utils.compat import uuid7

from secret_broker.core.context import create_context, request_context


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Give each request a UUIDv7 and make its caller the current context.

    Runs inside authentication, so ``request.state.caller`` is already set
    for protected routes. Public routes run without a context. The ID is
    returned in ``X-Request-ID`` and is the one recorded in audit events.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid7()
        request.state.request_id = request_id

        caller = getattr(request.state, "caller", None)
        scope = (
            nullcontext()
            if caller is None
            else request_context(
                create_context(
                    caller=caller,
                    request_id=request_id,
                    source_ip=request.client.host if request.client else None,
                )
            )
        )
        with scope:
            response = await call_next(request)

        response.headers["X-Request-ID"] = str(request_id)
        return response
