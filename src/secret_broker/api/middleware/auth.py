"""Bearer token authentication."""

import re
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from secret_broker.core.exceptions import AuthenticationError
from secret_broker.secrets.policy import IdentityRegistry, PolicySource

PUBLIC_PATHS = frozenset({"/health", "/health/ready", "/metrics", "/openapi.json"})
PUBLIC_PREFIXES = ("/docs", "/redoc")

BEARER_PATTERN = re.compile(r"^Bearer\s+(\S+)\s*$", re.IGNORECASE)


def is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def bearer_token(request: Request) -> str:
    """Extract the token from the Authorization header.

    Raises:
        AuthenticationError: If the header is absent or not a bearer credential
    """
    header = request.headers.get("Authorization")
    if not header:
        raise AuthenticationError("Missing Authorization header")
    match = BEARER_PATTERN.match(header)
    if match is None:
        raise AuthenticationError("Invalid Authorization header format")
    return match.group(1)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Resolve the bearer token to a CallerIdentity.

    Unknown tokens are rejected before any policy evaluation or audit. A
    resolved identity says who the caller is; the policy gate decides what
    it may do. A changed policy file is reloaded before the token is
    resolved.

    Sets:
        request.state.caller
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if is_public(request.url.path):
            return await call_next(request)

        policy: PolicySource | None = request.app.state.policy
        if policy is not None:
            policy.refresh()

        identities: IdentityRegistry = request.app.state.identities
        caller = identities.resolve(bearer_token(request))
        if caller is None:
            raise AuthenticationError("Invalid bearer token")

        request.state.caller = caller
        return await call_next(request)
