"""Request context, caller identity and logging."""

from .context import (
    SYSTEM_CALLER,
    CallerIdentity,
    RequestContext,
    create_context,
    get_current_context,
    get_current_context_or_none,
    request_context,
)
from .exceptions import AuthenticationError, ContextNotSetError

__all__ = [
    "SYSTEM_CALLER",
    "AuthenticationError",
    "CallerIdentity",
    "ContextNotSetError",
    "RequestContext",
    "create_context",
    "get_current_context",
    "get_current_context_or_none",
    "request_context",
]
