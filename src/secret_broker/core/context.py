"""Caller identity and per-request context.

The caller is resolved once per request, by the HTTP authentication
middleware or by the embedding application, and lives in a ContextVar
for the duration of that request only. Log processors read it from
there; nothing persists it.

Usage:
    ctx = create_context(caller=CallerIdentity(principal="billing", roles={"app"}))

    with request_context(ctx):
        await broker.get(get_current_context().caller, "app/db")
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import UUID

from pydantic import BaseModel, Field
from uuid_utils.compat import uuid7

from secret_broker.core.exceptions import ContextNotSetError


class CallerIdentity(BaseModel):
    """Who is asking.

    Attributes:
        principal: Stable caller name; the only part that reaches audit records
        roles: Matched against policy rule roles
    """

    principal: str
    roles: frozenset[str] = Field(default_factory=frozenset)

    model_config = {"frozen": True}

    def __str__(self) -> str:
        return self.principal


# Identity used by scheduled rotations
SYSTEM_CALLER = CallerIdentity(principal="system", roles=frozenset({"system"}))


class RequestContext(BaseModel):
    request_id: UUID = Field(default_factory=uuid7)
    caller: CallerIdentity
    source_ip: str | None = None

    model_config = {"frozen": True}


_current: ContextVar[RequestContext | None] = ContextVar("secret_broker_request", default=None)


def get_current_context() -> RequestContext:
    """Context of the request being served.

    Raises:
        ContextNotSetError: Outside of request_context()
    """
    ctx = _current.get()
    if ctx is None:
        raise ContextNotSetError()
    return ctx


def get_current_context_or_none() -> RequestContext | None:
    return _current.get()


@contextmanager
def request_context(ctx: RequestContext) -> Iterator[RequestContext]:
    """Make ``ctx`` current for the block, in sync and async code alike."""
    token = _current.set(ctx)
    try:
        yield ctx
    finally:
        _current.reset(token)


def create_context(
    *,
    caller: CallerIdentity,
    request_id: UUID | None = None,
    source_ip: str | None = None,
) -> RequestContext:
    return RequestContext(request_id=request_id or uuid7(), caller=caller, source_ip=source_ip)
