"""FastAPI dependencies for API endpoints."""

from typing import Annotated

from fastapi import Depends, Request

from secret_broker.core.context import CallerIdentity, get_current_context
from secret_broker.core.exceptions import AuthenticationError, ContextNotSetError
from secret_broker.secrets.broker import Broker

__all__ = [
    "BrokerDep",
    "CallerDep",
    "get_broker",
    "get_caller",
]


def get_broker(request: Request) -> Broker:
    return request.app.state.broker


async def get_caller() -> CallerIdentity:
    """Caller of the request being served.

    Raises:
        AuthenticationError: If the request carries no authenticated caller
    """
    try:
        return get_current_context().caller
    except ContextNotSetError as e:
        raise AuthenticationError("Request is not authenticated") from e


BrokerDep = Annotated[Broker, Depends(get_broker)]
CallerDep = Annotated[CallerIdentity, Depends(get_caller)]
