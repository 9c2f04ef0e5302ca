"""Secret endpoints.

All operations go through the Broker, which applies the policy gate and
writes the audit trail; these handlers only translate HTTP to broker
calls and back.
"""

from fastapi import APIRouter, Response, status

from secret_broker.api.dependencies import BrokerDep, CallerDep
from secret_broker.api.schemas.errors import APIError
from secret_broker.api.schemas.secrets import (
    SecretResponse,
    WriteSecretRequest,
    WriteSecretResponse,
)
from secret_broker.secrets.protocol import SecretNotFoundError
from secret_broker.secrets.types import normalize_path

router = APIRouter(prefix="/secret", tags=["secrets"])

ERROR_RESPONSES: dict[int | str, dict] = {
    401: {"model": APIError, "description": "Missing or unknown bearer token"},
    403: {"model": APIError, "description": "Denied by policy or by the backend"},
    429: {"model": APIError, "description": "Backend rate limited the request"},
    503: {"model": APIError, "description": "Backend unavailable or timed out"},
}

FIRST_VERSION = 1


@router.post(
    "/{path:path}/rotate",
    response_model=SecretResponse,
    summary="Rotate a secret",
    responses={**ERROR_RESPONSES, 404: {"model": APIError}},
)
async def rotate_secret(path: str, broker: BrokerDep, caller: CallerDep) -> SecretResponse:
    """Replace a secret with freshly generated values and return them.

    The cached value is invalidated, so the next read sees the new version.
    """
    return SecretResponse.from_value(await broker.rotate(caller, path))


@router.get(
    "/{path:path}",
    response_model=SecretResponse,
    summary="Read a secret",
    responses={**ERROR_RESPONSES, 404: {"model": APIError}},
)
async def read_secret(path: str, broker: BrokerDep, caller: CallerDep) -> SecretResponse:
    return SecretResponse.from_value(await broker.get(caller, path))


@router.post(
    "/{path:path}",
    response_model=WriteSecretResponse,
    summary="Write a new secret version",
    responses={
        **ERROR_RESPONSES,
        201: {"model": WriteSecretResponse, "description": "Secret created"},
        409: {"model": APIError, "description": "expected_version does not match"},
    },
)
async def write_secret(
    path: str,
    body: WriteSecretRequest,
    response: Response,
    broker: BrokerDep,
    caller: CallerDep,
) -> WriteSecretResponse:
    """Write a secret.

    Returns 201 when the write created the secret, 200 otherwise.
    """
    version = await broker.put(
        caller, path, body.data, expected_version=body.expected_version
    )
    created = body.expected_version == 0 or version == FIRST_VERSION
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return WriteSecretResponse(path=normalize_path(path), version=version)


@router.delete(
    "/{path:path}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a secret",
    responses={**ERROR_RESPONSES, 404: {"model": APIError}},
)
async def delete_secret(path: str, broker: BrokerDep, caller: CallerDep) -> Response:
    """Delete a secret and all of its versions."""
    if not await broker.delete(caller, path):
        raise SecretNotFoundError(normalize_path(path))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
