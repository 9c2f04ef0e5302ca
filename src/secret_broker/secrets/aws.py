"""AWS Secrets Manager secret backend.

Secrets are stored as a JSON object in ``SecretString``. The version
reported for a secret is the creation instant of its ``AWSCURRENT``
version in epoch milliseconds, which increases with every write.
"""

import asyncio
import base64
import json
import logging
from functools import partial
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt, wait_fixed

from secret_broker.secrets.config import AWSSecretsConfig
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretsAccessError,
    SecretsConnectionError,
    SecretsError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
    SecretValue,
    SecretVersionConflictError,
    coerce_fields,
)
from secret_broker.secrets.rotation import generate_rotated_fields

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = frozenset({"ResourceNotFoundException"})
ACCESS_DENIED_CODES = frozenset(
    {"AccessDeniedException", "UnrecognizedClientException", "InvalidSignatureException"}
)
THROTTLED_CODES = frozenset({"ThrottlingException", "LimitExceededException", "TooManyRequestsException"})
UNAVAILABLE_CODES = frozenset({"InternalServiceError", "ServiceUnavailable", "ServiceUnavailableException"})

CURRENT_STAGE = "AWSCURRENT"


def _version_of(response: dict[str, Any]) -> int:
    return int(response["CreatedDate"].timestamp() * 1000)


def _decode_secret(response: dict[str, Any]) -> dict[str, str]:
    """Field mapping from a GetSecretValue response."""
    if "SecretString" in response:
        raw = response["SecretString"]
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"value": raw}
        return coerce_fields(parsed) if isinstance(parsed, dict) else {"value": raw}
    return {"value": base64.b64encode(response["SecretBinary"]).decode("ascii")}


class AWSSecretsManagerBackend:
    """Secret backend using AWS Secrets Manager through boto3.

    Example:
        backend = AWSSecretsManagerBackend(AWSSecretsConfig(region="eu-west-1"))
        await backend.connect()
        value = await backend.fetch("app/db")
    """

    name = "aws"

    def __init__(self, config: AWSSecretsConfig, client: Any | None = None):
        """Initialize the backend.

        Args:
            config: AWS configuration
            client: Pre-built ``secretsmanager`` client (tests)
        """
        self.config = config
        self._client: Any | None = client

    async def _call(self, method: str, **kwargs: Any) -> dict[str, Any]:
        """Run a synchronous boto3 call in the default executor."""
        if self._client is None:
            raise SecretsUnavailableError("AWS Secrets Manager backend is not connected")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(getattr(self._client, method), **kwargs))

    def _map_error(self, error: Exception, path: str, operation: str) -> SecretsError:
        """Translate a boto3 error into the shared taxonomy."""
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")
            if code in NOT_FOUND_CODES:
                return SecretNotFoundError(path, error)
            if code in ACCESS_DENIED_CODES:
                return SecretsAccessError(f"AWS denied {operation} on {path}", error)
            if code in THROTTLED_CODES:
                return SecretsRateLimitedError(f"AWS throttled {operation} on {path}", error)
            if code in UNAVAILABLE_CODES:
                return SecretsUnavailableError(f"AWS unavailable for {operation} on {path}", error)
            return SecretsError(f"AWS {operation} failed on {path}: {code}", error)
        if isinstance(error, NoCredentialsError):
            return SecretsAccessError("No AWS credentials available", error)
        if isinstance(error, BotoCoreError):
            return SecretsUnavailableError(f"AWS unavailable for {operation} on {path}", error)
        return SecretsError(f"AWS {operation} failed on {path}: {error}", error)

    async def connect(self) -> None:
        """Create the ``secretsmanager`` client.

        Raises:
            SecretsConnectionError: If the client cannot be created
        """
        if self._client is not None:
            return

        kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id and self.config.secret_access_key:
            kwargs["aws_access_key_id"] = self.config.access_key_id
            kwargs["aws_secret_access_key"] = self.config.secret_access_key
            if self.config.session_token:
                kwargs["aws_session_token"] = self.config.session_token

        try:
            self._client = boto3.client("secretsmanager", **kwargs)
        except (BotoCoreError, ValueError) as e:
            logger.error(f"Failed to create AWS Secrets Manager client: {e}")
            raise SecretsConnectionError("aws", e) from e

        logger.info(f"Connected to AWS Secrets Manager in {self.config.region}")

    async def _get(self, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return await self._call("get_secret_value", SecretId=path, **kwargs)
        except SecretsError:
            raise
        except Exception as e:
            raise self._map_error(e, path, "read") from e

    async def fetch(self, path: str) -> SecretValue:
        """Read the ``AWSCURRENT`` version of a secret."""
        response = await self._get(path)
        return SecretValue(
            path=path,
            data=_decode_secret(response),
            version=_version_of(response),
            backend=self.name,
        )

    async def _current_version(self, path: str) -> int:
        try:
            return _version_of(await self._get(path))
        except SecretNotFoundError:
            return 0

    async def store(
        self,
        path: str,
        data: dict[str, str],
        expected_version: int | None = None,
    ) -> int:
        """Write a new version, creating the secret if it does not exist.

        ``expected_version`` is compared against the current version before
        writing. Secrets Manager has no conditional put, so a concurrent
        writer can still slip in between the check and the write.

        Returns:
            The new version number
        """
        current_version = await self._current_version(path)
        if expected_version is not None and expected_version != current_version:
            raise SecretVersionConflictError(path, expected_version, current_version)

        secret_string = json.dumps(data)
        try:
            if current_version == 0:
                kwargs: dict[str, Any] = {"Name": path, "SecretString": secret_string}
                if self.config.kms_key_id:
                    kwargs["KmsKeyId"] = self.config.kms_key_id
                response = await self._call("create_secret", **kwargs)
            else:
                response = await self._call(
                    "put_secret_value", SecretId=path, SecretString=secret_string
                )
        except SecretsError:
            raise
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ResourceExistsException":
                raise SecretVersionConflictError(path, expected_version or 0, cause=e) from e
            raise self._map_error(e, path, "write") from e
        except Exception as e:
            raise self._map_error(e, path, "write") from e

        written = await self._get(path, VersionId=response["VersionId"])
        version = _version_of(written)
        logger.debug(f"Stored AWS secret {path} version {version}")
        return version

    async def delete(self, path: str) -> bool:
        """Delete a secret immediately, without a recovery window."""
        try:
            await self._call("delete_secret", SecretId=path, ForceDeleteWithoutRecovery=True)
        except SecretsError:
            raise
        except Exception as e:
            mapped = self._map_error(e, path, "delete")
            if isinstance(mapped, SecretNotFoundError):
                return False
            raise mapped from e
        return True

    async def rotate(self, path: str) -> SecretValue:
        """Rotate a secret.

        With a rotation Lambda configured, Secrets Manager runs it and the
        new version is returned once it has been promoted to
        ``AWSCURRENT``. Otherwise every field gets a freshly generated value.

        Raises:
            SecretsUnavailableError: If the Lambda has not finished within
                the configured polling window
        """
        if self.config.rotation_lambda_arn:
            try:
                response = await self._call(
                    "rotate_secret",
                    SecretId=path,
                    RotationLambdaARN=self.config.rotation_lambda_arn,
                    RotateImmediately=True,
                )
            except SecretsError:
                raise
            except Exception as e:
                raise self._map_error(e, path, "rotate") from e
            version_id = response["VersionId"]
            logger.info(f"Triggered Lambda rotation for AWS secret {path} (version {version_id})")

            await self._wait_until_current(path, version_id)
            rotated = await self._get(path, VersionId=version_id)
            return SecretValue(
                path=path,
                data=_decode_secret(rotated),
                version=_version_of(rotated),
                backend=self.name,
            )

        current = await self.fetch(path)
        new_data = generate_rotated_fields(current.data)
        version = await self.store(path, new_data, expected_version=current.version)
        logger.info(f"Rotated AWS secret {path} to version {version}")
        return SecretValue(path=path, data=new_data, version=version, backend=self.name)

    async def _is_current(self, path: str, version_id: str) -> bool:
        try:
            response = await self._call("describe_secret", SecretId=path)
        except SecretsError:
            raise
        except Exception as e:
            raise self._map_error(e, path, "describe") from e
        return CURRENT_STAGE in response.get("VersionIdsToStages", {}).get(version_id, [])

    async def _wait_until_current(self, path: str, version_id: str) -> None:
        """Poll until a rotation Lambda has promoted ``version_id``."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.config.rotation_poll_attempts)),
            wait=wait_fixed(self.config.rotation_poll_interval_seconds),
            retry=retry_if_result(lambda current: not current),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        if not await retrying(self._is_current, path, version_id):
            raise SecretsUnavailableError(
                f"Rotation of AWS secret {path} did not promote version {version_id} to "
                f"{CURRENT_STAGE} after {self.config.rotation_poll_attempts} checks"
            )

    async def health_check(self) -> bool:
        """Check that the service answers an authenticated call."""
        if self._client is None:
            return False
        try:
            await self._call("list_secrets", MaxResults=1)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"AWS Secrets Manager health check failed: {e}")
            return False

    async def close(self) -> None:
        self._client = None
