"""Environment-based secret backend for development and testing.

This implementation keeps secrets in memory, optionally seeded from
environment variables, suitable for development environments where a
secrets backend is not available. It supports the full read, write,
delete and rotate surface with monotonic versions.
"""

import asyncio
import json
import logging
import os
from collections.abc import Mapping

from secret_broker.secrets.config import EnvironmentSecretsConfig
from secret_broker.secrets.protocol import (
    SecretNotFoundError,
    SecretValue,
    SecretVersionConflictError,
    coerce_fields,
)
from secret_broker.secrets.rotation import generate_rotated_fields
from secret_broker.secrets.types import normalize_path

logger = logging.getLogger(__name__)


class EnvironmentBackend:
    """Secret backend held in process memory.

    Environment variable naming convention:
    - {prefix}{PATH_WITH_DOUBLE_UNDERSCORES}
    - e.g., BROKER_SECRET_APP__DB for app/db

    Values are JSON objects mapping field names to strings; any other value
    is stored under the single field ``value``:
    - BROKER_SECRET_APP__DB='{"username": "app", "password": "s3cret"}'

    Example:
        backend = EnvironmentBackend(EnvironmentSecretsConfig(seed_from_environment=False))
        await backend.store("app/db", {"password": "x"})
        value = await backend.fetch("app/db")
    """

    name = "environment"

    def __init__(
        self,
        config: EnvironmentSecretsConfig | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        """Initialize the environment backend.

        Args:
            config: Configuration for environment secrets
            environ: Variables to seed from (defaults to os.environ)
        """
        self.config = config or EnvironmentSecretsConfig()
        self._environ = environ
        self._secrets: dict[str, SecretValue] = {}
        self._lock = asyncio.Lock()
        if self.config.seed_from_environment:
            self._load_from_env()

    def _env_var_to_path(self, key: str) -> str:
        """Convert an environment variable name to a secret path.

        Args:
            key: Variable name (e.g., "BROKER_SECRET_APP__DB")

        Returns:
            Secret path (e.g., "app/db")
        """
        return normalize_path(key[len(self.config.prefix) :].lower().replace("__", "/"))

    def _load_from_env(self) -> None:
        """Load secrets from environment variables."""
        environ = os.environ if self._environ is None else self._environ
        prefix = self.config.prefix

        for key, raw in environ.items():
            if not key.startswith(prefix) or key == prefix:
                continue

            try:
                path = self._env_var_to_path(key)
            except ValueError:
                logger.warning(f"Ignoring environment secret with invalid name: {key}")
                continue

            # Try to parse as JSON, fall back to string
            try:
                parsed = json.loads(raw)
                data = coerce_fields(parsed) if isinstance(parsed, dict) else {"value": raw}
            except json.JSONDecodeError:
                data = {"value": raw}

            self._secrets[path] = SecretValue(path=path, data=data, version=1, backend=self.name)
            logger.debug(f"Loaded secret from environment: {path}")

        logger.info(f"Environment backend seeded with {len(self._secrets)} secrets")

    async def connect(self) -> None:
        return None

    async def fetch(self, path: str) -> SecretValue:
        """Retrieve a secret.

        Raises:
            SecretNotFoundError: If secret not found
        """
        value = self._secrets.get(path)
        if value is None:
            raise SecretNotFoundError(path)
        return value

    async def store(
        self,
        path: str,
        data: dict[str, str],
        expected_version: int | None = None,
    ) -> int:
        """Store a new version of a secret.

        A write with ``expected_version=0`` only succeeds if the secret does
        not exist yet.

        Returns:
            The new version number

        Raises:
            SecretVersionConflictError: If expected_version does not match
        """
        async with self._lock:
            current = self._secrets.get(path)
            current_version = current.version if current is not None else 0

            if expected_version is not None and expected_version != current_version:
                raise SecretVersionConflictError(path, expected_version, current_version)

            version = current_version + 1
            self._secrets[path] = SecretValue(
                path=path,
                data=dict(data),
                version=version,
                backend=self.name,
            )

        logger.debug(f"Stored secret {path} version {version}")
        return version

    async def delete(self, path: str) -> bool:
        """Delete a secret.

        Returns:
            True if deleted, False if not found
        """
        async with self._lock:
            return self._secrets.pop(path, None) is not None

    async def rotate(self, path: str) -> SecretValue:
        """Replace every field of a secret with a freshly generated value.

        Raises:
            SecretNotFoundError: If secret not found
        """
        async with self._lock:
            current = self._secrets.get(path)
            if current is None:
                raise SecretNotFoundError(path)

            rotated = SecretValue(
                path=path,
                data=generate_rotated_fields(current.data),
                version=current.version + 1,
                backend=self.name,
            )
            self._secrets[path] = rotated

        logger.info(f"Rotated secret {path} to version {rotated.version}")
        return rotated

    async def health_check(self) -> bool:
        """Always True for the environment backend."""
        return True

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self._secrets)
