"""HashiCorp Vault secret backend.

This module provides integration with HashiCorp Vault for
production-grade secrets management: KV v2 for static secrets and the
logical API for leased secrets from dynamic engines.
"""

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Any

import hvac
import requests
from hvac.exceptions import (
    Forbidden,
    InternalServerError,
    InvalidPath,
    InvalidRequest,
    RateLimitExceeded,
    Unauthorized,
    VaultDown,
    VaultError,
)

from secret_broker.secrets.config import VaultConfig
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

__all__ = ["VaultBackend"]

KUBERNETES_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")

# Dynamic paths whose last lease is remembered for revocation on rotate
MAX_TRACKED_LEASES = 1024


class VaultBackend:
    """Secret backend using HashiCorp Vault.

    This implementation uses the hvac library. Paths whose first segment is
    one of ``config.dynamic_mounts`` (e.g. ``database/creds/app``) are read
    through the logical API and carry a lease; every other path is a KV v2
    secret under ``config.mount_point``.

    Features:
    - Token, AppRole, and Kubernetes authentication
    - KV v2 versioning with check-and-set writes
    - Leased dynamic credentials with revocation on rotation
    - Automatic token renewal

    Example:
        config = VaultConfig(
            url="https://vault.example.com:8200",
            token="s.xxxxxxx",
        )
        backend = VaultBackend(config)
        await backend.connect()

        value = await backend.fetch("app/db")
    """

    name = "vault"

    def __init__(self, config: VaultConfig, client: Any | None = None):
        """Initialize the Vault backend.

        Args:
            config: Vault configuration
            client: Pre-built hvac client (tests)
        """
        self.config = config
        self._client: Any | None = client
        self._connected = False
        self._token_renewal_task: asyncio.Task[None] | None = None
        # Lease IDs of the last dynamic credentials issued per path, least
        # recently issued first
        self._leases: OrderedDict[str, str] = OrderedDict()

    async def _call(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous hvac call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def connect(self) -> None:
        """Connect to Vault and authenticate.

        Raises:
            SecretsConnectionError: If connection fails
        """
        try:
            if self._client is None:
                self._client = hvac.Client(
                    url=self.config.url,
                    token=self.config.token if self.config.auth_method == "token" else None,
                    namespace=self.config.namespace,
                    verify=self.config.tls_verify,
                    cert=(
                        (self.config.client_cert, self.config.client_key)
                        if self.config.client_cert
                        else None
                    ),
                    timeout=self.config.timeout,
                )

            # Authenticate based on method
            if self.config.auth_method == "approle":
                await self._auth_approle()
            elif self.config.auth_method == "kubernetes":
                await self._auth_kubernetes()

            if not await self._verify_connection():
                raise SecretsAccessError("Vault rejected the configured credentials")

            self._connected = True
            logger.info(f"Connected to Vault at {self.config.url}")
            self._start_token_renewal()

        except SecretsAccessError:
            logger.error("Failed to authenticate with Vault")
            raise
        except Exception as e:
            logger.error(f"Failed to connect to Vault: {e}")
            raise SecretsConnectionError("vault", e) from e

    async def _auth_approle(self) -> None:
        """Authenticate using AppRole."""
        if not self.config.role_id or not self.config.secret_id:
            raise SecretsAccessError("AppRole requires role_id and secret_id")

        await self._call(
            self._client.auth.approle.login,  # type: ignore[union-attr]
            role_id=self.config.role_id,
            secret_id=self.config.secret_id,
        )
        logger.debug("Authenticated with AppRole")

    async def _auth_kubernetes(self) -> None:
        """Authenticate using Kubernetes service account."""
        if not self.config.kubernetes_role:
            raise SecretsAccessError("Kubernetes auth requires kubernetes_role")

        try:
            jwt = KUBERNETES_TOKEN_PATH.read_text()
        except FileNotFoundError as e:
            raise SecretsAccessError("Kubernetes service account token not found", e) from e

        await self._call(
            self._client.auth.kubernetes.login,  # type: ignore[union-attr]
            role=self.config.kubernetes_role,
            jwt=jwt,
            mount_point=self.config.kubernetes_mount,
        )
        logger.debug("Authenticated with Kubernetes")

    async def _verify_connection(self) -> bool:
        """Verify the Vault connection is working."""
        try:
            is_authenticated: bool = await self._call(
                self._client.is_authenticated  # type: ignore[union-attr]
            )
            return is_authenticated
        except (VaultError, requests.exceptions.RequestException):
            return False

    def _start_token_renewal(self) -> None:
        """Start background token renewal task."""
        if self._token_renewal_task is None:
            self._token_renewal_task = asyncio.create_task(self._token_renewal_loop())

    async def _token_renewal_loop(self) -> None:
        """Periodically renew the broker's own Vault token."""
        while True:
            try:
                await asyncio.sleep(self.config.token_renewal_interval_seconds)

                if self._client and self._connected:
                    await self._call(self._client.auth.token.renew_self)
                    logger.debug("Renewed Vault token")

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"Token renewal failed: {e}")

    # ----------------------------------------------------------------
    # Path handling and error mapping
    # ----------------------------------------------------------------

    def _is_dynamic(self, path: str) -> bool:
        return path.split("/", 1)[0] in self.config.dynamic_mounts

    def _kv_path(self, path: str) -> str:
        """Path relative to the KV mount.

        A leading mount segment is dropped: with mount ``secret``, both
        ``secret/app/db`` and ``app/db`` address the same secret.
        """
        mount, _, rest = path.partition("/")
        if mount == self.config.mount_point and rest:
            return rest
        return path

    def _map_error(self, error: Exception, path: str, operation: str) -> SecretsError:
        """Translate an hvac or transport error into the shared taxonomy."""
        if isinstance(error, InvalidPath):
            return SecretNotFoundError(path, error)
        if isinstance(error, (Forbidden, Unauthorized)):
            return SecretsAccessError(f"Vault denied {operation} on {path}", error)
        if isinstance(error, RateLimitExceeded):
            return SecretsRateLimitedError(f"Vault rate limited {operation} on {path}", error)
        if isinstance(error, (VaultDown, InternalServerError, requests.exceptions.RequestException)):
            return SecretsUnavailableError(f"Vault unavailable for {operation} on {path}", error)
        return SecretsError(f"Vault {operation} failed on {path}: {error}", error)

    def _ensure_client(self) -> Any:
        if self._client is None or not self._connected:
            raise SecretsUnavailableError("Vault backend is not connected")
        return self._client

    # ----------------------------------------------------------------
    # Reads
    # ----------------------------------------------------------------

    async def fetch(self, path: str) -> SecretValue:
        """Retrieve a secret from Vault.

        Raises:
            SecretNotFoundError: If secret not found
            SecretsAccessError: If access denied
            SecretsUnavailableError: If Vault cannot be reached
        """
        if self._is_dynamic(path):
            return await self._fetch_dynamic(path)
        return await self._fetch_kv(path)

    async def _fetch_kv(self, path: str) -> SecretValue:
        client = self._ensure_client()
        try:
            response = await self._call(
                client.secrets.kv.v2.read_secret_version,
                path=self._kv_path(path),
                mount_point=self.config.mount_point,
                raise_on_deleted_version=True,
            )
        except Exception as e:
            raise self._map_error(e, path, "read") from e

        if response is None:
            raise SecretNotFoundError(path)

        data = response["data"]["data"] or {}
        metadata = response["data"]["metadata"]
        return SecretValue(
            path=path,
            data=coerce_fields(data),
            version=int(metadata.get("version", 1)),
            backend=self.name,
        )

    async def _fetch_dynamic(self, path: str) -> SecretValue:
        client = self._ensure_client()
        try:
            response = await self._call(client.read, path)
        except Exception as e:
            raise self._map_error(e, path, "read") from e

        if response is None:
            raise SecretNotFoundError(path)

        lease_id = response.get("lease_id") or None
        lease_duration = int(response.get("lease_duration") or 0)
        now = datetime.now(UTC)
        if lease_id:
            self._track_lease(path, lease_id)

        return SecretValue(
            path=path,
            data=coerce_fields(response.get("data") or {}),
            # Dynamic engines do not version; issue time is monotonic per path
            version=time.time_ns() // 1_000_000,
            lease_expiry=now + timedelta(seconds=lease_duration) if lease_duration > 0 else None,
            lease_id=lease_id,
            backend=self.name,
            retrieved_at=now,
        )

    def _track_lease(self, path: str, lease_id: str) -> None:
        self._leases[path] = lease_id
        self._leases.move_to_end(path)
        while len(self._leases) > MAX_TRACKED_LEASES:
            self._leases.popitem(last=False)

    # ----------------------------------------------------------------
    # Writes
    # ----------------------------------------------------------------

    async def store(
        self,
        path: str,
        data: dict[str, str],
        expected_version: int | None = None,
    ) -> int:
        """Write a new KV v2 version.

        ``expected_version`` is passed to Vault as the check-and-set
        parameter (0 = create only).

        Returns:
            The new version number

        Raises:
            SecretVersionConflictError: If the check-and-set does not match
        """
        if self._is_dynamic(path):
            raise SecretsError(f"Writes are not supported on dynamic mount: {path}")

        client = self._ensure_client()
        try:
            response = await self._call(
                client.secrets.kv.v2.create_or_update_secret,
                path=self._kv_path(path),
                secret=dict(data),
                cas=expected_version,
                mount_point=self.config.mount_point,
            )
        except InvalidRequest as e:
            if "check-and-set" in str(e):
                raise SecretVersionConflictError(path, expected_version or 0, cause=e) from e
            raise self._map_error(e, path, "write") from e
        except Exception as e:
            raise self._map_error(e, path, "write") from e

        version = int(response["data"]["version"])
        logger.debug(f"Stored Vault secret {path} version {version}")
        return version

    async def delete(self, path: str) -> bool:
        """Delete a KV secret with all of its versions.

        Returns:
            True if deleted, False if it did not exist
        """
        if self._is_dynamic(path):
            raise SecretsError(f"Deletes are not supported on dynamic mount: {path}")

        client = self._ensure_client()
        kv_path = self._kv_path(path)
        try:
            await self._call(
                client.secrets.kv.v2.read_secret_metadata,
                path=kv_path,
                mount_point=self.config.mount_point,
            )
        except InvalidPath:
            return False
        except Exception as e:
            raise self._map_error(e, path, "delete") from e

        try:
            await self._call(
                client.secrets.kv.v2.delete_metadata_and_all_versions,
                path=kv_path,
                mount_point=self.config.mount_point,
            )
        except Exception as e:
            raise self._map_error(e, path, "delete") from e
        return True

    async def rotate(self, path: str) -> SecretValue:
        """Rotate a secret.

        KV secrets get freshly generated values for every field, written
        with check-and-set against the version just read. Dynamic secrets
        are re-issued and the previously issued lease is revoked.
        """
        if self._is_dynamic(path):
            return await self._rotate_dynamic(path)

        current = await self._fetch_kv(path)
        new_data = generate_rotated_fields(current.data)
        version = await self.store(path, new_data, expected_version=current.version)
        logger.info(f"Rotated Vault secret {path} to version {version}")
        return SecretValue(path=path, data=new_data, version=version, backend=self.name)

    async def _rotate_dynamic(self, path: str) -> SecretValue:
        previous_lease = self._leases.get(path)
        fresh = await self._fetch_dynamic(path)

        if previous_lease and previous_lease != fresh.lease_id:
            try:
                await self._call(self._ensure_client().sys.revoke_lease, lease_id=previous_lease)
                logger.info(f"Revoked previous lease for {path}")
            except VaultError as e:
                # The new credentials are already issued; the old lease expires on its own
                logger.warning(f"Failed to revoke previous lease for {path}: {e}")

        return fresh

    async def health_check(self) -> bool:
        """Check if Vault is reachable and the token is valid."""
        if not self._client:
            return False
        return await self._verify_connection()

    async def close(self) -> None:
        """Stop token renewal and drop the client."""
        if self._token_renewal_task:
            self._token_renewal_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._token_renewal_task
            self._token_renewal_task = None

        self._connected = False
        self._client = None
        self._leases.clear()
        logger.info("Disconnected from Vault")
