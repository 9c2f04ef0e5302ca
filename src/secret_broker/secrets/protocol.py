"""Secret backend protocol and shared error taxonomy.

This module defines the abstract protocol that every backend adapter
(Vault, AWS Secrets Manager, environment) must follow, together with the
exceptions adapters raise after mapping vendor-specific failures.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from secret_broker.secrets.types import FailureKind
from secret_broker.utils.exceptions import BrokerError


@dataclass(frozen=True, slots=True)
class SecretValue:
    """A retrieved secret value with lease metadata.

    Attributes:
        path: The path where the secret is stored
        data: Read-only field name to string value
        version: Monotonic version number of the secret
        lease_expiry: When the backend lease ends (None for static secrets)
        lease_id: Backend lease identifier for dynamic secrets
        backend: Name of the backend that produced the value
        cached: Whether this value was served from the lease cache
        retrieved_at: When the value was fetched from the backend
    """

    path: str
    data: Mapping[str, str]
    version: int
    lease_expiry: datetime | None = None
    lease_id: str | None = None
    backend: str = ""
    cached: bool = False
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        # Values are shared through the cache, so data is copied and read-only
        object.__setattr__(self, "data", MappingProxyType(dict(self.data)))

    def as_cached(self) -> "SecretValue":
        """Return a copy marked as served from cache."""
        return replace(self, cached=True)

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for an API response (omits the lease ID)."""
        return {
            "path": self.path,
            "data": dict(self.data),
            "version": self.version,
            "lease_expiry": self.lease_expiry,
            "cached": self.cached,
        }


def coerce_fields(raw: dict[str, Any]) -> dict[str, str]:
    """Coerce backend JSON values into the field-to-string mapping."""
    return {str(k): v if isinstance(v, str) else str(v) for k, v in raw.items()}


@runtime_checkable
class SecretBackend(Protocol):
    """Protocol for secret backend adapters.

    Adapters translate these calls into vendor-specific API calls and map
    vendor errors into the shared taxonomy. They keep no secret values
    across calls beyond their SDK client. Bounded bookkeeping is allowed,
    such as the Vault adapter remembering the last lease issued per
    dynamic path so that rotation can revoke it.
    """

    name: str

    async def connect(self) -> None:
        """Authenticate and prepare the SDK client.

        Raises:
            SecretsConnectionError: If the backend cannot be reached
        """
        ...

    async def fetch(self, path: str) -> SecretValue:
        """Read the current value of a secret.

        Raises:
            SecretNotFoundError: If the secret does not exist
            SecretsAccessError: If the backend refuses access
            SecretsUnavailableError: If the backend cannot be reached
            SecretsRateLimitedError: If the backend throttles the call
        """
        ...

    async def store(
        self,
        path: str,
        data: dict[str, str],
        expected_version: int | None = None,
    ) -> int:
        """Write a new version of a secret and return its version.

        Raises:
            SecretVersionConflictError: If expected_version does not match
        """
        ...

    async def delete(self, path: str) -> bool:
        """Delete a secret and all of its versions.

        Returns:
            True if deleted, False if it did not exist
        """
        ...

    async def rotate(self, path: str) -> SecretValue:
        """Replace a secret with freshly generated values.

        Raises:
            SecretNotFoundError: If there is nothing to rotate
        """
        ...

    async def health_check(self) -> bool:
        """Check if the backend is reachable and authenticated."""
        ...

    async def close(self) -> None:
        """Release connections and stop background tasks."""
        ...


class SecretsError(BrokerError):
    """Base exception for secrets-related errors."""

    kind: FailureKind = FailureKind.INTERNAL

    def __init__(self, message: str, cause: Exception | None = None):
        self.cause = cause
        super().__init__(message)


class SecretNotFoundError(SecretsError):
    """Raised when a secret is not found."""

    kind = FailureKind.NOT_FOUND

    def __init__(self, path: str, cause: Exception | None = None):
        self.path = path
        super().__init__(f"Secret not found: {path}", cause)


class SecretsAccessError(SecretsError):
    """Raised when a policy rule or the backend itself denies access."""

    kind = FailureKind.UNAUTHORIZED


class SecretsUnavailableError(SecretsError):
    """Raised when the backend cannot be reached or times out."""

    kind = FailureKind.UNAVAILABLE


class SecretsConnectionError(SecretsUnavailableError):
    """Raised when connection to the secrets backend fails."""

    def __init__(self, backend: str, cause: Exception | None = None):
        self.backend = backend
        super().__init__(f"Failed to connect to secrets backend: {backend}", cause)


class SecretsRateLimitedError(SecretsError):
    """Raised when the backend throttles requests."""

    kind = FailureKind.RATE_LIMITED

    def __init__(
        self,
        message: str,
        cause: Exception | None = None,
        retry_after_seconds: float | None = None,
    ):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, cause)


class SecretVersionConflictError(SecretsError):
    """Raised when a check-and-set write does not match the current version."""

    kind = FailureKind.CONFLICT

    def __init__(
        self,
        path: str,
        expected_version: int,
        current_version: int | None = None,
        cause: Exception | None = None,
    ):
        self.path = path
        self.expected_version = expected_version
        self.current_version = current_version
        message = f"Version conflict on {path}: expected {expected_version}"
        if current_version is not None:
            message += f", found {current_version}"
        super().__init__(message, cause)
