"""Secret broker configuration.

This module provides the explicit configuration objects a Broker is
constructed with. The broker never reads the process environment itself;
settings are translated into these objects once, at startup.
"""

from dataclasses import dataclass, field
from typing import Literal

from secret_broker.config.settings import AuditSinkKind, BackendKind, Settings

DEFAULT_VAULT_URL = "https://127.0.0.1:8200"


@dataclass(frozen=True, slots=True)
class VaultConfig:
    """Configuration for HashiCorp Vault backend.

    Attributes:
        url: Vault server URL
        token: Vault token (optional if using other auth methods)
        namespace: Vault namespace (enterprise feature)
        mount_point: KV v2 secrets engine mount point
        dynamic_mounts: Mounts read through the logical API (leased secrets)
        auth_method: Authentication method
        role_id: AppRole role ID
        secret_id: AppRole secret ID
        kubernetes_role: Kubernetes auth role
        kubernetes_mount: Kubernetes auth mount point
        tls_verify: Whether to verify TLS certificates
        client_cert: Path to client certificate
        client_key: Path to client key
        timeout: HTTP timeout in seconds
        token_renewal_interval_seconds: How often to renew the broker's own token
    """

    url: str = DEFAULT_VAULT_URL
    token: str | None = None
    namespace: str | None = None
    mount_point: str = "secret"
    dynamic_mounts: tuple[str, ...] = ()
    auth_method: Literal["token", "approle", "kubernetes"] = "token"
    role_id: str | None = None
    secret_id: str | None = None
    kubernetes_role: str | None = None
    kubernetes_mount: str = "kubernetes"
    tls_verify: bool = True
    client_cert: str | None = None
    client_key: str | None = None
    timeout: int = 30
    token_renewal_interval_seconds: int = 1800


@dataclass(frozen=True, slots=True)
class AWSSecretsConfig:
    """Configuration for AWS Secrets Manager backend.

    Attributes:
        region: AWS region
        access_key_id: AWS access key ID (optional if using IAM roles)
        secret_access_key: AWS secret access key
        session_token: AWS session token (for temporary credentials)
        endpoint_url: Custom endpoint URL (for LocalStack, etc.)
        rotation_lambda_arn: Rotation function used by rotate(), if any
        kms_key_id: KMS key for newly created secrets
        rotation_poll_attempts: Checks for a Lambda rotation to finish
        rotation_poll_interval_seconds: Pause between those checks
    """

    region: str = "us-east-1"
    access_key_id: str | None = None
    secret_access_key: str | None = None
    session_token: str | None = None
    endpoint_url: str | None = None
    rotation_lambda_arn: str | None = None
    kms_key_id: str | None = None
    rotation_poll_attempts: int = 10
    rotation_poll_interval_seconds: float = 0.5


@dataclass(frozen=True, slots=True)
class EnvironmentSecretsConfig:
    """Configuration for the environment backend (development/testing).

    Attributes:
        prefix: Environment variable prefix
        seed_from_environment: Whether to load prefixed variables at startup
    """

    prefix: str = "BROKER_SECRET_"
    seed_from_environment: bool = True


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Configuration for the lease cache.

    Attributes:
        enabled: Whether caching is enabled
        default_ttl_seconds: TTL for static secrets without a backend lease
        max_entries: Maximum number of cached entries
        cleanup_interval_seconds: How often expired entries are purged
    """

    enabled: bool = True
    default_ttl_seconds: int = 300  # 5 minutes
    max_entries: int = 1000
    cleanup_interval_seconds: int = 60


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry and timeout policy for backend calls.

    Writes and rotations are never retried.

    Attributes:
        read_attempts: Total attempts for a read (2 = one retry)
        backoff_multiplier_seconds: Base of the jittered exponential backoff
        backoff_max_seconds: Upper bound for a single backoff wait
        backend_timeout_seconds: Bound on a single backend call
    """

    read_attempts: int = 2
    backoff_multiplier_seconds: float = 0.2
    backoff_max_seconds: float = 2.0
    backend_timeout_seconds: float = 10.0


@dataclass(frozen=True, slots=True)
class AuditConfig:
    """Configuration for the audit sink.

    Attributes:
        sink: Destination kind
        file_path: Path of the JSON-lines file for the file sink
        write_timeout_seconds: Bound on a single audit write
    """

    sink: AuditSinkKind = AuditSinkKind.LOG
    file_path: str = "audit.jsonl"
    write_timeout_seconds: float = 2.0


@dataclass
class BrokerConfig:
    """Main configuration for a Broker instance.

    Attributes:
        backend: Which secrets backend to use
        vault: Vault-specific configuration
        aws: AWS Secrets Manager configuration
        environment: Environment backend configuration
        cache: Lease cache configuration
        retry: Retry and timeout configuration
        audit: Audit sink configuration
        policy_file: JSON policy document (None = deny everything)
        environment_name: Current deployment environment
    """

    backend: BackendKind = BackendKind.ENVIRONMENT
    vault: VaultConfig = field(default_factory=VaultConfig)
    aws: AWSSecretsConfig = field(default_factory=AWSSecretsConfig)
    environment: EnvironmentSecretsConfig = field(default_factory=EnvironmentSecretsConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    policy_file: str | None = None
    environment_name: Literal["development", "staging", "production", "test"] = "development"


def create_broker_config(
    environment: Literal["development", "staging", "production", "test"] = "development",
    *,
    backend: BackendKind | None = None,
    vault_url: str | None = None,
    vault_token: str | None = None,
    aws_region: str | None = None,
    policy_file: str | None = None,
) -> BrokerConfig:
    """Create broker configuration based on environment.

    Args:
        environment: Deployment environment
        backend: Override backend selection
        vault_url: Override Vault URL
        vault_token: Override Vault token
        aws_region: Override AWS region
        policy_file: Policy document path

    Returns:
        BrokerConfig configured for the environment

    Example:
        # Development (in-memory secrets seeded from environment)
        config = create_broker_config("development", policy_file="policy.json")

        # Production with Vault
        config = create_broker_config(
            "production",
            vault_url="https://vault.internal:8200",
            policy_file="/etc/broker/policy.json",
        )
    """
    if environment == "test":
        return BrokerConfig(
            backend=backend or BackendKind.ENVIRONMENT,
            environment=EnvironmentSecretsConfig(seed_from_environment=False),
            cache=CacheConfig(enabled=True, cleanup_interval_seconds=3600),
            retry=RetryConfig(backoff_multiplier_seconds=0.0, backoff_max_seconds=0.0),
            audit=AuditConfig(sink=AuditSinkKind.MEMORY),
            policy_file=policy_file,
            environment_name=environment,
        )

    if environment == "development":
        return BrokerConfig(
            backend=backend or BackendKind.ENVIRONMENT,
            cache=CacheConfig(enabled=True, default_ttl_seconds=600),
            audit=AuditConfig(sink=AuditSinkKind.LOG),
            policy_file=policy_file,
            environment_name=environment,
        )

    vault_config = VaultConfig(
        url=vault_url or f"https://vault.{environment}.internal:8200",
        token=vault_token,
        auth_method="kubernetes" if not vault_token else "token",
        tls_verify=True,
    )
    return BrokerConfig(
        backend=backend or BackendKind.VAULT,
        vault=vault_config,
        aws=AWSSecretsConfig(region=aws_region or "us-east-1"),
        cache=CacheConfig(enabled=True, default_ttl_seconds=300),
        audit=AuditConfig(sink=AuditSinkKind.FILE),
        policy_file=policy_file,
        environment_name=environment,
    )


def broker_config_from_settings(settings: Settings) -> BrokerConfig:
    """Translate application settings into an explicit BrokerConfig."""
    return BrokerConfig(
        backend=settings.SECRETS_BACKEND,
        vault=VaultConfig(
            url=settings.VAULT_ADDR or DEFAULT_VAULT_URL,
            token=settings.VAULT_TOKEN.get_secret_value() if settings.VAULT_TOKEN else None,
            namespace=settings.VAULT_NAMESPACE,
            mount_point=settings.VAULT_MOUNT_POINT,
            dynamic_mounts=tuple(settings.VAULT_DYNAMIC_MOUNTS),
            auth_method=settings.VAULT_AUTH_METHOD,
            role_id=settings.VAULT_ROLE_ID,
            secret_id=(
                settings.VAULT_SECRET_ID.get_secret_value() if settings.VAULT_SECRET_ID else None
            ),
            kubernetes_role=settings.VAULT_KUBERNETES_ROLE,
            tls_verify=settings.VAULT_TLS_VERIFY,
            timeout=max(1, int(settings.BACKEND_TIMEOUT_SECONDS)),
        ),
        aws=AWSSecretsConfig(
            region=settings.AWS_REGION,
            endpoint_url=settings.AWS_ENDPOINT_URL,
            rotation_lambda_arn=settings.AWS_ROTATION_LAMBDA_ARN,
        ),
        environment=EnvironmentSecretsConfig(prefix=settings.ENV_SECRET_PREFIX),
        cache=CacheConfig(
            default_ttl_seconds=settings.DEFAULT_LEASE_TTL_SECONDS,
            max_entries=settings.CACHE_MAX_ENTRIES,
        ),
        retry=RetryConfig(
            read_attempts=settings.READ_RETRY_ATTEMPTS,
            backend_timeout_seconds=settings.BACKEND_TIMEOUT_SECONDS,
        ),
        audit=AuditConfig(
            sink=settings.AUDIT_SINK,
            file_path=settings.AUDIT_FILE,
            write_timeout_seconds=settings.AUDIT_WRITE_TIMEOUT_SECONDS,
        ),
        policy_file=settings.POLICY_FILE,
        environment_name=settings.ENVIRONMENT,
    )
