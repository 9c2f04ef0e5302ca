"""Secret brokering for the secret broker service.

This module mediates access to secrets held in external backends:
- Backend adapters for HashiCorp Vault, AWS Secrets Manager and an
  in-memory environment backend
- A lease cache with single-flight loading
- A deny-by-default policy gate
- An append-only audit trail
- Rotation with scheduling

Usage:
    from secret_broker.secrets import Broker, CallerIdentity, create_broker_config

    config = create_broker_config("development", policy_file="policy.json")
    async with Broker.from_config(config) as broker:
        value = await broker.get(CallerIdentity(principal="billing", roles={"app"}), "app/db")
"""

from secret_broker.core.context import CallerIdentity
from secret_broker.secrets.audit import (
    AuditEvent,
    AuditRecorder,
    AuditSink,
    JsonLinesAuditSink,
    LoggingAuditSink,
    MemoryAuditSink,
    create_audit_sink,
)
from secret_broker.secrets.broker import Broker, PolicyDeniedError, RequestState, RequestTrace
from secret_broker.secrets.cache import CachedSecret, CacheStats, LeaseCache
from secret_broker.secrets.config import (
    AuditConfig,
    AWSSecretsConfig,
    BrokerConfig,
    CacheConfig,
    EnvironmentSecretsConfig,
    RetryConfig,
    VaultConfig,
    broker_config_from_settings,
    create_broker_config,
)
from secret_broker.secrets.environment import EnvironmentBackend
from secret_broker.secrets.manager import (
    create_backend,
    get_broker,
    initialize_broker,
    shutdown_broker,
)
from secret_broker.secrets.policy import (
    IdentityRegistry,
    PolicyDecision,
    PolicyDocument,
    PolicyGate,
    PolicyRule,
    PolicySource,
    hash_token,
    load_policy_document,
)
from secret_broker.secrets.protocol import (
    SecretBackend,
    SecretNotFoundError,
    SecretsAccessError,
    SecretsConnectionError,
    SecretsError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
    SecretValue,
    SecretVersionConflictError,
)
from secret_broker.secrets.rotation import (
    RotationResult,
    RotationSchedule,
    RotationScheduler,
    RotationStatus,
    generate_api_key,
    generate_password,
    generate_rotated_fields,
)
from secret_broker.secrets.types import (
    AuditOutcome,
    Capability,
    FailureKind,
    Operation,
    normalize_path,
)

__all__ = [
    # Broker
    "Broker",
    "PolicyDeniedError",
    "RequestState",
    "RequestTrace",
    "CallerIdentity",
    # Protocol and errors
    "SecretBackend",
    "SecretValue",
    "SecretsError",
    "SecretNotFoundError",
    "SecretsAccessError",
    "SecretsUnavailableError",
    "SecretsConnectionError",
    "SecretsRateLimitedError",
    "SecretVersionConflictError",
    # Types
    "AuditOutcome",
    "Capability",
    "FailureKind",
    "Operation",
    "normalize_path",
    # Configuration
    "AuditConfig",
    "AWSSecretsConfig",
    "BrokerConfig",
    "CacheConfig",
    "EnvironmentSecretsConfig",
    "RetryConfig",
    "VaultConfig",
    "broker_config_from_settings",
    "create_broker_config",
    # Components
    "CachedSecret",
    "CacheStats",
    "LeaseCache",
    "IdentityRegistry",
    "PolicyDecision",
    "PolicyDocument",
    "PolicyGate",
    "PolicyRule",
    "PolicySource",
    "hash_token",
    "load_policy_document",
    "AuditEvent",
    "AuditRecorder",
    "AuditSink",
    "JsonLinesAuditSink",
    "LoggingAuditSink",
    "MemoryAuditSink",
    "create_audit_sink",
    # Backends
    "EnvironmentBackend",
    "create_backend",
    # Global instance
    "get_broker",
    "initialize_broker",
    "shutdown_broker",
    # Rotation
    "RotationResult",
    "RotationSchedule",
    "RotationScheduler",
    "RotationStatus",
    "generate_api_key",
    "generate_password",
    "generate_rotated_fields",
]
