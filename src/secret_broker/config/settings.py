"""Application settings loaded from environment variables."""

from enum import Enum
from functools import lru_cache
from typing import Annotated, Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class BackendKind(str, Enum):
    """Supported secret backends."""

    VAULT = "vault"
    AWS = "aws"
    ENVIRONMENT = "environment"


class AuditSinkKind(str, Enum):
    """Supported audit sink destinations."""

    LOG = "log"
    FILE = "file"
    MEMORY = "memory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8200

    # Backend selection
    SECRETS_BACKEND: BackendKind = BackendKind.ENVIRONMENT

    # HashiCorp Vault
    VAULT_ADDR: str | None = None
    VAULT_TOKEN: SecretStr | None = None
    VAULT_NAMESPACE: str | None = None
    VAULT_MOUNT_POINT: str = "secret"
    VAULT_AUTH_METHOD: Literal["token", "approle", "kubernetes"] = "token"
    VAULT_ROLE_ID: str | None = None
    VAULT_SECRET_ID: SecretStr | None = None
    VAULT_KUBERNETES_ROLE: str | None = None
    VAULT_DYNAMIC_MOUNTS: Annotated[list[str], NoDecode] = []
    VAULT_TLS_VERIFY: bool = True

    # AWS Secrets Manager
    AWS_REGION: str = "us-east-1"
    AWS_ENDPOINT_URL: str | None = None
    AWS_ROTATION_LAMBDA_ARN: str | None = None

    # Environment backend (development/test)
    ENV_SECRET_PREFIX: str = "BROKER_SECRET_"

    # Policy and audit
    POLICY_FILE: str | None = None
    AUDIT_SINK: AuditSinkKind = AuditSinkKind.LOG
    AUDIT_FILE: str = "audit.jsonl"
    AUDIT_WRITE_TIMEOUT_SECONDS: float = 2.0

    # Cache and backend calls
    DEFAULT_LEASE_TTL_SECONDS: int = 300
    CACHE_MAX_ENTRIES: int = 1000
    BACKEND_TIMEOUT_SECONDS: float = 10.0
    READ_RETRY_ATTEMPTS: int = 2

    @field_validator("VAULT_DYNAMIC_MOUNTS", mode="before")
    @classmethod
    def split_mounts(cls, value: object) -> object:
        """Accept a comma-separated list for dynamic mounts."""
        if isinstance(value, str):
            return [m.strip().strip("/") for m in value.split(",") if m.strip()]
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
