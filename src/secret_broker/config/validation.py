"""Startup configuration checks.

Each check inspects ``Settings`` and yields problems. Errors stop the
service before it accepts requests; warnings are logged and ignored.
"""

from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from secret_broker.config.settings import AuditSinkKind, BackendKind, Settings, get_settings
from secret_broker.core.logging import get_logger
from secret_broker.utils.exceptions import ConfigurationError

logger = get_logger("secret_broker.config")

DEPLOYED = ("staging", "production")


class ValidationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationResult:
    field: str
    severity: ValidationSeverity
    message: str
    suggestion: str | None = None

    def __str__(self) -> str:
        text = f"[{self.severity.value.upper()}] {self.field}: {self.message}"
        return f"{text} ({self.suggestion})" if self.suggestion else text


def _error(field: str, message: str, suggestion: str | None = None) -> ValidationResult:
    return ValidationResult(field, ValidationSeverity.ERROR, message, suggestion)


def _warning(field: str, message: str, suggestion: str | None = None) -> ValidationResult:
    return ValidationResult(field, ValidationSeverity.WARNING, message, suggestion)


Check = Callable[[Settings], Iterator[ValidationResult]]


def _check_vault(s: Settings) -> Iterator[ValidationResult]:
    if s.SECRETS_BACKEND is not BackendKind.VAULT:
        return
    if not s.VAULT_ADDR:
        yield _error("VAULT_ADDR", "Vault address is not configured", "e.g. https://vault.internal:8200")
    if s.VAULT_AUTH_METHOD == "token" and s.VAULT_TOKEN is None:
        yield _error(
            "VAULT_TOKEN",
            "Token auth selected but VAULT_TOKEN is not set",
            "set VAULT_TOKEN or use VAULT_AUTH_METHOD=approle|kubernetes",
        )
    if s.VAULT_AUTH_METHOD == "approle" and not (s.VAULT_ROLE_ID and s.VAULT_SECRET_ID):
        yield _error("VAULT_ROLE_ID", "AppRole auth requires VAULT_ROLE_ID and VAULT_SECRET_ID")
    if s.VAULT_AUTH_METHOD == "kubernetes" and not s.VAULT_KUBERNETES_ROLE:
        yield _error("VAULT_KUBERNETES_ROLE", "Kubernetes auth requires a Vault role")
    if not s.VAULT_TLS_VERIFY:
        yield _warning("VAULT_TLS_VERIFY", "TLS verification for Vault is disabled")


def _check_environment_backend(s: Settings) -> Iterator[ValidationResult]:
    if s.SECRETS_BACKEND is BackendKind.ENVIRONMENT and s.ENVIRONMENT in DEPLOYED:
        yield _error(
            "SECRETS_BACKEND",
            f"Environment backend is not allowed in {s.ENVIRONMENT}",
            "use vault or aws",
        )


def _check_policy(s: Settings) -> Iterator[ValidationResult]:
    if not s.POLICY_FILE:
        yield _warning("POLICY_FILE", "No policy file configured, every request will be denied")
    elif not Path(s.POLICY_FILE).is_file():
        yield _error("POLICY_FILE", f"Policy file not found: {s.POLICY_FILE}")


def _check_audit(s: Settings) -> Iterator[ValidationResult]:
    if s.AUDIT_SINK is AuditSinkKind.FILE:
        directory = Path(s.AUDIT_FILE).expanduser().resolve().parent
        if not directory.is_dir():
            yield _error("AUDIT_FILE", f"Audit file directory does not exist: {directory}")
    if s.AUDIT_SINK is AuditSinkKind.MEMORY and s.ENVIRONMENT in DEPLOYED:
        yield _error("AUDIT_SINK", "In-memory audit records are lost on restart", "use file or log")


def _check_limits(s: Settings) -> Iterator[ValidationResult]:
    positive = {
        "DEFAULT_LEASE_TTL_SECONDS": s.DEFAULT_LEASE_TTL_SECONDS,
        "BACKEND_TIMEOUT_SECONDS": s.BACKEND_TIMEOUT_SECONDS,
        "AUDIT_WRITE_TIMEOUT_SECONDS": s.AUDIT_WRITE_TIMEOUT_SECONDS,
        "READ_RETRY_ATTEMPTS": s.READ_RETRY_ATTEMPTS,
        "CACHE_MAX_ENTRIES": s.CACHE_MAX_ENTRIES,
    }
    for name, value in positive.items():
        if value <= 0:
            yield _error(name, "Must be positive")
    if s.READ_RETRY_ATTEMPTS > 5:
        yield _warning(
            "READ_RETRY_ATTEMPTS",
            f"{s.READ_RETRY_ATTEMPTS} read attempts add pressure on a rate-limited backend",
        )


def _check_production(s: Settings) -> Iterator[ValidationResult]:
    if s.ENVIRONMENT != "production":
        return
    if s.DEBUG:
        yield _error("DEBUG", "Debug mode must be disabled in production")
    if s.log_level == "DEBUG":
        yield _warning("log_level", "SDK debug output may include request payloads")


CHECKS: tuple[Check, ...] = (
    _check_vault,
    _check_environment_backend,
    _check_policy,
    _check_audit,
    _check_limits,
    _check_production,
)


def validate_configuration(settings: Settings | None = None) -> list[ValidationResult]:
    """Run every check; an empty list means the configuration is usable."""
    settings = settings or get_settings()
    return [result for check in CHECKS for result in check(settings)]


def validate_or_raise(settings: Settings | None = None) -> None:
    """Log warnings and raise on errors.

    Raises:
        ConfigurationError: Listing every error found
    """
    results = validate_configuration(settings)
    errors = [r for r in results if r.severity is ValidationSeverity.ERROR]
    if errors:
        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(str(e) for e in errors)
        )
    for result in results:
        logger.warning("configuration_warning", field=result.field, detail=result.message)


def get_configuration_summary(settings: Settings | None = None) -> dict[str, Any]:
    """Configuration facts that are safe to log. Credentials are reduced to presence flags."""
    s = settings or get_settings()
    return {
        "environment": s.ENVIRONMENT,
        "debug": s.DEBUG,
        "log_level": s.log_level,
        "backend": s.SECRETS_BACKEND.value,
        "vault_addr": s.VAULT_ADDR,
        "vault_auth_method": s.VAULT_AUTH_METHOD,
        "vault_token_configured": s.VAULT_TOKEN is not None,
        "aws_region": s.AWS_REGION,
        "policy_file": s.POLICY_FILE,
        "audit_sink": s.AUDIT_SINK.value,
        "default_lease_ttl_seconds": s.DEFAULT_LEASE_TTL_SECONDS,
        "backend_timeout_seconds": s.BACKEND_TIMEOUT_SECONDS,
        "read_retry_attempts": s.READ_RETRY_ATTEMPTS,
    }
