"""Pytest fixtures for secret broker tests."""

import json
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
import structlog
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from secret_broker.config.settings import AuditSinkKind, Settings
from secret_broker.core.context import CallerIdentity
from secret_broker.secrets.audit import AuditRecorder, MemoryAuditSink
from secret_broker.secrets.broker import Broker
from secret_broker.secrets.cache import LeaseCache
from secret_broker.secrets.config import CacheConfig, EnvironmentSecretsConfig, RetryConfig
from secret_broker.secrets.environment import EnvironmentBackend
from secret_broker.secrets.policy import IdentityRegistry, PolicyGate, hash_token

APP_TOKEN = "app-token"
ADMIN_TOKEN = "admin-token"
AUDITOR_TOKEN = "auditor-token"


# =============================================================================
# Structlog Configuration Fixture
# =============================================================================


def _configure_test_structlog() -> None:
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture(scope="function", autouse=True)
def reset_structlog_after_test():
    """Reset structlog configuration around each test.

    Loggers hand off to stdlib logging so caplog sees them, and tests that
    modify structlog global state don't affect other tests.
    """
    _configure_test_structlog()
    yield
    _configure_test_structlog()


# =============================================================================
# Broker fixtures
# =============================================================================


@pytest.fixture
def policy_document() -> dict:
    """Policy with an application, an administrator and a read-only auditor."""
    return {
        "rules": [
            {"path": "app/db", "capabilities": ["read"], "roles": ["app"]},
            {"path": "app/*", "capabilities": ["read", "write"], "roles": ["app"]},
            {"path": "*", "capabilities": ["read", "write", "rotate"], "roles": ["admin"]},
            {"path": "app/*", "capabilities": ["read"], "roles": ["auditor"]},
        ],
        "identities": [
            {"principal": "billing", "token_sha256": hash_token(APP_TOKEN), "roles": ["app"]},
            {"principal": "ops", "token_sha256": hash_token(ADMIN_TOKEN), "roles": ["admin"]},
            {
                "principal": "auditor",
                "token_sha256": hash_token(AUDITOR_TOKEN),
                "roles": ["auditor"],
            },
        ],
    }


@pytest.fixture
def policy_file(tmp_path: Path, policy_document: dict) -> Path:
    """Policy document written to a temporary file."""
    path = tmp_path / "policy.json"
    path.write_text(json.dumps(policy_document), encoding="utf-8")
    return path


@pytest.fixture
def gate(policy_file: Path) -> PolicyGate:
    return PolicyGate.from_file(policy_file)


@pytest.fixture
def identities(policy_file: Path) -> IdentityRegistry:
    return IdentityRegistry.from_file(policy_file)


@pytest.fixture
def app_caller() -> CallerIdentity:
    return CallerIdentity(principal="billing", roles=frozenset({"app"}))


@pytest.fixture
def admin_caller() -> CallerIdentity:
    return CallerIdentity(principal="ops", roles=frozenset({"admin"}))


@pytest.fixture
def backend() -> EnvironmentBackend:
    """Empty in-memory backend."""
    return EnvironmentBackend(EnvironmentSecretsConfig(seed_from_environment=False))


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def broker(
    backend: EnvironmentBackend, gate: PolicyGate, audit_sink: MemoryAuditSink
) -> Broker:
    """Broker over the in-memory backend with retries that do not sleep."""
    return Broker(
        backend,
        gate,
        cache=LeaseCache(CacheConfig(cleanup_interval_seconds=3600)),
        recorder=AuditRecorder(audit_sink, write_timeout=1.0),
        retry=RetryConfig(
            read_attempts=2,
            backoff_multiplier_seconds=0.0,
            backoff_max_seconds=0.0,
            backend_timeout_seconds=1.0,
        ),
    )


# =============================================================================
# API fixtures
# =============================================================================


@pytest.fixture
def test_settings(policy_file: Path) -> Settings:
    """Create settings for API testing."""
    return Settings(
        ENVIRONMENT="test",
        DEBUG=True,
        log_level="DEBUG",
        POLICY_FILE=str(policy_file),
        AUDIT_SINK=AuditSinkKind.MEMORY,
    )


@pytest.fixture
def test_app(
    test_settings: Settings, broker: Broker, identities: IdentityRegistry
) -> FastAPI:
    """Create a FastAPI test application around the test broker."""
    from secret_broker.api.app import create_app

    return create_app(settings=test_settings, broker=broker, identities=identities)


def _client(app: FastAPI, token: str | None = None) -> AsyncClient:
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    return AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=headers,
    )


@pytest_asyncio.fixture
async def test_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated async HTTP client."""
    async with _client(test_app) as client:
        yield client


@pytest_asyncio.fixture
async def app_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Client authenticated as the ``billing`` application."""
    async with _client(test_app, APP_TOKEN) as client:
        yield client


@pytest_asyncio.fixture
async def admin_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Client authenticated as the ``ops`` administrator."""
    async with _client(test_app, ADMIN_TOKEN) as client:
        yield client


@pytest_asyncio.fixture
async def auditor_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Client authenticated as the read-only ``auditor``."""
    async with _client(test_app, AUDITOR_TOKEN) as client:
        yield client
