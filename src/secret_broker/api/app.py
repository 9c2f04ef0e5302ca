"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from secret_broker.api.middleware import (
    AuthenticationMiddleware,
    ErrorHandlingMiddleware,
    RequestContextMiddleware,
    RequestLoggingMiddleware,
)
from secret_broker.api.routers import health_router, v1_router
from secret_broker.api.schemas.errors import ErrorCode, error_response
from secret_broker.config.settings import Settings, get_settings
from secret_broker.config.validation import get_configuration_summary, validate_or_raise
from secret_broker.core.logging import setup_logging
from secret_broker.secrets.broker import Broker
from secret_broker.secrets.config import broker_config_from_settings
from secret_broker.secrets.policy import IdentityRegistry, PolicySource

logger = logging.getLogger("secret_broker.api")


def create_app(
    settings: Settings | None = None,
    broker: Broker | None = None,
    identities: IdentityRegistry | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the application factory that assembles all components:
    - Middleware (in correct order)
    - Routers
    - Exception handlers
    - Lifespan management

    Args:
        settings: Optional settings override (useful for testing)
        broker: Pre-built broker (default: assembled from settings)
        identities: Token registry (default: loaded from the policy file)

    Returns:
        Configured FastAPI application

    Example:
        # Production
        uvicorn secret_broker.api.app:create_app --factory

        # Testing
        app = create_app(settings=test_settings, broker=broker, identities=registry)
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Secret Broker",
        description="Policy-gated access to secrets held in Vault or AWS Secrets Manager",
        version="0.1.0",
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        openapi_url="/openapi.json" if settings.DEBUG else None,
        lifespan=_lifespan,
    )

    if broker is None:
        broker = Broker.from_config(broker_config_from_settings(settings))
    if identities is None:
        identities = (
            IdentityRegistry.from_file(settings.POLICY_FILE)
            if settings.POLICY_FILE
            else IdentityRegistry()
        )

    # Shared with dependencies and middleware
    app.state.settings = settings
    app.state.broker = broker
    app.state.identities = identities
    app.state.policy = None
    if settings.POLICY_FILE:
        app.state.policy = PolicySource(settings.POLICY_FILE, broker.gate, identities)

    _configure_middleware(app)
    _configure_exception_handlers(app)
    _configure_routers(app)

    return app


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Validates configuration and connects the backend before the first
    request; closes the broker on shutdown.
    """
    settings: Settings = app.state.settings
    setup_logging(log_level=settings.log_level)
    validate_or_raise(settings)
    logger.info(f"Configuration: {get_configuration_summary(settings)}")

    broker: Broker = app.state.broker
    logger.info(f"Starting secret broker with backend {broker.backend.name}...")
    await broker.start()

    yield

    logger.info("Shutting down secret broker...")
    try:
        await broker.close()
    except Exception as e:
        logger.warning(f"Broker shutdown error: {e}")


def _configure_middleware(app: FastAPI) -> None:
    """Configure middleware stack.

    Middleware order (outermost to innermost execution):
    1. RequestLoggingMiddleware - Logs all requests
    2. ErrorHandlingMiddleware - Converts exceptions to HTTP responses
    3. AuthenticationMiddleware - Resolves the Bearer token to a caller
    4. RequestContextMiddleware - Sets ContextVar for request context

    Note: Middleware is added in reverse order because Starlette
    processes them from last-added to first-added.
    """
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(RequestLoggingMiddleware)


def _configure_exception_handlers(app: FastAPI) -> None:
    """Render FastAPI request validation errors in the APIError envelope."""

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return error_response(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            getattr(request.state, "request_id", None),
            details={"errors": _jsonable_errors(exc)},
        )


def _jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Validation errors without the raw input, which may hold secret values."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def _configure_routers(app: FastAPI) -> None:
    """Configure API routers."""
    # Health check endpoints (no prefix - at root level)
    app.include_router(health_router)

    app.include_router(v1_router)


def run() -> None:
    """Console entry point: serve the application with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "secret_broker.api.app:create_app",
        factory=True,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_config=None,
    )
