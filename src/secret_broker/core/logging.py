"""Structured logging for the secret broker.

structlog renders every record, including records from stdlib loggers
used by the backends and by uvicorn, so a single handler on the root
logger decides format and level. Secret material is scrubbed before
rendering regardless of which logger produced the event.
"""
# ruff: noqa: ARG001  # Processor signatures required by structlog API

import logging
import sys
from collections.abc import Mapping
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from secret_broker.config.settings import get_settings
from secret_broker.core.context import get_current_context_or_none

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

REDACTED = "***"

# Field names whose values are secret material or credentials
SENSITIVE_KEYS = frozenset(
    {"data", "token", "secret", "password", "secret_string", "authorization", "client_token"}
)

# Loggers that hand their output to our handler instead of their own
SERVER_LOGGERS = ("uvicorn", "uvicorn.access", "uvicorn.error")

# SDK loggers that echo request bodies at DEBUG
SDK_LOGGERS = ("botocore", "boto3", "urllib3", "hvac")


def add_request_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Attach the request ID and caller principal of the active request."""
    ctx = get_current_context_or_none()
    if ctx is None:
        return event_dict
    event_dict.setdefault("request_id", str(ctx.request_id))
    event_dict.setdefault("caller", ctx.caller.principal)
    return event_dict


def _scrub(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    return value


def redact_secret_values(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace sensitive fields with a placeholder, including nested mappings."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, Mapping):
            event_dict[key] = _scrub(value)
    return event_dict


def drop_color_message_key(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """uvicorn duplicates its message with ANSI colors under this key."""
    event_dict.pop("color_message", None)
    return event_dict


def service_info(environment: str, backend: str) -> Processor:
    """Build a processor stamping every event with deployment facts."""

    def add_service_info(
        logger: WrappedLogger, method_name: str, event_dict: EventDict
    ) -> EventDict:
        event_dict.setdefault("environment", environment)
        event_dict.setdefault("secrets_backend", backend)
        return event_dict

    return add_service_info


def _pre_chain(add_timestamp: bool, environment: str, backend: str) -> list[Processor]:
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        add_request_context,
        service_info(environment, backend),
        redact_secret_values,
        drop_color_message_key,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if add_timestamp:
        chain.insert(0, structlog.processors.TimeStamper(fmt="iso", utc=True))
    return chain


def setup_logging(
    log_level: LogLevel | None = None,
    json_format: bool | None = None,
    add_timestamp: bool = True,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        log_level: Overrides ``Settings.log_level``
        json_format: JSON lines when True, colored console when False.
            Defaults to JSON in production only.
        add_timestamp: Prefix events with an ISO-8601 UTC timestamp
    """
    settings = get_settings()
    level = logging.getLevelName((log_level or settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO
    as_json = settings.ENVIRONMENT == "production" if json_format is None else json_format

    pre_chain = _pre_chain(add_timestamp, settings.ENVIRONMENT, settings.SECRETS_BACKEND.value)
    final: list[Processor] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if as_json:
        final += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        final.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(foreign_pre_chain=pre_chain, processors=final)
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    for name in SDK_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """Bind keys to every event logged inside the block.

    Previous values of the same keys are restored on exit, so blocks nest.

    Example:
        with LogContext(rotation_id=result.rotation_id):
            logger.info("rotation_started")
    """

    def __init__(self, **bindings: Any):
        self.bindings = bindings
        self._tokens: Mapping[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self.bindings)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


def log_exception(
    logger: structlog.stdlib.BoundLogger, exc: BaseException, **kwargs: Any
) -> None:
    """Log an unexpected exception with its traceback."""
    logger.exception(
        "unexpected_error", error_type=type(exc).__name__, error=str(exc), **kwargs
    )


def log_backend_call(
    logger: structlog.stdlib.BoundLogger,
    backend: str,
    operation: str,
    path: str,
    duration_ms: float,
    success: bool,
    **kwargs: Any,
) -> None:
    """Log one backend round trip. Failures go out at warning level."""
    log = logger.info if success else logger.warning
    log(
        "backend_call",
        backend=backend,
        operation=operation,
        path=path,
        duration_ms=round(duration_ms, 2),
        success=success,
        **kwargs,
    )
