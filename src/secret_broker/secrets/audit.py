"""Audit trail for broker requests.

Every request that reaches the broker produces exactly one AuditEvent,
whatever its outcome. Events are immutable and append-only. Sinks decide
where the events go; the AuditRecorder wraps a sink so that a slow or
broken sink never fails the secret operation itself. Missed records are
counted and exported as a Prometheus counter.
"""

import asyncio
import json
import logging
from collections.abc import Iterator
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from uuid_utils.compat import uuid7

from secret_broker.config.settings import AuditSinkKind
from secret_broker.core.logging import get_logger
from secret_broker.observability.metrics import AUDIT_WRITE_FAILURES
from secret_broker.secrets.config import AuditConfig
from secret_broker.secrets.types import AuditOutcome, Capability, FailureKind, Operation

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuditEvent:
    """An immutable record of one broker request.

    Secret values never appear on an event; only the path, the caller and
    the outcome are recorded.

    Attributes:
        caller: Principal that made the request
        path: Normalized secret path
        operation: Broker operation requested
        capability: Capability the policy gate checked
        outcome: granted, denied or failed
        backend: Backend name the broker is configured with
        error_kind: Failure kind for failed requests
        reason: Policy decision reason or error message
        cache_hit: Whether a read was served from the lease cache
        version: Secret version returned or written, if any
        request_id: Request correlation ID
        event_id: Unique event ID
        timestamp: When the event was created
    """

    caller: str
    path: str
    operation: Operation
    capability: Capability
    outcome: AuditOutcome
    backend: str = ""
    error_kind: FailureKind | None = None
    reason: str | None = None
    cache_hit: bool = False
    version: int | None = None
    request_id: UUID | None = None
    event_id: UUID = field(default_factory=uuid7)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """JSON-compatible representation."""
        data = asdict(self)
        data["operation"] = self.operation.value
        data["capability"] = self.capability.value
        data["outcome"] = self.outcome.value
        data["error_kind"] = self.error_kind.value if self.error_kind else None
        data["request_id"] = str(self.request_id) if self.request_id else None
        data["event_id"] = str(self.event_id)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@runtime_checkable
class AuditSink(Protocol):
    """Destination for audit events."""

    name: str

    async def write(self, event: AuditEvent) -> None:
        """Persist one event. May raise; the recorder handles failures."""
        ...

    async def close(self) -> None: ...


class MemoryAuditSink:
    """Keeps events in a list. Used by tests and local development."""

    name = "memory"

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def write(self, event: AuditEvent) -> None:
        self.events.append(event)

    async def close(self) -> None:
        return None

    def __len__(self) -> int:
        return len(self.events)

    def __iter__(self) -> Iterator[AuditEvent]:
        return iter(self.events)

    def for_path(self, path: str) -> list[AuditEvent]:
        return [e for e in self.events if e.path == path]


class LoggingAuditSink:
    """Emits each event as a structured log line on ``secret_broker.audit``."""

    name = "log"

    def __init__(self, logger_name: str = "secret_broker.audit"):
        self._logger = get_logger(logger_name)

    async def write(self, event: AuditEvent) -> None:
        payload = event.to_dict()
        # The logging pipeline stamps its own timestamp
        payload["occurred_at"] = payload.pop("timestamp")
        self._logger.info("audit_event", **payload)

    async def close(self) -> None:
        return None


class JsonLinesAuditSink:
    """Appends events to a JSON-lines file.

    File writes run in the default executor; a lock keeps lines from
    interleaving.
    """

    name = "file"

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def write(self, event: AuditEvent) -> None:
        line = json.dumps(event.to_dict(), separators=(",", ":"))
        async with self._lock:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._append, line)

    async def close(self) -> None:
        return None


class AuditRecorder:
    """Writes audit events through a sink without ever failing the caller.

    Each write is bounded by ``write_timeout``. When the sink raises or
    times out the event is logged locally at error level, ``missed_records``
    is incremented and so is the ``secret_broker_audit_write_failures_total``
    counter.

    Example:
        recorder = AuditRecorder(MemoryAuditSink(), write_timeout=1.0)
        await recorder.record(event)
    """

    def __init__(self, sink: AuditSink, write_timeout: float = 2.0):
        self.sink = sink
        self.write_timeout = write_timeout
        self.missed_records = 0

    async def record(self, event: AuditEvent) -> bool:
        """Write one event.

        Returns:
            True if the sink accepted the event
        """
        try:
            await asyncio.wait_for(self.sink.write(event), self.write_timeout)
            return True
        except Exception as e:
            self.missed_records += 1
            AUDIT_WRITE_FAILURES.labels(sink=self.sink.name).inc()
            logger.error(
                f"Audit write to {self.sink.name} sink failed "
                f"({type(e).__name__}: {e}); event={json.dumps(event.to_dict())}"
            )
            return False

    async def close(self) -> None:
        await self.sink.close()


def create_audit_sink(config: AuditConfig) -> AuditSink:
    """Build the sink selected by configuration."""
    if config.sink == AuditSinkKind.MEMORY:
        return MemoryAuditSink()
    if config.sink == AuditSinkKind.FILE:
        return JsonLinesAuditSink(config.file_path)
    return LoggingAuditSink()
