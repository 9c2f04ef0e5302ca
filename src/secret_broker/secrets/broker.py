"""Broker facade: policy, cache, backend and audit for every request.

Each call walks a small state machine:

    RECEIVED -> AUTHORIZED -> CACHE_HIT | FETCHED -> AUDITED -> RETURNED
    RECEIVED -> DENIED -> AUDITED -> REJECTED
    AUTHORIZED -> FAILED -> AUDITED -> REJECTED

so a value only reaches the caller after exactly one policy check and
exactly one audit event, and every failure is audited with its kind
before it is raised.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from secret_broker.core.context import CallerIdentity, get_current_context_or_none
from secret_broker.core.logging import get_logger, log_backend_call, log_exception
from secret_broker.observability.metrics import (
    CACHE_LOOKUPS,
    observe_backend_call,
    record_broker_request,
)
from secret_broker.secrets.audit import AuditEvent, AuditRecorder, MemoryAuditSink, create_audit_sink
from secret_broker.secrets.cache import LeaseCache
from secret_broker.secrets.config import BrokerConfig, RetryConfig
from secret_broker.secrets.policy import PolicyDecision, PolicyGate
from secret_broker.secrets.protocol import (
    SecretBackend,
    SecretsAccessError,
    SecretsError,
    SecretsRateLimitedError,
    SecretsUnavailableError,
    SecretValue,
)
from secret_broker.secrets.types import AuditOutcome, FailureKind, Operation, normalize_path

logger = get_logger(__name__)

T = TypeVar("T")


class RequestState(str, Enum):
    """Lifecycle states of one broker request."""

    RECEIVED = "received"
    AUTHORIZED = "authorized"
    DENIED = "denied"
    CACHE_HIT = "cache_hit"
    FETCHED = "fetched"
    FAILED = "failed"
    AUDITED = "audited"
    RETURNED = "returned"
    REJECTED = "rejected"


_TRANSITIONS: dict[RequestState, frozenset[RequestState]] = {
    RequestState.RECEIVED: frozenset({RequestState.AUTHORIZED, RequestState.DENIED}),
    RequestState.AUTHORIZED: frozenset(
        {RequestState.CACHE_HIT, RequestState.FETCHED, RequestState.FAILED}
    ),
    RequestState.CACHE_HIT: frozenset({RequestState.AUDITED}),
    RequestState.FETCHED: frozenset({RequestState.AUDITED}),
    RequestState.DENIED: frozenset({RequestState.AUDITED}),
    RequestState.FAILED: frozenset({RequestState.AUDITED}),
    RequestState.AUDITED: frozenset({RequestState.RETURNED, RequestState.REJECTED}),
    RequestState.RETURNED: frozenset(),
    RequestState.REJECTED: frozenset(),
}

_SUCCESS_STATES = frozenset({RequestState.CACHE_HIT, RequestState.FETCHED})

# Failures where the backend refused the change, leaving the stored value as it was
_REJECTED_KINDS = frozenset(
    {
        FailureKind.NOT_FOUND,
        FailureKind.UNAUTHORIZED,
        FailureKind.RATE_LIMITED,
        FailureKind.CONFLICT,
    }
)


@dataclass
class RequestTrace:
    """State history of a single request."""

    operation: Operation
    path: str
    history: list[RequestState] = field(default_factory=lambda: [RequestState.RECEIVED])

    @property
    def state(self) -> RequestState:
        return self.history[-1]

    def advance(self, target: RequestState) -> None:
        """Move to ``target``.

        Raises:
            RuntimeError: If the transition is not allowed
        """
        allowed = target in _TRANSITIONS[self.state]
        # After auditing, the exit depends on how the request got there
        if allowed and self.state is RequestState.AUDITED:
            succeeded = self.history[-2] in _SUCCESS_STATES
            allowed = (target is RequestState.RETURNED) == succeeded
        if not allowed:
            raise RuntimeError(
                f"Illegal request transition {self.state.value} -> {target.value} "
                f"for {self.operation.value} {self.path}"
            )
        self.history.append(target)


class PolicyDeniedError(SecretsAccessError):
    """Raised when the policy gate denies a request."""

    def __init__(self, caller: CallerIdentity, decision: PolicyDecision):
        self.decision = decision
        super().__init__(f"Access denied for {caller.principal}: {decision.reason}")


@dataclass
class _Outcome:
    result: Any
    cache_hit: bool = False
    version: int | None = None


class Broker:
    """Single entry point for secret reads, writes, rotations and deletes.

    The broker owns its lease cache and policy gate; the backend adapter
    and audit recorder are injected. Reads are served from the cache when
    the lease is still valid and are retried once on transient backend
    failures; writes, rotations and deletes are never retried and
    invalidate the cache entry unless the backend rejected them.

    Example:
        async with Broker.from_config(config) as broker:
            value = await broker.get(caller, "app/db")
    """

    def __init__(
        self,
        backend: SecretBackend,
        gate: PolicyGate,
        *,
        cache: LeaseCache | None = None,
        recorder: AuditRecorder | None = None,
        retry: RetryConfig | None = None,
    ):
        self.backend = backend
        self.gate = gate
        self.cache = cache or LeaseCache()
        self.recorder = recorder or AuditRecorder(MemoryAuditSink())
        self.retry = retry or RetryConfig()
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: BrokerConfig,
        *,
        backend: SecretBackend | None = None,
        gate: PolicyGate | None = None,
    ) -> "Broker":
        """Assemble a broker from explicit configuration.

        Without a policy file the gate has no rules and denies everything.
        """
        # Imported here: the manager imports this module
        from secret_broker.secrets.manager import create_backend

        if gate is None:
            gate = PolicyGate.from_file(config.policy_file) if config.policy_file else PolicyGate()

        return cls(
            backend or create_backend(config),
            gate,
            cache=LeaseCache(config.cache),
            recorder=AuditRecorder(
                create_audit_sink(config.audit),
                write_timeout=config.audit.write_timeout_seconds,
            ),
            retry=config.retry,
        )

    # ----------------------------------------------------------------
    # Lifecycle
    # ----------------------------------------------------------------

    async def start(self) -> None:
        """Connect the backend and start cache cleanup."""
        if self._started:
            return
        await self.backend.connect()
        await self.cache.start()
        self._started = True
        logger.info("broker_started", backend=self.backend.name, rules=len(self.gate.rules))

    async def close(self) -> None:
        """Stop cache cleanup and release the backend client."""
        await self.cache.stop()
        await self.backend.close()
        await self.recorder.close()
        self._started = False
        logger.info("broker_closed", backend=self.backend.name)

    async def __aenter__(self) -> "Broker":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def health_check(self) -> bool:
        """Whether the backend answers within the backend timeout."""
        try:
            return await asyncio.wait_for(
                self.backend.health_check(), self.retry.backend_timeout_seconds
            )
        except Exception as e:
            logger.warning("backend_health_check_failed", backend=self.backend.name, error=str(e))
            return False

    # ----------------------------------------------------------------
    # Operations
    # ----------------------------------------------------------------

    async def get(
        self,
        caller: CallerIdentity,
        path: str,
        *,
        timeout: float | None = None,
    ) -> SecretValue:
        """Read a secret.

        Args:
            caller: Resolved caller identity
            path: Secret path
            timeout: Bound on the whole request

        Returns:
            SecretValue (``cached`` is True when served from the lease cache)

        Raises:
            PolicyDeniedError: If no rule grants read
            SecretsError: Any backend failure, after auditing
        """

        async def call(normalized: str) -> _Outcome:
            value = await self.cache.get(normalized, lambda: self._load(normalized))
            CACHE_LOOKUPS.labels(result="hit" if value.cached else "miss").inc()
            return _Outcome(value, cache_hit=value.cached, version=value.version)

        return await self._execute(Operation.GET, caller, path, call, timeout)

    async def put(
        self,
        caller: CallerIdentity,
        path: str,
        data: dict[str, str],
        *,
        expected_version: int | None = None,
        timeout: float | None = None,
    ) -> int:
        """Write a new version of a secret.

        Returns:
            The new version number

        Raises:
            SecretVersionConflictError: If expected_version does not match
        """

        async def call(normalized: str) -> _Outcome:
            version = await self._mutate(
                "store", normalized, lambda: self.backend.store(normalized, data, expected_version)
            )
            return _Outcome(version, version=version)

        return await self._execute(Operation.PUT, caller, path, call, timeout)

    async def rotate(
        self,
        caller: CallerIdentity,
        path: str,
        *,
        timeout: float | None = None,
    ) -> SecretValue:
        """Rotate a secret and return its new value.

        The cache entry is kept only when the backend rejects the rotation.
        After a timeout the rotation may still complete, so the entry is
        dropped again once the backend call finishes.
        """

        async def call(normalized: str) -> _Outcome:
            value = await self._mutate(
                "rotate", normalized, lambda: self.backend.rotate(normalized)
            )
            return _Outcome(value, version=value.version)

        return await self._execute(Operation.ROTATE, caller, path, call, timeout)

    async def delete(
        self,
        caller: CallerIdentity,
        path: str,
        *,
        timeout: float | None = None,
    ) -> bool:
        """Delete a secret.

        Returns:
            True if deleted, False if it did not exist
        """

        async def call(normalized: str) -> _Outcome:
            deleted = await self._mutate(
                "delete", normalized, lambda: self.backend.delete(normalized)
            )
            return _Outcome(deleted)

        return await self._execute(Operation.DELETE, caller, path, call, timeout)

    # ----------------------------------------------------------------
    # Pipeline
    # ----------------------------------------------------------------

    async def _execute(
        self,
        operation: Operation,
        caller: CallerIdentity,
        path: str,
        call: Callable[[str], Awaitable[_Outcome]],
        timeout: float | None,
    ) -> Any:
        normalized = normalize_path(path)
        trace = RequestTrace(operation, normalized)

        decision = self.gate.authorize(caller, normalized, operation.capability)
        if not decision.allowed:
            trace.advance(RequestState.DENIED)
            denied = PolicyDeniedError(caller, decision)
            await self._audit(trace, caller, AuditOutcome.DENIED, error=denied, reason=decision.reason)
            trace.advance(RequestState.REJECTED)
            raise denied

        trace.advance(RequestState.AUTHORIZED)
        try:
            outcome = await asyncio.wait_for(call(normalized), timeout)
        except TimeoutError as e:
            error: SecretsError = SecretsUnavailableError(
                f"{operation.value} on {normalized} timed out after {timeout}s", e
            )
        except SecretsError as e:
            error = e
        except Exception as e:
            log_exception(logger, e, operation=operation.value, path=normalized)
            error = SecretsError(f"Unexpected error during {operation.value} on {normalized}", e)
        else:
            trace.advance(RequestState.CACHE_HIT if outcome.cache_hit else RequestState.FETCHED)
            await self._audit(
                trace,
                caller,
                AuditOutcome.GRANTED,
                reason=decision.reason,
                cache_hit=outcome.cache_hit,
                version=outcome.version,
            )
            trace.advance(RequestState.RETURNED)
            return outcome.result

        trace.advance(RequestState.FAILED)
        await self._audit(trace, caller, AuditOutcome.FAILED, error=error, reason=str(error))
        trace.advance(RequestState.REJECTED)
        if error.cause is not None:
            raise error from error.cause
        raise error

    async def _audit(
        self,
        trace: RequestTrace,
        caller: CallerIdentity,
        outcome: AuditOutcome,
        *,
        error: SecretsError | None = None,
        reason: str | None = None,
        cache_hit: bool = False,
        version: int | None = None,
    ) -> None:
        ctx = get_current_context_or_none()
        event = AuditEvent(
            caller=caller.principal,
            path=trace.path,
            operation=trace.operation,
            capability=trace.operation.capability,
            outcome=outcome,
            backend=self.backend.name,
            error_kind=error.kind if error is not None else None,
            reason=reason,
            cache_hit=cache_hit,
            version=version,
            request_id=ctx.request_id if ctx is not None else None,
        )
        await self.recorder.record(event)
        trace.advance(RequestState.AUDITED)
        record_broker_request(
            trace.operation.value,
            outcome.value,
            error.kind.value if error is not None else None,
        )

    async def _load(self, path: str) -> SecretValue:
        """Backend read with retries on transient failures."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.retry.read_attempts)),
            wait=wait_random_exponential(
                multiplier=self.retry.backoff_multiplier_seconds,
                max=self.retry.backoff_max_seconds,
            ),
            retry=retry_if_exception_type((SecretsUnavailableError, SecretsRateLimitedError)),
            reraise=True,
        )
        return await retrying(self._backend_call, "fetch", path, lambda: self.backend.fetch(path))

    async def _mutate(
        self,
        operation: str,
        path: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """Backend call that changes a secret, keeping the cache in step with it.

        The call runs as its own task, which a timeout does not cancel: the
        vendor may still apply a request already sent. The cache entry is
        dropped when the call returns, and again when a detached call
        finishes.
        """
        task = asyncio.ensure_future(call())
        task.add_done_callback(partial(self._settle_mutation, path))
        try:
            return await self._backend_call(operation, path, lambda: asyncio.shield(task))
        finally:
            if task.done():
                self._settle_mutation(path, task)
            else:
                self.cache.invalidate(path)

    def _settle_mutation(self, path: str, task: asyncio.Future[Any]) -> None:
        if not task.cancelled():
            error = task.exception()
            if isinstance(error, SecretsError) and error.kind in _REJECTED_KINDS:
                return
        self.cache.invalidate(path)

    async def _backend_call(
        self,
        operation: str,
        path: str,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        """One backend call, bounded by the backend timeout."""
        success = False
        metrics: dict[str, Any] = {}
        try:
            with observe_backend_call(self.backend.name, operation) as metrics:
                try:
                    result = await asyncio.wait_for(call(), self.retry.backend_timeout_seconds)
                except TimeoutError as e:
                    raise SecretsUnavailableError(
                        f"{self.backend.name} {operation} on {path} timed out after "
                        f"{self.retry.backend_timeout_seconds}s",
                        e,
                    ) from e
                success = True
            return result
        finally:
            log_backend_call(
                logger,
                self.backend.name,
                operation,
                path,
                metrics.get("duration_ms", 0.0),
                success,
            )
