"""Rotation value generators and the periodic rotation scheduler.

Backends that rotate a key/value secret themselves replace every field
with a fresh random value from ``generate_rotated_fields``. Scheduled
rotations go through ``Broker.rotate`` so the policy gate and the audit
trail see them like any other call.
"""

import asyncio
import contextlib
import secrets
import string
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from uuid_utils.compat import uuid7

from secret_broker.core.context import SYSTEM_CALLER, CallerIdentity, create_context, request_context
from secret_broker.core.logging import LogContext, get_logger
from secret_broker.secrets.protocol import SecretsError
from secret_broker.secrets.types import normalize_path

if TYPE_CHECKING:
    from secret_broker.secrets.broker import Broker

logger = get_logger(__name__)

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

# Fields rotated to URL-safe tokens rather than passwords
TOKEN_FIELD_SUFFIXES = ("key", "token")

HISTORY_LIMIT = 1000


def generate_api_key(length: int = 32) -> str:
    """URL-safe token built from ``length`` random bytes."""
    return secrets.token_urlsafe(length)


def generate_password(length: int = 32, include_special: bool = True) -> str:
    """Random password with at least one upper, lower and digit character.

    A special character is guaranteed as well when ``include_special`` is set.

    Raises:
        ValueError: If ``length`` cannot fit the guaranteed characters
    """
    classes = [string.ascii_uppercase, string.ascii_lowercase, string.digits]
    if include_special:
        classes.append(SPECIAL_CHARACTERS)
    if length < len(classes):
        raise ValueError(f"Password length must be at least {len(classes)}")

    pool = "".join(classes)
    chars = [secrets.choice(c) for c in classes]
    chars += [secrets.choice(pool) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_rotated_fields(data: Mapping[str, str]) -> dict[str, str]:
    """New values for every field of ``data``, keeping the field names.

    An empty secret rotates to a single ``value`` field.
    """
    if not data:
        return {"value": generate_password()}
    return {
        name: generate_api_key() if name.lower().endswith(TOKEN_FIELD_SUFFIXES) else generate_password()
        for name in data
    }


class RotationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RotationResult:
    """Outcome of one scheduled rotation attempt."""

    rotation_id: str
    path: str
    status: RotationStatus
    started_at: datetime
    completed_at: datetime
    new_version: int | None = None
    error_kind: str | None = None
    error_message: str | None = None


@dataclass
class RotationSchedule:
    """A path rotated every ``interval``.

    ``next_rotation`` only advances after a successful rotation, so a
    failed attempt stays due and is retried at the next check.
    """

    path: str
    interval: timedelta
    next_rotation: datetime
    last_rotated: datetime | None = None
    enabled: bool = True

    def is_due(self, now: datetime) -> bool:
        return self.enabled and self.next_rotation <= now

    def mark_rotated(self, at: datetime) -> None:
        self.last_rotated = at
        self.next_rotation = at + self.interval


@dataclass
class RotationScheduler:
    """Rotates scheduled secrets through a Broker as ``caller``.

    The policy gate must grant ``caller`` the rotate capability on each
    scheduled path; denied attempts are audited and reported as failed.

    Example:
        scheduler = RotationScheduler(broker)
        scheduler.schedule_rotation("app/db", timedelta(days=30))
        await scheduler.start(check_interval_seconds=3600)
    """

    broker: "Broker"
    caller: CallerIdentity = SYSTEM_CALLER
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))
    _schedules: dict[str, RotationSchedule] = field(default_factory=dict, init=False)
    _history: deque[RotationResult] = field(
        default_factory=lambda: deque(maxlen=HISTORY_LIMIT), init=False
    )
    _task: asyncio.Task[None] | None = field(default=None, init=False)

    def schedule_rotation(
        self,
        path: str,
        interval: timedelta,
        *,
        first_rotation: datetime | None = None,
    ) -> RotationSchedule:
        """Rotate ``path`` every ``interval``, first at ``first_rotation``.

        The first rotation defaults to one interval from now. Scheduling
        an already scheduled path replaces its schedule.
        """
        if interval <= timedelta(0):
            raise ValueError("Rotation interval must be positive")

        normalized = normalize_path(path)
        schedule = RotationSchedule(
            path=normalized,
            interval=interval,
            next_rotation=first_rotation or self.clock() + interval,
        )
        self._schedules[normalized] = schedule
        logger.info("rotation_scheduled", path=normalized, interval_seconds=interval.total_seconds())
        return schedule

    def cancel_scheduled_rotation(self, path: str) -> bool:
        return self._schedules.pop(normalize_path(path), None) is not None

    def get_schedule(self, path: str) -> RotationSchedule | None:
        return self._schedules.get(normalize_path(path))

    def list_schedules(self) -> list[RotationSchedule]:
        return list(self._schedules.values())

    async def check_due_rotations(self) -> list[RotationSchedule]:
        now = self.clock()
        return [s for s in self._schedules.values() if s.is_due(now)]

    async def run_due_rotations(self) -> list[RotationResult]:
        """Rotate every due path once, one after another.

        A failure is recorded and does not stop the remaining rotations.
        """
        return [await self._rotate(schedule) for schedule in await self.check_due_rotations()]

    async def _rotate(self, schedule: RotationSchedule) -> RotationResult:
        rotation_id = str(uuid7())
        started_at = self.clock()

        with (
            LogContext(rotation_id=rotation_id, path=schedule.path),
            request_context(create_context(caller=self.caller)),
        ):
            try:
                rotated = await self.broker.rotate(self.caller, schedule.path)
            except SecretsError as e:
                logger.error("scheduled_rotation_failed", error_kind=e.kind.value, error=str(e))
                result = RotationResult(
                    rotation_id=rotation_id,
                    path=schedule.path,
                    status=RotationStatus.FAILED,
                    started_at=started_at,
                    completed_at=self.clock(),
                    error_kind=e.kind.value,
                    error_message=str(e),
                )
            else:
                completed_at = self.clock()
                schedule.mark_rotated(completed_at)
                logger.info("scheduled_rotation_completed", version=rotated.version)
                result = RotationResult(
                    rotation_id=rotation_id,
                    path=schedule.path,
                    status=RotationStatus.COMPLETED,
                    started_at=started_at,
                    completed_at=completed_at,
                    new_version=rotated.version,
                )

        self._history.append(result)
        return result

    def get_rotation_history(self, path: str | None = None, limit: int = 100) -> list[RotationResult]:
        """Recent results, oldest first."""
        history = list(self._history)
        if path is not None:
            normalized = normalize_path(path)
            history = [r for r in history if r.path == normalized]
        return history[-limit:]

    async def start(self, check_interval_seconds: float = 3600) -> None:
        """Check for due rotations every ``check_interval_seconds`` in the background."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(check_interval_seconds))
        logger.info("rotation_scheduler_started", check_interval_seconds=check_interval_seconds)

    async def _loop(self, check_interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(check_interval_seconds)
            try:
                await self.run_due_rotations()
            except Exception as e:
                logger.exception("rotation_check_failed", error=str(e))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("rotation_scheduler_stopped")
