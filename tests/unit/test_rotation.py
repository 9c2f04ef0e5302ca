"""Tests for rotation value generators and the rotation scheduler."""

import string
from datetime import UTC, datetime, timedelta

import pytest

from secret_broker.core.context import SYSTEM_CALLER, CallerIdentity
from secret_broker.secrets.audit import AuditRecorder, MemoryAuditSink
from secret_broker.secrets.broker import Broker
from secret_broker.secrets.config import EnvironmentSecretsConfig
from secret_broker.secrets.environment import EnvironmentBackend
from secret_broker.secrets.policy import PolicyGate, PolicyRule
from secret_broker.secrets.rotation import (
    SPECIAL_CHARACTERS,
    RotationScheduler,
    RotationStatus,
    generate_api_key,
    generate_password,
    generate_rotated_fields,
)
from secret_broker.secrets.types import AuditOutcome, Capability


class TestGenerators:
    """Tests for random value generation."""

    def test_api_keys_are_unique(self) -> None:
        keys = {generate_api_key() for _ in range(20)}

        assert len(keys) == 20

    def test_password_character_classes(self) -> None:
        password = generate_password(16)

        assert len(password) == 16
        assert any(c in string.ascii_uppercase for c in password)
        assert any(c in string.ascii_lowercase for c in password)
        assert any(c in string.digits for c in password)
        assert any(c in SPECIAL_CHARACTERS for c in password)

    def test_password_without_special(self) -> None:
        password = generate_password(24, include_special=False)

        assert password.isalnum()

    def test_password_too_short(self) -> None:
        with pytest.raises(ValueError):
            generate_password(3)

    def test_rotated_fields_keep_names(self) -> None:
        rotated = generate_rotated_fields({"username": "app", "api_key": "k", "session_token": "t"})

        assert set(rotated) == {"username", "api_key", "session_token"}
        assert all(v not in ("app", "k", "t") for v in rotated.values())

    def test_rotated_empty_secret(self) -> None:
        assert set(generate_rotated_fields({})) == {"value"}


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
async def rotation_broker(sink: MemoryAuditSink) -> Broker:
    backend = EnvironmentBackend(EnvironmentSecretsConfig(seed_from_environment=False))
    await backend.store("app/db", {"password": "initial"})
    gate = PolicyGate(
        [PolicyRule(path="app/*", capabilities={Capability.ROTATE}, roles={"system"})]
    )
    return Broker(backend, gate, recorder=AuditRecorder(sink))


class TestRotationScheduler:
    """Tests for scheduled rotations through the broker."""

    def test_schedule_rotation(self, rotation_broker: Broker, clock: FakeClock) -> None:
        scheduler = RotationScheduler(rotation_broker, clock=clock)

        schedule = scheduler.schedule_rotation("/app/db/", timedelta(days=30))

        assert schedule.path == "app/db"
        assert schedule.next_rotation == clock.now + timedelta(days=30)
        assert scheduler.get_schedule("app/db") is schedule

    def test_non_positive_interval(self, rotation_broker: Broker) -> None:
        scheduler = RotationScheduler(rotation_broker)

        with pytest.raises(ValueError):
            scheduler.schedule_rotation("app/db", timedelta(0))

    def test_cancel(self, rotation_broker: Broker) -> None:
        scheduler = RotationScheduler(rotation_broker)
        scheduler.schedule_rotation("app/db", timedelta(days=1))

        assert scheduler.cancel_scheduled_rotation("app/db") is True
        assert scheduler.cancel_scheduled_rotation("app/db") is False
        assert scheduler.list_schedules() == []

    async def test_due_rotation_runs_through_broker(
        self, rotation_broker: Broker, clock: FakeClock, sink: MemoryAuditSink
    ) -> None:
        """Test a due rotation is policy-checked and audited as the system caller."""
        scheduler = RotationScheduler(rotation_broker, clock=clock)
        scheduler.schedule_rotation("app/db", timedelta(hours=1), first_rotation=clock.now)

        [result] = await scheduler.run_due_rotations()

        assert result.status is RotationStatus.COMPLETED
        assert result.new_version == 2
        [event] = sink.events
        assert event.caller == SYSTEM_CALLER.principal
        assert event.outcome is AuditOutcome.GRANTED
        assert event.request_id is not None
        assert scheduler.get_schedule("app/db").next_rotation == clock.now + timedelta(hours=1)

    async def test_not_yet_due(self, rotation_broker: Broker, clock: FakeClock) -> None:
        scheduler = RotationScheduler(rotation_broker, clock=clock)
        scheduler.schedule_rotation("app/db", timedelta(hours=1))

        assert await scheduler.run_due_rotations() == []

    async def test_denied_rotation_is_recorded_and_retried(
        self, rotation_broker: Broker, clock: FakeClock, sink: MemoryAuditSink
    ) -> None:
        """Test a caller without rotate capability fails without advancing the schedule."""
        caller = CallerIdentity(principal="cron", roles=frozenset({"batch"}))
        scheduler = RotationScheduler(rotation_broker, caller=caller, clock=clock)
        scheduler.schedule_rotation("app/db", timedelta(hours=1), first_rotation=clock.now)

        [result] = await scheduler.run_due_rotations()

        assert result.status is RotationStatus.FAILED
        assert result.error_kind == "unauthorized"
        assert sink.events[0].outcome is AuditOutcome.DENIED
        assert scheduler.get_schedule("app/db").next_rotation == clock.now
        assert len(await scheduler.check_due_rotations()) == 1

    async def test_history(self, rotation_broker: Broker, clock: FakeClock) -> None:
        scheduler = RotationScheduler(rotation_broker, clock=clock)
        scheduler.schedule_rotation("app/db", timedelta(hours=1), first_rotation=clock.now)
        scheduler.schedule_rotation("app/missing", timedelta(hours=1), first_rotation=clock.now)

        await scheduler.run_due_rotations()

        assert len(scheduler.get_rotation_history()) == 2
        [missing] = scheduler.get_rotation_history("app/missing")
        assert missing.error_kind == "not_found"

    async def test_start_stop(self, rotation_broker: Broker) -> None:
        scheduler = RotationScheduler(rotation_broker)

        await scheduler.start(check_interval_seconds=3600)
        await scheduler.stop()
