"""
Shared fixtures and test doubles for the care dispatch suite.

The doubles implement the port Protocols directly; nothing is mocked so the
services run against real in-memory state.
"""

import asyncio
from datetime import UTC, datetime

import pytest

from adapters.memory import (
    InMemoryCareStore,
    InMemoryDirectory,
    LoggingPushChannel,
    LoggingSmsChannel,
)
from caredispatch.config import DispatcherConfig, SchedulerConfig
from caredispatch.domain.models import AuditRecord, EmergencyContact, Reminder
from caredispatch.services.alert_orchestrator import AlertOrchestrator
from caredispatch.services.audit_ledger import AuditLedger
from caredispatch.services.dispatcher import NotificationDispatcher
from caredispatch.services.reminder_scheduler import ReminderScheduler

BASE_TIME = datetime(2024, 3, 1, 9, 0, tzinfo=UTC)

SUBJECT_ID = "subject-1"


class FailingPushChannel:
    """Raises on every send."""

    def __init__(self, message: str = "push provider unavailable") -> None:
        self.message = message
        self.attempts = 0

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        self.attempts += 1
        raise RuntimeError(self.message)


class SlowPushChannel(LoggingPushChannel):
    """Delivers after a delay, long enough for a concurrent tick to interleave."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        await asyncio.sleep(self.delay)
        await super().send(push_token, title, body, data)


class SelectivePushChannel(LoggingPushChannel):
    """Fails only for the given push tokens."""

    def __init__(self, failing_tokens: set[str]) -> None:
        super().__init__()
        self.failing_tokens = failing_tokens

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        if push_token in self.failing_tokens:
            raise ConnectionError(f"token {push_token} rejected")
        await super().send(push_token, title, body, data)


class AuditDownStore(InMemoryCareStore):
    """Entity writes succeed; audit appends fail as if the ledger were unreachable."""

    async def append_audit(self, record: AuditRecord) -> AuditRecord:
        raise ConnectionError("audit collection unreachable")


class CompleteFailsStore(InMemoryCareStore):
    """complete_reminder raises for the first `failures` calls, then behaves normally."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.complete_calls = 0

    async def complete_reminder(
        self, reminder_id: str, claim_token: str, next_due_at: datetime, fired_at: datetime
    ) -> Reminder | None:
        self.complete_calls += 1
        if self.complete_calls <= self.failures:
            raise ConnectionError("reminder write timed out")
        return await super().complete_reminder(reminder_id, claim_token, next_due_at, fired_at)


class ClaimLostStore(InMemoryCareStore):
    """complete_reminder always reports the claim as lost."""

    async def complete_reminder(
        self, reminder_id: str, claim_token: str, next_due_at: datetime, fired_at: datetime
    ) -> Reminder | None:
        return None


class FlakyDirectory(InMemoryDirectory):
    """Provider lookup fails; everything else works."""

    async def resolve_providers(self, subject_id: str) -> list[str]:
        raise TimeoutError("provider directory timed out")


def populate_directory(directory: InMemoryDirectory) -> InMemoryDirectory:
    directory.add_profile(SUBJECT_ID, "Ada Lovelace", push_token="token-subject-1")
    directory.add_profile("caregiver-1", "Grace Hopper", push_token="token-caregiver-1")
    directory.add_profile("caregiver-2", "Mary Somerville", push_token="token-caregiver-2")
    directory.add_profile("provider-1", "Dr. Elizabeth Blackwell", push_token="token-provider-1")
    directory.link_caregiver(SUBJECT_ID, "caregiver-1")
    directory.link_caregiver(SUBJECT_ID, "caregiver-2")
    directory.link_provider(SUBJECT_ID, "provider-1")
    directory.set_emergency_contact(SUBJECT_ID, "Charles Babbage", "+15550100")
    return directory


@pytest.fixture
def store() -> InMemoryCareStore:
    return InMemoryCareStore()


@pytest.fixture
def directory() -> InMemoryDirectory:
    return populate_directory(InMemoryDirectory())


@pytest.fixture
def push_channel() -> LoggingPushChannel:
    return LoggingPushChannel()


@pytest.fixture
def sms_channel() -> LoggingSmsChannel:
    return LoggingSmsChannel()


@pytest.fixture
def ledger(store: InMemoryCareStore) -> AuditLedger:
    return AuditLedger(store, retention_months=6, batch_size=100)


@pytest.fixture
def dispatcher(
    store: InMemoryCareStore,
    directory: InMemoryDirectory,
    push_channel: LoggingPushChannel,
    sms_channel: LoggingSmsChannel,
) -> NotificationDispatcher:
    return NotificationDispatcher(
        store, directory, push_channel, sms_channel, DispatcherConfig(push_timeout_seconds=1.0)
    )


@pytest.fixture
def scheduler(
    store: InMemoryCareStore,
    directory: InMemoryDirectory,
    dispatcher: NotificationDispatcher,
    ledger: AuditLedger,
) -> ReminderScheduler:
    return ReminderScheduler(store, directory, dispatcher, ledger, SchedulerConfig())


@pytest.fixture
def orchestrator(
    store: InMemoryCareStore,
    directory: InMemoryDirectory,
    dispatcher: NotificationDispatcher,
    ledger: AuditLedger,
) -> AlertOrchestrator:
    return AlertOrchestrator(store, directory, dispatcher, ledger)


@pytest.fixture
def emergency_contact() -> EmergencyContact:
    return EmergencyContact(name="Charles Babbage", phone="+15550100")
