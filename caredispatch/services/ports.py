"""
Ports between the dispatch core and its external collaborators.

Key patterns:
- Protocol-based dependency injection for stores, directories and channels
- Generic Result type for caller-visible failures
- Structured logging configured once for every service module
"""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Generic, Protocol, TypeVar

import structlog

from caredispatch.domain.models import (
    Alert,
    AlertResponse,
    AlertStatus,
    AuditAction,
    AuditRecord,
    EmergencyContact,
    MedicationLog,
    Notification,
    PushOutcome,
    Reminder,
    ResponseRecord,
    SubjectProfile,
)

if TYPE_CHECKING:
    from caredispatch.config import LoggingConfig

_SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]

# Configure structured logging (JSON by default, switched by configure_logging).
# Loggers are not cached so bound loggers pick up a later renderer switch.
structlog.configure(
    processors=[*_SHARED_PROCESSORS, structlog.processors.JSONRenderer()],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=False,
)

logger = structlog.get_logger(__name__)


def configure_logging(config: "LoggingConfig") -> None:
    """Apply level and renderer from configuration."""
    logging.basicConfig(format="%(message)s", level=config.level)
    logging.getLogger().setLevel(config.level)

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[*_SHARED_PROCESSORS, renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


ValueT = TypeVar("ValueT")
ErrorT = TypeVar("ErrorT", bound=BaseException)


class Result(Generic[ValueT, ErrorT]):
    """
    Explicit error handling without exceptions for expected failures.

    Exposed calls return Result.ok(report) or Result.err(domain_error) so the
    transport binding decides how to surface NotFound and friends.
    """

    def __init__(self, value: ValueT | None = None, error: ErrorT | None = None) -> None:
        if value is not None and error is not None:
            raise ValueError("Result cannot have both value and error")
        if value is None and error is None:
            raise ValueError("Result must have either value or error")
        self._value: ValueT | None = value
        self._error: ErrorT | None = error

    @classmethod
    def ok(cls, value: ValueT) -> "Result[ValueT, ErrorT]":
        return cls(value=value)

    @classmethod
    def err(cls, error: ErrorT) -> "Result[ValueT, ErrorT]":
        return cls(error=error)

    def is_ok(self) -> bool:
        return self._error is None

    def is_err(self) -> bool:
        return self._error is not None

    def unwrap(self) -> ValueT:
        if self._error:
            raise self._error
        return self._value  # type: ignore

    def unwrap_or(self, default: ValueT) -> ValueT:
        return self._value if self._error is None else default  # type: ignore

    def unwrap_err(self) -> ErrorT:
        if self._error is None:
            raise ValueError("Called unwrap_err() on an Ok value")
        return self._error


# External collaborators


class RecipientResolver(Protocol):
    """Resolves who cares for a subject."""

    async def resolve_caregivers(self, subject_id: str) -> list[str]: ...

    async def resolve_providers(self, subject_id: str) -> list[str]: ...

    async def resolve_emergency_contact(self, subject_id: str) -> EmergencyContact | None: ...


class ProfileStore(Protocol):
    async def get_profile(self, subject_id: str) -> SubjectProfile:
        """Return the profile or raise NotFound."""
        ...


class PushChannel(Protocol):
    """Push delivery. Callers bound every call with a timeout."""

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        """Deliver or raise; any exception counts as a channel failure."""
        ...


class SmsChannel(Protocol):
    async def send(self, phone: str, body: str) -> None: ...


# Persistent store contract. Every conditional update returns None when its
# precondition no longer holds; an unreachable store raises InfrastructureFailure.


class ReminderStore(Protocol):
    async def save_reminder(self, reminder: Reminder) -> Reminder: ...

    async def get_reminder(self, reminder_id: str) -> Reminder | None: ...

    async def find_due_reminders(
        self, due_before: datetime, due_after: datetime | None = None
    ) -> list[Reminder]:
        """Active reminders with due_after <= next_due_at <= due_before."""
        ...

    async def find_active_reminder(self, subject_id: str, item_id: str) -> Reminder | None: ...

    async def claim_reminder(
        self,
        reminder_id: str,
        expected_version: int,
        claim_token: str,
        now: datetime,
        lease_until: datetime,
    ) -> Reminder | None: ...

    async def complete_reminder(
        self, reminder_id: str, claim_token: str, next_due_at: datetime, fired_at: datetime
    ) -> Reminder | None: ...

    async def release_reminder(self, reminder_id: str, claim_token: str) -> bool: ...

    async def reschedule_reminder(
        self,
        reminder_id: str,
        expected_version: int,
        next_due_at: datetime,
        taken_at: datetime,
    ) -> Reminder | None: ...


class AlertStore(Protocol):
    async def save_alert(self, alert: Alert) -> Alert: ...

    async def get_alert(self, alert_id: str) -> Alert | None: ...

    async def update_alert_status(
        self, alert_id: str, status: AlertStatus, last_response: AlertResponse
    ) -> Alert | None: ...

    async def append_response(self, record: ResponseRecord) -> ResponseRecord: ...

    async def list_responses(self, alert_id: str) -> list[ResponseRecord]: ...


class NotificationStore(Protocol):
    async def save_notification(self, notification: Notification) -> Notification: ...

    async def get_notification(self, notification_id: str) -> Notification | None: ...

    async def find_due_scheduled(self, now: datetime, limit: int) -> list[Notification]:
        """status == scheduled, scheduled_for <= now, unclaimed or lease expired."""
        ...

    async def claim_notification(
        self, notification_id: str, claim_token: str, now: datetime, lease_until: datetime
    ) -> Notification | None: ...

    async def mark_notification_sent(
        self,
        notification_id: str,
        sent_at: datetime,
        push_outcome: PushOutcome | None,
        claim_token: str | None = None,
    ) -> Notification | None: ...

    async def mark_notification_failed(
        self,
        notification_id: str,
        failed_at: datetime,
        reason: str,
        claim_token: str | None = None,
    ) -> Notification | None: ...

    async def list_notifications(self, recipient_id: str) -> list[Notification]: ...


class AuditStore(Protocol):
    async def append_audit(self, record: AuditRecord) -> AuditRecord: ...

    async def query_audit(
        self,
        *,
        actor_id: str | None,
        target_id: str | None,
        actions: Sequence[AuditAction] | None,
        start: datetime | None,
        end: datetime | None,
        limit: int,
        offset: int,
    ) -> tuple[list[AuditRecord], int]:
        """Matching records newest first, plus the total match count."""
        ...

    async def delete_audit_before(self, cutoff: datetime, limit: int) -> int: ...


class MedicationLogStore(Protocol):
    async def save_medication_log(self, log: MedicationLog) -> MedicationLog: ...


class CareStore(
    ReminderStore, AlertStore, NotificationStore, AuditStore, MedicationLogStore, Protocol
):
    """Everything the exposed-call layer needs from persistence."""


class Directory(RecipientResolver, ProfileStore, Protocol):
    """Recipient resolution and profile lookup from one collaborator."""


class SchedulerStore(ReminderStore, MedicationLogStore, Protocol):
    """Reminder state plus the medication log written by manual events."""
