"""
Domain models for care coordination and notification dispatch.

These models represent the core business concepts and are framework-agnostic.
They use Pydantic for validation; every instant is a timezone-aware UTC datetime.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return str(uuid.uuid4())


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


class Severity(str, Enum):
    """Alert severity levels, ordered from least to most urgent."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AlertCategory(str, Enum):
    MEDICAL = "medical"
    FALL = "fall"
    PANIC = "panic"
    OTHER = "other"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class ResponseType(str, Enum):
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    ESCALATED = "escalated"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class DeliveryMode(str, Enum):
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class NotificationChannel(str, Enum):
    """Out-of-band channel used alongside the inbox record."""

    PUSH = "push"
    SMS = "sms"


class NotificationStatus(str, Enum):
    """One-directional lifecycle: created/scheduled -> sent | failed."""

    CREATED = "created"
    SCHEDULED = "scheduled"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (NotificationStatus.SENT, NotificationStatus.FAILED)


class PushOutcome(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class MedicationStatus(str, Enum):
    TAKEN = "taken"
    MISSED = "missed"
    SKIPPED = "skipped"


class AuditAction(str, Enum):
    MEDICATION_REMINDER_SENT = "MEDICATION_REMINDER_SENT"
    MEDICATION_LOG_CREATED = "MEDICATION_LOG_CREATED"
    EMERGENCY_ALERT_CREATED = "EMERGENCY_ALERT_CREATED"
    EMERGENCY_RESPONSE_PROCESSED = "EMERGENCY_RESPONSE_PROCESSED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_SCHEDULED = "NOTIFICATION_SCHEDULED"
    SCHEDULED_NOTIFICATIONS_PROCESSED = "SCHEDULED_NOTIFICATIONS_PROCESSED"
    AUDIT_RETENTION_SWEEP = "AUDIT_RETENTION_SWEEP"
    CUSTOM = "CUSTOM"


class Role(str, Enum):
    """Roles recognised by the exposed-call permission check."""

    SUBJECT = "subject"
    CAREGIVER = "caregiver"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"


# Collaborator DTOs


class EmergencyContact(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    phone: str = Field(min_length=1)


class SubjectProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    subject_id: str
    display_name: str
    push_token: str | None = None


class CallerContext(BaseModel):
    """Identity of whoever drives an exposed call."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role = Role.SUBJECT
    origin: str = Field(default="api", description="IP address or transport label")


SYSTEM_CALLER = CallerContext(user_id="system", role=Role.SYSTEM, origin="system")


# Notification payload data: tagged union of known event kinds


class _PayloadData(BaseModel):
    model_config = ConfigDict(frozen=True)

    extra: dict[str, str] = Field(
        default_factory=dict, description="Forward-compatible attributes"
    )

    def as_push_data(self) -> dict[str, str]:
        """Flatten to the string map push channels accept."""
        flattened = {
            key: value.value if isinstance(value, Enum) else str(value)
            for key, value in self.model_dump(exclude={"extra"}, exclude_none=True).items()
        }
        return {**self.extra, **flattened}


class MedicationReminderData(_PayloadData):
    kind: Literal["medication_reminder"] = "medication_reminder"
    reminder_id: str
    item_id: str
    item_label: str
    dosage_label: str


class EmergencyAlertData(_PayloadData):
    kind: Literal["emergency_alert"] = "emergency_alert"
    alert_id: str
    subject_id: str
    category: AlertCategory
    severity: Severity
    audience: Literal["caregiver", "provider", "emergency_contact"]


class AlertResolvedData(_PayloadData):
    kind: Literal["emergency_resolved"] = "emergency_resolved"
    alert_id: str
    response_type: ResponseType


class GeneralData(_PayloadData):
    kind: Literal["general"] = "general"
    label: str = "general"


NotificationData = Annotated[
    MedicationReminderData | EmergencyAlertData | AlertResolvedData | GeneralData,
    Field(discriminator="kind"),
]


class NotificationPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str = Field(min_length=1, max_length=200)
    body: str = Field(max_length=2000)
    data: NotificationData = Field(default_factory=GeneralData)


# Entities


class Reminder(BaseModel):
    """Recurring trigger for a care item, owned by its subject."""

    id: str = Field(default_factory=new_id)
    subject_id: str
    item_id: str
    item_label: str
    dosage_label: str = ""
    frequency_label: str = "daily"
    next_due_at: UtcDatetime
    is_active: bool = True
    last_fired_at: UtcDatetime | None = None
    last_taken_at: UtcDatetime | None = None

    # Optimistic concurrency and claim lease
    version: int = Field(default=0, ge=0)
    claim_token: str | None = None
    claim_expires_at: UtcDatetime | None = None
    updated_at: UtcDatetime = Field(default_factory=utc_now)

    def is_claimed(self, now: datetime) -> bool:
        return (
            self.claim_token is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )


class AlertLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    address: str | None = None


class AlertResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    response_type: ResponseType
    responder_id: str
    notes: str = ""
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class Alert(BaseModel):
    id: str = Field(default_factory=new_id)
    subject_id: str
    category: AlertCategory
    severity: Severity
    location: AlertLocation | None = None
    description: str | None = None
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime | None = None
    last_response: AlertResponse | None = None


class ResponseRecord(BaseModel):
    """Append-only history entry for an alert response."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    alert_id: str
    responder_id: str
    response_type: ResponseType
    notes: str = ""
    timestamp: UtcDatetime = Field(default_factory=utc_now)


class Notification(BaseModel):
    id: str = Field(default_factory=new_id)
    recipient_id: str
    payload: NotificationPayload
    priority: Priority = Priority.NORMAL
    mode: DeliveryMode = DeliveryMode.IMMEDIATE
    channel: NotificationChannel = NotificationChannel.PUSH
    contact: EmergencyContact | None = None
    scheduled_for: UtcDatetime | None = None
    status: NotificationStatus = NotificationStatus.CREATED
    created_at: UtcDatetime = Field(default_factory=utc_now)
    sent_at: UtcDatetime | None = None
    failed_at: UtcDatetime | None = None
    failure_reason: str | None = None
    push_outcome: PushOutcome | None = None
    is_read: bool = False

    claim_token: str | None = None
    claim_expires_at: UtcDatetime | None = None


AuditValue = str | int | float | bool | None | list[str]


class AuditRecord(BaseModel):
    """Compliance record. Never mutated once written."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    actor_id: str
    action: AuditAction
    details: dict[str, AuditValue] = Field(default_factory=dict)
    target_id: str | None = None
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    origin: str = "system"


class MedicationLog(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    subject_id: str
    item_id: str
    status: MedicationStatus
    notes: str = ""
    taken_at: UtcDatetime
    logged_by: str
    created_at: UtcDatetime = Field(default_factory=utc_now)
