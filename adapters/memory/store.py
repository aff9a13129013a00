"""
In-memory document store implementing every store Protocol of the core.

Stands in for the hosted document database: each method is one
"single-document write" guarded by an asyncio lock, and conditional updates
(claims, version checks, status transitions) are evaluated atomically under
that lock. Returned models are copies, so callers never alias stored state.
"""

import asyncio
from collections.abc import Sequence
from datetime import datetime

import structlog

from caredispatch.domain.models import (
    Alert,
    AlertResponse,
    AlertStatus,
    AuditAction,
    AuditRecord,
    MedicationLog,
    Notification,
    NotificationStatus,
    PushOutcome,
    Reminder,
    ResponseRecord,
    utc_now,
)

logger = structlog.get_logger(__name__)


class InMemoryCareStore:
    """Reminders, alerts, notifications, audit records and medication logs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._reminders: dict[str, Reminder] = {}
        self._alerts: dict[str, Alert] = {}
        self._responses: list[ResponseRecord] = []
        self._notifications: dict[str, Notification] = {}
        self._audit: dict[str, AuditRecord] = {}
        self._medication_logs: list[MedicationLog] = []

    # Reminders

    async def save_reminder(self, reminder: Reminder) -> Reminder:
        async with self._lock:
            self._reminders[reminder.id] = reminder.model_copy(deep=True)
            return reminder.model_copy(deep=True)

    async def get_reminder(self, reminder_id: str) -> Reminder | None:
        async with self._lock:
            reminder = self._reminders.get(reminder_id)
            return reminder.model_copy(deep=True) if reminder else None

    async def find_due_reminders(
        self, due_before: datetime, due_after: datetime | None = None
    ) -> list[Reminder]:
        async with self._lock:
            due = [
                r.model_copy(deep=True)
                for r in self._reminders.values()
                if r.is_active
                and r.next_due_at <= due_before
                and (due_after is None or r.next_due_at >= due_after)
            ]
        return sorted(due, key=lambda r: r.next_due_at)

    async def find_active_reminder(self, subject_id: str, item_id: str) -> Reminder | None:
        async with self._lock:
            for reminder in self._reminders.values():
                if (
                    reminder.is_active
                    and reminder.subject_id == subject_id
                    and reminder.item_id == item_id
                ):
                    return reminder.model_copy(deep=True)
        return None

    async def claim_reminder(
        self,
        reminder_id: str,
        expected_version: int,
        claim_token: str,
        now: datetime,
        lease_until: datetime,
    ) -> Reminder | None:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None or not current.is_active:
                return None
            if current.version != expected_version or current.is_claimed(now):
                return None
            claimed = current.model_copy(
                update={
                    "claim_token": claim_token,
                    "claim_expires_at": lease_until,
                    "version": current.version + 1,
                    "updated_at": utc_now(),
                }
            )
            self._reminders[reminder_id] = claimed
            return claimed.model_copy(deep=True)

    async def complete_reminder(
        self, reminder_id: str, claim_token: str, next_due_at: datetime, fired_at: datetime
    ) -> Reminder | None:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None or current.claim_token != claim_token:
                return None
            completed = current.model_copy(
                update={
                    "next_due_at": next_due_at,
                    "last_fired_at": fired_at,
                    "claim_token": None,
                    "claim_expires_at": None,
                    "version": current.version + 1,
                    "updated_at": utc_now(),
                }
            )
            self._reminders[reminder_id] = completed
            return completed.model_copy(deep=True)

    async def release_reminder(self, reminder_id: str, claim_token: str) -> bool:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None or current.claim_token != claim_token:
                return False
            self._reminders[reminder_id] = current.model_copy(
                update={
                    "claim_token": None,
                    "claim_expires_at": None,
                    "version": current.version + 1,
                    "updated_at": utc_now(),
                }
            )
            return True

    async def reschedule_reminder(
        self,
        reminder_id: str,
        expected_version: int,
        next_due_at: datetime,
        taken_at: datetime,
    ) -> Reminder | None:
        async with self._lock:
            current = self._reminders.get(reminder_id)
            if current is None or current.version != expected_version:
                return None
            if current.is_claimed(utc_now()):
                return None
            updated = current.model_copy(
                update={
                    "next_due_at": next_due_at,
                    "last_taken_at": taken_at,
                    "version": current.version + 1,
                    "updated_at": utc_now(),
                }
            )
            self._reminders[reminder_id] = updated
            return updated.model_copy(deep=True)

    # Alerts

    async def save_alert(self, alert: Alert) -> Alert:
        async with self._lock:
            self._alerts[alert.id] = alert.model_copy(deep=True)
            return alert.model_copy(deep=True)

    async def get_alert(self, alert_id: str) -> Alert | None:
        async with self._lock:
            alert = self._alerts.get(alert_id)
            return alert.model_copy(deep=True) if alert else None

    async def update_alert_status(
        self, alert_id: str, status: AlertStatus, last_response: AlertResponse
    ) -> Alert | None:
        async with self._lock:
            current = self._alerts.get(alert_id)
            if current is None:
                return None
            updated = current.model_copy(
                update={
                    "status": status,
                    "last_response": last_response,
                    "updated_at": last_response.timestamp,
                }
            )
            self._alerts[alert_id] = updated
            return updated.model_copy(deep=True)

    async def append_response(self, record: ResponseRecord) -> ResponseRecord:
        async with self._lock:
            self._responses.append(record)
            return record

    async def list_responses(self, alert_id: str) -> list[ResponseRecord]:
        async with self._lock:
            return [r for r in self._responses if r.alert_id == alert_id]

    # Notifications

    async def save_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            self._notifications[notification.id] = notification.model_copy(deep=True)
            return notification.model_copy(deep=True)

    async def get_notification(self, notification_id: str) -> Notification | None:
        async with self._lock:
            notification = self._notifications.get(notification_id)
            return notification.model_copy(deep=True) if notification else None

    async def find_due_scheduled(self, now: datetime, limit: int) -> list[Notification]:
        async with self._lock:
            due = [
                n
                for n in self._notifications.values()
                if n.status is NotificationStatus.SCHEDULED
                and n.scheduled_for is not None
                and n.scheduled_for <= now
                and not self._notification_claimed(n, now)
            ]
            due.sort(key=lambda n: n.scheduled_for or n.created_at)
            return [n.model_copy(deep=True) for n in due[:limit]]

    async def claim_notification(
        self, notification_id: str, claim_token: str, now: datetime, lease_until: datetime
    ) -> Notification | None:
        async with self._lock:
            current = self._notifications.get(notification_id)
            if current is None or current.status is not NotificationStatus.SCHEDULED:
                return None
            if self._notification_claimed(current, now):
                return None
            claimed = current.model_copy(
                update={"claim_token": claim_token, "claim_expires_at": lease_until}
            )
            self._notifications[notification_id] = claimed
            return claimed.model_copy(deep=True)

    async def mark_notification_sent(
        self,
        notification_id: str,
        sent_at: datetime,
        push_outcome: PushOutcome | None,
        claim_token: str | None = None,
    ) -> Notification | None:
        return await self._settle(
            notification_id,
            claim_token,
            {
                "status": NotificationStatus.SENT,
                "sent_at": sent_at,
                "push_outcome": push_outcome,
            },
        )

    async def mark_notification_failed(
        self,
        notification_id: str,
        failed_at: datetime,
        reason: str,
        claim_token: str | None = None,
    ) -> Notification | None:
        return await self._settle(
            notification_id,
            claim_token,
            {
                "status": NotificationStatus.FAILED,
                "failed_at": failed_at,
                "failure_reason": reason,
                "push_outcome": PushOutcome.FAILED,
            },
        )

    async def list_notifications(self, recipient_id: str) -> list[Notification]:
        async with self._lock:
            return [
                n.model_copy(deep=True)
                for n in self._notifications.values()
                if n.recipient_id == recipient_id
            ]

    async def _settle(
        self, notification_id: str, claim_token: str | None, update: dict
    ) -> Notification | None:
        """Terminal transition; refused from a terminal state or without the claim."""
        async with self._lock:
            current = self._notifications.get(notification_id)
            if current is None or current.status.is_terminal:
                return None
            if current.claim_token is not None and current.claim_token != claim_token:
                return None
            settled = current.model_copy(
                update={**update, "claim_token": None, "claim_expires_at": None}
            )
            self._notifications[notification_id] = settled
            return settled.model_copy(deep=True)

    @staticmethod
    def _notification_claimed(notification: Notification, now: datetime) -> bool:
        return (
            notification.claim_token is not None
            and notification.claim_expires_at is not None
            and notification.claim_expires_at > now
        )

    # Audit

    async def append_audit(self, record: AuditRecord) -> AuditRecord:
        async with self._lock:
            if record.id in self._audit:
                raise ValueError(f"audit record {record.id} already exists")
            self._audit[record.id] = record
            return record

    async def query_audit(
        self,
        *,
        actor_id: str | None = None,
        target_id: str | None = None,
        actions: Sequence[AuditAction] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[AuditRecord], int]:
        async with self._lock:
            matching = [
                r
                for r in self._audit.values()
                if (actor_id is None or r.actor_id == actor_id)
                and (target_id is None or r.target_id == target_id)
                and (not actions or r.action in actions)
                and (start is None or r.timestamp >= start)
                and (end is None or r.timestamp <= end)
            ]
        matching.sort(key=lambda r: r.timestamp, reverse=True)
        return matching[offset : offset + limit], len(matching)

    async def delete_audit_before(self, cutoff: datetime, limit: int) -> int:
        async with self._lock:
            expired = sorted(
                (r for r in self._audit.values() if r.timestamp < cutoff),
                key=lambda r: r.timestamp,
            )[:limit]
            for record in expired:
                del self._audit[record.id]
        logger.debug("audit_records_deleted", store="in_memory", count=len(expired))
        return len(expired)

    async def count_audit(self) -> int:
        async with self._lock:
            return len(self._audit)

    # Medication logs

    async def save_medication_log(self, log: MedicationLog) -> MedicationLog:
        async with self._lock:
            self._medication_logs.append(log)
            return log

    async def list_medication_logs(self, subject_id: str) -> list[MedicationLog]:
        async with self._lock:
            return [entry for entry in self._medication_logs if entry.subject_id == subject_id]
