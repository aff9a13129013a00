"""
Reminder scheduler: fires due medication reminders on each tick.

Ticks may overlap (a slow tick still running when the next begins) or run on
several workers at once. Each reminder is therefore claimed with an
optimistic version check plus a lease before anything is dispatched; a
reminder that cannot be claimed is left to whoever owns it.
"""

import asyncio
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from caredispatch.config import SchedulerConfig
from caredispatch.domain.errors import NotFound
from caredispatch.domain.models import (
    AuditAction,
    DeliveryMode,
    MedicationLog,
    MedicationReminderData,
    MedicationStatus,
    NotificationPayload,
    Priority,
    Reminder,
    ensure_utc,
    new_id,
    utc_now,
)
from caredispatch.services.audit_ledger import AuditLedger
from caredispatch.services.dispatcher import NotificationDispatcher
from caredispatch.services.due_time import next_due
from caredispatch.services.ports import ProfileStore, SchedulerStore, logger

RESCHEDULE_ATTEMPTS = 3
COMPLETE_ATTEMPTS = 3


class ReminderTickReport(BaseModel):
    """Outcome of one scheduler tick."""

    tick: datetime
    selected: int = 0
    fired_ids: list[str] = Field(default_factory=list)
    notification_ids: list[str] = Field(default_factory=list)
    unscheduled_ids: list[str] = Field(default_factory=list)
    skipped: int = 0
    failed: int = 0


class MedicationLogged(BaseModel):
    log_id: str
    reminder_id: str | None = None
    next_due_at: datetime | None = None


class _FireOutcome(BaseModel):
    status: str
    notification_id: str | None = None
    rescheduled: bool = True


def build_reminder_payload(reminder: Reminder) -> NotificationPayload:
    dosage = f" ({reminder.dosage_label})" if reminder.dosage_label else ""
    return NotificationPayload(
        title="Medication Reminder",
        body=f"Time to take {reminder.item_label}{dosage}",
        data=MedicationReminderData(
            reminder_id=reminder.id,
            item_id=reminder.item_id,
            item_label=reminder.item_label,
            dosage_label=reminder.dosage_label,
        ),
    )


class ReminderScheduler:
    """Selects, claims and fires due reminders; reschedules on manual logs."""

    def __init__(
        self,
        store: SchedulerStore,
        profiles: ProfileStore,
        dispatcher: NotificationDispatcher,
        ledger: AuditLedger,
        config: SchedulerConfig | None = None,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.config = config or SchedulerConfig()
        self.logger = logger.bind(component="reminder_scheduler")

    async def fire_due_reminders(self, tick: datetime | None = None) -> ReminderTickReport:
        """
        Fire every active reminder due within the lookahead window.

        next_due_at is recomputed from the tick instant, not from the previous
        due time, so a late tick shifts the schedule forward.
        """
        tick = ensure_utc(tick) if tick else utc_now()
        window_end = tick + timedelta(minutes=self.config.lookahead_minutes)
        due_after = None if self.config.catch_up_overdue else tick

        due = await self.store.find_due_reminders(window_end, due_after)
        report = ReminderTickReport(tick=tick, selected=len(due))
        if not due:
            self.logger.debug("no_reminders_due", tick=tick.isoformat())
            return report

        semaphore = asyncio.Semaphore(self.config.max_concurrent_items)

        async def _bounded(reminder: Reminder) -> _FireOutcome:
            async with semaphore:
                return await self._fire_one(reminder, tick)

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                (reminder.id, task_group.create_task(_bounded(reminder))) for reminder in due
            ]

        for reminder_id, task in tasks:
            outcome = task.result()
            if outcome.status == "fired":
                report.fired_ids.append(reminder_id)
                if outcome.notification_id:
                    report.notification_ids.append(outcome.notification_id)
                if not outcome.rescheduled:
                    report.unscheduled_ids.append(reminder_id)
            elif outcome.status == "skipped":
                report.skipped += 1
            else:
                report.failed += 1

        self.logger.info(
            "reminder_tick_completed",
            tick=tick.isoformat(),
            selected=report.selected,
            fired=len(report.fired_ids),
            unscheduled=len(report.unscheduled_ids),
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    async def _fire_one(self, reminder: Reminder, tick: datetime) -> _FireOutcome:
        claim_token = new_id()
        lease_until = tick + timedelta(seconds=self.config.claim_lease_seconds)
        log = self.logger.bind(reminder_id=reminder.id, subject_id=reminder.subject_id)

        try:
            claimed = await self.store.claim_reminder(
                reminder.id, reminder.version, claim_token, tick, lease_until
            )
        except Exception as e:
            log.error("reminder_claim_error", error=str(e))
            return _FireOutcome(status="failed")

        if claimed is None:
            log.debug("reminder_not_claimed")
            return _FireOutcome(status="skipped")

        try:
            await self.profiles.get_profile(claimed.subject_id)
            notification = await self.dispatcher.dispatch(
                claimed.subject_id,
                build_reminder_payload(claimed),
                mode=DeliveryMode.IMMEDIATE,
                priority=Priority.NORMAL,
                now=tick,
            )
        except NotFound as e:
            log.warning("reminder_subject_missing", error=e.message)
            await self._release(claimed.id, claim_token)
            return _FireOutcome(status="skipped")
        except Exception as e:
            log.exception("reminder_fire_failed", error=str(e))
            await self._release(claimed.id, claim_token)
            return _FireOutcome(status="failed")

        # The notification is out; from here on the claim is never released
        next_due_at = next_due(tick, claimed.frequency_label)
        completed = await self._complete(claimed, claim_token, next_due_at, tick)
        next_due_applied = completed is not None
        if not next_due_applied:
            log.warning(
                "reminder_partial_failure",
                notification_id=notification.id,
                next_due_at=next_due_at.isoformat(),
                lease_until=lease_until.isoformat(),
            )

        await self.ledger.record_best_effort(
            claimed.subject_id,
            AuditAction.MEDICATION_REMINDER_SENT,
            {
                "reminder_id": claimed.id,
                "item_id": claimed.item_id,
                "item_label": claimed.item_label,
                "dosage_label": claimed.dosage_label,
                "notification_id": notification.id,
                "next_due_at": next_due_at.isoformat(),
                "next_due_applied": next_due_applied,
            },
            target_id=claimed.subject_id,
            timestamp=tick,
        )

        log.info(
            "reminder_fired",
            item_label=claimed.item_label,
            notification_id=notification.id,
            next_due_at=next_due_at.isoformat(),
            next_due_applied=next_due_applied,
        )
        return _FireOutcome(
            status="fired", notification_id=notification.id, rescheduled=next_due_applied
        )

    async def _complete(
        self,
        reminder: Reminder,
        claim_token: str,
        next_due_at: datetime,
        tick: datetime,
    ) -> Reminder | None:
        """
        Persist next_due_at after a successful dispatch.

        Store errors are retried up to COMPLETE_ATTEMPTS times. Returns None when
        the claim was lost or every attempt failed; the lease then stays in place
        and blocks another dispatch until it expires.
        """
        log = self.logger.bind(reminder_id=reminder.id, subject_id=reminder.subject_id)
        for attempt in range(1, COMPLETE_ATTEMPTS + 1):
            try:
                completed = await self.store.complete_reminder(
                    reminder.id, claim_token, next_due_at, tick
                )
            except Exception as e:
                log.warning("reminder_complete_error", attempt=attempt, error=str(e))
                continue
            if completed is None:
                log.warning("reminder_claim_lost", next_due_at=next_due_at.isoformat())
            return completed

        log.error("reminder_complete_gave_up", attempts=COMPLETE_ATTEMPTS)
        return None

    async def _release(self, reminder_id: str, claim_token: str) -> None:
        try:
            await self.store.release_reminder(reminder_id, claim_token)
        except Exception as e:
            # The lease expires on its own; the next tick can reclaim it
            self.logger.error("reminder_release_failed", reminder_id=reminder_id, error=str(e))

    async def log_medication_event(
        self,
        subject_id: str,
        item_id: str,
        status: MedicationStatus,
        at: datetime | None = None,
        *,
        notes: str = "",
        logged_by: str | None = None,
        origin: str = "system",
    ) -> MedicationLogged:
        """Record a manual medication event; a ``taken`` event reschedules the reminder."""
        await self.profiles.get_profile(subject_id)

        at = ensure_utc(at) if at else utc_now()
        logged_by = logged_by or subject_id
        entry = await self.store.save_medication_log(
            MedicationLog(
                subject_id=subject_id,
                item_id=item_id,
                status=status,
                notes=notes,
                taken_at=at,
                logged_by=logged_by,
            )
        )

        rescheduled: Reminder | None = None
        if status is MedicationStatus.TAKEN:
            rescheduled = await self._reschedule_after_taken(subject_id, item_id, at)

        result = MedicationLogged(
            log_id=entry.id,
            reminder_id=rescheduled.id if rescheduled else None,
            next_due_at=rescheduled.next_due_at if rescheduled else None,
        )

        await self.ledger.record_best_effort(
            logged_by,
            AuditAction.MEDICATION_LOG_CREATED,
            {
                "log_id": entry.id,
                "item_id": item_id,
                "status": status.value,
                "notes": notes,
                "reminder_id": result.reminder_id,
                "next_due_at": result.next_due_at.isoformat() if result.next_due_at else None,
            },
            target_id=subject_id,
            origin=origin,
        )

        self.logger.info(
            "medication_event_logged",
            subject_id=subject_id,
            item_id=item_id,
            status=status.value,
            rescheduled=rescheduled is not None,
        )
        return result

    async def _reschedule_after_taken(
        self, subject_id: str, item_id: str, taken_at: datetime
    ) -> Reminder | None:
        for attempt in range(1, RESCHEDULE_ATTEMPTS + 1):
            reminder = await self.store.find_active_reminder(subject_id, item_id)
            if reminder is None:
                return None
            if reminder.is_claimed(utc_now()):
                # A tick is firing it right now and will set next_due_at itself
                self.logger.info("reminder_reschedule_skipped_claimed", reminder_id=reminder.id)
                return None

            updated = await self.store.reschedule_reminder(
                reminder.id,
                reminder.version,
                next_due(taken_at, reminder.frequency_label),
                taken_at,
            )
            if updated is not None:
                return updated
            self.logger.debug(
                "reminder_reschedule_conflict", reminder_id=reminder.id, attempt=attempt
            )

        self.logger.warning(
            "reminder_reschedule_gave_up", subject_id=subject_id, item_id=item_id
        )
        return None
