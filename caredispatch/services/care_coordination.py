"""
Exposed-call layer for the care dispatch core.

This is the surface a transport binding (HTTP handlers, callable functions,
a job scheduler) talks to:
1. Wire the scheduler, dispatcher, orchestrator and ledger from AppConfig
2. Check the caller may act on the subject before any write
3. Return Result.ok(report) or Result.err(domain_error) for expected failures
4. Drive the three periodic jobs with independent loops
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, TypeVar

from pydantic import ValidationError

from caredispatch import __version__
from caredispatch.config import AppConfig, get_config
from caredispatch.domain.errors import (
    CareDispatchError,
    InfrastructureFailure,
    InvalidInput,
    NotFound,
    PermissionDenied,
)
from caredispatch.domain.models import (
    SYSTEM_CALLER,
    AlertCategory,
    AlertLocation,
    AuditAction,
    AuditRecord,
    AuditValue,
    CallerContext,
    DeliveryMode,
    GeneralData,
    MedicationStatus,
    Notification,
    NotificationPayload,
    Priority,
    ResponseType,
    Role,
    Severity,
    utc_now,
)
from caredispatch.services.alert_orchestrator import (
    AlertOrchestrator,
    AlertRaised,
    ResponseProcessed,
)
from caredispatch.services.audit_ledger import AuditLedger, AuditPage, AuditQuery
from caredispatch.services.dispatcher import DeferredSweepReport, NotificationDispatcher
from caredispatch.services.escalation import parse_severity
from caredispatch.services.ports import (
    CareStore,
    Directory,
    PushChannel,
    Result,
    SmsChannel,
    configure_logging,
    logger,
)
from caredispatch.services.reminder_scheduler import (
    MedicationLogged,
    ReminderScheduler,
    ReminderTickReport,
)

T = TypeVar("T")
EnumT = TypeVar("EnumT")

_PRIVILEGED_ROLES = frozenset({Role.CAREGIVER, Role.ADMIN, Role.SYSTEM})


def _parse_enum(enum_type: Callable[[str], EnumT], value: Any, field: str) -> EnumT:
    if isinstance(value, enum_type):  # type: ignore[arg-type]
        return value
    raw = str(value).strip()
    for candidate in (raw, raw.lower(), raw.upper()):
        try:
            return enum_type(candidate)
        except ValueError:
            continue
    raise InvalidInput(f"unknown {field}: {value!r}", field=field)


class CareCoordinationService:
    """
    Facade over the dispatch core.

    Every exposed call returns a Result; system jobs run as SYSTEM_CALLER and
    never raise out of a periodic loop.
    """

    def __init__(
        self,
        store: CareStore,
        directory: Directory,
        push_channel: PushChannel,
        sms_channel: SmsChannel | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self.config = config or get_config()
        configure_logging(self.config.logging)
        self.logger = logger.bind(component="care_coordination")

        self.store = store
        self.directory = directory
        self.ledger = AuditLedger(
            store,
            retention_months=self.config.audit.retention_months,
            batch_size=self.config.audit.retention_batch_size,
        )
        self.dispatcher = NotificationDispatcher(
            store, directory, push_channel, sms_channel, self.config.dispatcher
        )
        self.scheduler = ReminderScheduler(
            store, directory, self.dispatcher, self.ledger, self.config.scheduler
        )
        self.orchestrator = AlertOrchestrator(store, directory, self.dispatcher, self.ledger)

        self._stopping = asyncio.Event()
        self._in_flight: set[asyncio.Task] = set()
        self._is_running = False

        self.logger.info(
            "care_coordination_initialized",
            environment=self.config.environment,
            catch_up_overdue=self.config.scheduler.catch_up_overdue,
        )

    # System jobs

    async def fire_due_reminders(
        self, tick: datetime | None = None
    ) -> Result[ReminderTickReport, CareDispatchError]:
        return await self._guard("fire_due_reminders", self.scheduler.fire_due_reminders(tick))

    async def process_deferred_notifications(
        self, tick: datetime | None = None
    ) -> Result[DeferredSweepReport, CareDispatchError]:
        async def _run() -> DeferredSweepReport:
            report = await self.dispatcher.process_deferred_notifications(tick)
            if report.processed:
                await self.ledger.record_best_effort(
                    SYSTEM_CALLER.user_id,
                    AuditAction.SCHEDULED_NOTIFICATIONS_PROCESSED,
                    {
                        "processed": report.processed,
                        "sent": len(report.sent_ids),
                        "failed": len(report.failed_ids),
                        "failed_ids": report.failed_ids,
                    },
                    timestamp=report.tick,
                )
            return report

        return await self._guard("process_deferred_notifications", _run())

    async def sweep_audit_retention(
        self, now: datetime | None = None
    ) -> Result[int, CareDispatchError]:
        async def _run() -> int:
            at = now or utc_now()
            deleted = await self.ledger.drain_retention(
                at, max_batches=self.config.audit.max_batches_per_sweep
            )
            await self.ledger.record_best_effort(
                SYSTEM_CALLER.user_id,
                AuditAction.AUDIT_RETENTION_SWEEP,
                {
                    "deleted": deleted,
                    "cutoff": self.ledger.retention_cutoff(at).isoformat(),
                    "retention_months": self.config.audit.retention_months,
                },
                timestamp=at,
            )
            return deleted

        return await self._guard("sweep_audit_retention", _run())

    # Caller-driven operations

    async def raise_alert(
        self,
        caller: CallerContext,
        subject_id: str,
        category: AlertCategory | str,
        severity: Severity | str,
        location: AlertLocation | None = None,
        description: str | None = None,
    ) -> Result[AlertRaised, CareDispatchError]:
        async def _run() -> AlertRaised:
            parsed_category = _parse_enum(AlertCategory, category, "category")
            parsed_severity = parse_severity(severity)
            self._authorize(caller, subject_id)
            return await self.orchestrator.raise_alert(
                subject_id,
                parsed_category,
                parsed_severity,
                location,
                description,
                actor_id=caller.user_id,
                origin=caller.origin,
            )

        return await self._guard("raise_alert", _run())

    async def process_alert_response(
        self,
        caller: CallerContext,
        alert_id: str,
        response_type: ResponseType | str,
        notes: str | None = None,
    ) -> Result[ResponseProcessed, CareDispatchError]:
        async def _run() -> ResponseProcessed:
            parsed = _parse_enum(ResponseType, response_type, "response_type")
            alert = await self.store.get_alert(alert_id)
            if alert is None:
                raise NotFound("emergency alert not found", alert_id=alert_id)
            self._authorize(caller, alert.subject_id)
            return await self.orchestrator.process_alert_response(
                alert_id, parsed, notes, responder_id=caller.user_id, origin=caller.origin
            )

        return await self._guard("process_alert_response", _run())

    async def log_medication_event(
        self,
        caller: CallerContext,
        subject_id: str,
        item_id: str,
        status: MedicationStatus | str,
        at: datetime | None = None,
        notes: str | None = None,
    ) -> Result[MedicationLogged, CareDispatchError]:
        async def _run() -> MedicationLogged:
            parsed = _parse_enum(MedicationStatus, status, "status")
            self._authorize(caller, subject_id)
            return await self.scheduler.log_medication_event(
                subject_id,
                item_id,
                parsed,
                at,
                notes=notes or "",
                logged_by=caller.user_id,
                origin=caller.origin,
            )

        return await self._guard("log_medication_event", _run())

    async def send_notification(
        self,
        caller: CallerContext,
        recipient_id: str,
        title: str,
        body: str,
        priority: Priority | str = Priority.NORMAL,
    ) -> Result[Notification, CareDispatchError]:
        async def _run() -> Notification:
            parsed = _parse_enum(Priority, priority, "priority")
            self._authorize(caller, recipient_id)
            notification = await self.dispatcher.dispatch(
                recipient_id,
                self._payload(title, body),
                mode=DeliveryMode.IMMEDIATE,
                priority=parsed,
            )
            await self.ledger.record_best_effort(
                caller.user_id,
                AuditAction.NOTIFICATION_SENT,
                {
                    "notification_id": notification.id,
                    "title": title,
                    "priority": parsed.value,
                    "push_outcome": (
                        notification.push_outcome.value if notification.push_outcome else None
                    ),
                },
                target_id=recipient_id,
                origin=caller.origin,
            )
            return notification

        return await self._guard("send_notification", _run())

    async def schedule_notification(
        self,
        caller: CallerContext,
        recipient_id: str,
        title: str,
        body: str,
        scheduled_for: datetime,
        priority: Priority | str = Priority.NORMAL,
    ) -> Result[Notification, CareDispatchError]:
        async def _run() -> Notification:
            parsed = _parse_enum(Priority, priority, "priority")
            self._authorize(caller, recipient_id)
            notification = await self.dispatcher.dispatch(
                recipient_id,
                self._payload(title, body),
                mode=DeliveryMode.SCHEDULED,
                priority=parsed,
                scheduled_for=scheduled_for,
            )
            await self.ledger.record_best_effort(
                caller.user_id,
                AuditAction.NOTIFICATION_SCHEDULED,
                {
                    "notification_id": notification.id,
                    "title": title,
                    "priority": parsed.value,
                    "scheduled_for": (
                        notification.scheduled_for.isoformat()
                        if notification.scheduled_for
                        else None
                    ),
                },
                target_id=recipient_id,
                origin=caller.origin,
            )
            return notification

        return await self._guard("schedule_notification", _run())

    async def list_inbox(
        self, caller: CallerContext, recipient_id: str
    ) -> Result[list[Notification], CareDispatchError]:
        async def _run() -> list[Notification]:
            self._authorize(caller, recipient_id)
            return await self.dispatcher.list_inbox(recipient_id)

        return await self._guard("list_inbox", _run())

    async def log_audit_event(
        self,
        caller: CallerContext,
        action_label: str,
        details: dict[str, AuditValue] | None = None,
        target_id: str | None = None,
    ) -> Result[AuditRecord, CareDispatchError]:
        """Client-reported event; always stored under the CUSTOM action."""

        async def _run() -> AuditRecord:
            if not action_label.strip():
                raise InvalidInput("action label is required", field="action_label")
            return await self.ledger.record(
                caller.user_id,
                AuditAction.CUSTOM,
                {**(details or {}), "label": action_label.strip()},
                target_id=target_id,
                origin=caller.origin,
            )

        return await self._guard("log_audit_event", _run())

    async def get_audit_logs(
        self,
        caller: CallerContext,
        actor_id: str | None = None,
        action: AuditAction | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Result[AuditPage, CareDispatchError]:
        async def _run() -> AuditPage:
            privileged = caller.role in _PRIVILEGED_ROLES
            if actor_id is not None and actor_id != caller.user_id and not privileged:
                raise PermissionDenied(
                    "cannot read another actor's audit trail", caller_id=caller.user_id
                )
            actions = (
                [_parse_enum(AuditAction, action, "action")]
                if action is not None
                else None
            )
            query = AuditQuery(
                actor_id=actor_id if actor_id is not None or privileged else caller.user_id,
                actions=actions,
                start=start,
                end=end,
                limit=limit,
                offset=offset,
            )
            return await self.ledger.query(query)

        return await self._guard("get_audit_logs", _run())

    def health_check(self) -> dict[str, str]:
        return {
            "status": "OK",
            "timestamp": utc_now().isoformat(),
            "service": self.config.service_name,
            "version": __version__,
        }

    # Periodic jobs

    async def run_forever(self) -> None:
        """
        Run the reminder tick, deferred sweep and retention sweep until stop().

        Each tick is spawned as its own task; a slow tick keeps running while
        the next one starts, claims keep the overlap safe.
        """
        self._stopping.clear()
        self._is_running = True
        self.logger.info(
            "periodic_jobs_starting",
            reminder_interval=self.config.scheduler.tick_interval_seconds,
            sweep_interval=self.config.dispatcher.sweep_interval_seconds,
            retention_interval=self.config.audit.sweep_interval_seconds,
        )
        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(
                    self._periodic(
                        "reminder_tick",
                        self.config.scheduler.tick_interval_seconds,
                        self.fire_due_reminders,
                    )
                )
                task_group.create_task(
                    self._periodic(
                        "deferred_sweep",
                        self.config.dispatcher.sweep_interval_seconds,
                        self.process_deferred_notifications,
                    )
                )
                task_group.create_task(
                    self._periodic(
                        "retention_sweep",
                        self.config.audit.sweep_interval_seconds,
                        self.sweep_audit_retention,
                    )
                )
        except asyncio.CancelledError:
            self.logger.info("periodic_jobs_cancelled")
            raise
        finally:
            await self._drain_in_flight()
            self._is_running = False
            self.logger.info("periodic_jobs_stopped")

    async def stop(self) -> None:
        """Stop the loops and wait for ticks already in flight."""
        self.logger.info("stopping_care_coordination")
        self._stopping.set()
        await self._drain_in_flight()

    @property
    def is_running(self) -> bool:
        return self._is_running

    async def _periodic(
        self, name: str, interval: float, job: Callable[[], Awaitable[Result]]
    ) -> None:
        while not self._stopping.is_set():
            task = asyncio.create_task(self._run_tick(name, job), name=name)
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                continue

    async def _run_tick(self, name: str, job: Callable[[], Awaitable[Result]]) -> None:
        result = await job()
        if result.is_err():
            self.logger.error("periodic_job_failed", job=name, error=str(result.unwrap_err()))

    async def _drain_in_flight(self) -> None:
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    # Helpers

    @staticmethod
    def _authorize(caller: CallerContext, subject_id: str) -> None:
        if caller.user_id == subject_id or caller.role in _PRIVILEGED_ROLES:
            return
        raise PermissionDenied(
            "caller may not act for this subject",
            caller_id=caller.user_id,
            subject_id=subject_id,
        )

    @staticmethod
    def _payload(title: str, body: str) -> NotificationPayload:
        try:
            return NotificationPayload(title=title, body=body, data=GeneralData())
        except ValidationError as e:
            raise InvalidInput(f"invalid notification payload: {e.errors()[0]['msg']}") from e

    async def _guard(self, operation: str, call: Awaitable[T]) -> Result[T, CareDispatchError]:
        """Map domain errors to Result.err; anything unexpected is an infrastructure fault."""
        try:
            return Result.ok(await call)
        except CareDispatchError as e:
            self.logger.warning(
                "operation_rejected", operation=operation, kind=e.kind, error=e.message
            )
            return Result.err(e)
        except ValidationError as e:
            self.logger.warning("operation_rejected", operation=operation, kind="invalid_input")
            return Result.err(InvalidInput(f"invalid input: {e.errors()[0]['msg']}"))
        except Exception as e:
            self.logger.exception("operation_failed", operation=operation, error=str(e))
            return Result.err(InfrastructureFailure(f"{operation} failed: {e}"))
