"""
Alert orchestration: raising emergency alerts and processing responses.

Pipeline for a new alert:
1. Verify the subject exists (nothing is written for an unknown subject)
2. Persist the Alert as active
3. Look up response actions and recipient groups from the escalation policy
4. Resolve caregivers, providers and the emergency contact
5. Fan out immediate notifications, one isolated failure domain per recipient
6. Write exactly one audit record summarising the fan-out
"""

import asyncio
from dataclasses import dataclass

from pydantic import BaseModel, Field

from caredispatch.domain.errors import NotFound
from caredispatch.domain.models import (
    Alert,
    AlertCategory,
    AlertLocation,
    AlertResolvedData,
    AlertResponse,
    AlertStatus,
    AuditAction,
    DeliveryMode,
    EmergencyAlertData,
    EmergencyContact,
    NotificationPayload,
    Priority,
    ResponseRecord,
    ResponseType,
    Severity,
    SubjectProfile,
    utc_now,
)
from caredispatch.services.audit_ledger import AuditLedger
from caredispatch.services.dispatcher import NotificationDispatcher
from caredispatch.services.escalation import (
    priority_for_severity,
    resolve_response,
    select_recipient_groups,
)
from caredispatch.services.ports import AlertStore, Directory, logger


class AlertRaised(BaseModel):
    alert_id: str
    status: AlertStatus
    response_actions: list[str]
    notification_ids: list[str] = Field(default_factory=list)
    failed_recipients: list[str] = Field(default_factory=list)


class ResponseProcessed(BaseModel):
    alert_id: str
    status: AlertStatus
    response_id: str
    notification_id: str | None = None


@dataclass
class _FanOutTarget:
    audience: str
    recipient_id: str
    contact: EmergencyContact | None = None


class AlertOrchestrator:
    """Coordinates escalation, recipient resolution and dispatch for alerts."""

    def __init__(
        self,
        store: AlertStore,
        directory: Directory,
        dispatcher: NotificationDispatcher,
        ledger: AuditLedger,
    ) -> None:
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.ledger = ledger
        self.logger = logger.bind(component="alert_orchestrator")

    async def raise_alert(
        self,
        subject_id: str,
        category: AlertCategory,
        severity: Severity,
        location: AlertLocation | None = None,
        description: str | None = None,
        *,
        actor_id: str | None = None,
        origin: str = "system",
    ) -> AlertRaised:
        profile = await self.directory.get_profile(subject_id)

        alert = await self.store.save_alert(
            Alert(
                subject_id=subject_id,
                category=category,
                severity=severity,
                location=location,
                description=description,
                status=AlertStatus.ACTIVE,
            )
        )
        log = self.logger.bind(alert_id=alert.id, subject_id=subject_id)
        log.info("alert_created", category=category.value, severity=severity.value)

        actions = resolve_response(severity)
        caregivers, providers, contact = await self._resolve_recipients(subject_id)
        groups = select_recipient_groups(severity, has_emergency_contact=contact is not None)

        targets: list[_FanOutTarget] = []
        if groups.caregivers:
            targets.extend(_FanOutTarget("caregiver", cid) for cid in caregivers)
        if groups.emergency_contact and contact is not None:
            # The contact has no inbox of their own; the record lands in the subject's
            targets.append(_FanOutTarget("emergency_contact", subject_id, contact))
        if groups.providers:
            targets.extend(_FanOutTarget("provider", pid) for pid in providers)
        targets = self._dedupe(targets)

        priority = priority_for_severity(severity)
        notification_ids, failed = await self._fan_out(alert, profile, targets, priority)

        await self.ledger.record_best_effort(
            actor_id or subject_id,
            AuditAction.EMERGENCY_ALERT_CREATED,
            {
                "alert_id": alert.id,
                "category": category.value,
                "severity": severity.value,
                "description": description,
                "address": location.address if location else None,
                "caregivers_targeted": sum(1 for t in targets if t.audience == "caregiver"),
                "providers_targeted": sum(1 for t in targets if t.audience == "provider"),
                "emergency_contact_notified": groups.emergency_contact,
                "notification_ids": notification_ids,
                "failed_recipients": failed,
            },
            target_id=subject_id,
            origin=origin,
        )

        log.info(
            "alert_fan_out_completed",
            notified=len(notification_ids),
            failed=len(failed),
            providers_included=groups.providers,
        )
        return AlertRaised(
            alert_id=alert.id,
            status=alert.status,
            response_actions=actions,
            notification_ids=notification_ids,
            failed_recipients=failed,
        )

    async def process_alert_response(
        self,
        alert_id: str,
        response_type: ResponseType,
        notes: str | None = None,
        *,
        responder_id: str,
        origin: str = "system",
    ) -> ResponseProcessed:
        alert = await self.store.get_alert(alert_id)
        if alert is None:
            raise NotFound("emergency alert not found", alert_id=alert_id)

        resolved = response_type is ResponseType.RESOLVED
        status = AlertStatus.RESOLVED if resolved else AlertStatus.IN_PROGRESS
        now = utc_now()
        response = AlertResponse(
            response_type=response_type,
            responder_id=responder_id,
            notes=notes or "",
            timestamp=now,
        )

        updated = await self.store.update_alert_status(alert_id, status, response)
        if updated is None:
            raise NotFound("emergency alert not found", alert_id=alert_id)

        record = await self.store.append_response(
            ResponseRecord(
                alert_id=alert_id,
                responder_id=responder_id,
                response_type=response_type,
                notes=notes or "",
                timestamp=now,
            )
        )

        notification_id = None
        if status is AlertStatus.RESOLVED:
            try:
                notification = await self.dispatcher.dispatch(
                    alert.subject_id,
                    NotificationPayload(
                        title="Emergency Resolved",
                        body="Your emergency alert has been resolved",
                        data=AlertResolvedData(alert_id=alert_id, response_type=response_type),
                    ),
                    mode=DeliveryMode.IMMEDIATE,
                    priority=Priority.NORMAL,
                )
                notification_id = notification.id
            except Exception as e:
                self.logger.error(
                    "resolved_notification_failed", alert_id=alert_id, error=str(e)
                )

        await self.ledger.record_best_effort(
            responder_id,
            AuditAction.EMERGENCY_RESPONSE_PROCESSED,
            {
                "alert_id": alert_id,
                "response_type": response_type.value,
                "status": status.value,
                "notes": notes,
                "response_id": record.id,
                "notification_id": notification_id,
            },
            target_id=alert.subject_id,
            origin=origin,
        )

        self.logger.info(
            "alert_response_processed",
            alert_id=alert_id,
            response_type=response_type.value,
            status=status.value,
        )
        return ResponseProcessed(
            alert_id=alert_id,
            status=status,
            response_id=record.id,
            notification_id=notification_id,
        )

    async def _resolve_recipients(
        self, subject_id: str
    ) -> tuple[list[str], list[str], EmergencyContact | None]:
        """Resolve each group independently; a failing lookup leaves that group empty."""
        caregivers, providers, contact = await asyncio.gather(
            self.directory.resolve_caregivers(subject_id),
            self.directory.resolve_providers(subject_id),
            self.directory.resolve_emergency_contact(subject_id),
            return_exceptions=True,
        )

        def _or_default(value, default, group: str):
            if isinstance(value, BaseException):
                self.logger.error(
                    "recipient_resolution_failed",
                    subject_id=subject_id,
                    group=group,
                    error=str(value),
                )
                return default
            return value

        return (
            _or_default(caregivers, [], "caregivers"),
            _or_default(providers, [], "providers"),
            _or_default(contact, None, "emergency_contact"),
        )

    @staticmethod
    def _dedupe(targets: list[_FanOutTarget]) -> list[_FanOutTarget]:
        """One notification per recipient id per alert; the first audience wins."""
        seen: set[tuple[str, bool]] = set()
        unique = []
        for target in targets:
            key = (target.recipient_id, target.contact is not None)
            if key in seen:
                continue
            seen.add(key)
            unique.append(target)
        return unique

    async def _fan_out(
        self,
        alert: Alert,
        profile: SubjectProfile,
        targets: list[_FanOutTarget],
        priority: Priority,
    ) -> tuple[list[str], list[str]]:
        async def _notify(target: _FanOutTarget) -> str | None:
            try:
                notification = await self.dispatcher.dispatch(
                    target.recipient_id,
                    self._alert_payload(alert, profile, target.audience),
                    mode=DeliveryMode.IMMEDIATE,
                    priority=priority,
                    contact=target.contact,
                )
                return notification.id
            except Exception as e:
                self.logger.error(
                    "alert_recipient_notification_failed",
                    alert_id=alert.id,
                    recipient_id=target.recipient_id,
                    audience=target.audience,
                    error=str(e),
                )
                return None

        async with asyncio.TaskGroup() as task_group:
            tasks = [(target, task_group.create_task(_notify(target))) for target in targets]

        notification_ids: list[str] = []
        failed: list[str] = []
        for target, task in tasks:
            notification_id = task.result()
            if notification_id is None:
                failed.append(target.recipient_id)
            else:
                notification_ids.append(notification_id)
        return notification_ids, failed

    @staticmethod
    def _alert_payload(
        alert: Alert, profile: SubjectProfile, audience: str
    ) -> NotificationPayload:
        summary = (
            f"{profile.display_name} has triggered a "
            f"{alert.severity.value} {alert.category.value} emergency"
        )
        if audience == "emergency_contact":
            address = alert.location.address if alert.location and alert.location.address else None
            title = "Emergency Alert"
            body = f"EMERGENCY ALERT: {summary}. Location: {address or 'Unknown'}"
        elif audience == "provider":
            title = "Emergency Alert - Patient"
            body = summary
        else:
            title = "Emergency Alert - Your Patient"
            body = summary

        return NotificationPayload(
            title=title,
            body=body,
            data=EmergencyAlertData(
                alert_id=alert.id,
                subject_id=alert.subject_id,
                category=alert.category,
                severity=alert.severity,
                audience=audience,
            ),
        )
