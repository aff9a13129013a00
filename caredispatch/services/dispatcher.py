"""
Notification dispatcher: turns a (recipient, payload) pair into an inbox
record plus an out-of-band push (or SMS stub) attempt.

Two delivery policies:
- Immediate: the inbox record always counts as delivered. Push problems are
  logged and recorded as push_outcome, never raised to the caller.
- Deferred: a periodic sweep claims due scheduled records and makes exactly
  one strict attempt each; success ends in ``sent``, any exception in
  ``failed``. Both states are terminal.
"""

import asyncio
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from caredispatch.config import DispatcherConfig
from caredispatch.domain.errors import ChannelFailure, InvalidInput, NotFound
from caredispatch.domain.models import (
    DeliveryMode,
    EmergencyContact,
    Notification,
    NotificationChannel,
    NotificationPayload,
    NotificationStatus,
    Priority,
    PushOutcome,
    ensure_utc,
    new_id,
    utc_now,
)
from caredispatch.services.ports import (
    NotificationStore,
    ProfileStore,
    PushChannel,
    SmsChannel,
    logger,
)


class DeferredSweepReport(BaseModel):
    """Outcome of one deferred-notification sweep."""

    tick: datetime
    sent_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    skipped: int = 0
    errors: int = 0

    @property
    def processed(self) -> int:
        return len(self.sent_ids) + len(self.failed_ids)


class NotificationDispatcher:
    """
    Creates notifications and delivers them through the inbox and push channel.

    Every channel call is bounded by push_timeout_seconds so one unresponsive
    channel cannot stall a whole batch.
    """

    def __init__(
        self,
        store: NotificationStore,
        profiles: ProfileStore,
        push_channel: PushChannel,
        sms_channel: SmsChannel | None = None,
        config: DispatcherConfig | None = None,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self.push_channel = push_channel
        self.sms_channel = sms_channel
        self.config = config or DispatcherConfig()
        self.logger = logger.bind(component="notification_dispatcher")

    async def dispatch(
        self,
        recipient_id: str,
        payload: NotificationPayload,
        *,
        mode: DeliveryMode = DeliveryMode.IMMEDIATE,
        priority: Priority = Priority.NORMAL,
        scheduled_for: datetime | None = None,
        contact: EmergencyContact | None = None,
        now: datetime | None = None,
    ) -> Notification:
        """Create a notification and, in immediate mode, deliver it."""
        now = ensure_utc(now) if now else utc_now()
        channel = NotificationChannel.SMS if contact else NotificationChannel.PUSH

        if mode is DeliveryMode.SCHEDULED:
            if scheduled_for is None:
                raise InvalidInput("scheduled notifications need scheduled_for")
            notification = Notification(
                recipient_id=recipient_id,
                payload=payload,
                priority=priority,
                mode=mode,
                channel=channel,
                contact=contact,
                scheduled_for=scheduled_for,
                status=NotificationStatus.SCHEDULED,
                created_at=now,
            )
            stored = await self.store.save_notification(notification)
            self.logger.info(
                "notification_scheduled",
                notification_id=stored.id,
                recipient_id=recipient_id,
                scheduled_for=stored.scheduled_for.isoformat() if stored.scheduled_for else None,
            )
            return stored

        notification = Notification(
            recipient_id=recipient_id,
            payload=payload,
            priority=priority,
            mode=mode,
            channel=channel,
            contact=contact,
            status=NotificationStatus.CREATED,
            created_at=now,
        )
        await self.store.save_notification(notification)

        push_outcome = await self._deliver_soft(notification)

        sent = await self.store.mark_notification_sent(notification.id, now, push_outcome)
        if sent is None:
            raise NotFound("notification vanished before delivery", notification_id=notification.id)

        self.logger.info(
            "notification_sent",
            notification_id=sent.id,
            recipient_id=recipient_id,
            channel=channel.value,
            push_outcome=push_outcome.value,
            priority=priority.value,
        )
        return sent

    async def process_deferred_notifications(
        self, now: datetime | None = None
    ) -> DeferredSweepReport:
        """
        Deliver every scheduled notification whose time has come.

        Only ``status == scheduled`` records are selected, so sent or failed
        notifications are never picked up again whatever their scheduled_for.
        """
        now = ensure_utc(now) if now else utc_now()
        due = await self.store.find_due_scheduled(now, limit=self.config.sweep_batch_size)
        report = DeferredSweepReport(tick=now)

        if not due:
            self.logger.debug("deferred_sweep_empty", tick=now.isoformat())
            return report

        semaphore = asyncio.Semaphore(self.config.max_concurrent_deliveries)

        async def _bounded(notification: Notification) -> str:
            async with semaphore:
                return await self._deliver_scheduled(notification, now)

        async with asyncio.TaskGroup() as task_group:
            tasks = [
                (notification.id, task_group.create_task(_bounded(notification)))
                for notification in due
            ]

        for notification_id, task in tasks:
            outcome = task.result()
            if outcome == "sent":
                report.sent_ids.append(notification_id)
            elif outcome == "failed":
                report.failed_ids.append(notification_id)
            elif outcome == "skipped":
                report.skipped += 1
            else:
                report.errors += 1

        self.logger.info(
            "deferred_sweep_completed",
            tick=now.isoformat(),
            selected=len(due),
            sent=len(report.sent_ids),
            failed=len(report.failed_ids),
            skipped=report.skipped,
            errors=report.errors,
        )
        return report

    async def list_inbox(self, recipient_id: str) -> list[Notification]:
        """
        Delivered notifications for a recipient, newest first.

        SMS records sent to an emergency contact are filed under the subject
        but addressed to the contact, so they are not part of the inbox.
        """
        notifications = await self.store.list_notifications(recipient_id)
        delivered = [
            n
            for n in notifications
            if n.status is NotificationStatus.SENT
            and not (n.channel is NotificationChannel.SMS and n.contact is not None)
        ]
        return sorted(delivered, key=lambda n: n.sent_at or n.created_at, reverse=True)

    async def _deliver_scheduled(self, notification: Notification, now: datetime) -> str:
        """Claim, attempt once, and settle one scheduled notification."""
        claim_token = new_id()
        lease_until = now + timedelta(seconds=self.config.claim_lease_seconds)

        try:
            claimed = await self.store.claim_notification(
                notification.id, claim_token, now, lease_until
            )
            if claimed is None:
                self.logger.debug(
                    "scheduled_notification_already_claimed", notification_id=notification.id
                )
                return "skipped"

            try:
                push_outcome = await self._deliver(claimed)
            except Exception as e:
                reason = str(e) or type(e).__name__
                await self.store.mark_notification_failed(
                    claimed.id, now, reason, claim_token=claim_token
                )
                self.logger.warning(
                    "scheduled_notification_failed",
                    notification_id=claimed.id,
                    recipient_id=claimed.recipient_id,
                    reason=reason,
                )
                return "failed"

            await self.store.mark_notification_sent(
                claimed.id, now, push_outcome, claim_token=claim_token
            )
            self.logger.info(
                "scheduled_notification_sent",
                notification_id=claimed.id,
                recipient_id=claimed.recipient_id,
                push_outcome=push_outcome.value,
            )
            return "sent"

        except Exception as e:
            # Store trouble: leave the claim to expire so a later sweep retries
            self.logger.exception(
                "scheduled_notification_error", notification_id=notification.id, error=str(e)
            )
            return "error"

    async def _deliver_soft(self, notification: Notification) -> PushOutcome:
        """Channel attempt whose failures are logged, never raised."""
        try:
            return await self._deliver(notification)
        except NotFound as e:
            self.logger.warning(
                "push_recipient_unknown", notification_id=notification.id, error=e.message
            )
            return PushOutcome.SKIPPED
        except Exception as e:
            self.logger.warning(
                "push_delivery_failed",
                notification_id=notification.id,
                recipient_id=notification.recipient_id,
                channel=notification.channel.value,
                error=str(e),
            )
            return PushOutcome.FAILED

    async def _deliver(self, notification: Notification) -> PushOutcome:
        """Strict channel attempt: raises ChannelFailure or NotFound."""
        payload = notification.payload
        timeout = self.config.push_timeout_seconds

        if notification.channel is NotificationChannel.SMS:
            if self.sms_channel is None or notification.contact is None:
                return PushOutcome.SKIPPED
            try:
                await asyncio.wait_for(
                    self.sms_channel.send(notification.contact.phone, payload.body),
                    timeout=timeout,
                )
            except TimeoutError as e:
                raise ChannelFailure(f"sms timed out after {timeout}s") from e
            except Exception as e:
                raise ChannelFailure(f"sms failed: {e}") from e
            return PushOutcome.DELIVERED

        profile = await self.profiles.get_profile(notification.recipient_id)
        if not profile.push_token:
            return PushOutcome.SKIPPED

        data = {
            **payload.data.as_push_data(),
            "notification_id": notification.id,
            "priority": notification.priority.value,
        }
        try:
            await asyncio.wait_for(
                self.push_channel.send(profile.push_token, payload.title, payload.body, data),
                timeout=timeout,
            )
        except TimeoutError as e:
            raise ChannelFailure(f"push timed out after {timeout}s") from e
        except Exception as e:
            raise ChannelFailure(f"push failed: {e}") from e
        return PushOutcome.DELIVERED
