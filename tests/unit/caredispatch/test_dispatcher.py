"""
Notification dispatcher tests.

Covers:
- Immediate delivery with soft channel failures
- Scheduled notifications and the strict deferred sweep
- Terminal notifications never re-selected
- Channel timeouts
"""

from datetime import timedelta

import pytest
from conftest import BASE_TIME, SUBJECT_ID, FailingPushChannel, SlowPushChannel

from adapters.memory import InMemoryCareStore, InMemoryDirectory, LoggingSmsChannel
from caredispatch.config import DispatcherConfig
from caredispatch.domain.errors import InvalidInput
from caredispatch.domain.models import (
    DeliveryMode,
    EmergencyContact,
    GeneralData,
    NotificationChannel,
    NotificationPayload,
    NotificationStatus,
    Priority,
    PushOutcome,
)
from caredispatch.services.dispatcher import NotificationDispatcher


def _payload(title: str = "Check-in") -> NotificationPayload:
    return NotificationPayload(title=title, body="How are you feeling today?", data=GeneralData())


class TestImmediateDispatch:
    async def test_delivers_inbox_record_and_push(
        self, dispatcher: NotificationDispatcher, push_channel, store: InMemoryCareStore
    ) -> None:
        notification = await dispatcher.dispatch(SUBJECT_ID, _payload(), priority=Priority.HIGH)

        assert notification.status is NotificationStatus.SENT
        assert notification.push_outcome is PushOutcome.DELIVERED
        assert notification.sent_at is not None

        assert len(push_channel.outbox) == 1
        message = push_channel.outbox[0]
        assert message.push_token == "token-subject-1"
        assert message.data["notification_id"] == notification.id
        assert message.data["priority"] == "high"
        assert message.data["kind"] == "general"

        stored = await store.get_notification(notification.id)
        assert stored is not None and stored.status is NotificationStatus.SENT

    async def test_push_failure_is_soft(
        self, store: InMemoryCareStore, directory: InMemoryDirectory
    ) -> None:
        failing = FailingPushChannel()
        dispatcher = NotificationDispatcher(store, directory, failing)

        notification = await dispatcher.dispatch(SUBJECT_ID, _payload())

        assert failing.attempts == 1
        assert notification.status is NotificationStatus.SENT
        assert notification.push_outcome is PushOutcome.FAILED

    async def test_missing_push_token_skips_channel(
        self, dispatcher: NotificationDispatcher, directory: InMemoryDirectory, push_channel
    ) -> None:
        directory.add_profile("subject-2", "No Phone")

        notification = await dispatcher.dispatch("subject-2", _payload())

        assert notification.status is NotificationStatus.SENT
        assert notification.push_outcome is PushOutcome.SKIPPED
        assert push_channel.outbox == []

    async def test_unknown_recipient_still_lands_in_inbox(
        self, dispatcher: NotificationDispatcher
    ) -> None:
        notification = await dispatcher.dispatch("nobody", _payload())

        assert notification.status is NotificationStatus.SENT
        assert notification.push_outcome is PushOutcome.SKIPPED

    async def test_contact_routes_through_sms(
        self,
        dispatcher: NotificationDispatcher,
        sms_channel: LoggingSmsChannel,
        push_channel,
        emergency_contact: EmergencyContact,
    ) -> None:
        notification = await dispatcher.dispatch(
            SUBJECT_ID, _payload("Emergency Alert"), contact=emergency_contact
        )

        assert notification.channel is NotificationChannel.SMS
        assert notification.push_outcome is PushOutcome.DELIVERED
        assert [m.phone for m in sms_channel.outbox] == ["+15550100"]
        assert push_channel.outbox == []

    async def test_slow_channel_is_bounded_by_timeout(
        self, store: InMemoryCareStore, directory: InMemoryDirectory
    ) -> None:
        dispatcher = NotificationDispatcher(
            store,
            directory,
            SlowPushChannel(delay=1.0),
            config=DispatcherConfig(push_timeout_seconds=0.05),
        )

        notification = await dispatcher.dispatch(SUBJECT_ID, _payload())

        assert notification.status is NotificationStatus.SENT
        assert notification.push_outcome is PushOutcome.FAILED


class TestScheduledDispatch:
    async def test_scheduled_requires_time(self, dispatcher: NotificationDispatcher) -> None:
        with pytest.raises(InvalidInput):
            await dispatcher.dispatch(SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED)

    async def test_scheduled_is_not_delivered_up_front(
        self, dispatcher: NotificationDispatcher, push_channel
    ) -> None:
        notification = await dispatcher.dispatch(
            SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )

        assert notification.status is NotificationStatus.SCHEDULED
        assert notification.sent_at is None
        assert push_channel.outbox == []

    async def test_sweep_delivers_due_and_leaves_future(
        self, dispatcher: NotificationDispatcher, store: InMemoryCareStore, push_channel
    ) -> None:
        due = await dispatcher.dispatch(
            SUBJECT_ID, _payload("due"), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )
        future = await dispatcher.dispatch(
            SUBJECT_ID,
            _payload("future"),
            mode=DeliveryMode.SCHEDULED,
            scheduled_for=BASE_TIME + timedelta(hours=2),
        )

        report = await dispatcher.process_deferred_notifications(BASE_TIME + timedelta(minutes=1))

        assert report.sent_ids == [due.id]
        assert report.failed_ids == []
        sent = await store.get_notification(due.id)
        assert sent is not None
        assert sent.status is NotificationStatus.SENT
        assert sent.sent_at == BASE_TIME + timedelta(minutes=1)
        assert sent.claim_token is None
        pending = await store.get_notification(future.id)
        assert pending is not None and pending.status is NotificationStatus.SCHEDULED
        assert [m.title for m in push_channel.outbox] == ["due"]

    async def test_push_exception_marks_scheduled_failed(
        self, store: InMemoryCareStore, directory: InMemoryDirectory
    ) -> None:
        dispatcher = NotificationDispatcher(store, directory, FailingPushChannel("gateway 503"))
        scheduled = await dispatcher.dispatch(
            SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )

        report = await dispatcher.process_deferred_notifications(BASE_TIME + timedelta(minutes=1))

        assert report.failed_ids == [scheduled.id]
        failed = await store.get_notification(scheduled.id)
        assert failed is not None
        assert failed.status is NotificationStatus.FAILED
        assert failed.failure_reason and "gateway 503" in failed.failure_reason
        assert failed.failed_at == BASE_TIME + timedelta(minutes=1)
        assert failed.sent_at is None

    async def test_unknown_recipient_fails_scheduled_delivery(
        self, dispatcher: NotificationDispatcher, store: InMemoryCareStore
    ) -> None:
        scheduled = await dispatcher.dispatch(
            "ghost", _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )

        report = await dispatcher.process_deferred_notifications(BASE_TIME)

        assert report.failed_ids == [scheduled.id]
        failed = await store.get_notification(scheduled.id)
        assert failed is not None and failed.status is NotificationStatus.FAILED

    @pytest.mark.parametrize("fail", [False, True])
    async def test_terminal_notifications_are_never_reselected(
        self, store: InMemoryCareStore, directory: InMemoryDirectory, fail: bool
    ) -> None:
        channel = FailingPushChannel() if fail else SlowPushChannel(delay=0)
        dispatcher = NotificationDispatcher(store, directory, channel)
        await dispatcher.dispatch(
            SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )

        first = await dispatcher.process_deferred_notifications(BASE_TIME + timedelta(minutes=1))
        assert first.processed == 1

        for minutes in (2, 60, 24 * 60):
            later = await dispatcher.process_deferred_notifications(
                BASE_TIME + timedelta(minutes=minutes)
            )
            assert later.processed == 0
            assert later.skipped == 0

    async def test_sweep_respects_batch_size(
        self, store: InMemoryCareStore, directory: InMemoryDirectory
    ) -> None:
        dispatcher = NotificationDispatcher(
            store, directory, SlowPushChannel(delay=0), config=DispatcherConfig(sweep_batch_size=3)
        )
        for _ in range(5):
            await dispatcher.dispatch(
                SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
            )

        first = await dispatcher.process_deferred_notifications(BASE_TIME)
        second = await dispatcher.process_deferred_notifications(BASE_TIME)

        assert len(first.sent_ids) == 3
        assert len(second.sent_ids) == 2

    async def test_claimed_notification_is_skipped(
        self, dispatcher: NotificationDispatcher, store: InMemoryCareStore
    ) -> None:
        scheduled = await dispatcher.dispatch(
            SUBJECT_ID, _payload(), mode=DeliveryMode.SCHEDULED, scheduled_for=BASE_TIME
        )
        await store.claim_notification(
            scheduled.id, "other-worker", BASE_TIME, BASE_TIME + timedelta(minutes=5)
        )

        report = await dispatcher.process_deferred_notifications(BASE_TIME + timedelta(minutes=1))

        assert report.processed == 0
        still = await store.get_notification(scheduled.id)
        assert still is not None and still.status is NotificationStatus.SCHEDULED


async def test_inbox_lists_sent_newest_first(dispatcher: NotificationDispatcher) -> None:
    older = await dispatcher.dispatch(SUBJECT_ID, _payload("older"), now=BASE_TIME)
    newer = await dispatcher.dispatch(
        SUBJECT_ID, _payload("newer"), now=BASE_TIME + timedelta(hours=1)
    )
    await dispatcher.dispatch(
        SUBJECT_ID,
        _payload("later"),
        mode=DeliveryMode.SCHEDULED,
        scheduled_for=BASE_TIME + timedelta(days=1),
    )

    inbox = await dispatcher.list_inbox(SUBJECT_ID)

    assert [n.id for n in inbox] == [newer.id, older.id]


async def test_inbox_leaves_out_emergency_contact_sms(
    dispatcher: NotificationDispatcher, emergency_contact: EmergencyContact
) -> None:
    own = await dispatcher.dispatch(SUBJECT_ID, _payload("For the subject"), now=BASE_TIME)
    await dispatcher.dispatch(
        SUBJECT_ID, _payload("For the contact"), contact=emergency_contact, now=BASE_TIME
    )

    inbox = await dispatcher.list_inbox(SUBJECT_ID)

    assert [n.id for n in inbox] == [own.id]
