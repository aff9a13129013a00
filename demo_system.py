"""
End-to-end demo of the care dispatch pipeline.

This script walks through:
1. Configuration loading and validation
2. A reminder tick firing a due medication reminder
3. A critical alert fanning out to every care group
4. A scheduled notification failing on a broken push channel
5. An audit retention sweep

Run with: uv run python demo_system.py
"""

import asyncio
from datetime import UTC, datetime, timedelta

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from adapters.memory import (
    InMemoryCareStore,
    InMemoryDirectory,
    LoggingPushChannel,
    LoggingSmsChannel,
)
from caredispatch.config import get_config, print_config_summary, validate_config
from caredispatch.domain.models import (
    SYSTEM_CALLER,
    AlertLocation,
    AuditAction,
    AuditRecord,
    CallerContext,
    Reminder,
    Role,
)
from caredispatch.services.care_coordination import CareCoordinationService

console = Console()

SUBJECT_ID = "subject-ada"
CAREGIVER = CallerContext(user_id="caregiver-grace", role=Role.CAREGIVER, origin="demo")
SUBJECT = CallerContext(user_id=SUBJECT_ID, role=Role.SUBJECT, origin="demo")


class BrokenPushChannel:
    """Push channel whose provider is down."""

    async def send(self, push_token: str, title: str, body: str, data: dict[str, str]) -> None:
        await asyncio.sleep(0.05)
        raise ConnectionError("push provider returned 503")


def build_directory() -> InMemoryDirectory:
    directory = InMemoryDirectory()
    directory.add_profile(SUBJECT_ID, "Ada Lovelace", push_token="tok-ada")
    directory.add_profile("caregiver-grace", "Grace Hopper", push_token="tok-grace")
    directory.add_profile("caregiver-mary", "Mary Somerville", push_token="tok-mary")
    directory.add_profile("provider-liz", "Dr. Elizabeth Blackwell", push_token="tok-liz")
    directory.link_caregiver(SUBJECT_ID, "caregiver-grace")
    directory.link_caregiver(SUBJECT_ID, "caregiver-mary")
    directory.link_provider(SUBJECT_ID, "provider-liz")
    directory.set_emergency_contact(SUBJECT_ID, "Charles Babbage", "+15550100")
    return directory


async def demo_configuration() -> bool:
    console.print(Panel("🔧 Configuration", style="blue"))

    try:
        validate_config()
        print_config_summary()
        return True
    except Exception as e:
        console.print(f"❌ Configuration check failed: {e}", style="red")
        return False


async def demo_reminder_tick() -> bool:
    """Fire a reminder that is due in half an hour."""

    console.print(Panel("⏰ Reminder Tick", style="blue"))

    store = InMemoryCareStore()
    push = LoggingPushChannel()
    service = CareCoordinationService(store, build_directory(), push, LoggingSmsChannel())

    tick = datetime.now(UTC)
    reminder = await store.save_reminder(
        Reminder(
            subject_id=SUBJECT_ID,
            item_id="med-lisinopril",
            item_label="Lisinopril",
            dosage_label="10mg",
            frequency_label="Twice Daily",
            next_due_at=tick + timedelta(minutes=30),
        )
    )

    result = await service.fire_due_reminders(tick)
    if result.is_err():
        console.print(f"❌ Tick failed: {result.unwrap_err()}", style="red")
        return False

    report = result.unwrap()
    updated = await store.get_reminder(reminder.id)

    table = Table(title="Tick Report")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Selected", str(report.selected))
    table.add_row("Fired", str(len(report.fired_ids)))
    table.add_row("Push messages", str(len(push.outbox)))
    table.add_row("Next due", updated.next_due_at.isoformat() if updated else "-")
    console.print(table)

    second = (await service.fire_due_reminders(tick)).unwrap()
    console.print(
        f"🔁 Re-running the same tick fired {len(second.fired_ids)} reminders", style="yellow"
    )
    return len(report.fired_ids) == 1 and not second.fired_ids


async def demo_emergency_alert() -> bool:
    """Raise a critical alert and resolve it."""

    console.print(Panel("🚨 Emergency Alert", style="blue"))

    store = InMemoryCareStore()
    push = LoggingPushChannel()
    sms = LoggingSmsChannel()
    service = CareCoordinationService(store, build_directory(), push, sms)

    result = await service.raise_alert(
        SUBJECT,
        SUBJECT_ID,
        "medical",
        "critical",
        AlertLocation(latitude=51.5074, longitude=-0.1278, address="12 St James's Square"),
        "Chest pain reported via the wearable",
    )
    if result.is_err():
        console.print(f"❌ Alert failed: {result.unwrap_err()}", style="red")
        return False

    raised = result.unwrap()
    console.print("Response actions:", style="bold")
    for action in raised.response_actions:
        console.print(f"  • {action}")

    table = Table(title="Fan-out")
    table.add_column("Channel", style="cyan")
    table.add_column("Recipient", style="magenta")
    table.add_column("Title", style="white")
    for message in push.outbox:
        table.add_row("push", message.push_token, message.title)
    for message in sms.outbox:
        table.add_row("sms", message.phone, message.body[:60])
    console.print(table)

    response = await service.process_alert_response(
        CAREGIVER, raised.alert_id, "resolved", "Paramedics on site"
    )
    if response.is_err():
        console.print(f"❌ Response failed: {response.unwrap_err()}", style="red")
        return False

    console.print(f"✅ Alert {response.unwrap().status.value}", style="green")
    return len(raised.notification_ids) == 4


async def demo_deferred_failure() -> bool:
    """A scheduled notification meets a broken push provider."""

    console.print(Panel("📨 Deferred Notification", style="blue"))

    store = InMemoryCareStore()
    service = CareCoordinationService(store, build_directory(), BrokenPushChannel())

    due_at = datetime.now(UTC) - timedelta(minutes=1)
    scheduled = await service.schedule_notification(
        CAREGIVER, SUBJECT_ID, "Appointment", "Cardiology follow-up at 3pm", due_at
    )
    if scheduled.is_err():
        console.print(f"❌ Scheduling failed: {scheduled.unwrap_err()}", style="red")
        return False

    report = (await service.process_deferred_notifications()).unwrap()
    notification = await store.get_notification(scheduled.unwrap().id)
    if notification is None:
        return False

    console.print(f"Status: {notification.status.value}", style="yellow")
    console.print(f"Failure reason: {notification.failure_reason}", style="yellow")

    again = (await service.process_deferred_notifications()).unwrap()
    console.print(f"🔁 Next sweep picked up {again.processed} notifications", style="yellow")
    return len(report.failed_ids) == 1 and again.processed == 0


async def demo_retention() -> bool:
    """Sweep audit records older than the retention window."""

    console.print(Panel("🗄️  Audit Retention", style="blue"))

    store = InMemoryCareStore()
    service = CareCoordinationService(store, build_directory(), LoggingPushChannel())
    now = datetime.now(UTC)

    for days in (30, 200, 400, 800):
        await store.append_audit(
            AuditRecord(
                actor_id=SYSTEM_CALLER.user_id,
                action=AuditAction.CUSTOM,
                details={"label": f"seeded {days}d ago"},
                timestamp=now - timedelta(days=days),
            )
        )

    deleted = (await service.sweep_audit_retention(now)).unwrap()
    remaining = (await service.get_audit_logs(SYSTEM_CALLER, limit=100)).unwrap()

    console.print(f"🧹 Deleted {deleted} expired records", style="green")
    console.print(f"📋 {remaining.total} records remain (including the sweep's own)")
    return deleted == 3


async def run_demo() -> None:
    console.print(Panel("🩺 Care Dispatch - System Demo", style="bold blue"))

    steps = [
        ("Configuration", demo_configuration),
        ("Reminder Tick", demo_reminder_tick),
        ("Emergency Alert", demo_emergency_alert),
        ("Deferred Notification", demo_deferred_failure),
        ("Audit Retention", demo_retention),
    ]

    results = []

    for step_name, step in steps:
        console.print(f"\n{'=' * 60}")
        try:
            results.append((step_name, await step()))
        except KeyboardInterrupt:
            console.print("\n⏹️  Demo interrupted by user", style="yellow")
            break
        except Exception as e:
            console.print(f"❌ {step_name} failed with exception: {e}", style="red")
            results.append((step_name, False))

    console.print(f"\n{'=' * 60}")
    console.print(Panel("📋 Demo Summary", style="bold"))

    summary_table = Table()
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step_name, ok in results:
        summary_table.add_row(step_name, "✅ OK" if ok else "❌ FAILED")
        passed += int(ok)

    console.print(summary_table)
    console.print(f"\n🎯 Results: {passed}/{len(results)} steps behaved as expected")
    console.print(f"Service: {get_config().service_name}", style="dim")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
    except Exception as e:
        console.print(f"\n💥 Demo failed: {e}", style="red")
