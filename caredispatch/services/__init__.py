"""
Core services for the care dispatch pipeline.

This package contains the service implementations: reminder scheduling,
escalation, notification dispatch, alert orchestration and the audit ledger.
"""

from .alert_orchestrator import AlertOrchestrator, AlertRaised, ResponseProcessed
from .audit_ledger import AuditLedger, AuditPage, AuditQuery
from .care_coordination import CareCoordinationService
from .dispatcher import DeferredSweepReport, NotificationDispatcher
from .due_time import add_months, next_due
from .ports import Result
from .reminder_scheduler import MedicationLogged, ReminderScheduler, ReminderTickReport

__all__ = [
    "AlertOrchestrator",
    "AlertRaised",
    "ResponseProcessed",
    "AuditLedger",
    "AuditPage",
    "AuditQuery",
    "CareCoordinationService",
    "DeferredSweepReport",
    "NotificationDispatcher",
    "add_months",
    "next_due",
    "Result",
    "MedicationLogged",
    "ReminderScheduler",
    "ReminderTickReport",
]
