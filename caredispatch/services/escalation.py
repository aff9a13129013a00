"""
Escalation policy: a pure decision table from alert severity to response
actions, recipient groups and notification priority. No I/O.
"""

from pydantic import BaseModel, ConfigDict

from caredispatch.domain.errors import InvalidInput
from caredispatch.domain.models import Priority, Severity

_RESPONSE_ACTIONS: dict[Severity, tuple[str, ...]] = {
    Severity.CRITICAL: (
        "Immediate medical attention required",
        "Emergency services notified",
        "Family members contacted",
    ),
    Severity.HIGH: (
        "Urgent medical attention recommended",
        "Caregiver notified",
        "Family members contacted",
    ),
    Severity.MEDIUM: (
        "Medical attention recommended",
        "Caregiver notified",
    ),
    Severity.LOW: (
        "Monitor situation",
        "Caregiver notified",
    ),
}

_PROVIDER_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})

_PRIORITY_BY_SEVERITY: dict[Severity, Priority] = {
    Severity.CRITICAL: Priority.HIGH,
    Severity.HIGH: Priority.HIGH,
    Severity.MEDIUM: Priority.NORMAL,
    Severity.LOW: Priority.LOW,
}


class RecipientGroups(BaseModel):
    """Which resolved groups an alert fans out to."""

    model_config = ConfigDict(frozen=True)

    caregivers: bool = True
    providers: bool = False
    emergency_contact: bool = False


def parse_severity(value: Severity | str) -> Severity:
    if isinstance(value, Severity):
        return value
    try:
        return Severity(str(value).strip().lower())
    except ValueError as e:
        raise InvalidInput(f"unknown severity: {value!r}", field="severity") from e


def resolve_response(severity: Severity | str) -> list[str]:
    """Ordered, human-readable actions for the caller. Informational only."""
    return list(_RESPONSE_ACTIONS[parse_severity(severity)])


def select_recipient_groups(
    severity: Severity | str, has_emergency_contact: bool
) -> RecipientGroups:
    severity = parse_severity(severity)
    return RecipientGroups(
        caregivers=True,
        providers=severity in _PROVIDER_SEVERITIES,
        emergency_contact=has_emergency_contact,
    )


def priority_for_severity(severity: Severity | str) -> Priority:
    return _PRIORITY_BY_SEVERITY[parse_severity(severity)]
