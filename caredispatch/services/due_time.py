"""
Due-time policy for recurring reminders.

Both the scheduler (tick instant) and the manual "item consumed" path
(consumption instant) compute the next due time through next_due(), so the
automatic and manual paths never drift apart.
"""

import calendar
from datetime import datetime, timedelta
from enum import Enum

from caredispatch.domain.models import ensure_utc


class Frequency(str, Enum):
    DAILY = "daily"
    TWICE_DAILY = "twice daily"
    THREE_TIMES_DAILY = "three times daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


_FIXED_DELTAS: dict[Frequency, timedelta] = {
    Frequency.DAILY: timedelta(hours=24),
    Frequency.TWICE_DAILY: timedelta(hours=12),
    Frequency.THREE_TIMES_DAILY: timedelta(hours=8),
    Frequency.WEEKLY: timedelta(days=7),
}


def parse_frequency(label: str | None) -> Frequency:
    """Map a free-text label to a Frequency; unknown labels fall back to daily."""
    normalized = " ".join((label or "").lower().split())
    try:
        return Frequency(normalized)
    except ValueError:
        return Frequency.DAILY


def add_months(instant: datetime, months: int) -> datetime:
    """Shift by calendar months keeping the day-of-month, clamped to month length."""
    month_index = instant.month - 1 + months
    year = instant.year + month_index // 12
    month = month_index % 12 + 1
    day = min(instant.day, calendar.monthrange(year, month)[1])
    return instant.replace(year=year, month=month, day=day)


def next_due(reference: datetime, frequency_label: str | None) -> datetime:
    """Return the next due instant after ``reference`` for ``frequency_label``."""
    reference = ensure_utc(reference)
    frequency = parse_frequency(frequency_label)

    if frequency is Frequency.MONTHLY:
        return add_months(reference, 1)
    return reference + _FIXED_DELTAS[frequency]
