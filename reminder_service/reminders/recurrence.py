"""
Recurrence arithmetic for reminder series.

All calculations run on UTC instants. A naive datetime is taken to be UTC;
results are always UTC-aware, so wall-clock shifts in the owner's timezone
(DST) never move an occurrence.
"""
from datetime import datetime, timedelta
from typing import Optional
from dateutil.relativedelta import relativedelta

from reminder_service.utils.timezone import to_utc_aware
from .errors import RecurrenceError
from .schemas import Recurrence, ReminderRead


def next_occurrence(current: datetime, rule: Recurrence) -> datetime:
    """Return the occurrence following ``current`` under ``rule``.

    Monthly keeps the day-of-month and clamps to the last day of shorter
    months (Jan 31 -> Feb 29 in a leap year); time-of-day is preserved.
    """
    current = to_utc_aware(current)
    match Recurrence(rule):
        case Recurrence.DAILY:
            return current + timedelta(days=1)
        case Recurrence.WEEKLY:
            return current + timedelta(days=7)
        case Recurrence.MONTHLY:
            return current + relativedelta(months=1)
        case Recurrence.NONE:
            raise RecurrenceError("one-shot reminders have no next occurrence")


def has_ended(next_at: datetime, end_repeat: Optional[datetime]) -> bool:
    if end_repeat is None:
        return False
    return to_utc_aware(next_at) > to_utc_aware(end_repeat)


def advance(reminder: ReminderRead) -> Optional[datetime]:
    """Next fire time after a successful dispatch, or None when the series is over."""
    if reminder.recurrence == Recurrence.NONE:
        return None
    nxt = next_occurrence(reminder.next_fire_at, reminder.recurrence)
    if has_ended(nxt, reminder.end_repeat):
        return None
    return nxt
