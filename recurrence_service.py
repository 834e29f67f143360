# recurrence_service.py
"""
Due-date recurrence for instrument maintenance schedules.
Single source of truth for: frequency intervals, calendar-aware date
arithmetic, status derivation, and which cycles need materializing.

Pure functions only; callers supply "now" from a clock collaborator.
Cycle n of a schedule is always computed from the anchor (schedule_date),
never from cycle n-1, so month-end clamping does not drift
(Jan 31 -> Feb 29 -> Mar 31).
"""

from __future__ import annotations

import calendar
from datetime import date, timedelta
from typing import TYPE_CHECKING

from domain.models import EventStatus, Frequency

if TYPE_CHECKING:
    from domain.models import Instrument, MaintenanceEvent

# Frequency -> (days, months) per cycle
INTERVALS: dict[Frequency, tuple[int, int]] = {
    Frequency.WEEKLY: (7, 0),
    Frequency.MONTHLY: (0, 1),
    Frequency.THREE_MONTHS: (0, 3),
    Frequency.SIX_MONTHS: (0, 6),
    Frequency.ONE_YEAR: (0, 12),
}

# Upper bound on cycles generated in one materialization pass
MAX_CYCLES_PER_RUN = 400


def add_months(source: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's last day."""
    month = source.month - 1 + months
    year = source.year + month // 12
    month = month % 12 + 1
    day = min(source.day, calendar.monthrange(year, month)[1])
    return source.replace(year=year, month=month, day=day)


def next_due_date(anchor: date, frequency: Frequency | str, cycles_elapsed: int) -> date:
    """Anchor advanced by cycles_elapsed intervals of frequency."""
    if cycles_elapsed < 0:
        raise ValueError("cycles_elapsed must be >= 0")
    freq = Frequency.parse(frequency)
    if freq is None:
        raise ValueError("frequency is required")
    days, months = INTERVALS[freq]
    if days:
        return anchor + timedelta(days=days * cycles_elapsed)
    return add_months(anchor, months * cycles_elapsed)


def current_due_date(instrument: "Instrument", completed_count: int) -> date | None:
    """Due date of the active cycle, or None for an unscheduled instrument."""
    if not instrument.is_scheduled:
        return None
    return next_due_date(instrument.schedule_date, instrument.frequency, completed_count)


def cycle_index_for(anchor: date, frequency: Frequency | str, due: date) -> int | None:
    """Index n with next_due_date(anchor, frequency, n) == due, or None if off-grid."""
    freq = Frequency.parse(frequency)
    if freq is None or due < anchor:
        return None
    days, months = INTERVALS[freq]
    if days:
        delta = (due - anchor).days
        return delta // days if delta % days == 0 else None
    month_diff = (due.year - anchor.year) * 12 + (due.month - anchor.month)
    if month_diff % months:
        return None
    n = month_diff // months
    return n if next_due_date(anchor, freq, n) == due else None


def derive_status(event: "MaintenanceEvent", now: date) -> EventStatus:
    """
    Read-time status. Completed is permanent; an explicit start wins over
    the date comparison; otherwise due_date > now is Scheduled, else Overdue.
    """
    if event.completed_date is not None or event.status is EventStatus.COMPLETED:
        return EventStatus.COMPLETED
    if event.status is EventStatus.IN_PROGRESS or event.started_at:
        return EventStatus.IN_PROGRESS
    if event.due_date > now:
        return EventStatus.SCHEDULED
    return EventStatus.OVERDUE


def first_cycle_after(anchor: date, frequency: Frequency | str, limit: date) -> int:
    """Smallest n with next_due_date(anchor, frequency, n) > limit."""
    freq = Frequency.parse(frequency)
    if freq is None:
        raise ValueError("frequency is required")
    if limit < anchor:
        return 0
    days, months = INTERVALS[freq]
    if days:
        return (limit - anchor).days // days + 1
    # cycle n falls in an earlier month than limit for every n below this estimate
    n = ((limit.year - anchor.year) * 12 + (limit.month - anchor.month)) // months
    while next_due_date(anchor, freq, n) <= limit:
        n += 1
    return n


def cycles_to_materialize(
    anchor: date,
    frequency: Frequency | str,
    completed_count: int,
    now: date,
    horizon_days: int = 0,
) -> list[tuple[int, date]]:
    """
    (cycle index, due date) pairs that should exist at `now`: every cycle
    from completed_count due on or before now + horizon_days, followed by
    the first cycle due after that horizon.

    At most MAX_CYCLES_PER_RUN pairs are returned. A longer backlog is cut
    from the oldest end, so the upcoming cycle is always the last pair.
    """
    limit = now + timedelta(days=max(0, horizon_days))
    upcoming = first_cycle_after(anchor, frequency, limit)
    start = max(0, completed_count, upcoming - MAX_CYCLES_PER_RUN + 1)
    return [(n, next_due_date(anchor, frequency, n)) for n in range(start, max(start, upcoming) + 1)]


def days_until(due: date, now: date) -> int:
    """Signed days from now to due (negative when overdue)."""
    return (due - now).days


def is_on_time(event: "MaintenanceEvent") -> bool | None:
    """True if completed on or before its due date, None if not completed."""
    if event.completed_date is None:
        return None
    return event.completed_date <= event.due_date
