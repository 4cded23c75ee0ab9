"""
Occurrence resolution for one-off and weekly recurring events
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from vera.models.event import Event, RecurrenceType


@dataclass(frozen=True)
class Occurrence:
    starts_at: datetime
    ends_at: datetime


def resolve_occurrence(event: Event, reference_time: datetime) -> Optional[Occurrence]:
    """
    Return the occurrence window that is current or next at ``reference_time``.

    One-off events resolve to their own window until it has ended. Weekly
    events resolve to the first occurrence starting at or after the
    reference time, bounded by ``recurrence_ends_on``.
    """
    duration = event.duration

    if event.recurrence_type != RecurrenceType.WEEKLY:
        if event.ends_at <= reference_time:
            return None
        return Occurrence(starts_at=event.starts_at, ends_at=event.ends_at)

    step = timedelta(weeks=max(1, event.recurrence_interval or 1))
    if reference_time <= event.starts_at:
        candidate = event.starts_at
    else:
        elapsed = reference_time - event.starts_at
        periods = -(-elapsed // step)  # ceiling division
        candidate = event.starts_at + periods * step

    if event.recurrence_ends_on and candidate > event.recurrence_ends_on:
        return None

    return Occurrence(starts_at=candidate, ends_at=candidate + duration)
