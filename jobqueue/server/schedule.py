"""
Recurrence schedules for repeating jobs.

A schedule is an RFC 5545 rule set evaluated with python-dateutil; all
occurrences are aware UTC datetimes.
"""

from datetime import UTC, datetime, time

from dateutil.rrule import rruleset, rrulestr

from jobqueue.clock import ensure_utc
from jobqueue.types.job import RepeatSchedule


def anchored(schedule: RepeatSchedule, after: datetime) -> RepeatSchedule:
    """
    Give a schedule without `dtstart` an anchor: midnight UTC of the day of `after`.

    Args:
        schedule: The schedule as supplied by the producer.
        after: The job's earliest eligible time.

    Returns:
        A schedule with `dtstart` set.
    """
    if schedule.dtstart is not None:
        return schedule
    day = ensure_utc(after).date()
    return schedule.model_copy(update={"dtstart": datetime.combine(day, time(0), tzinfo=UTC)})


def build_rule(schedule: RepeatSchedule) -> rruleset:
    """Parse a schedule into a dateutil rule set."""
    if schedule.dtstart is None:
        raise ValueError("schedule has no dtstart; anchor it first")
    return rrulestr(schedule.rrule, dtstart=schedule.dtstart, forceset=True)


def next_occurrence(schedule: RepeatSchedule, on_or_after: datetime) -> datetime | None:
    """
    First occurrence at or after a moment.

    Returns:
        The occurrence, or None if the schedule has ended.
    """
    occurrence = build_rule(schedule).after(ensure_utc(on_or_after), inc=True)
    return ensure_utc(occurrence) if occurrence is not None else None


def occurrences_after(schedule: RepeatSchedule, moment: datetime, count: int = 2) -> list[datetime]:
    """
    Up to `count` occurrences strictly after a moment.

    Args:
        schedule: An anchored schedule.
        moment: Exclusive lower bound.
        count: Maximum number of occurrences to return.

    Returns:
        Occurrences in ascending order.
    """
    rule = build_rule(schedule)
    found: list[datetime] = []
    cursor = ensure_utc(moment)
    while len(found) < count:
        occurrence = rule.after(cursor, inc=False)
        if occurrence is None:
            break
        occurrence = ensure_utc(occurrence)
        found.append(occurrence)
        cursor = occurrence
    return found
