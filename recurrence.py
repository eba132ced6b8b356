# recurrence.py
"""
Calendar recurrence for scheduled transfers.

Months and years advance on the calendar, not by fixed day counts. When the
anchor day does not exist in the target month it is clamped to the month's
last day (Jan 31 -> Feb 28/29 -> Mar 31). The anchor is the day of the
first execution, so a clamp in February does not pull later runs back.
"""
import calendar
from datetime import datetime, timedelta
from typing import List, Optional

from models import Frequency, JobStatus


def _add_months(value: datetime, months: int, anchor_day: Optional[int] = None) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = anchor_day or value.day
    last_day = calendar.monthrange(year, month)[1]
    return value.replace(year=year, month=month, day=min(day, last_day))


def _step(value: datetime, frequency: Frequency, anchor_day: Optional[int]) -> datetime:
    if frequency == Frequency.DAILY:
        return value + timedelta(days=1)
    if frequency == Frequency.WEEKLY:
        return value + timedelta(weeks=1)
    if frequency == Frequency.MONTHLY:
        return _add_months(value, 1, anchor_day)
    if frequency == Frequency.YEARLY:
        return _add_months(value, 12, anchor_day)
    raise ValueError(f"Frequency {frequency} has no next instant")


def next_instants(start: datetime, frequency, count: int = 5) -> List[datetime]:
    """
    The first `count` execution instants beginning at `start`.

    `once` always yields a single instant regardless of count.
    """
    frequency = Frequency(frequency)
    if count < 1:
        return []
    if frequency == Frequency.ONCE:
        return [start]

    instants = [start]
    current = start
    while len(instants) < count:
        current = _step(current, frequency, start.day)
        instants.append(current)
    return instants


def advance(last: datetime, frequency, anchor: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next instant after `last`, or None for one-time jobs.

    Pass the job's first execution as `anchor` to keep month-end jobs on
    their original day after a clamped month.
    """
    frequency = Frequency(frequency)
    if frequency == Frequency.ONCE:
        return None
    return _step(last, frequency, anchor.day if anchor else None)


def terminal_status(execution_count: int, max_executions: int, frequency,
                    next_instant: Optional[datetime]) -> JobStatus:
    frequency = Frequency(frequency)
    if frequency == Frequency.ONCE and execution_count > 0:
        return JobStatus.COMPLETED
    if execution_count >= max_executions:
        return JobStatus.COMPLETED
    if next_instant is None:
        return JobStatus.COMPLETED
    return JobStatus.ACTIVE
