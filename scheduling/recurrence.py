"""Expansion of recurrence patterns into concrete session dates."""

from datetime import date, timedelta
from typing import List, Optional

from .conf import scheduling_settings
from .types import Frequency, RecurrencePattern


def sunday_based_weekday(day: date) -> int:
    """Weekday with 0=Sunday .. 6=Saturday."""
    return (day.weekday() + 1) % 7


def matches_pattern(day: date, pattern: RecurrencePattern, anchor: date) -> bool:
    """Check whether ``day`` belongs to the series anchored at ``anchor``."""
    if pattern.frequency is Frequency.DAILY:
        return True

    if pattern.frequency in (Frequency.WEEKLY, Frequency.BIWEEKLY):
        if pattern.days_of_week:
            on_weekday = sunday_based_weekday(day) in pattern.days_of_week
        else:
            on_weekday = day.weekday() == anchor.weekday()
        if pattern.frequency is Frequency.WEEKLY:
            return on_weekday
        weeks_since_anchor = (day - anchor).days // 7
        return on_weekday and weeks_since_anchor % 2 == 0

    if pattern.frequency is Frequency.MONTHLY:
        if pattern.day_of_month:
            return day.day == pattern.day_of_month
        return day.day == anchor.day

    return False


def expand(
    anchor: date,
    pattern: RecurrencePattern,
    max_scan_days: Optional[int] = None
) -> List[date]:
    """
    Expand a recurrence pattern into ordered dates.

    Days are walked one at a time from the anchor (inclusive). Matching days
    are emitted until ``occurrence_cap`` dates exist (default from settings)
    or the walk passes ``end_date``. The walk itself never exceeds
    ``max_scan_days`` so a pattern that rarely or never matches still
    terminates.

    Args:
        anchor: First candidate date of the series
        pattern: RecurrencePattern to expand
        max_scan_days: Bound on days examined (default from settings)

    Returns:
        Strictly increasing list of dates
    """
    if pattern.occurrence_cap is not None:
        cap = pattern.occurrence_cap
    else:
        cap = scheduling_settings.DEFAULT_OCCURRENCE_CAP
    if max_scan_days is None:
        max_scan_days = scheduling_settings.MAX_RECURRENCE_SCAN_DAYS

    dates = []
    current = anchor
    last_day = anchor + timedelta(days=max_scan_days)

    while len(dates) < cap and current <= last_day:
        if pattern.end_date is not None and current > pattern.end_date:
            break
        if matches_pattern(current, pattern, anchor):
            dates.append(current)
        current += timedelta(days=1)

    return dates
