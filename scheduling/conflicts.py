"""
Conflict detection for candidate bookings.

A candidate is checked against the therapist's active sessions on the day
and against the weekday's working schedule. Conflicts are returned as data;
a failing store lookup becomes an ERROR conflict instead of an exception.
"""

import logging
from datetime import date
from typing import Iterable, List, Optional

from django.db import DatabaseError, transaction

from .timeutils import TimeLike, format_time, interval, overlaps, to_minutes
from .types import Conflict, ConflictType

logger = logging.getLogger(__name__)


RECOMMENDATIONS = {
    ConflictType.SESSION_OVERLAP: (
        'Consider rescheduling the conflicting session or choose a different time slot'
    ),
    ConflictType.NO_SCHEDULE: (
        'Check if the therapist is available on this day or select a different date'
    ),
    ConflictType.OUTSIDE_WORKING_HOURS: (
        "Choose a time within the therapist's working hours"
    ),
    ConflictType.BREAK_TIME_CONFLICT: (
        "Avoid scheduling during the therapist's break time"
    ),
}


def find_session_overlaps(start: int, end: int, sessions: Iterable) -> List[Conflict]:
    """Report every session whose interval overlaps ``[start, end)``."""
    conflicts = []
    for session in sessions:
        session_start, session_end = interval(
            session.scheduled_time, session.duration_minutes
        )
        if overlaps(start, end, session_start, session_end):
            label = format_time(session.scheduled_time)
            conflicts.append(Conflict(
                type=ConflictType.SESSION_OVERLAP,
                message=f"Overlaps with existing session at {label}",
                session_id=str(session.pk),
                conflict_time=label,
                conflict_duration=session.duration_minutes,
            ))
    return conflicts


def check_schedule_shape(start: int, end: int, schedule) -> List[Conflict]:
    """
    Check a candidate interval against a day's working schedule.

    A missing or inactive schedule yields only NO_SCHEDULE.
    """
    if schedule is None or not schedule.is_active:
        return [Conflict(
            type=ConflictType.NO_SCHEDULE,
            message='Therapist not scheduled for this day',
        )]

    conflicts = []
    work_start = to_minutes(schedule.start_time)
    work_end = to_minutes(schedule.end_time)
    if start < work_start or end > work_end:
        conflicts.append(Conflict(
            type=ConflictType.OUTSIDE_WORKING_HOURS,
            message=(
                f"Session time is outside working hours "
                f"({format_time(schedule.start_time)} - {format_time(schedule.end_time)})"
            ),
        ))

    if schedule.break_start is not None and schedule.break_end is not None:
        break_start = to_minutes(schedule.break_start)
        break_end = to_minutes(schedule.break_end)
        if overlaps(start, end, break_start, break_end):
            conflicts.append(Conflict(
                type=ConflictType.BREAK_TIME_CONFLICT,
                message=(
                    f"Session time conflicts with break time "
                    f"({format_time(schedule.break_start)} - {format_time(schedule.break_end)})"
                ),
            ))

    return conflicts


def evaluate_candidate(
    start_time: TimeLike,
    duration_minutes: int,
    schedule,
    sessions: Iterable
) -> List[Conflict]:
    """In-memory conflict check against already-loaded schedule and sessions."""
    start, end = interval(start_time, duration_minutes)
    return find_session_overlaps(start, end, sessions) + check_schedule_shape(start, end, schedule)


def detect_conflicts(
    store,
    therapist_id,
    day: date,
    start_time: TimeLike,
    duration_minutes: int,
    exclude_session_id=None
) -> List[Conflict]:
    """
    Detect conflicts for a candidate booking.

    Args:
        store: ScheduleStore used for the lookups
        therapist_id: Therapist to check
        day: Calendar date of the candidate
        start_time: Candidate start ("HH:MM" or time)
        duration_minutes: Candidate duration
        exclude_session_id: Session ignored by the overlap check (reschedules)

    Returns:
        Ordered list of conflicts; empty when the candidate is clean

    Raises:
        ParseError: If start_time is not a valid HH:MM value
    """
    start, end = interval(start_time, duration_minutes)
    conflicts = []

    try:
        with transaction.atomic():
            sessions = store.get_active_sessions(therapist_id, day, exclude_session_id)
            conflicts.extend(find_session_overlaps(start, end, sessions))

            schedule = store.get_working_schedule(therapist_id, day)
            conflicts.extend(check_schedule_shape(start, end, schedule))
    except DatabaseError:
        logger.exception(
            "Conflict lookup failed for therapist %s on %s", therapist_id, day
        )
        conflicts.append(Conflict(
            type=ConflictType.ERROR,
            message='Error checking for conflicts',
        ))

    if conflicts:
        logger.warning(
            "Found %d conflict(s) for therapist %s on %s at %s (%d min)",
            len(conflicts), therapist_id, day, format_time(start_time), duration_minutes
        )

    return conflicts


def recommendations_for(conflicts: Iterable[Conflict]) -> List[str]:
    """One remediation hint per conflict; ERROR conflicts have none."""
    recommendations = []
    for conflict in conflicts:
        hint: Optional[str] = RECOMMENDATIONS.get(conflict.type)
        if hint:
            recommendations.append(hint)
    return recommendations
