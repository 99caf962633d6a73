"""Free slot enumeration for a therapist's working day."""

from typing import Iterable, List

from .timeutils import from_minutes, interval, overlaps, to_minutes


DEFAULT_STEP_MINUTES = 15


def generate_slots(
    schedule,
    sessions: Iterable,
    duration_minutes: int,
    step_minutes: int = DEFAULT_STEP_MINUTES,
    buffer_minutes: int = 0
) -> List[str]:
    """
    List start times where a session of ``duration_minutes`` fits.

    Candidates run from the start of the working day to the last start that
    still ends by closing time, in ``step_minutes`` steps. A candidate is
    dropped if it overlaps an existing session (widened by ``buffer_minutes``
    on both sides) or the break window.

    Args:
        schedule: WorkingSchedule for the day, or None
        sessions: Active sessions on the day
        duration_minutes: Length of the session to place
        step_minutes: Granularity of candidate start times
        buffer_minutes: Gap to keep around existing sessions

    Returns:
        Ascending zero-padded HH:MM start times
    """
    if schedule is None or not schedule.is_active:
        return []
    if duration_minutes <= 0 or step_minutes <= 0:
        return []

    work_start = to_minutes(schedule.start_time)
    work_end = to_minutes(schedule.end_time)

    occupied = []
    for session in sessions:
        start, end = interval(session.scheduled_time, session.duration_minutes)
        occupied.append((start - buffer_minutes, end + buffer_minutes))
    if schedule.break_start is not None and schedule.break_end is not None:
        occupied.append((to_minutes(schedule.break_start), to_minutes(schedule.break_end)))
    occupied.sort()

    slots = []
    candidate = work_start
    while candidate + duration_minutes <= work_end:
        candidate_end = candidate + duration_minutes
        if not any(
            overlaps(candidate, candidate_end, start, end) for start, end in occupied
        ):
            slots.append(from_minutes(candidate))
        candidate += step_minutes

    return slots
