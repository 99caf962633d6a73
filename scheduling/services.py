"""
Service layer for scheduling business logic.

Services compose the conflict detector, policy validator, slot generator
and recurrence expander. They are the only code that talks to the
schedule store, and every check-then-write runs under the store's
per-therapist-per-day lock.
"""

import logging
import uuid
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .conf import RECURRING_CONFLICT_MODES, scheduling_settings
from .conflicts import detect_conflicts, recommendations_for
from .notifications import dispatch_reschedule
from .policy import default_policy, merge_policies, validate_policy
from .recurrence import expand
from .serializers import BookSessionSerializer
from .slots import generate_slots
from .store import ScheduleStore
from .timeutils import TimeLike, format_time, parse_time
from .types import (
    AvailabilityResult,
    BookingOutcome,
    BookingRequest,
    BookingResult,
    BulkItemFailure,
    BulkItemSuccess,
    BulkScheduleResult,
    Conflict,
    ConflictType,
    RescheduleResult,
    SkippedOccurrence,
)

logger = logging.getLogger(__name__)


def check_availability(
    therapist_id,
    service_id,
    day: date,
    duration_minutes: int,
    store: Optional[ScheduleStore] = None
) -> AvailabilityResult:
    """
    List the free start times for a therapist on a date.

    Args:
        therapist_id: Therapist to check
        service_id: Service the session is for
        day: Date to check
        duration_minutes: Length of the session to place
        store: Optional ScheduleStore

    Returns:
        AvailabilityResult with slots, the day's schedule and active sessions
    """
    store = store or ScheduleStore()

    schedule = store.get_working_schedule(therapist_id, day)
    if schedule is None:
        return AvailabilityResult(
            therapist_id=therapist_id,
            service_id=service_id,
            date=day,
            duration_minutes=duration_minutes,
            available=False,
            reason='Therapist not scheduled for this day',
        )

    sessions = store.get_active_sessions(therapist_id, day)
    slots = generate_slots(
        schedule,
        sessions,
        duration_minutes,
        step_minutes=scheduling_settings.SLOT_INTERVAL_MINUTES,
        buffer_minutes=scheduling_settings.SESSION_BUFFER_MINUTES,
    )

    return AvailabilityResult(
        therapist_id=therapist_id,
        service_id=service_id,
        date=day,
        duration_minutes=duration_minutes,
        available=bool(slots),
        available_slots=slots,
        schedule=schedule,
        existing_sessions=sessions,
    )


def check_conflicts(
    therapist_id,
    day: date,
    start_time: TimeLike,
    duration_minutes: int,
    exclude_session_id=None,
    store: Optional[ScheduleStore] = None
) -> Tuple[List[Conflict], List[str]]:
    """Detect conflicts for a candidate and pair them with remediation hints."""
    store = store or ScheduleStore()
    conflicts = detect_conflicts(
        store, therapist_id, day, start_time, duration_minutes, exclude_session_id
    )
    return conflicts, recommendations_for(conflicts)


def get_effective_policy(
    therapist_id=None,
    service_id=None,
    store: Optional[ScheduleStore] = None
) -> Dict:
    """
    Resolve the scheduling policy for a therapist and service.

    Returns:
        Dict with the 'default', 'therapist' and 'service' layers and the
        merged 'effective' policy (service > therapist > default)
    """
    store = store or ScheduleStore()
    default = default_policy()
    therapist_rules = store.get_policy_override('therapist', therapist_id)
    service_rules = store.get_policy_override('service', service_id)

    return {
        'default': default,
        'therapist': therapist_rules,
        'service': service_rules,
        'effective': merge_policies(default, therapist_rules, service_rules),
    }


def book_session(
    request: BookingRequest,
    today: Optional[date] = None,
    store: Optional[ScheduleStore] = None
) -> BookingResult:
    """
    Book a single session, or a series when the request has a recurrence.

    The requested date is checked for conflicts first, then against the
    request's policy. Series bookings then check every occurrence.

    Args:
        request: BookingRequest to fulfil
        today: Reference date for the advance window (defaults to local today)
        store: Optional ScheduleStore

    Returns:
        BookingResult; rejections carry conflicts or violations
    """
    store = store or ScheduleStore()
    today = today or timezone.localdate()

    if request.is_recurring:
        return _book_series(request, today, store)

    with store.lock_day(request.therapist_id, request.scheduled_date):
        rejection = _screen_request(request, today, store)
        if rejection is not None:
            return rejection
        session, conflicts = _persist_occurrence(store, request, request.scheduled_date)

    if conflicts:
        return _conflict_result(conflicts)

    logger.info(
        "Booked session %s for therapist %s on %s at %s",
        session.pk, request.therapist_id, request.scheduled_date, request.scheduled_time
    )
    return BookingResult(outcome=BookingOutcome.BOOKED, sessions=[session])


def _book_series(request: BookingRequest, today: date, store: ScheduleStore) -> BookingResult:
    """
    Book every occurrence of a recurring request.

    The anchor date is checked for conflicts and against the policy; a
    failure rejects the whole series. Later occurrences are checked for
    conflicts only. The policy is not re-applied to them, so a pattern
    such as weekly on Saturday and Sunday books weekend dates even when
    the policy disallows weekends, as long as the anchor complies.
    """
    with store.lock_day(request.therapist_id, request.scheduled_date):
        rejection = _screen_request(request, today, store)
    if rejection is not None:
        rejection.recurrence = request.recurrence
        return rejection

    dates = expand(request.scheduled_date, request.recurrence)
    series_id = uuid.uuid4()

    mode = scheduling_settings.RECURRING_CONFLICT_MODE
    if mode not in RECURRING_CONFLICT_MODES:
        raise ValueError(f"Unknown RECURRING_CONFLICT_MODE: {mode!r}")

    if mode == 'abort':
        sessions, skipped = _book_occurrences_all_or_nothing(store, request, dates, series_id)
    else:
        sessions, skipped = _book_occurrences(store, request, dates, series_id)

    if skipped:
        logger.warning(
            "Series %s: %d of %d occurrence(s) not booked (%s mode)",
            series_id, len(skipped), len(dates), mode
        )

    if not sessions:
        conflicts = [conflict for item in skipped for conflict in item.conflicts]
        return BookingResult(
            outcome=BookingOutcome.CONFLICT,
            conflicts=conflicts,
            recommendations=recommendations_for(conflicts),
            skipped=skipped,
            recurrence=request.recurrence,
        )

    logger.info(
        "Booked series %s: %d session(s) for therapist %s from %s",
        series_id, len(sessions), request.therapist_id, request.scheduled_date
    )
    return BookingResult(
        outcome=BookingOutcome.BOOKED,
        sessions=sessions,
        skipped=skipped,
        recurrence=request.recurrence,
    )


def _book_occurrences(
    store: ScheduleStore,
    request: BookingRequest,
    dates: Iterable[date],
    series_id
) -> Tuple[list, List[SkippedOccurrence]]:
    """Book each date independently; colliding or failing dates are skipped."""
    sessions = []
    skipped = []
    for day in dates:
        session, skip = _book_occurrence(store, request, day, series_id)
        if skip is not None:
            skipped.append(skip)
        else:
            sessions.append(session)
    return sessions, skipped


def _book_occurrences_all_or_nothing(
    store: ScheduleStore,
    request: BookingRequest,
    dates: List[date],
    series_id
) -> Tuple[list, List[SkippedOccurrence]]:
    """
    Book all dates, or none of them if any date cannot be booked.

    The day locks for every date stay held until the series commits.
    """
    with store.lock_days(request.therapist_id, dates):
        sessions, skipped = _book_occurrences(store, request, dates, series_id)
        if skipped:
            transaction.set_rollback(True)
            return [], skipped
    return sessions, skipped


def _book_occurrence(store: ScheduleStore, request: BookingRequest, day: date, series_id):
    try:
        with store.lock_day(request.therapist_id, day):
            conflicts = detect_conflicts(
                store,
                request.therapist_id,
                day,
                request.scheduled_time,
                request.duration_minutes,
            )
            if conflicts:
                return None, SkippedOccurrence(scheduled_date=day, conflicts=conflicts)

            session, conflicts = _persist_occurrence(store, request, day, series_id)
            if conflicts:
                return None, SkippedOccurrence(scheduled_date=day, conflicts=conflicts)
    except DatabaseError as exc:
        logger.exception("Could not book occurrence on %s for series %s", day, series_id)
        return None, SkippedOccurrence(scheduled_date=day, error=str(exc))

    return session, None


def _screen_request(
    request: BookingRequest,
    today: date,
    store: ScheduleStore
) -> Optional[BookingResult]:
    """Run conflict then policy checks; return a rejection or None."""
    conflicts = detect_conflicts(
        store,
        request.therapist_id,
        request.scheduled_date,
        request.scheduled_time,
        request.duration_minutes,
    )
    if conflicts:
        return _conflict_result(conflicts)

    violations = validate_policy(
        request.scheduled_date,
        request.scheduled_time,
        request.policy,
        today=today,
    )
    if violations:
        logger.info(
            "Booking for therapist %s on %s rejected by %d policy rule(s)",
            request.therapist_id, request.scheduled_date, len(violations)
        )
        return BookingResult(outcome=BookingOutcome.POLICY_VIOLATION, violations=violations)

    return None


def _persist_occurrence(store: ScheduleStore, request: BookingRequest, day: date, series_id=None):
    """
    Insert one session.

    A start time already taken by another active session (a write that
    raced past the conflict check) comes back as a SESSION_OVERLAP conflict.
    """
    try:
        with transaction.atomic():
            session = store.create_session(
                patient_id=request.patient_id,
                therapist_id=request.therapist_id,
                service_id=request.service_id,
                scheduled_date=day,
                scheduled_time=parse_time(request.scheduled_time),
                duration_minutes=request.duration_minutes,
                notes=request.notes,
                series_id=series_id,
            )
    except IntegrityError:
        logger.warning(
            "Slot %s %s for therapist %s was taken concurrently",
            day, request.scheduled_time, request.therapist_id
        )
        return None, [_taken_slot_conflict(day, request.scheduled_time, request.duration_minutes)]

    return session, []


def _taken_slot_conflict(day: date, start_time: TimeLike, duration_minutes: int) -> Conflict:
    label = format_time(start_time)
    return Conflict(
        type=ConflictType.SESSION_OVERLAP,
        message=f"Another session already starts at {label} on {day}",
        conflict_time=label,
        conflict_duration=duration_minutes,
    )


def _conflict_result(conflicts: List[Conflict]) -> BookingResult:
    return BookingResult(
        outcome=BookingOutcome.CONFLICT,
        conflicts=conflicts,
        recommendations=recommendations_for(conflicts),
    )


def reschedule_session(
    session_id,
    new_date: date,
    new_time: TimeLike,
    reason: str,
    notify_patient: bool = True,
    notify_therapist: bool = True,
    store: Optional[ScheduleStore] = None,
    dispatcher=None
) -> RescheduleResult:
    """
    Move a session to a new date and time.

    The session itself is ignored by the conflict check, so moving it onto
    its own slot is allowed. Notifications are sent after the move and
    cannot fail it.

    Args:
        session_id: Session to move
        new_date: Target date
        new_time: Target start ("HH:MM")
        reason: Free-text reason, appended to the session notes
        notify_patient: Whether to notify the patient
        notify_therapist: Whether to notify the therapist
        store: Optional ScheduleStore
        dispatcher: Optional notification dispatcher

    Returns:
        RescheduleResult with the updated session or the conflicts

    Raises:
        SessionNotFound: If the session does not exist
    """
    store = store or ScheduleStore()
    existing = store.get_session(session_id)

    with store.lock_day(existing.therapist_id, new_date):
        conflicts = detect_conflicts(
            store,
            existing.therapist_id,
            new_date,
            new_time,
            existing.duration_minutes,
            exclude_session_id=existing.pk,
        )
        if conflicts:
            return RescheduleResult(conflicts=conflicts)

        notes = f"{existing.notes or ''}\nRescheduled: {reason}".strip()
        try:
            with transaction.atomic():
                updated = store.update_session_time(
                    existing.pk, new_date, parse_time(new_time), notes=notes
                )
        except IntegrityError:
            logger.warning("Reschedule target %s %s for session %s was taken concurrently",
                           new_date, new_time, existing.pk)
            return RescheduleResult(
                conflicts=[_taken_slot_conflict(new_date, new_time, existing.duration_minutes)]
            )

    logger.info(
        "Rescheduled session %s from %s %s to %s %s",
        existing.pk, existing.scheduled_date, existing.time_label,
        updated.scheduled_date, updated.time_label
    )

    if notify_patient or notify_therapist:
        dispatch_reschedule(
            dispatcher,
            existing,
            updated,
            reason,
            notify_patient=notify_patient,
            notify_therapist=notify_therapist,
        )

    return RescheduleResult(
        session=updated,
        notify_patient=notify_patient,
        notify_therapist=notify_therapist,
    )


def bulk_schedule(
    payloads: List[dict],
    today: Optional[date] = None,
    store: Optional[ScheduleStore] = None
) -> BulkScheduleResult:
    """
    Book many sessions, each independently.

    Every payload is validated and booked inside its own error boundary;
    one item's failure never stops the others.

    Args:
        payloads: Raw book-session payloads
        today: Reference date for the advance window
        store: Optional ScheduleStore

    Returns:
        BulkScheduleResult with successes, failures and counts
    """
    store = store or ScheduleStore()
    today = today or timezone.localdate()
    result = BulkScheduleResult(total=len(payloads))

    for index, payload in enumerate(payloads):
        try:
            serializer = BookSessionSerializer(data=payload)
            if not serializer.is_valid():
                result.failed.append(BulkItemFailure(
                    index=index,
                    payload=payload,
                    error='Validation failed',
                    details=serializer.errors,
                ))
                continue

            booking = book_session(serializer.to_booking_request(), today=today, store=store)
        except Exception as exc:
            logger.exception("Bulk scheduling item %d failed", index)
            result.failed.append(BulkItemFailure(
                index=index,
                payload=payload,
                error=str(exc) or exc.__class__.__name__,
            ))
            continue

        if booking.outcome is BookingOutcome.CONFLICT:
            result.failed.append(BulkItemFailure(
                index=index,
                payload=payload,
                error='Scheduling conflicts detected',
                conflicts=booking.conflicts,
            ))
        elif booking.outcome is BookingOutcome.POLICY_VIOLATION:
            result.failed.append(BulkItemFailure(
                index=index,
                payload=payload,
                error='Scheduling rule violations',
                violations=booking.violations,
            ))
        else:
            result.successful.append(BulkItemSuccess(index=index, sessions=booking.sessions))

    logger.info(
        "Bulk scheduling completed: %d successful, %d failed",
        len(result.successful), len(result.failed)
    )
    return result
