"""
Persistence boundary for the scheduling engine.

The engine only reaches the database through ScheduleStore, so tests can
swap in a store that fails or records calls.
"""

import threading
import zlib
from contextlib import ExitStack, contextmanager
from datetime import date, time
from typing import Iterable, List, Optional

from django.db import transaction

from .conf import scheduling_settings
from .exceptions import SessionNotFound
from .models import BookedSession, SchedulingRule, WorkingSchedule
from .types import PolicyOverride


_stripe_guard = threading.Lock()
_stripes = []


def day_locks(therapist_id, days: Iterable[date]) -> list:
    """
    Return the process-local locks covering several dates for a therapist.

    Locks are striped: unrelated keys may share a stripe, the same key
    always maps to the same lock. The result holds each stripe once, in
    stripe order, so callers that acquire them in list order cannot
    deadlock against each other.
    """
    with _stripe_guard:
        wanted = max(1, scheduling_settings.LOCK_STRIPES)
        if len(_stripes) != wanted:
            _stripes[:] = [threading.RLock() for _ in range(wanted)]
        indexes = {
            zlib.crc32(f"{therapist_id}:{day.isoformat()}".encode()) % len(_stripes)
            for day in days
        }
        return [_stripes[index] for index in sorted(indexes)]


def day_lock(therapist_id, day: date):
    """Return the process-local lock for a (therapist, date) pair."""
    return day_locks(therapist_id, [day])[0]


class ScheduleStore:
    """Django ORM implementation of the schedule store."""

    def get_working_schedule(self, therapist_id, day: date) -> Optional[WorkingSchedule]:
        """Get the active schedule for the weekday of ``day``, if any."""
        return WorkingSchedule.objects.for_day(therapist_id, day)

    def get_active_sessions(
        self,
        therapist_id,
        day: date,
        exclude_session_id=None
    ) -> List[BookedSession]:
        """Get the sessions occupying capacity for a therapist on a date."""
        return list(
            BookedSession.objects.occupying(therapist_id, day, exclude_session_id)
        )

    def get_session(self, session_id) -> BookedSession:
        """
        Fetch a session by id.

        Raises:
            SessionNotFound: If no session has this id
        """
        try:
            return BookedSession.objects.get(pk=session_id)
        except BookedSession.DoesNotExist:
            raise SessionNotFound(session_id)

    def create_session(
        self,
        patient_id,
        therapist_id,
        service_id,
        scheduled_date: date,
        scheduled_time: time,
        duration_minutes: int,
        notes: str = '',
        series_id=None
    ) -> BookedSession:
        """Insert a SCHEDULED session."""
        return BookedSession.objects.create(
            patient_id=patient_id,
            therapist_id=therapist_id,
            service_id=service_id,
            series_id=series_id,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            duration_minutes=duration_minutes,
            status='SCHEDULED',
            notes=notes or '',
        )

    def update_session_time(
        self,
        session_id,
        scheduled_date: date,
        scheduled_time: time,
        notes: Optional[str] = None
    ) -> BookedSession:
        """
        Move a session to a new date and time.

        Raises:
            SessionNotFound: If no session has this id
        """
        try:
            session = BookedSession.objects.select_for_update().get(pk=session_id)
        except BookedSession.DoesNotExist:
            raise SessionNotFound(session_id)

        session.scheduled_date = scheduled_date
        session.scheduled_time = scheduled_time
        fields = ['scheduled_date', 'scheduled_time', 'updated_at']
        if notes is not None:
            session.notes = notes
            fields.append('notes')
        session.save(update_fields=fields)
        return session

    def get_policy_override(self, scope: str, scope_id) -> Optional[PolicyOverride]:
        rule = SchedulingRule.objects.lookup(scope, scope_id)
        return rule.to_override() if rule else None

    def lock_day(self, therapist_id, day: date):
        """
        Serialise check-then-write for one therapist on one date.

        Holds the process-local day lock, opens a transaction and row-locks
        the therapist's schedule rows where the database supports it.
        """
        return self.lock_days(therapist_id, [day])

    @contextmanager
    def lock_days(self, therapist_id, days: Iterable[date]):
        """
        Serialise check-then-write for one therapist across several dates.

        Every day lock is taken, in stripe order, before the transaction
        opens, and all of them are held until it commits or rolls back.
        """
        with ExitStack() as stack:
            for lock in day_locks(therapist_id, days):
                stack.enter_context(lock)
            with transaction.atomic():
                list(
                    WorkingSchedule.objects.select_for_update()
                    .for_therapist(therapist_id)
                    .values_list('pk', flat=True)
                )
                yield
