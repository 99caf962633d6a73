"""
Custom managers and querysets for scheduling models.

QuerySets define chainable query methods.
Managers use QuerySets to enable method chaining.
No business logic should be here - only query operations.
"""

from django.db import models

from .types import ACTIVE_STATUSES


class WorkingScheduleQuerySet(models.QuerySet):
    """Custom queryset for WorkingSchedule model with chainable methods."""

    def active(self):
        """Get schedules that currently give the therapist capacity."""
        return self.filter(is_active=True)

    def for_therapist(self, therapist_id):
        return self.filter(therapist_id=therapist_id)

    def for_weekday(self, weekday):
        """
        Get schedules for a specific weekday.

        Args:
            weekday: int (0=Monday, 6=Sunday)
        """
        return self.filter(weekday=weekday)


class WorkingScheduleManager(models.Manager):
    """Custom manager for WorkingSchedule model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return WorkingScheduleQuerySet(self.model, using=self._db)

    def active(self):
        return self.get_queryset().active()

    def for_therapist(self, therapist_id):
        return self.get_queryset().for_therapist(therapist_id)

    def for_day(self, therapist_id, day):
        """
        Get the active schedule row covering a calendar date, if any.

        Args:
            therapist_id: Therapist UUID
            day: date object
        """
        return (
            self.get_queryset()
            .active()
            .for_therapist(therapist_id)
            .for_weekday(day.weekday())
            .first()
        )


class BookedSessionQuerySet(models.QuerySet):
    """Custom queryset for BookedSession model with chainable methods."""

    def active(self):
        """Get sessions that occupy capacity."""
        return self.filter(status__in=ACTIVE_STATUSES)

    def for_therapist(self, therapist_id):
        return self.filter(therapist_id=therapist_id)

    def on_date(self, day):
        return self.filter(scheduled_date=day)

    def excluding(self, session_id):
        """Drop one session from the queryset; None is a no-op."""
        if session_id is None:
            return self
        return self.exclude(pk=session_id)

    def for_series(self, series_id):
        return self.filter(series_id=series_id)


class BookedSessionManager(models.Manager):
    """Custom manager for BookedSession model."""

    def get_queryset(self):
        """Return custom queryset for method chaining."""
        return BookedSessionQuerySet(self.model, using=self._db)

    def active(self):
        return self.get_queryset().active()

    def occupying(self, therapist_id, day, exclude_session_id=None):
        """
        Get active sessions for a therapist on a date, ordered by start time.

        Args:
            therapist_id: Therapist UUID
            day: date object
            exclude_session_id: Optional session to leave out
        """
        return (
            self.get_queryset()
            .active()
            .for_therapist(therapist_id)
            .on_date(day)
            .excluding(exclude_session_id)
            .order_by('scheduled_time')
        )

    def for_series(self, series_id):
        return self.get_queryset().for_series(series_id)


class SchedulingRuleQuerySet(models.QuerySet):
    """Custom queryset for SchedulingRule model."""

    def active(self):
        return self.filter(is_active=True)

    def for_scope(self, scope, scope_id):
        return self.filter(scope=scope, scope_id=scope_id)


class SchedulingRuleManager(models.Manager):
    """Custom manager for SchedulingRule model."""

    def get_queryset(self):
        return SchedulingRuleQuerySet(self.model, using=self._db)

    def lookup(self, scope, scope_id):
        """Get the active rule for a scope, or None when absent."""
        if scope_id is None:
            return None
        return self.get_queryset().active().for_scope(scope, scope_id).first()
