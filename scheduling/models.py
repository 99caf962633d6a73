"""
Models for the scheduling engine.

- WorkingSchedule stores a therapist's capacity window per weekday
- BookedSession stores every booked session, one-off or part of a series
- SchedulingRule stores therapist- or service-level policy overrides
"""

import uuid
from datetime import datetime, timedelta

from django.core.exceptions import ValidationError
from django.db import models

from .managers import BookedSessionManager, SchedulingRuleManager, WorkingScheduleManager
from .timeutils import TIME_PATTERN, format_time, to_minutes
from .types import ACTIVE_STATUSES, PolicyOverride


class WorkingSchedule(models.Model):
    """
    A therapist's working hours for one weekday.

    If is_active is False the therapist has no capacity on that weekday.
    """

    WEEKDAY_CHOICES = [
        (0, 'Monday'),
        (1, 'Tuesday'),
        (2, 'Wednesday'),
        (3, 'Thursday'),
        (4, 'Friday'),
        (5, 'Saturday'),
        (6, 'Sunday'),
    ]

    therapist_id = models.UUIDField(db_index=True)
    weekday = models.IntegerField(
        choices=WEEKDAY_CHOICES,
        help_text="Day of week (0=Monday, 6=Sunday)"
    )
    start_time = models.TimeField()
    end_time = models.TimeField()
    break_start = models.TimeField(null=True, blank=True)
    break_end = models.TimeField(null=True, blank=True)

    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = WorkingScheduleManager()

    class Meta:
        ordering = ['therapist_id', 'weekday']
        constraints = [
            models.UniqueConstraint(
                fields=['therapist_id', 'weekday'],
                name='unique_schedule_per_weekday',
            ),
        ]

    def __str__(self):
        hours = f"{format_time(self.start_time)}-{format_time(self.end_time)}"
        inactive = "" if self.is_active else " [inactive]"
        return f"{self.therapist_id} {self.weekday_name} {hours}{inactive}"

    @property
    def weekday_name(self):
        """Get human-readable weekday name."""
        return dict(self.WEEKDAY_CHOICES).get(self.weekday, 'Unknown')

    @property
    def has_break(self):
        return self.break_start is not None and self.break_end is not None

    def clean(self):
        """Validate working hours and break window."""
        super().clean()

        if self.start_time and self.end_time and self.start_time >= self.end_time:
            raise ValidationError({
                'end_time': 'End time must be after start time.'
            })

        if (self.break_start is None) != (self.break_end is None):
            raise ValidationError({
                'break_end': 'Break start and end must be given together.'
            })

        if self.has_break:
            if self.break_start >= self.break_end:
                raise ValidationError({
                    'break_end': 'Break end time must be after break start time.'
                })
            if self.break_start <= self.start_time or self.break_end >= self.end_time:
                raise ValidationError({
                    'break_start': 'Break time must be within working hours.'
                })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)


class BookedSession(models.Model):
    """
    A booked therapy session.

    Only SCHEDULED, CONFIRMED and IN_PROGRESS sessions occupy capacity.
    Sessions are never deleted here; cancellation is a status.
    """

    STATUS_CHOICES = [
        ('SCHEDULED', 'Scheduled'),
        ('CONFIRMED', 'Confirmed'),
        ('IN_PROGRESS', 'In progress'),
        ('COMPLETED', 'Completed'),
        ('CANCELLED', 'Cancelled'),
        ('NO_SHOW', 'No show'),
        ('RESCHEDULE_REQUESTED', 'Reschedule requested'),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    patient_id = models.UUIDField(db_index=True)
    therapist_id = models.UUIDField()
    service_id = models.UUIDField(null=True, blank=True)

    series_id = models.UUIDField(
        null=True,
        blank=True,
        db_index=True,
        help_text="Shared by all occurrences of one recurring booking"
    )

    scheduled_date = models.DateField()
    scheduled_time = models.TimeField()
    duration_minutes = models.PositiveIntegerField(default=60)

    status = models.CharField(
        max_length=24,
        choices=STATUS_CHOICES,
        default='SCHEDULED'
    )
    notes = models.TextField(blank=True, default='')

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = BookedSessionManager()

    class Meta:
        ordering = ['scheduled_date', 'scheduled_time']
        indexes = [
            models.Index(fields=['therapist_id', 'scheduled_date', 'status']),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['therapist_id', 'scheduled_date', 'scheduled_time'],
                condition=models.Q(status__in=ACTIVE_STATUSES),
                name='unique_active_session_start',
            ),
        ]

    def __str__(self):
        status_str = f" [{self.status}]" if self.status != 'SCHEDULED' else ""
        return f"{self.therapist_id} - {self.scheduled_date} {self.time_label}{status_str}"

    @property
    def occupies_capacity(self):
        return self.status in ACTIVE_STATUSES

    @property
    def is_recurring(self):
        return self.series_id is not None

    @property
    def time_label(self):
        """Zero-padded HH:MM start time."""
        return format_time(self.scheduled_time)

    @property
    def start_minutes(self):
        return to_minutes(self.scheduled_time)

    @property
    def end_minutes(self):
        return self.start_minutes + self.duration_minutes

    @property
    def end_time(self):
        """Wall-clock end, computed from start and duration."""
        start = datetime.combine(self.scheduled_date, self.scheduled_time)
        return (start + timedelta(minutes=self.duration_minutes)).time()


class SchedulingRule(models.Model):
    """
    Policy override for a therapist or a service.

    Null columns inherit from the layer below when policies are merged.
    """

    SCOPE_THERAPIST = 'therapist'
    SCOPE_SERVICE = 'service'
    SCOPE_CHOICES = [
        (SCOPE_THERAPIST, 'Therapist'),
        (SCOPE_SERVICE, 'Service'),
    ]

    scope = models.CharField(max_length=16, choices=SCOPE_CHOICES)
    scope_id = models.UUIDField()

    allow_weekends = models.BooleanField(null=True, blank=True)
    allow_holidays = models.BooleanField(null=True, blank=True)
    min_advance_days = models.PositiveIntegerField(null=True, blank=True)
    max_advance_days = models.PositiveIntegerField(null=True, blank=True)
    preferred_slots = models.JSONField(
        null=True,
        blank=True,
        help_text="List of HH:MM start times"
    )
    avoided_slots = models.JSONField(
        null=True,
        blank=True,
        help_text="List of HH:MM start times"
    )

    is_active = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = SchedulingRuleManager()

    class Meta:
        ordering = ['scope', 'scope_id']
        constraints = [
            models.UniqueConstraint(
                fields=['scope', 'scope_id'],
                name='unique_rule_per_scope',
            ),
        ]

    def __str__(self):
        return f"{self.get_scope_display()} rule for {self.scope_id}"

    def clean(self):
        """Validate slot lists and advance window."""
        super().clean()

        for field_name in ('preferred_slots', 'avoided_slots'):
            slots = getattr(self, field_name)
            if slots is None:
                continue
            if not isinstance(slots, list) or not all(
                isinstance(slot, str) and TIME_PATTERN.match(slot) for slot in slots
            ):
                raise ValidationError({
                    field_name: 'Must be a list of HH:MM times.'
                })

        if (
            self.min_advance_days is not None
            and self.max_advance_days is not None
            and self.min_advance_days > self.max_advance_days
        ):
            raise ValidationError({
                'max_advance_days': 'Maximum advance must not be below the minimum.'
            })

    def save(self, *args, **kwargs):
        """Save with validation."""
        self.full_clean()
        super().save(*args, **kwargs)

    def to_override(self) -> PolicyOverride:
        """Convert the stored columns into one merge layer."""
        return PolicyOverride(
            allow_weekends=self.allow_weekends,
            allow_holidays=self.allow_holidays,
            min_advance_days=self.min_advance_days,
            max_advance_days=self.max_advance_days,
            preferred_slots=_slot_set(self.preferred_slots),
            avoided_slots=_slot_set(self.avoided_slots),
        )


def _slot_set(slots):
    if slots is None:
        return None
    return frozenset(format_time(slot) for slot in slots)
