"""
Serializers for the scheduling API.

Input serializers guarantee shape and ranges before the engine runs and
convert validated data into the engine's value objects.
"""

from rest_framework import serializers

from .models import BookedSession, WorkingSchedule
from .timeutils import TIME_PATTERN, format_time
from .types import BookingRequest, Frequency, RecurrencePattern, SchedulingPolicy


MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480


class WallClockField(serializers.RegexField):
    """HH:MM time of day, normalised to zero padding."""

    def __init__(self, **kwargs):
        kwargs.setdefault('error_messages', {'invalid': 'Invalid time format (HH:MM).'})
        super().__init__(TIME_PATTERN, **kwargs)

    def run_validation(self, data=serializers.empty):
        value = super().run_validation(data)
        if value in (None, ''):
            return value
        return format_time(value)

    def to_representation(self, value):
        return format_time(value)


class DurationField(serializers.IntegerField):

    def __init__(self, **kwargs):
        kwargs.setdefault('min_value', MIN_DURATION_MINUTES)
        kwargs.setdefault('max_value', MAX_DURATION_MINUTES)
        super().__init__(**kwargs)


class RecurrencePatternSerializer(serializers.Serializer):
    """Recurrence rule for a series booking."""

    frequency = serializers.ChoiceField(choices=[f.value for f in Frequency])
    interval = serializers.IntegerField(min_value=1, max_value=52, default=1)
    end_date = serializers.DateField(required=False, allow_null=True)
    occurrences = serializers.IntegerField(
        min_value=1,
        max_value=100,
        required=False,
        allow_null=True
    )
    days_of_week = serializers.ListField(
        child=serializers.IntegerField(min_value=0, max_value=6),
        required=False,
        allow_null=True,
        help_text="0=Sunday, 6=Saturday"
    )
    day_of_month = serializers.IntegerField(
        min_value=1,
        max_value=31,
        required=False,
        allow_null=True
    )

    @staticmethod
    def to_pattern(data) -> RecurrencePattern:
        days_of_week = data.get('days_of_week')
        return RecurrencePattern(
            frequency=Frequency(data['frequency']),
            interval=data.get('interval', 1),
            end_date=data.get('end_date'),
            occurrence_cap=data.get('occurrences'),
            days_of_week=frozenset(days_of_week) if days_of_week else None,
            day_of_month=data.get('day_of_month'),
        )


class SchedulingPolicySerializer(serializers.Serializer):
    """Scheduling rules supplied with a booking request."""

    allow_weekends = serializers.BooleanField(default=False)
    allow_holidays = serializers.BooleanField(default=False)
    min_advance_days = serializers.IntegerField(min_value=0, max_value=365)
    max_advance_days = serializers.IntegerField(min_value=0, max_value=365)
    preferred_slots = serializers.ListField(child=WallClockField(), required=False, default=list)
    avoided_slots = serializers.ListField(child=WallClockField(), required=False, default=list)

    def validate(self, data):
        """Ensure the advance window is not inverted."""
        if data['max_advance_days'] < data['min_advance_days']:
            raise serializers.ValidationError({
                'max_advance_days': 'Maximum advance must not be below the minimum.'
            })
        return data

    @staticmethod
    def to_policy(data) -> SchedulingPolicy:
        return SchedulingPolicy(
            allow_weekends=data.get('allow_weekends', False),
            allow_holidays=data.get('allow_holidays', False),
            min_advance_days=data['min_advance_days'],
            max_advance_days=data['max_advance_days'],
            preferred_slots=frozenset(data.get('preferred_slots') or ()),
            avoided_slots=frozenset(data.get('avoided_slots') or ()),
        )


class BookSessionSerializer(serializers.Serializer):
    """Serializer for a single or recurring booking request."""

    patient_id = serializers.UUIDField()
    therapist_id = serializers.UUIDField()
    service_id = serializers.UUIDField()
    scheduled_date = serializers.DateField()
    scheduled_time = WallClockField()
    duration_minutes = DurationField()
    notes = serializers.CharField(required=False, allow_blank=True, default='')
    recurrence = RecurrencePatternSerializer(required=False, allow_null=True)
    policy = SchedulingPolicySerializer(required=False, allow_null=True)

    def to_booking_request(self) -> BookingRequest:
        data = self.validated_data
        recurrence = data.get('recurrence')
        policy = data.get('policy')
        return BookingRequest(
            patient_id=data['patient_id'],
            therapist_id=data['therapist_id'],
            service_id=data['service_id'],
            scheduled_date=data['scheduled_date'],
            scheduled_time=data['scheduled_time'],
            duration_minutes=data['duration_minutes'],
            notes=data.get('notes', ''),
            recurrence=RecurrencePatternSerializer.to_pattern(recurrence) if recurrence else None,
            policy=SchedulingPolicySerializer.to_policy(policy) if policy else None,
        )


class RescheduleSerializer(serializers.Serializer):
    """Serializer for moving a session to a new date and time."""

    new_date = serializers.DateField()
    new_time = WallClockField()
    reason = serializers.CharField(min_length=10)
    notify_patient = serializers.BooleanField(default=True)
    notify_therapist = serializers.BooleanField(default=True)


class BulkScheduleSerializer(serializers.Serializer):
    """
    Envelope for bulk scheduling.

    Items are validated one by one during scheduling so a bad item fails
    alone instead of rejecting the batch.
    """

    sessions = serializers.ListField(child=serializers.JSONField(), allow_empty=False)


class AvailabilityQuerySerializer(serializers.Serializer):
    """Serializer for availability query parameters."""

    therapist_id = serializers.UUIDField()
    service_id = serializers.UUIDField()
    date = serializers.DateField()
    duration = DurationField()


class ConflictQuerySerializer(serializers.Serializer):
    """Serializer for conflict check query parameters."""

    therapist_id = serializers.UUIDField()
    date = serializers.DateField()
    time = WallClockField()
    duration = DurationField()
    exclude_session_id = serializers.UUIDField(required=False, allow_null=True)


class RulesQuerySerializer(serializers.Serializer):
    """Serializer for effective rules query parameters."""

    therapist_id = serializers.UUIDField(required=False, allow_null=True)
    service_id = serializers.UUIDField(required=False, allow_null=True)


class BookedSessionReadSerializer(serializers.ModelSerializer):
    """Serializer for reading/displaying BookedSession (output)."""

    scheduled_time = serializers.TimeField(format='%H:%M')
    end_time = serializers.TimeField(format='%H:%M', read_only=True)

    class Meta:
        model = BookedSession
        fields = [
            'id',
            'patient_id',
            'therapist_id',
            'service_id',
            'series_id',
            'scheduled_date',
            'scheduled_time',
            'end_time',
            'duration_minutes',
            'status',
            'notes',
            'created_at',
            'updated_at',
        ]


class ExistingSessionSummarySerializer(serializers.ModelSerializer):
    """Short form of a session for availability responses."""

    time = serializers.TimeField(source='scheduled_time', format='%H:%M')
    duration = serializers.IntegerField(source='duration_minutes')

    class Meta:
        model = BookedSession
        fields = ['id', 'time', 'duration', 'status']


class WorkingScheduleSerializer(serializers.ModelSerializer):
    """Serializer for a day's working hours (output)."""

    weekday_name = serializers.ReadOnlyField()
    start_time = serializers.TimeField(format='%H:%M')
    end_time = serializers.TimeField(format='%H:%M')
    break_start = serializers.TimeField(format='%H:%M', allow_null=True)
    break_end = serializers.TimeField(format='%H:%M', allow_null=True)

    class Meta:
        model = WorkingSchedule
        fields = [
            'weekday',
            'weekday_name',
            'start_time',
            'end_time',
            'break_start',
            'break_end',
        ]
