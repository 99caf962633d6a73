"""Views for the scheduling API."""

from rest_framework import status
from rest_framework.exceptions import NotFound, ValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from . import services
from .exceptions import ParseError, SessionNotFound
from .serializers import (
    AvailabilityQuerySerializer,
    BookedSessionReadSerializer,
    BookSessionSerializer,
    BulkScheduleSerializer,
    ConflictQuerySerializer,
    ExistingSessionSummarySerializer,
    RescheduleSerializer,
    RulesQuerySerializer,
    WorkingScheduleSerializer,
)
from .types import BookingOutcome


def _conflict_payload(error, conflicts, recommendations=None):
    payload = {
        'error': error,
        'conflicts': [conflict.as_dict() for conflict in conflicts],
    }
    if recommendations is not None:
        payload['recommendations'] = recommendations
    return payload


class AvailabilityView(APIView):
    """
    Free slots for a therapist on a date.

    GET /api/scheduling/availability/?therapist_id=X&service_id=Y&date=Z&duration=N
    """

    def get(self, request):
        query = AvailabilityQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        data = query.validated_data

        result = services.check_availability(
            therapist_id=data['therapist_id'],
            service_id=data['service_id'],
            day=data['date'],
            duration_minutes=data['duration'],
        )

        payload = {
            'therapist_id': result.therapist_id,
            'service_id': result.service_id,
            'date': result.date,
            'duration': result.duration_minutes,
            'available': result.available,
            'available_slots': result.available_slots,
        }
        if result.reason:
            payload['reason'] = result.reason
        if result.schedule is not None:
            payload['therapist_schedule'] = WorkingScheduleSerializer(result.schedule).data
            payload['existing_sessions'] = ExistingSessionSummarySerializer(
                result.existing_sessions, many=True
            ).data
        return Response(payload)


class ConflictCheckView(APIView):
    """
    Conflicts for a candidate booking, with remediation hints.

    GET /api/scheduling/conflicts/?therapist_id=X&date=Y&time=HH:MM&duration=N
    """

    def get(self, request):
        query = ConflictQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)
        data = query.validated_data

        conflicts, recommendations = services.check_conflicts(
            therapist_id=data['therapist_id'],
            day=data['date'],
            start_time=data['time'],
            duration_minutes=data['duration'],
            exclude_session_id=data.get('exclude_session_id'),
        )
        return Response({
            'has_conflicts': bool(conflicts),
            'conflicts': [conflict.as_dict() for conflict in conflicts],
            'recommendations': recommendations,
        })


class SchedulingRulesView(APIView):
    """
    Effective scheduling policy for a therapist and service.

    GET /api/scheduling/rules/?therapist_id=X&service_id=Y
    """

    def get(self, request):
        query = RulesQuerySerializer(data=request.query_params)
        query.is_valid(raise_exception=True)

        layers = services.get_effective_policy(
            therapist_id=query.validated_data.get('therapist_id'),
            service_id=query.validated_data.get('service_id'),
        )
        return Response({
            name: layer.as_dict() if layer is not None else None
            for name, layer in layers.items()
        })


class BookSessionView(APIView):
    """
    Book a session or a recurring series.

    POST /api/scheduling/sessions/
    """

    def post(self, request):
        serializer = BookSessionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        booking_request = serializer.to_booking_request()

        try:
            result = services.book_session(booking_request)
        except ParseError as exc:
            raise ValidationError({'scheduled_time': str(exc)})

        if result.outcome is BookingOutcome.CONFLICT:
            payload = _conflict_payload(
                'Scheduling conflicts detected', result.conflicts, result.recommendations
            )
            if result.skipped:
                payload['skipped'] = _skipped_payload(result.skipped)
            return Response(payload, status=status.HTTP_409_CONFLICT)

        if result.outcome is BookingOutcome.POLICY_VIOLATION:
            return Response({
                'error': 'Scheduling rule violations',
                'violations': [violation.as_dict() for violation in result.violations],
            }, status=status.HTTP_422_UNPROCESSABLE_ENTITY)

        is_recurring = booking_request.is_recurring
        return Response({
            'message': (
                'Recurring sessions created successfully' if is_recurring
                else 'Session scheduled successfully'
            ),
            'sessions': BookedSessionReadSerializer(result.sessions, many=True).data,
            'total_sessions': len(result.sessions),
            'is_recurring': is_recurring,
            'recurrence': result.recurrence.as_dict() if result.recurrence else None,
            'skipped': _skipped_payload(result.skipped),
        }, status=status.HTTP_201_CREATED)


class RescheduleSessionView(APIView):
    """
    Move a session to a new date and time.

    POST /api/scheduling/sessions/{id}/reschedule/
    """

    def post(self, request, session_id):
        serializer = RescheduleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            result = services.reschedule_session(
                session_id=session_id,
                new_date=data['new_date'],
                new_time=data['new_time'],
                reason=data['reason'],
                notify_patient=data['notify_patient'],
                notify_therapist=data['notify_therapist'],
            )
        except SessionNotFound:
            raise NotFound('Session not found.')

        if not result.success:
            return Response(
                _conflict_payload('Scheduling conflicts detected for new time', result.conflicts),
                status=status.HTTP_409_CONFLICT
            )

        return Response({
            'message': 'Session rescheduled successfully',
            'session': BookedSessionReadSerializer(result.session).data,
            'notifications': {
                'patient': result.notify_patient,
                'therapist': result.notify_therapist,
            },
        })


class BulkScheduleView(APIView):
    """
    Book many sessions with per-item success and failure reporting.

    POST /api/scheduling/sessions/bulk/
    """

    def post(self, request):
        serializer = BulkScheduleSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = services.bulk_schedule(serializer.validated_data['sessions'])
        summary = result.summary

        return Response({
            'message': (
                f"Bulk scheduling completed: {summary['successful']} successful, "
                f"{summary['failed']} failed"
            ),
            'successful': [
                {
                    'index': item.index,
                    'sessions': BookedSessionReadSerializer(item.sessions, many=True).data,
                }
                for item in result.successful
            ],
            'failed': [
                {
                    'index': failure.index,
                    'session': failure.payload,
                    'error': failure.error,
                    'details': failure.details,
                    'conflicts': [conflict.as_dict() for conflict in failure.conflicts],
                    'violations': [violation.as_dict() for violation in failure.violations],
                }
                for failure in result.failed
            ],
            'summary': summary,
        })


def _skipped_payload(skipped):
    return [
        {
            'date': item.scheduled_date,
            'conflicts': [conflict.as_dict() for conflict in item.conflicts],
            'error': item.error,
        }
        for item in skipped
    ]
