"""
URL routing for the scheduling API.
"""

from django.urls import path
from .views import (
    AvailabilityView,
    BookSessionView,
    BulkScheduleView,
    ConflictCheckView,
    RescheduleSessionView,
    SchedulingRulesView,
)

urlpatterns = [
    path('availability/', AvailabilityView.as_view(), name='scheduling-availability'),
    path('conflicts/', ConflictCheckView.as_view(), name='scheduling-conflicts'),
    path('rules/', SchedulingRulesView.as_view(), name='scheduling-rules'),
    path('sessions/', BookSessionView.as_view(), name='scheduling-book'),
    path('sessions/bulk/', BulkScheduleView.as_view(), name='scheduling-bulk'),
    path(
        'sessions/<uuid:session_id>/reschedule/',
        RescheduleSessionView.as_view(),
        name='scheduling-reschedule'
    ),
]
