"""
Tests for the scheduling engine.

Tests cover:
- Time arithmetic utilities
- Conflict detection, slot generation, policy validation, recurrence expansion
- Service layer (booking, recurring series, rescheduling, bulk scheduling)
- Models and the schedule store
- API endpoints
- Management commands
"""

import threading
import uuid
from datetime import date, time
from io import StringIO
from unittest import mock

from django.core.exceptions import ValidationError
from django.core.management import CommandError, call_command
from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from . import services
from .conflicts import (
    RECOMMENDATIONS,
    detect_conflicts,
    evaluate_candidate,
    recommendations_for,
)
from .exceptions import ParseError, SessionNotFound
from .models import BookedSession, SchedulingRule, WorkingSchedule
from .policy import default_policy, merge_policies, validate_policy
from .recurrence import expand, sunday_based_weekday
from .slots import generate_slots
from .store import ScheduleStore, day_lock, day_locks
from .timeutils import format_time, from_minutes, overlaps, to_minutes
from .types import (
    BookingOutcome,
    BookingRequest,
    Conflict,
    ConflictType,
    Frequency,
    PolicyOverride,
    RecurrencePattern,
    SchedulingPolicy,
    ViolationKind,
)


THERAPIST_ID = uuid.UUID('11111111-1111-4111-8111-111111111111')
PATIENT_ID = uuid.UUID('22222222-2222-4222-8222-222222222222')
SERVICE_ID = uuid.UUID('33333333-3333-4333-8333-333333333333')

# 2024-01-01 is a Monday.
MONDAY = date(2024, 1, 1)
TUESDAY = date(2024, 1, 2)
SATURDAY = date(2024, 1, 6)
SUNDAY = date(2024, 1, 7)


def make_schedule(weekday=0, **kwargs):
    """Create a saved 09:00-17:00 schedule with a 12:00-13:00 break."""
    fields = {
        'therapist_id': THERAPIST_ID,
        'weekday': weekday,
        'start_time': time(9, 0),
        'end_time': time(17, 0),
        'break_start': time(12, 0),
        'break_end': time(13, 0),
    }
    fields.update(kwargs)
    return WorkingSchedule.objects.create(**fields)


def make_session(day=MONDAY, start=time(10, 0), duration=60, **kwargs):
    fields = {
        'patient_id': PATIENT_ID,
        'therapist_id': THERAPIST_ID,
        'service_id': SERVICE_ID,
        'scheduled_date': day,
        'scheduled_time': start,
        'duration_minutes': duration,
    }
    fields.update(kwargs)
    return BookedSession.objects.create(**fields)


def make_request(**kwargs):
    fields = {
        'patient_id': PATIENT_ID,
        'therapist_id': THERAPIST_ID,
        'service_id': SERVICE_ID,
        'scheduled_date': MONDAY,
        'scheduled_time': '10:00',
        'duration_minutes': 60,
    }
    fields.update(kwargs)
    return BookingRequest(**fields)


def unsaved_schedule(**kwargs):
    fields = {
        'therapist_id': THERAPIST_ID,
        'weekday': 0,
        'start_time': time(9, 0),
        'end_time': time(17, 0),
        'break_start': time(12, 0),
        'break_end': time(13, 0),
    }
    fields.update(kwargs)
    return WorkingSchedule(**fields)


def unsaved_session(start, duration):
    return BookedSession(
        patient_id=PATIENT_ID,
        therapist_id=THERAPIST_ID,
        scheduled_date=MONDAY,
        scheduled_time=start,
        duration_minutes=duration,
    )


class TimeUtilityTests(SimpleTestCase):
    """Test wall-clock arithmetic."""

    def test_to_minutes(self):
        self.assertEqual(to_minutes('09:30'), 570)
        self.assertEqual(to_minutes('9:05'), 545)
        self.assertEqual(to_minutes('00:00'), 0)
        self.assertEqual(to_minutes('23:59'), 1439)
        self.assertEqual(to_minutes(time(10, 15)), 615)

    def test_to_minutes_rejects_malformed_input(self):
        """Test that anything outside HH:MM raises ParseError."""
        for value in ['24:00', '12:60', '9:5', 'noon', '', '10:00:00']:
            with self.subTest(value=value):
                with self.assertRaises(ParseError):
                    to_minutes(value)

    def test_parse_error_is_value_error(self):
        with self.assertRaises(ValueError):
            to_minutes('25:00')

    def test_from_minutes(self):
        self.assertEqual(from_minutes(0), '00:00')
        self.assertEqual(from_minutes(545), '09:05')
        self.assertEqual(from_minutes(1439), '23:59')

        with self.assertRaises(ValueError):
            from_minutes(1440)

    def test_overlaps_is_strict(self):
        """Test that touching intervals do not overlap."""
        self.assertFalse(overlaps(600, 660, 660, 720))
        self.assertFalse(overlaps(660, 720, 600, 660))
        self.assertTrue(overlaps(630, 660, 600, 645))
        self.assertTrue(overlaps(600, 720, 630, 640))

    def test_format_time_pads(self):
        self.assertEqual(format_time('9:00'), '09:00')
        self.assertEqual(format_time(time(7, 5)), '07:05')


class ConflictDetectorTests(TestCase):
    """Test conflict detection against the database."""

    def setUp(self):
        """Create a Monday schedule and a store."""
        self.schedule = make_schedule(weekday=0)
        self.store = ScheduleStore()

    def detect(self, day, start, duration, exclude=None):
        return detect_conflicts(self.store, THERAPIST_ID, day, start, duration, exclude)

    def test_clean_candidate(self):
        self.assertEqual(self.detect(MONDAY, '10:00', 60), [])

    def test_break_time_conflict(self):
        """Test that 12:30 for 60 minutes hits the 12:00-13:00 break."""
        conflicts = self.detect(MONDAY, '12:30', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.BREAK_TIME_CONFLICT])
        self.assertIn('12:00 - 13:00', conflicts[0].message)

    def test_no_schedule_on_sunday(self):
        conflicts = self.detect(SUNDAY, '10:00', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.NO_SCHEDULE])

    def test_inactive_schedule_counts_as_no_schedule(self):
        make_schedule(weekday=1, is_active=False)

        conflicts = self.detect(TUESDAY, '10:00', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.NO_SCHEDULE])

    def test_session_overlap(self):
        """Test that 10:30+30 overlaps an existing 10:00+45 session."""
        existing = make_session(start=time(10, 0), duration=45)

        conflicts = self.detect(MONDAY, '10:30', 30)

        self.assertEqual(len(conflicts), 1)
        conflict = conflicts[0]
        self.assertEqual(conflict.type, ConflictType.SESSION_OVERLAP)
        self.assertEqual(conflict.session_id, str(existing.pk))
        self.assertEqual(conflict.conflict_time, '10:00')
        self.assertEqual(conflict.conflict_duration, 45)

    def test_all_overlaps_reported(self):
        make_session(start=time(10, 0), duration=30)
        make_session(start=time(10, 30), duration=30)

        conflicts = self.detect(MONDAY, '10:15', 45)

        self.assertEqual(
            [c.conflict_time for c in conflicts],
            ['10:00', '10:30']
        )

    def test_touching_sessions_do_not_conflict(self):
        make_session(start=time(10, 0), duration=60)

        self.assertEqual(self.detect(MONDAY, '11:00', 60), [])
        self.assertEqual(self.detect(MONDAY, '09:00', 60), [])

    def test_outside_working_hours(self):
        conflicts = self.detect(MONDAY, '16:30', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.OUTSIDE_WORKING_HOURS])
        self.assertIn('09:00 - 17:00', conflicts[0].message)

    def test_overlaps_still_reported_without_schedule(self):
        make_session(day=SUNDAY, start=time(10, 0))

        conflicts = self.detect(SUNDAY, '10:00', 60)

        self.assertEqual(
            [c.type for c in conflicts],
            [ConflictType.SESSION_OVERLAP, ConflictType.NO_SCHEDULE]
        )

    def test_inactive_sessions_ignored(self):
        for status_value in ['CANCELLED', 'COMPLETED', 'NO_SHOW', 'RESCHEDULE_REQUESTED']:
            make_session(start=time(10, 0), status=status_value)

        self.assertEqual(self.detect(MONDAY, '10:00', 60), [])

    def test_excluded_session_ignored(self):
        session = make_session(start=time(10, 0))

        self.assertEqual(self.detect(MONDAY, '10:00', 60, exclude=session.pk), [])

    def test_store_failure_becomes_error_conflict(self):
        """Test that a failing lookup returns one ERROR conflict instead of raising."""

        class FailingStore(ScheduleStore):
            def get_active_sessions(self, *args, **kwargs):
                raise DatabaseError("database unavailable")

        with self.assertLogs('scheduling.conflicts', level='ERROR'):
            conflicts = detect_conflicts(FailingStore(), THERAPIST_ID, MONDAY, '10:00', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.ERROR])

    def test_recommendations(self):
        conflicts = [
            Conflict(ConflictType.SESSION_OVERLAP, 'overlap'),
            Conflict(ConflictType.BREAK_TIME_CONFLICT, 'break'),
            Conflict(ConflictType.ERROR, 'error'),
        ]

        self.assertEqual(
            recommendations_for(conflicts),
            [
                RECOMMENDATIONS[ConflictType.SESSION_OVERLAP],
                RECOMMENDATIONS[ConflictType.BREAK_TIME_CONFLICT],
            ]
        )

    def test_conflict_as_dict(self):
        overlap = Conflict(
            ConflictType.SESSION_OVERLAP, 'overlap',
            session_id='abc', conflict_time='10:00', conflict_duration=45
        )
        self.assertEqual(overlap.as_dict()['conflict_duration'], 45)
        self.assertNotIn('session_id', Conflict(ConflictType.NO_SCHEDULE, 'x').as_dict())


class SlotGeneratorTests(SimpleTestCase):
    """Test free slot enumeration."""

    def test_empty_day(self):
        slots = generate_slots(unsaved_schedule(), [], 60)

        self.assertEqual(slots[0], '09:00')
        self.assertEqual(slots[-1], '16:00')
        self.assertIn('11:00', slots)
        self.assertNotIn('11:15', slots)
        self.assertNotIn('12:00', slots)
        self.assertIn('13:00', slots)
        self.assertEqual(len(slots), 22)

    def test_existing_session_blocks_overlapping_starts(self):
        sessions = [unsaved_session(time(10, 0), 45)]

        slots = generate_slots(unsaved_schedule(), sessions, 60)

        self.assertIn('09:00', slots)
        self.assertNotIn('09:15', slots)
        self.assertNotIn('10:30', slots)
        self.assertIn('10:45', slots)

    def test_slots_are_ascending(self):
        sessions = [unsaved_session(time(14, 0), 30), unsaved_session(time(9, 30), 60)]

        slots = generate_slots(unsaved_schedule(), sessions, 30)

        self.assertEqual(slots, sorted(slots))

    def test_no_schedule(self):
        self.assertEqual(generate_slots(None, [], 60), [])
        self.assertEqual(generate_slots(unsaved_schedule(is_active=False), [], 60), [])

    def test_duration_longer_than_day(self):
        self.assertEqual(generate_slots(unsaved_schedule(), [], 481), [])

    def test_buffer_widens_sessions(self):
        sessions = [unsaved_session(time(10, 0), 45)]

        slots = generate_slots(unsaved_schedule(), sessions, 60, buffer_minutes=15)

        self.assertNotIn('09:00', slots)
        self.assertNotIn('10:45', slots)
        self.assertIn('11:00', slots)

    def test_custom_step(self):
        schedule = unsaved_schedule(break_start=None, break_end=None)

        slots = generate_slots(schedule, [], 60, step_minutes=60)

        self.assertEqual(slots, [f"{hour:02d}:00" for hour in range(9, 17)])

    def test_generated_slots_have_no_conflicts(self):
        """Test that every generated slot passes the conflict check."""
        schedule = unsaved_schedule()
        sessions = [
            unsaved_session(time(9, 30), 45),
            unsaved_session(time(11, 0), 30),
            unsaved_session(time(14, 10), 50),
            unsaved_session(time(16, 15), 20),
        ]

        for duration in (15, 30, 45, 60, 90):
            for buffer_minutes in (0, 5):
                slots = generate_slots(schedule, sessions, duration, buffer_minutes=buffer_minutes)
                for slot in slots:
                    with self.subTest(duration=duration, slot=slot):
                        self.assertEqual(
                            evaluate_candidate(slot, duration, schedule, sessions), []
                        )


class PolicyValidatorTests(SimpleTestCase):
    """Test policy validation and merging."""

    def policy(self, **kwargs):
        fields = {'allow_weekends': True, 'min_advance_days': 0, 'max_advance_days': 365}
        fields.update(kwargs)
        return SchedulingPolicy(**fields)

    def kinds(self, violations):
        return [v.kind for v in violations]

    def test_no_policy(self):
        self.assertEqual(validate_policy(MONDAY, '10:00', None), [])

    def test_min_advance_boundary(self):
        """Test that two days out violates a three-day minimum and three does not."""
        policy = self.policy(min_advance_days=3)

        two_days = validate_policy(date(2024, 1, 3), '10:00', policy, today=MONDAY)
        three_days = validate_policy(date(2024, 1, 4), '10:00', policy, today=MONDAY)

        self.assertEqual(self.kinds(two_days), [ViolationKind.TOO_SOON])
        self.assertEqual(three_days, [])

    def test_max_advance(self):
        policy = self.policy(max_advance_days=30)

        at_limit = validate_policy(date(2024, 1, 31), '10:00', policy, today=MONDAY)
        beyond = validate_policy(date(2024, 2, 1), '10:00', policy, today=MONDAY)

        self.assertEqual(at_limit, [])
        self.assertEqual(self.kinds(beyond), [ViolationKind.TOO_FAR_AHEAD])

    def test_weekend_rule(self):
        policy = self.policy(allow_weekends=False)

        self.assertEqual(
            self.kinds(validate_policy(SATURDAY, '10:00', policy, today=MONDAY)),
            [ViolationKind.WEEKEND_NOT_ALLOWED]
        )
        self.assertEqual(
            self.kinds(validate_policy(SUNDAY, '10:00', policy, today=MONDAY)),
            [ViolationKind.WEEKEND_NOT_ALLOWED]
        )
        self.assertEqual(validate_policy(date(2024, 1, 5), '10:00', policy, today=MONDAY), [])

    def test_preferred_slots(self):
        policy = self.policy(preferred_slots=frozenset({'09:00', '14:00'}))

        self.assertEqual(
            self.kinds(validate_policy(TUESDAY, '10:00', policy, today=MONDAY)),
            [ViolationKind.NOT_PREFERRED_SLOT]
        )
        self.assertEqual(validate_policy(TUESDAY, '9:00', policy, today=MONDAY), [])

    def test_avoided_slots(self):
        policy = self.policy(avoided_slots=frozenset({'12:00'}))

        violations = validate_policy(TUESDAY, '12:00', policy, today=MONDAY)

        self.assertEqual(self.kinds(violations), [ViolationKind.AVOIDED_SLOT])
        self.assertIn('12:00', violations[0].message)

    def test_all_rules_evaluated(self):
        policy = SchedulingPolicy(
            allow_weekends=False,
            min_advance_days=10,
            max_advance_days=90,
            preferred_slots=frozenset({'09:00'}),
            avoided_slots=frozenset({'12:00'}),
        )

        violations = validate_policy(SATURDAY, '12:00', policy, today=MONDAY)

        self.assertEqual(
            self.kinds(violations),
            [
                ViolationKind.TOO_SOON,
                ViolationKind.WEEKEND_NOT_ALLOWED,
                ViolationKind.NOT_PREFERRED_SLOT,
                ViolationKind.AVOIDED_SLOT,
            ]
        )

    def test_reference_date_required(self):
        with self.assertRaises(ValueError):
            validate_policy(MONDAY, '10:00', self.policy())

    def test_merge_precedence(self):
        """Test service > therapist > default."""
        default = SchedulingPolicy(min_advance_days=1, max_advance_days=90)
        therapist = PolicyOverride(min_advance_days=2, allow_weekends=True)
        service = PolicyOverride(min_advance_days=5)

        merged = merge_policies(default, therapist, service)

        self.assertEqual(merged.min_advance_days, 5)
        self.assertTrue(merged.allow_weekends)
        self.assertEqual(merged.max_advance_days, 90)

    def test_merge_skips_missing_layers(self):
        default = SchedulingPolicy(min_advance_days=1)

        self.assertEqual(merge_policies(default, None, None), default)

    def test_merge_replaces_slot_sets(self):
        default = SchedulingPolicy(preferred_slots=frozenset({'09:00', '10:00'}))
        service = PolicyOverride(preferred_slots=frozenset({'15:00'}))

        self.assertEqual(merge_policies(default, None, service).preferred_slots, {'15:00'})

    def test_default_policy_from_settings(self):
        policy = default_policy()

        self.assertFalse(policy.allow_weekends)
        self.assertEqual(policy.min_advance_days, 1)
        self.assertEqual(policy.max_advance_days, 90)
        self.assertIn('09:00', policy.preferred_slots)
        self.assertIn('12:00', policy.avoided_slots)

    @override_settings(SCHEDULING={'DEFAULT_POLICY': {'allow_weekends': True}})
    def test_default_policy_override_merges_keys(self):
        policy = default_policy()

        self.assertTrue(policy.allow_weekends)
        self.assertEqual(policy.min_advance_days, 1)


class RecurrenceExpanderTests(SimpleTestCase):
    """Test recurrence expansion."""

    def test_biweekly(self):
        pattern = RecurrencePattern(frequency=Frequency.BIWEEKLY, occurrence_cap=3)

        self.assertEqual(
            expand(MONDAY, pattern),
            [date(2024, 1, 1), date(2024, 1, 15), date(2024, 1, 29)]
        )

    def test_weekly_cap(self):
        """Test that a weekly cap of N yields N increasing dates on the anchor weekday."""
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=10)

        dates = expand(date(2024, 3, 13), pattern)

        self.assertEqual(len(dates), 10)
        self.assertTrue(all(d.weekday() == 2 for d in dates))
        self.assertTrue(all(a < b for a, b in zip(dates, dates[1:])))

    def test_daily(self):
        pattern = RecurrencePattern(frequency=Frequency.DAILY, occurrence_cap=5)

        self.assertEqual(
            expand(MONDAY, pattern),
            [date(2024, 1, day) for day in range(1, 6)]
        )

    def test_weekly_days_of_week(self):
        """Test that days_of_week uses 0=Sunday numbering."""
        pattern = RecurrencePattern(
            frequency=Frequency.WEEKLY,
            occurrence_cap=4,
            days_of_week=frozenset({1, 3}),
        )

        self.assertEqual(
            expand(MONDAY, pattern),
            [date(2024, 1, 1), date(2024, 1, 3), date(2024, 1, 8), date(2024, 1, 10)]
        )

    def test_biweekly_days_of_week(self):
        pattern = RecurrencePattern(
            frequency=Frequency.BIWEEKLY,
            occurrence_cap=4,
            days_of_week=frozenset({1, 5}),
        )

        self.assertEqual(
            expand(MONDAY, pattern),
            [date(2024, 1, 1), date(2024, 1, 5), date(2024, 1, 15), date(2024, 1, 19)]
        )

    def test_end_date_is_inclusive(self):
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, end_date=date(2024, 1, 22))

        self.assertEqual(
            expand(MONDAY, pattern),
            [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]
        )

    def test_cap_and_end_date_whichever_first(self):
        pattern = RecurrencePattern(
            frequency=Frequency.DAILY,
            occurrence_cap=3,
            end_date=date(2024, 1, 31),
        )

        self.assertEqual(len(expand(MONDAY, pattern)), 3)

    def test_default_cap(self):
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY)

        self.assertEqual(len(expand(MONDAY, pattern)), 52)

    @override_settings(SCHEDULING={'DEFAULT_OCCURRENCE_CAP': 4})
    def test_default_cap_from_settings(self):
        pattern = RecurrencePattern(frequency=Frequency.DAILY)

        self.assertEqual(len(expand(MONDAY, pattern)), 4)

    def test_monthly_anchor_day(self):
        """Test that months without the anchor's day are skipped."""
        pattern = RecurrencePattern(frequency=Frequency.MONTHLY, occurrence_cap=3)

        self.assertEqual(
            expand(date(2024, 1, 31), pattern),
            [date(2024, 1, 31), date(2024, 3, 31), date(2024, 5, 31)]
        )

    def test_monthly_day_of_month(self):
        pattern = RecurrencePattern(
            frequency=Frequency.MONTHLY,
            occurrence_cap=2,
            day_of_month=15,
        )

        self.assertEqual(expand(MONDAY, pattern), [date(2024, 1, 15), date(2024, 2, 15)])

    def test_non_positive_cap(self):
        self.assertEqual(expand(MONDAY, RecurrencePattern(Frequency.DAILY, occurrence_cap=0)), [])
        self.assertEqual(expand(MONDAY, RecurrencePattern(Frequency.DAILY, occurrence_cap=-5)), [])

    def test_scan_is_bounded(self):
        pattern = RecurrencePattern(
            frequency=Frequency.MONTHLY,
            occurrence_cap=100,
            day_of_month=31,
        )

        self.assertEqual(expand(MONDAY, pattern, max_scan_days=60), [date(2024, 1, 31)])

    def test_empty_days_of_week_uses_anchor(self):
        pattern = RecurrencePattern(
            frequency=Frequency.WEEKLY,
            occurrence_cap=2,
            days_of_week=frozenset(),
        )

        self.assertEqual(expand(MONDAY, pattern), [date(2024, 1, 1), date(2024, 1, 8)])

    def test_sunday_based_weekday(self):
        self.assertEqual(sunday_based_weekday(SUNDAY), 0)
        self.assertEqual(sunday_based_weekday(MONDAY), 1)
        self.assertEqual(sunday_based_weekday(SATURDAY), 6)


class ModelTests(TestCase):
    """Test model validation and properties."""

    def test_schedule_end_before_start(self):
        with self.assertRaises(ValidationError):
            make_schedule(start_time=time(17, 0), end_time=time(9, 0))

    def test_break_outside_working_hours(self):
        with self.assertRaises(ValidationError):
            make_schedule(break_start=time(8, 0), break_end=time(9, 30))

    def test_break_needs_both_ends(self):
        with self.assertRaises(ValidationError):
            make_schedule(break_end=None)

    def test_schedule_without_break(self):
        schedule = make_schedule(break_start=None, break_end=None)

        self.assertFalse(schedule.has_break)
        self.assertEqual(schedule.weekday_name, 'Monday')

    def test_session_properties(self):
        session = make_session(start=time(10, 0), duration=90)

        self.assertEqual(session.end_time, time(11, 30))
        self.assertEqual(session.time_label, '10:00')
        self.assertEqual(session.end_minutes, 690)
        self.assertTrue(session.occupies_capacity)
        self.assertFalse(session.is_recurring)

        session.status = 'CANCELLED'
        self.assertFalse(session.occupies_capacity)

    def test_rule_to_override(self):
        rule = SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_THERAPIST,
            scope_id=THERAPIST_ID,
            allow_weekends=True,
            preferred_slots=['9:00', '10:00'],
        )

        override = rule.to_override()

        self.assertTrue(override.allow_weekends)
        self.assertIsNone(override.min_advance_days)
        self.assertEqual(override.preferred_slots, {'09:00', '10:00'})
        self.assertIsNone(override.avoided_slots)

    def test_rule_rejects_bad_slots(self):
        with self.assertRaises(ValidationError):
            SchedulingRule.objects.create(
                scope=SchedulingRule.SCOPE_SERVICE,
                scope_id=SERVICE_ID,
                avoided_slots=['lunch'],
            )

    def test_rule_rejects_inverted_window(self):
        with self.assertRaises(ValidationError):
            SchedulingRule.objects.create(
                scope=SchedulingRule.SCOPE_SERVICE,
                scope_id=SERVICE_ID,
                min_advance_days=10,
                max_advance_days=5,
            )


class ScheduleStoreTests(TestCase):
    """Test the persistence boundary."""

    def setUp(self):
        self.store = ScheduleStore()

    def test_day_lock_is_stable_and_reentrant(self):
        lock = day_lock(THERAPIST_ID, MONDAY)

        self.assertIs(day_lock(THERAPIST_ID, MONDAY), lock)
        with lock:
            with day_lock(THERAPIST_ID, MONDAY):
                pass

    def test_day_locks_are_unique_and_ordered(self):
        days = [MONDAY, TUESDAY, MONDAY, SATURDAY]

        locks = day_locks(THERAPIST_ID, days)

        self.assertEqual(len(locks), len({id(lock) for lock in locks}))
        self.assertIn(day_lock(THERAPIST_ID, TUESDAY), locks)
        self.assertEqual(locks, day_locks(THERAPIST_ID, list(reversed(days))))

    def test_lock_days_holds_every_day_lock(self):
        """Test that another thread cannot take any covered day lock."""
        days = [MONDAY, TUESDAY, SATURDAY]
        acquired = []

        def try_locks():
            for day in days:
                lock = day_lock(THERAPIST_ID, day)
                if lock.acquire(blocking=False):
                    acquired.append(day)
                    lock.release()

        with self.store.lock_days(THERAPIST_ID, days):
            worker = threading.Thread(target=try_locks)
            worker.start()
            worker.join()

        self.assertEqual(acquired, [])

    def test_active_sessions_ordered_and_filtered(self):
        later = make_session(start=time(14, 0))
        earlier = make_session(start=time(9, 0))
        make_session(start=time(11, 0), status='CANCELLED')
        make_session(day=TUESDAY, start=time(9, 0))

        sessions = self.store.get_active_sessions(THERAPIST_ID, MONDAY)

        self.assertEqual([s.pk for s in sessions], [earlier.pk, later.pk])

    def test_manager_active_filters(self):
        make_schedule(weekday=0)
        make_schedule(weekday=1, is_active=False)
        make_session(start=time(9, 0))
        make_session(start=time(10, 0), status='COMPLETED')

        self.assertEqual(WorkingSchedule.objects.active().count(), 1)
        self.assertEqual(BookedSession.objects.active().count(), 1)
        self.assertEqual(WorkingSchedule.objects.for_therapist(THERAPIST_ID).count(), 2)

    def test_working_schedule_for_day(self):
        schedule = make_schedule(weekday=0)

        self.assertEqual(self.store.get_working_schedule(THERAPIST_ID, MONDAY), schedule)
        self.assertIsNone(self.store.get_working_schedule(THERAPIST_ID, TUESDAY))

    def test_get_missing_session(self):
        with self.assertRaises(SessionNotFound):
            self.store.get_session(uuid.uuid4())

    def test_policy_override_lookup(self):
        SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_SERVICE,
            scope_id=SERVICE_ID,
            min_advance_days=2,
        )

        self.assertEqual(
            self.store.get_policy_override('service', SERVICE_ID).min_advance_days, 2
        )
        self.assertIsNone(self.store.get_policy_override('therapist', THERAPIST_ID))
        self.assertIsNone(self.store.get_policy_override('service', None))


class BookingServiceTests(TestCase):
    """Test single and recurring bookings."""

    def setUp(self):
        """Create a Monday-Friday schedule."""
        for weekday in range(5):
            make_schedule(weekday=weekday)

    def test_book_single_session(self):
        result = services.book_session(make_request(notes='Initial assessment'), today=MONDAY)

        self.assertTrue(result.success)
        self.assertEqual(len(result.sessions), 1)
        session = BookedSession.objects.get()
        self.assertEqual(session.status, 'SCHEDULED')
        self.assertEqual(session.scheduled_time, time(10, 0))
        self.assertEqual(session.notes, 'Initial assessment')
        self.assertIsNone(session.series_id)

    def test_booked_slot_conflicts_with_itself(self):
        """Test that re-checking a just-booked slot reports an overlap."""
        services.book_session(make_request(), today=MONDAY)

        conflicts = detect_conflicts(ScheduleStore(), THERAPIST_ID, MONDAY, '10:00', 60)

        self.assertEqual([c.type for c in conflicts], [ConflictType.SESSION_OVERLAP])

    def test_conflicting_booking_rejected(self):
        services.book_session(make_request(), today=MONDAY)

        result = services.book_session(make_request(scheduled_time='10:30'), today=MONDAY)

        self.assertEqual(result.outcome, BookingOutcome.CONFLICT)
        self.assertEqual(
            result.recommendations,
            [RECOMMENDATIONS[ConflictType.SESSION_OVERLAP]]
        )
        self.assertEqual(BookedSession.objects.count(), 1)

    def test_policy_violation_rejected(self):
        policy = SchedulingPolicy(min_advance_days=3, max_advance_days=90)

        result = services.book_session(
            make_request(scheduled_date=date(2024, 1, 3), policy=policy),
            today=MONDAY
        )

        self.assertEqual(result.outcome, BookingOutcome.POLICY_VIOLATION)
        self.assertEqual([v.kind for v in result.violations], [ViolationKind.TOO_SOON])
        self.assertFalse(BookedSession.objects.exists())

    def test_conflicts_checked_before_policy(self):
        policy = SchedulingPolicy(min_advance_days=30, max_advance_days=90)

        result = services.book_session(
            make_request(scheduled_time='12:30', policy=policy),
            today=MONDAY
        )

        self.assertEqual(result.outcome, BookingOutcome.CONFLICT)
        self.assertEqual(result.violations, [])

    def test_slot_taken_after_check_is_rejected(self):
        """Test that the unique constraint catches a write that raced past the check."""
        make_session(start=time(10, 0))

        with mock.patch('scheduling.services.detect_conflicts', return_value=[]):
            with self.assertLogs('scheduling.services', level='WARNING'):
                result = services.book_session(make_request(), today=MONDAY)

        self.assertEqual(result.outcome, BookingOutcome.CONFLICT)
        self.assertEqual(result.conflicts[0].type, ConflictType.SESSION_OVERLAP)
        self.assertEqual(BookedSession.objects.count(), 1)

    def test_cancelled_slot_can_be_rebooked(self):
        make_session(start=time(10, 0), status='CANCELLED')

        result = services.book_session(make_request(), today=MONDAY)

        self.assertTrue(result.success)
        self.assertEqual(BookedSession.objects.count(), 2)

    def test_recurring_weekly(self):
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=4)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertTrue(result.success)
        self.assertEqual(
            [s.scheduled_date for s in result.sessions],
            [date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15), date(2024, 1, 22)]
        )
        series_ids = {s.series_id for s in result.sessions}
        self.assertEqual(len(series_ids), 1)
        series_id = series_ids.pop()
        self.assertIsNotNone(series_id)
        self.assertEqual(BookedSession.objects.for_series(series_id).count(), 4)
        self.assertEqual(result.skipped, [])

    def test_recurring_skips_colliding_occurrences(self):
        make_session(day=date(2024, 1, 15), start=time(10, 0))
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=4)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertTrue(result.success)
        self.assertEqual(len(result.sessions), 3)
        self.assertEqual([s.scheduled_date for s in result.skipped], [date(2024, 1, 15)])
        self.assertEqual(
            result.skipped[0].conflicts[0].type, ConflictType.SESSION_OVERLAP
        )
        self.assertEqual(BookedSession.objects.count(), 4)

    def test_recurring_daily_skips_days_without_schedule(self):
        pattern = RecurrencePattern(frequency=Frequency.DAILY, occurrence_cap=7)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertEqual(len(result.sessions), 5)
        self.assertEqual([s.scheduled_date for s in result.skipped], [SATURDAY, SUNDAY])
        self.assertEqual(result.skipped[0].conflicts[0].type, ConflictType.NO_SCHEDULE)

    @override_settings(SCHEDULING={'RECURRING_CONFLICT_MODE': 'abort'})
    def test_recurring_abort_mode_books_nothing(self):
        existing = make_session(day=date(2024, 1, 15), start=time(10, 0))
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=4)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertEqual(result.outcome, BookingOutcome.CONFLICT)
        self.assertEqual(result.sessions, [])
        self.assertEqual(len(result.skipped), 1)
        self.assertEqual(list(BookedSession.objects.all()), [existing])

    @override_settings(SCHEDULING={'RECURRING_CONFLICT_MODE': 'abort'})
    def test_recurring_abort_mode_clean_series(self):
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=3)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertTrue(result.success)
        self.assertEqual(BookedSession.objects.count(), 3)

    @override_settings(SCHEDULING={'RECURRING_CONFLICT_MODE': 'abort'})
    def test_recurring_abort_mode_locks_all_days_together(self):
        """Test that an all-or-nothing series takes every day lock in one unit."""
        locked = []

        class RecordingStore(ScheduleStore):
            def lock_days(self, therapist_id, days):
                locked.append(list(days))
                return super().lock_days(therapist_id, days)

        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=3)

        result = services.book_session(
            make_request(recurrence=pattern), today=MONDAY, store=RecordingStore()
        )

        self.assertTrue(result.success)
        self.assertIn([date(2024, 1, 1), date(2024, 1, 8), date(2024, 1, 15)], locked)

    def test_series_policy_applies_to_anchor_only(self):
        """Test that weekend occurrences of a weekday-anchored series are booked."""
        make_schedule(weekday=5)
        make_schedule(weekday=6)
        policy = SchedulingPolicy(allow_weekends=False, min_advance_days=0, max_advance_days=365)
        pattern = RecurrencePattern(
            frequency=Frequency.WEEKLY,
            occurrence_cap=2,
            days_of_week=frozenset({0, 6}),
        )

        result = services.book_session(
            make_request(scheduled_date=date(2024, 1, 5), recurrence=pattern, policy=policy),
            today=MONDAY
        )

        self.assertTrue(result.success)
        self.assertEqual([s.scheduled_date for s in result.sessions], [SATURDAY, SUNDAY])

    def test_recurring_anchor_conflict_rejects_series(self):
        make_session(start=time(10, 0))
        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=4)

        result = services.book_session(make_request(recurrence=pattern), today=MONDAY)

        self.assertEqual(result.outcome, BookingOutcome.CONFLICT)
        self.assertEqual(result.recurrence, pattern)
        self.assertEqual(BookedSession.objects.count(), 1)

    def test_recurring_persistence_failure_is_isolated(self):
        """Test that one occurrence failing to save does not stop the others."""

        class FlakyStore(ScheduleStore):
            def create_session(self, **kwargs):
                if kwargs['scheduled_date'] == date(2024, 1, 8):
                    raise DatabaseError("write failed")
                return super().create_session(**kwargs)

        pattern = RecurrencePattern(frequency=Frequency.WEEKLY, occurrence_cap=3)

        with self.assertLogs('scheduling.services', level='ERROR'):
            result = services.book_session(
                make_request(recurrence=pattern), today=MONDAY, store=FlakyStore()
            )

        self.assertTrue(result.success)
        self.assertEqual(
            [s.scheduled_date for s in result.sessions],
            [date(2024, 1, 1), date(2024, 1, 15)]
        )
        self.assertEqual(result.skipped[0].scheduled_date, date(2024, 1, 8))
        self.assertEqual(result.skipped[0].error, 'write failed')


class ConcurrentBookingTests(TransactionTestCase):
    """Test that simultaneous bookers never double-book a therapist."""

    def setUp(self):
        make_schedule(weekday=0)

    def test_overlapping_bookings_race(self):
        """Test that of two overlapping bookings started together exactly one is stored."""
        barrier = threading.Barrier(2)
        outcomes = []
        errors = []

        def book(start):
            try:
                barrier.wait()
                result = services.book_session(make_request(scheduled_time=start), today=MONDAY)
                outcomes.append(result.outcome)
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=book, args=(start,)) for start in ('10:00', '10:30')]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(
            sorted(outcome.value for outcome in outcomes),
            ['BOOKED', 'CONFLICT']
        )
        self.assertEqual(BookedSession.objects.count(), 1)


class AvailabilityServiceTests(TestCase):
    """Test availability and rule lookups."""

    def setUp(self):
        make_schedule(weekday=0)

    def test_available_slots_pass_conflict_check(self):
        make_session(start=time(10, 0), duration=45)
        make_session(start=time(15, 0), duration=30)
        store = ScheduleStore()

        result = services.check_availability(THERAPIST_ID, SERVICE_ID, MONDAY, 60, store=store)

        self.assertTrue(result.available)
        self.assertEqual(len(result.existing_sessions), 2)
        for slot in result.available_slots:
            with self.subTest(slot=slot):
                self.assertEqual(
                    detect_conflicts(store, THERAPIST_ID, MONDAY, slot, 60), []
                )

    def test_no_schedule(self):
        result = services.check_availability(THERAPIST_ID, SERVICE_ID, SUNDAY, 60)

        self.assertFalse(result.available)
        self.assertEqual(result.available_slots, [])
        self.assertEqual(result.reason, 'Therapist not scheduled for this day')

    @override_settings(SCHEDULING={'SLOT_INTERVAL_MINUTES': 60})
    def test_slot_interval_setting(self):
        result = services.check_availability(THERAPIST_ID, SERVICE_ID, MONDAY, 60)

        self.assertEqual(
            result.available_slots,
            ['09:00', '10:00', '11:00', '13:00', '14:00', '15:00', '16:00']
        )

    def test_check_conflicts_pairs_recommendations(self):
        conflicts, recommendations = services.check_conflicts(
            THERAPIST_ID, MONDAY, '12:30', 60
        )

        self.assertEqual([c.type for c in conflicts], [ConflictType.BREAK_TIME_CONFLICT])
        self.assertEqual(
            recommendations, [RECOMMENDATIONS[ConflictType.BREAK_TIME_CONFLICT]]
        )

    def test_effective_policy(self):
        SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_THERAPIST,
            scope_id=THERAPIST_ID,
            allow_weekends=True,
            min_advance_days=2,
        )
        SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_SERVICE,
            scope_id=SERVICE_ID,
            min_advance_days=5,
        )

        layers = services.get_effective_policy(THERAPIST_ID, SERVICE_ID)

        effective = layers['effective']
        self.assertTrue(effective.allow_weekends)
        self.assertEqual(effective.min_advance_days, 5)
        self.assertEqual(effective.max_advance_days, layers['default'].max_advance_days)


class RescheduleServiceTests(TestCase):
    """Test rescheduling."""

    def setUp(self):
        make_schedule(weekday=0)
        make_schedule(weekday=1)
        self.session = make_session(start=time(10, 0), notes='Initial')
        self.dispatcher = mock.Mock()

    def reschedule(self, new_date=TUESDAY, new_time='14:00', **kwargs):
        kwargs.setdefault('dispatcher', self.dispatcher)
        return services.reschedule_session(
            self.session.pk, new_date, new_time, 'Therapist training day', **kwargs
        )

    def test_reschedule(self):
        result = self.reschedule()

        self.assertTrue(result.success)
        self.session.refresh_from_db()
        self.assertEqual(self.session.scheduled_date, TUESDAY)
        self.assertEqual(self.session.scheduled_time, time(14, 0))
        self.assertEqual(self.session.notes, 'Initial\nRescheduled: Therapist training day')

        self.dispatcher.notify_reschedule.assert_called_once()
        old, new, reason = self.dispatcher.notify_reschedule.call_args.args
        self.assertEqual(old.scheduled_date, MONDAY)
        self.assertEqual(new.scheduled_date, TUESDAY)
        self.assertEqual(reason, 'Therapist training day')
        self.assertEqual(
            self.dispatcher.notify_reschedule.call_args.kwargs,
            {'notify_patient': True, 'notify_therapist': True}
        )

    def test_reschedule_to_own_slot(self):
        """Test that moving a session onto its own slot reports no conflicts."""
        conflicts = detect_conflicts(
            ScheduleStore(), THERAPIST_ID, MONDAY, '10:00', 60,
            exclude_session_id=self.session.pk
        )
        self.assertEqual(conflicts, [])

        result = self.reschedule(new_date=MONDAY, new_time='10:00')

        self.assertTrue(result.success)

    def test_reschedule_conflict(self):
        make_session(day=TUESDAY, start=time(14, 0))

        result = self.reschedule()

        self.assertFalse(result.success)
        self.assertEqual(result.conflicts[0].type, ConflictType.SESSION_OVERLAP)
        self.session.refresh_from_db()
        self.assertEqual(self.session.scheduled_date, MONDAY)
        self.dispatcher.notify_reschedule.assert_not_called()

    def test_reschedule_missing_session(self):
        with self.assertRaises(SessionNotFound):
            services.reschedule_session(uuid.uuid4(), TUESDAY, '14:00', 'Therapist unavailable')

    def test_notification_failure_does_not_fail_reschedule(self):
        self.dispatcher.notify_reschedule.side_effect = RuntimeError("mail server down")

        with self.assertLogs('scheduling.notifications', level='ERROR'):
            result = self.reschedule()

        self.assertTrue(result.success)
        self.session.refresh_from_db()
        self.assertEqual(self.session.scheduled_date, TUESDAY)

    @override_settings(SCHEDULING={'NOTIFICATION_DISPATCHER': 'scheduling.notifications.NoSuchDispatcher'})
    def test_misconfigured_dispatcher_does_not_fail_reschedule(self):
        with self.assertLogs('scheduling.notifications', level='ERROR'):
            result = self.reschedule(dispatcher=None)

        self.assertTrue(result.success)
        self.session.refresh_from_db()
        self.assertEqual(self.session.scheduled_time, time(14, 0))

    def test_no_notification_requested(self):
        result = self.reschedule(notify_patient=False, notify_therapist=False)

        self.assertTrue(result.success)
        self.dispatcher.notify_reschedule.assert_not_called()

    def test_default_dispatcher_logs(self):
        with self.assertLogs('scheduling.notifications', level='INFO') as logs:
            self.reschedule(dispatcher=None, notify_therapist=False)

        self.assertIn(f"patient {PATIENT_ID}", logs.output[0])
        self.assertNotIn(f"therapist {THERAPIST_ID}", logs.output[0])


class BulkScheduleServiceTests(TestCase):
    """Test bulk scheduling."""

    def setUp(self):
        make_schedule(weekday=0)

    def payload(self, scheduled_time, **kwargs):
        data = {
            'patient_id': str(PATIENT_ID),
            'therapist_id': str(THERAPIST_ID),
            'service_id': str(SERVICE_ID),
            'scheduled_date': '2024-01-01',
            'scheduled_time': scheduled_time,
            'duration_minutes': 45,
        }
        data.update(kwargs)
        return data

    def test_one_conflict_in_five(self):
        """Test that a conflicting item fails alone and the rest are booked."""
        make_session(start=time(11, 0), duration=60)
        payloads = [self.payload(t) for t in ['09:00', '10:00', '11:00', '14:00', '15:00']]

        result = services.bulk_schedule(payloads, today=MONDAY)

        self.assertEqual(result.summary, {'total': 5, 'successful': 4, 'failed': 1})
        self.assertEqual(result.failed[0].index, 2)
        self.assertEqual(result.failed[0].error, 'Scheduling conflicts detected')
        self.assertEqual(
            [item.index for item in result.successful], [0, 1, 3, 4]
        )
        self.assertEqual(BookedSession.objects.count(), 5)

    def test_validation_failure(self):
        payloads = [self.payload('25:00'), self.payload('09:00')]

        result = services.bulk_schedule(payloads, today=MONDAY)

        self.assertEqual(result.summary, {'total': 2, 'successful': 1, 'failed': 1})
        self.assertEqual(result.failed[0].error, 'Validation failed')
        self.assertIn('scheduled_time', result.failed[0].details)

    def test_policy_failure(self):
        policy = {'min_advance_days': 3, 'max_advance_days': 90}

        result = services.bulk_schedule([self.payload('09:00', policy=policy)], today=MONDAY)

        self.assertEqual(result.failed[0].error, 'Scheduling rule violations')
        self.assertEqual(result.failed[0].violations[0].kind, ViolationKind.TOO_SOON)

    def test_unexpected_error_is_contained(self):
        real_book_session = services.book_session

        def flaky(request, **kwargs):
            if request.scheduled_time == '09:00':
                raise RuntimeError("boom")
            return real_book_session(request, **kwargs)

        payloads = [self.payload('09:00'), self.payload('10:00')]

        with mock.patch('scheduling.services.book_session', side_effect=flaky):
            with self.assertLogs('scheduling.services', level='ERROR'):
                result = services.bulk_schedule(payloads, today=MONDAY)

        self.assertEqual(result.summary, {'total': 2, 'successful': 1, 'failed': 1})
        self.assertEqual(result.failed[0].error, 'boom')

    def test_items_in_same_batch_conflict_with_each_other(self):
        payloads = [self.payload('09:00'), self.payload('09:15')]

        result = services.bulk_schedule(payloads, today=MONDAY)

        self.assertEqual(result.summary, {'total': 2, 'successful': 1, 'failed': 1})
        self.assertEqual(result.failed[0].index, 1)


class SchedulingAPITests(APITestCase):
    """Test scheduling API endpoints."""

    def setUp(self):
        """Set up test client and a Monday schedule."""
        self.client = APIClient()
        make_schedule(weekday=0)

    def book_payload(self, **kwargs):
        data = {
            'patient_id': str(PATIENT_ID),
            'therapist_id': str(THERAPIST_ID),
            'service_id': str(SERVICE_ID),
            'scheduled_date': '2024-01-01',
            'scheduled_time': '10:00',
            'duration_minutes': 60,
        }
        data.update(kwargs)
        return data

    def test_availability(self):
        make_session(start=time(10, 0), duration=45)

        response = self.client.get('/api/scheduling/availability/', {
            'therapist_id': str(THERAPIST_ID),
            'service_id': str(SERVICE_ID),
            'date': '2024-01-01',
            'duration': 60,
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['available'])
        self.assertIn('09:00', response.data['available_slots'])
        self.assertNotIn('10:00', response.data['available_slots'])
        self.assertEqual(response.data['therapist_schedule']['start_time'], '09:00')
        self.assertEqual(response.data['existing_sessions'][0]['time'], '10:00')

    def test_availability_without_schedule(self):
        response = self.client.get('/api/scheduling/availability/', {
            'therapist_id': str(THERAPIST_ID),
            'service_id': str(SERVICE_ID),
            'date': '2024-01-07',
            'duration': 60,
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['available'])
        self.assertEqual(response.data['reason'], 'Therapist not scheduled for this day')

    def test_availability_requires_parameters(self):
        response = self.client.get('/api/scheduling/availability/', {
            'therapist_id': str(THERAPIST_ID),
        })

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_conflicts(self):
        response = self.client.get('/api/scheduling/conflicts/', {
            'therapist_id': str(THERAPIST_ID),
            'date': '2024-01-01',
            'time': '12:30',
            'duration': 60,
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['has_conflicts'])
        self.assertEqual(response.data['conflicts'][0]['type'], 'BREAK_TIME_CONFLICT')
        self.assertEqual(len(response.data['recommendations']), 1)

    def test_rules(self):
        SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_THERAPIST,
            scope_id=THERAPIST_ID,
            allow_weekends=True,
        )
        SchedulingRule.objects.create(
            scope=SchedulingRule.SCOPE_SERVICE,
            scope_id=SERVICE_ID,
            min_advance_days=5,
        )

        response = self.client.get('/api/scheduling/rules/', {
            'therapist_id': str(THERAPIST_ID),
            'service_id': str(SERVICE_ID),
        })

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['therapist'], {'allow_weekends': True})
        self.assertTrue(response.data['effective']['allow_weekends'])
        self.assertEqual(response.data['effective']['min_advance_days'], 5)
        self.assertEqual(response.data['default']['min_advance_days'], 1)

    def test_rules_without_overrides(self):
        response = self.client.get('/api/scheduling/rules/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIsNone(response.data['therapist'])
        self.assertEqual(response.data['effective'], response.data['default'])

    def test_book_session(self):
        response = self.client.post(
            '/api/scheduling/sessions/', self.book_payload(scheduled_time='9:30'), format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['total_sessions'], 1)
        self.assertFalse(response.data['is_recurring'])
        self.assertEqual(response.data['sessions'][0]['scheduled_time'], '09:30')
        self.assertEqual(response.data['sessions'][0]['end_time'], '10:30')

    def test_book_session_conflict(self):
        make_session(start=time(10, 0))

        response = self.client.post('/api/scheduling/sessions/', self.book_payload(), format='json')

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['conflicts'][0]['type'], 'SESSION_OVERLAP')
        self.assertEqual(
            response.data['recommendations'],
            [RECOMMENDATIONS[ConflictType.SESSION_OVERLAP]]
        )

    def test_book_session_policy_violation(self):
        payload = self.book_payload(policy={'min_advance_days': 3, 'max_advance_days': 90})

        response = self.client.post('/api/scheduling/sessions/', payload, format='json')

        self.assertEqual(response.status_code, status.HTTP_422_UNPROCESSABLE_ENTITY)
        self.assertEqual(response.data['violations'][0]['kind'], 'TOO_SOON')

    def test_book_session_invalid_input(self):
        for overrides in [
            {'scheduled_time': '9:75'},
            {'duration_minutes': 10},
            {'duration_minutes': 481},
            {'therapist_id': 'not-a-uuid'},
            {'policy': {'min_advance_days': 10, 'max_advance_days': 5}},
            {'recurrence': {'frequency': 'YEARLY'}},
        ]:
            with self.subTest(overrides=overrides):
                response = self.client.post(
                    '/api/scheduling/sessions/', self.book_payload(**overrides), format='json'
                )
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_book_recurring_series(self):
        payload = self.book_payload(recurrence={'frequency': 'BIWEEKLY', 'occurrences': 3})

        response = self.client.post('/api/scheduling/sessions/', payload, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['is_recurring'])
        self.assertEqual(
            [s['scheduled_date'] for s in response.data['sessions']],
            ['2024-01-01', '2024-01-15', '2024-01-29']
        )
        self.assertEqual(response.data['recurrence']['frequency'], 'BIWEEKLY')

    def test_reschedule(self):
        session = make_session(start=time(10, 0))

        response = self.client.post(
            f'/api/scheduling/sessions/{session.pk}/reschedule/',
            {'new_date': '2024-01-01', 'new_time': '14:00', 'reason': 'Patient asked for afternoon'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['session']['scheduled_time'], '14:00')
        self.assertEqual(response.data['notifications'], {'patient': True, 'therapist': True})

    def test_reschedule_conflict(self):
        session = make_session(start=time(10, 0))
        make_session(start=time(14, 0))

        response = self.client.post(
            f'/api/scheduling/sessions/{session.pk}/reschedule/',
            {'new_date': '2024-01-01', 'new_time': '14:30', 'reason': 'Patient asked for afternoon'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['conflicts'][0]['type'], 'SESSION_OVERLAP')

    def test_reschedule_unknown_session(self):
        response = self.client.post(
            f'/api/scheduling/sessions/{uuid.uuid4()}/reschedule/',
            {'new_date': '2024-01-01', 'new_time': '14:00', 'reason': 'Patient asked for afternoon'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_reschedule_requires_reason(self):
        session = make_session(start=time(10, 0))

        response = self.client.post(
            f'/api/scheduling/sessions/{session.pk}/reschedule/',
            {'new_date': '2024-01-01', 'new_time': '14:00', 'reason': 'short'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_bulk_schedule(self):
        payload = {'sessions': [
            self.book_payload(scheduled_time='09:00'),
            self.book_payload(scheduled_time='09:30'),
            self.book_payload(scheduled_time='bad'),
        ]}

        response = self.client.post('/api/scheduling/sessions/bulk/', payload, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary'], {'total': 3, 'successful': 1, 'failed': 2})
        self.assertEqual(
            [item['error'] for item in response.data['failed']],
            ['Scheduling conflicts detected', 'Validation failed']
        )
        self.assertEqual(response.data['successful'][0]['index'], 0)

    def test_bulk_schedule_malformed_item_fails_alone(self):
        """Test that a non-object item is reported without rejecting the batch."""
        payload = {'sessions': [self.book_payload(), 'not a session']}

        response = self.client.post('/api/scheduling/sessions/bulk/', payload, format='json')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary'], {'total': 2, 'successful': 1, 'failed': 1})
        self.assertEqual(response.data['failed'][0]['index'], 1)
        self.assertEqual(response.data['failed'][0]['error'], 'Validation failed')
        self.assertEqual(BookedSession.objects.count(), 1)

    def test_bulk_schedule_requires_sessions(self):
        response = self.client.post('/api/scheduling/sessions/bulk/', {'sessions': []}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class ManagementCommandTests(TestCase):
    """Test management commands."""

    def setUp(self):
        make_schedule(weekday=0)

    def test_available_slots_command(self):
        out = StringIO()
        call_command('available_slots', str(THERAPIST_ID), '2024-01-01', '--duration=60', stdout=out)

        output = out.getvalue()
        self.assertIn('22 free slot(s)', output)
        self.assertIn('09:00', output)

    def test_available_slots_without_schedule(self):
        out = StringIO()
        call_command('available_slots', str(THERAPIST_ID), '2024-01-07', stdout=out)

        self.assertIn('Therapist not scheduled for this day', out.getvalue())

    def test_available_slots_invalid_date(self):
        with self.assertRaises(CommandError):
            call_command('available_slots', str(THERAPIST_ID), 'tomorrow', stdout=StringIO())
