"""
Data types and constants for the scheduling engine.

This module contains:
- Enums for conflict types, policy violations, recurrence and outcomes
- Value objects passed between the engine components
- Result DTOs returned by the service layer
"""

import enum
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, FrozenSet, List, Optional


# Session statuses that hold capacity and take part in conflict checks.
ACTIVE_STATUSES = ('SCHEDULED', 'CONFIRMED', 'IN_PROGRESS')


class ConflictType(str, enum.Enum):
    SESSION_OVERLAP = 'SESSION_OVERLAP'
    NO_SCHEDULE = 'NO_SCHEDULE'
    OUTSIDE_WORKING_HOURS = 'OUTSIDE_WORKING_HOURS'
    BREAK_TIME_CONFLICT = 'BREAK_TIME_CONFLICT'
    ERROR = 'ERROR'


class ViolationKind(str, enum.Enum):
    TOO_SOON = 'TOO_SOON'
    TOO_FAR_AHEAD = 'TOO_FAR_AHEAD'
    WEEKEND_NOT_ALLOWED = 'WEEKEND_NOT_ALLOWED'
    NOT_PREFERRED_SLOT = 'NOT_PREFERRED_SLOT'
    AVOIDED_SLOT = 'AVOIDED_SLOT'


class Frequency(str, enum.Enum):
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    BIWEEKLY = 'BIWEEKLY'
    MONTHLY = 'MONTHLY'


class BookingOutcome(str, enum.Enum):
    BOOKED = 'BOOKED'
    CONFLICT = 'CONFLICT'
    POLICY_VIOLATION = 'POLICY_VIOLATION'


@dataclass(frozen=True)
class Conflict:
    """A reason a candidate booking cannot occupy a slot."""
    type: ConflictType
    message: str
    session_id: Optional[str] = None
    conflict_time: Optional[str] = None
    conflict_duration: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        data = {'type': self.type.value, 'message': self.message}
        if self.type is ConflictType.SESSION_OVERLAP:
            data.update(
                session_id=self.session_id,
                conflict_time=self.conflict_time,
                conflict_duration=self.conflict_duration,
            )
        return data


@dataclass(frozen=True)
class PolicyViolation:
    """A business rule broken by a candidate booking."""
    kind: ViolationKind
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {'kind': self.kind.value, 'message': self.message}


@dataclass(frozen=True)
class SchedulingPolicy:
    """Effective scheduling rules for one request."""
    allow_weekends: bool = False
    allow_holidays: bool = False
    min_advance_days: int = 0
    max_advance_days: int = 365
    preferred_slots: FrozenSet[str] = frozenset()
    avoided_slots: FrozenSet[str] = frozenset()

    def as_dict(self) -> Dict[str, Any]:
        return {
            'allow_weekends': self.allow_weekends,
            'allow_holidays': self.allow_holidays,
            'min_advance_days': self.min_advance_days,
            'max_advance_days': self.max_advance_days,
            'preferred_slots': sorted(self.preferred_slots),
            'avoided_slots': sorted(self.avoided_slots),
        }


@dataclass(frozen=True)
class PolicyOverride:
    """One layer of a policy merge; None leaves the lower layer's value."""
    allow_weekends: Optional[bool] = None
    allow_holidays: Optional[bool] = None
    min_advance_days: Optional[int] = None
    max_advance_days: Optional[int] = None
    preferred_slots: Optional[FrozenSet[str]] = None
    avoided_slots: Optional[FrozenSet[str]] = None

    def as_dict(self) -> Dict[str, Any]:
        data = {}
        for name in POLICY_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = sorted(value) if isinstance(value, frozenset) else value
        return data


POLICY_FIELDS = (
    'allow_weekends',
    'allow_holidays',
    'min_advance_days',
    'max_advance_days',
    'preferred_slots',
    'avoided_slots',
)


@dataclass(frozen=True)
class RecurrencePattern:
    """
    Rule expanding one booking into dated occurrences.

    days_of_week uses 0=Sunday .. 6=Saturday. interval is carried for
    callers but does not change the stepping.
    """
    frequency: Frequency
    interval: int = 1
    end_date: Optional[date] = None
    occurrence_cap: Optional[int] = None
    days_of_week: Optional[FrozenSet[int]] = None
    day_of_month: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            'frequency': self.frequency.value,
            'interval': self.interval,
            'end_date': self.end_date,
            'occurrences': self.occurrence_cap,
            'days_of_week': sorted(self.days_of_week) if self.days_of_week else None,
            'day_of_month': self.day_of_month,
        }


@dataclass
class BookingRequest:
    """DTO for a single or recurring booking."""
    patient_id: Any
    therapist_id: Any
    service_id: Any
    scheduled_date: date
    scheduled_time: str
    duration_minutes: int
    notes: str = ''
    recurrence: Optional[RecurrencePattern] = None
    policy: Optional[SchedulingPolicy] = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


@dataclass
class SkippedOccurrence:
    """An occurrence of a series that was not persisted."""
    scheduled_date: date
    conflicts: List[Conflict] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class BookingResult:
    outcome: BookingOutcome
    sessions: list = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    violations: List[PolicyViolation] = field(default_factory=list)
    skipped: List[SkippedOccurrence] = field(default_factory=list)
    recurrence: Optional[RecurrencePattern] = None

    @property
    def success(self) -> bool:
        return self.outcome is BookingOutcome.BOOKED


@dataclass
class RescheduleResult:
    session: Any = None
    conflicts: List[Conflict] = field(default_factory=list)
    notify_patient: bool = False
    notify_therapist: bool = False

    @property
    def success(self) -> bool:
        return not self.conflicts


@dataclass
class BulkItemSuccess:
    """One bulk payload that was booked."""
    index: int
    sessions: list = field(default_factory=list)


@dataclass
class BulkItemFailure:
    """One bulk payload that could not be scheduled."""
    index: int
    payload: Any
    error: str
    details: Any = None
    conflicts: List[Conflict] = field(default_factory=list)
    violations: List[PolicyViolation] = field(default_factory=list)


@dataclass
class BulkScheduleResult:
    total: int
    successful: List[BulkItemSuccess] = field(default_factory=list)
    failed: List[BulkItemFailure] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'successful': len(self.successful),
            'failed': len(self.failed),
        }


@dataclass
class AvailabilityResult:
    therapist_id: Any
    service_id: Any
    date: date
    duration_minutes: int
    available: bool
    available_slots: List[str] = field(default_factory=list)
    reason: Optional[str] = None
    schedule: Any = None
    existing_sessions: list = field(default_factory=list)
