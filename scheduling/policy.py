"""
Scheduling policy: validation of a candidate against business rules and
the layered merge of default, therapist and service policies.
"""

from dataclasses import replace
from datetime import date
from typing import List, Mapping, Optional

from .conf import scheduling_settings
from .timeutils import TimeLike, format_time
from .types import (
    POLICY_FIELDS,
    PolicyOverride,
    PolicyViolation,
    SchedulingPolicy,
    ViolationKind,
)


WEEKEND = (5, 6)


def validate_policy(
    day: date,
    start_time: TimeLike,
    policy: Optional[SchedulingPolicy] = None,
    today: Optional[date] = None
) -> List[PolicyViolation]:
    """
    Check a candidate date and time against a scheduling policy.

    Every rule is evaluated; nothing short-circuits.

    Args:
        day: Candidate date
        start_time: Candidate start ("HH:MM" or time)
        policy: Rules to apply; None means no rules
        today: Reference date for the advance-booking window

    Returns:
        List of PolicyViolation, empty when the candidate complies

    Raises:
        ValueError: If a policy is given without a reference date
    """
    if policy is None:
        return []
    if today is None:
        raise ValueError("A reference date is required to check the advance window")

    violations = []
    slot = format_time(start_time)
    days_until = (day - today).days

    if days_until < policy.min_advance_days:
        violations.append(PolicyViolation(
            ViolationKind.TOO_SOON,
            f"Session must be booked at least {policy.min_advance_days} days in advance",
        ))

    if days_until > policy.max_advance_days:
        violations.append(PolicyViolation(
            ViolationKind.TOO_FAR_AHEAD,
            f"Session cannot be booked more than {policy.max_advance_days} days in advance",
        ))

    if not policy.allow_weekends and day.weekday() in WEEKEND:
        violations.append(PolicyViolation(
            ViolationKind.WEEKEND_NOT_ALLOWED,
            'Weekend scheduling is not allowed',
        ))

    if policy.preferred_slots and slot not in policy.preferred_slots:
        violations.append(PolicyViolation(
            ViolationKind.NOT_PREFERRED_SLOT,
            f"Time {slot} is not in the preferred time slots",
        ))

    if policy.avoided_slots and slot in policy.avoided_slots:
        violations.append(PolicyViolation(
            ViolationKind.AVOIDED_SLOT,
            f"Time {slot} is in the avoided time slots",
        ))

    return violations


def merge_policies(
    default: SchedulingPolicy,
    *overrides: Optional[PolicyOverride]
) -> SchedulingPolicy:
    """
    Layer overrides onto a base policy.

    Later layers win field by field wherever they set a value, so
    ``merge_policies(default, therapist, service)`` gives
    service > therapist > default. None layers are skipped.
    """
    merged = default
    for override in overrides:
        if override is None:
            continue
        changes = {
            name: getattr(override, name)
            for name in POLICY_FIELDS
            if getattr(override, name) is not None
        }
        merged = replace(merged, **changes)
    return merged


def policy_from_mapping(data: Mapping) -> SchedulingPolicy:
    """Build a policy from a plain mapping such as the settings default."""
    return SchedulingPolicy(
        allow_weekends=bool(data.get('allow_weekends', False)),
        allow_holidays=bool(data.get('allow_holidays', False)),
        min_advance_days=int(data.get('min_advance_days', 0)),
        max_advance_days=int(data.get('max_advance_days', 365)),
        preferred_slots=frozenset(format_time(s) for s in data.get('preferred_slots') or ()),
        avoided_slots=frozenset(format_time(s) for s in data.get('avoided_slots') or ()),
    )


def default_policy() -> SchedulingPolicy:
    """The global default policy from settings."""
    return policy_from_mapping(scheduling_settings.DEFAULT_POLICY)
