"""
Wall-clock arithmetic for scheduling.

Times of day travel through the engine as zero-padded "HH:MM" strings or
``datetime.time`` values and are compared as minutes since midnight.
Intervals are half-open ``[start, end)``.
"""

import re
from datetime import time
from typing import Tuple, Union

from .exceptions import ParseError


TIME_PATTERN = re.compile(r'^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$')

MINUTES_PER_DAY = 24 * 60

TimeLike = Union[str, time]


def to_minutes(value: TimeLike) -> int:
    """
    Convert a wall-clock value to minutes since midnight.

    Args:
        value: "HH:MM" string (hour may be a single digit) or time object

    Returns:
        Minutes since midnight

    Raises:
        ParseError: If a string does not match HH:MM
    """
    if isinstance(value, time):
        return value.hour * 60 + value.minute

    if not isinstance(value, str) or not TIME_PATTERN.match(value):
        raise ParseError(f"Invalid time format (HH:MM): {value!r}")

    hours, minutes = value.split(':')
    return int(hours) * 60 + int(minutes)


def from_minutes(minutes: int) -> str:
    """Convert minutes since midnight to a zero-padded "HH:MM" string."""
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise ValueError(f"Minutes out of range for a day: {minutes}")
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Strict overlap of two half-open intervals; touching ends do not overlap."""
    return start_a < end_b and end_a > start_b


def interval(start: TimeLike, duration_minutes: int) -> Tuple[int, int]:
    """Return the ``[start, end)`` minute range for a start time and duration."""
    start_minutes = to_minutes(start)
    return start_minutes, start_minutes + duration_minutes


def parse_time(value: TimeLike) -> time:
    """Parse "HH:MM" into a time object."""
    minutes = to_minutes(value)
    return time(minutes // 60, minutes % 60)


def format_time(value: TimeLike) -> str:
    """Normalise a wall-clock value to zero-padded "HH:MM"."""
    return from_minutes(to_minutes(value))
