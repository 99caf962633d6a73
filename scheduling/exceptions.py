"""
Exceptions raised by the scheduling engine.

Conflicts and policy violations are ordinary results, not exceptions.
These cover malformed input reaching the engine and missing records.
"""


class SchedulingError(Exception):
    """Base class for scheduling errors."""


class ParseError(SchedulingError, ValueError):
    """A wall-clock value could not be parsed as HH:MM."""


class SessionNotFound(SchedulingError):
    """The requested session does not exist."""

    def __init__(self, session_id):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")
