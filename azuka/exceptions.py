"""Error taxonomy for the planning engine.

Only ``ScheduleConflict``, ``PersistenceFailure``, ``UserNotFound`` and
``DayNotPlanned`` ever reach callers of :class:`PlanningEngine`. Source
failures are converted to ``Unavailable`` results at the adapter boundary and
numeric violations are corrected by the safety clamp.
"""
from __future__ import annotations

from datetime import date


class AzukaError(Exception):
    """Base class for all engine errors."""


class SourceUnavailable(AzukaError):
    """A recommendation source timed out or could not be reached."""

    def __init__(self, source_id: str, detail: str = "") -> None:
        super().__init__(f"{source_id} unavailable: {detail}" if detail else f"{source_id} unavailable")
        self.source_id = source_id
        self.detail = detail


class MalformedSourceOutput(AzukaError):
    """A recommendation source returned non-JSON or schema-violating output."""

    def __init__(self, source_id: str, detail: str = "") -> None:
        super().__init__(f"{source_id} returned malformed output: {detail}")
        self.source_id = source_id
        self.detail = detail


class ClampViolation(AzukaError):
    """Numeric value outside its safe range.

    Never raised: the safety clamp corrects such values silently. The class
    exists so log records and documentation can name the condition.
    """


class ScheduleConflict(AzukaError):
    """A weekly plan would overlap another plan of the same user."""

    def __init__(self, user_id: str, start: date, end: date, existing_plan_id: str) -> None:
        super().__init__(
            f"Plan {start.isoformat()}..{end.isoformat()} for user {user_id} "
            f"overlaps existing plan {existing_plan_id}"
        )
        self.user_id = user_id
        self.start = start
        self.end = end
        self.existing_plan_id = existing_plan_id


class PersistenceFailure(AzukaError):
    """The document store could not complete a read or write."""


class UserNotFound(AzukaError, LookupError):
    """No profile is stored for the requested user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class DayNotPlanned(AzukaError, LookupError):
    """No weekly plan contains the requested date."""

    def __init__(self, user_id: str, day: date) -> None:
        super().__init__(f"No planned day {day.isoformat()} for user {user_id}")
        self.user_id = user_id
        self.day = day
