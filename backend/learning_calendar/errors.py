"""Error taxonomy for calendar generation, storage and adaptation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .models import TimelineValidation


class CalendarError(RuntimeError):
    """Base class for scheduling-core failures."""


class NoContentError(CalendarError):
    """Raised when the catalog offers no lessons to schedule."""


class TimelineInfeasibleError(CalendarError):
    """Raised when the requested completion timeline cannot fit the content."""

    def __init__(self, validation: "TimelineValidation") -> None:
        super().__init__(validation.suggestion or "Requested timeline is not achievable.")
        self.validation = validation
        self.suggested_weeks: Optional[int] = validation.suggested_weeks
        self.hours_needed = validation.total_hours_needed
        self.hours_available = validation.total_hours_available


class OracleResponseError(CalendarError):
    """Raised when the scheduling oracle fails or returns unusable output."""


class PersistenceError(CalendarError):
    """Raised when a calendar write that gates success could not be committed."""


class NotFoundError(CalendarError, LookupError):
    """Raised when a referenced calendar record does not exist."""


class DependencyCycleError(CalendarError, ValueError):
    """Raised when an event's prerequisites would close a dependency cycle."""


__all__ = [
    "CalendarError",
    "DependencyCycleError",
    "NoContentError",
    "NotFoundError",
    "OracleResponseError",
    "PersistenceError",
    "TimelineInfeasibleError",
]
