"""Repository layer for calendar persistence."""

from .calendar_events import CalendarEventRepository, calendar_events

__all__ = ["CalendarEventRepository", "calendar_events"]
