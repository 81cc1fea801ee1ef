"""Calendar store: transactional facade over the calendar event repository."""

from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterator, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings
from .db.session import session_scope
from .errors import NotFoundError, PersistenceError
from .models import (
    CalendarEvent,
    CalendarEventFilters,
    CreateCalendarEventInput,
    OnTrackStatus,
    SchedulePreferences,
    StudySession,
    StudyStats,
    UpdateCalendarEventInput,
    WeeklyScheduleSummary,
    as_utc,
    utcnow,
)
from .repositories.calendar_events import CalendarEventRepository, calendar_events, whole_days_between
from .telemetry import emit_event

logger = logging.getLogger(__name__)

# Entries disappear once no caller holds the lock.
_student_locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
_student_locks_guard = threading.Lock()


@contextmanager
def student_lock(student_id: str) -> Iterator[None]:
    """Serialise schedule mutations for one student within this process."""
    with _student_locks_guard:
        lock = _student_locks.get(student_id)
        if lock is None:
            lock = threading.RLock()
            _student_locks[student_id] = lock
    with lock:
        yield


def pace_ratio(events: Sequence[CalendarEvent], now: datetime) -> float:
    """Completed past events divided by past events; 1 when nothing is due yet.

    Only events scheduled before ``now`` count, so work finished ahead of
    its date does not offset overdue sessions.
    """
    current = as_utc(now)
    past = [event for event in events if event.scheduled_date < current]
    if not past:
        return 1.0
    return sum(1 for event in past if event.completed) / len(past)


def classify_pace(ratio: float) -> OnTrackStatus:
    if ratio >= 1.1:
        return "ahead"
    if ratio >= 0.8:
        return "on-track"
    return "behind"


def _streak_days(events: Sequence[CalendarEvent]) -> int:
    days = sorted(
        {event.completed_at.date() for event in events if event.completed and event.completed_at},
        reverse=True,
    )
    if not days:
        return 0
    streak = 1
    for previous, current in zip(days, days[1:]):
        if previous - current != timedelta(days=1):
            break
        streak += 1
    return streak


def _week_start(moment: datetime) -> datetime:
    day = as_utc(moment).date()
    monday = day - timedelta(days=day.weekday())
    return datetime.combine(monday, time.min, tzinfo=timezone.utc)


class CalendarStore:
    """One transaction per operation; events are returned as domain models."""

    def __init__(
        self,
        repository: Optional[CalendarEventRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository or calendar_events
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    student_lock = staticmethod(student_lock)

    # Events -----------------------------------------------------------------

    def create_event(self, payload: CreateCalendarEventInput) -> CalendarEvent:
        with session_scope() as session:
            return self._repository.create(session, payload)

    def bulk_create_events(
        self,
        student_id: str,
        drafts: Sequence[CreateCalendarEventInput],
    ) -> List[CalendarEvent]:
        """Insert every draft or none of them."""
        try:
            with session_scope() as session:
                events = self._repository.bulk_create(session, student_id, drafts)
        except SQLAlchemyError as exc:
            logger.error("Failed to save %d calendar events for %s: %s", len(drafts), student_id, exc)
            raise PersistenceError(f"Failed to save calendar events: {exc}") from exc
        logger.info("Saved %d calendar events for %s", len(events), student_id)
        return events

    def get_event(self, event_id: str) -> CalendarEvent:
        with session_scope(commit=False) as session:
            event = self._repository.get(session, event_id)
        if event is None:
            raise NotFoundError(f"Calendar event '{event_id}' does not exist.")
        return event

    def get_upcoming(
        self,
        student_id: str,
        limit: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[CalendarEvent]:
        resolved_limit = limit if limit is not None else self.settings.upcoming_limit
        with session_scope(commit=False) as session:
            return self._repository.upcoming(session, student_id, now or utcnow(), resolved_limit)

    def get_by_date_range(self, filters: CalendarEventFilters) -> List[CalendarEvent]:
        with session_scope(commit=False) as session:
            return self._repository.list_events(session, filters)

    def get_all(self, student_id: str) -> List[CalendarEvent]:
        return self.get_by_date_range(CalendarEventFilters(student_id=student_id))

    def update_event(self, event_id: str, changes: UpdateCalendarEventInput) -> CalendarEvent:
        with session_scope() as session:
            return self._repository.update(session, event_id, changes)

    def mark_complete(
        self,
        event_id: str,
        actual_duration_minutes: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> CalendarEvent:
        with session_scope() as session:
            return self._repository.mark_complete(
                session,
                event_id,
                completed_at=now or utcnow(),
                actual_duration=actual_duration_minutes,
            )

    def reschedule(self, event_id: str, new_date: datetime, cascade: bool = False) -> List[CalendarEvent]:
        """Move an event; with ``cascade`` shift its dependents by the same whole days.

        Returns every event that moved, the requested one first.
        """
        target = self.get_event(event_id)
        with student_lock(target.student_id):
            with session_scope() as session:
                moved = self._repository.reschedule(session, event_id, new_date, cascade=cascade)
        emit_event(
            "event_rescheduled",
            student_id=target.student_id,
            event_id=event_id,
            cascade=cascade,
            days_diff=whole_days_between(target.scheduled_date, new_date),
            moved=len(moved),
        )
        return moved

    def shift_events(self, new_dates: Sequence[tuple[str, datetime]]) -> List[CalendarEvent]:
        """Move several events in one transaction, stamping each prior date."""
        moved: List[CalendarEvent] = []
        with session_scope() as session:
            for event_id, new_date in new_dates:
                current = self._repository.get(session, event_id)
                if current is None:
                    raise NotFoundError(f"Calendar event '{event_id}' does not exist.")
                moved.append(
                    self._repository.update(
                        session,
                        event_id,
                        UpdateCalendarEventInput(
                            scheduled_date=new_date,
                            rescheduled_from=current.scheduled_date,
                        ),
                    )
                )
        return moved

    def delete_event(self, event_id: str) -> bool:
        with session_scope() as session:
            return self._repository.delete(session, event_id)

    def delete_incomplete_events(self, student_id: str, event_ids: Sequence[str]) -> int:
        with session_scope() as session:
            return self._repository.delete_incomplete(session, student_id, event_ids)

    def scheduled_lesson_ids(self, student_id: str) -> set[str]:
        with session_scope(commit=False) as session:
            return self._repository.scheduled_lesson_ids(session, student_id)

    def latest_event(self, student_id: str, *, incomplete_only: bool = False) -> Optional[CalendarEvent]:
        with session_scope(commit=False) as session:
            return self._repository.latest_event(session, student_id, incomplete_only=incomplete_only)

    # Study sessions -----------------------------------------------------------

    def start_session(
        self,
        student_id: str,
        event_id: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> StudySession:
        with session_scope() as session:
            return self._repository.start_session(
                session,
                student_id,
                started_at=now or utcnow(),
                event_id=event_id,
            )

    def end_session(
        self,
        session_id: str,
        completed: bool = True,
        *,
        now: Optional[datetime] = None,
    ) -> StudySession:
        ended_at = now or utcnow()
        with session_scope() as session:
            study_session = self._repository.end_session(
                session,
                session_id,
                ended_at=ended_at,
                completed=completed,
            )
        if study_session is None:
            logger.warning("Study session %s not found; recording zero duration", session_id)
            return StudySession(
                id=session_id,
                student_id="",
                started_at=as_utc(ended_at),
                ended_at=as_utc(ended_at),
                duration_minutes=0,
                completed=completed,
            )
        return study_session

    def last_completed_session(self, student_id: str) -> Optional[StudySession]:
        with session_scope(commit=False) as session:
            sessions = self._repository.completed_sessions(session, student_id)
        return sessions[0] if sessions else None

    # Statistics ---------------------------------------------------------------

    def get_study_stats(self, student_id: str, *, now: Optional[datetime] = None) -> StudyStats:
        current = as_utc(now or utcnow())
        with session_scope(commit=False) as session:
            sessions = self._repository.completed_sessions(session, student_id)
            events = self._repository.list_events(session, CalendarEventFilters(student_id=student_id))

        total_sessions = len(sessions)
        total_minutes = sum(item.duration_minutes or 0 for item in sessions)
        average = round(total_minutes / total_sessions) if total_sessions else 0

        past = [event for event in events if event.scheduled_date < current]
        completion_rate = (
            round(sum(1 for event in past if event.completed) / len(past) * 100, 2) if past else 0.0
        )

        week_start = _week_start(current)
        sessions_this_week = sum(1 for item in sessions if item.started_at >= week_start)

        incomplete = [event for event in events if not event.completed]
        projected = max((event.scheduled_date for event in incomplete), default=current)

        return StudyStats(
            total_sessions_completed=total_sessions,
            total_minutes_studied=total_minutes,
            average_session_length=average,
            completion_rate=completion_rate,
            streak_days=_streak_days(events),
            sessions_this_week=sessions_this_week,
            on_track_status=classify_pace(pace_ratio(events, current)),
            projected_completion_date=projected,
        )

    def get_weekly_summaries(
        self,
        student_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> List[WeeklyScheduleSummary]:
        """Group the student's events into 7-day weeks starting at the first event's day."""
        current = as_utc(now or utcnow())
        events = self.get_all(student_id)
        if not events:
            return []

        first_day: date = events[0].scheduled_date.date()
        origin = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
        buckets: Dict[int, List[CalendarEvent]] = {}
        for event in events:
            week_number = (event.scheduled_date - origin).days // 7 + 1
            buckets.setdefault(week_number, []).append(event)

        summaries: List[WeeklyScheduleSummary] = []
        for week_number in range(1, max(buckets) + 1):
            week_events = buckets.get(week_number, [])
            start = origin + timedelta(days=(week_number - 1) * 7)
            completed = [event for event in week_events if event.completed]
            due = [event for event in week_events if event.scheduled_date < current]
            due_done = sum(1 for event in due if event.completed)
            summaries.append(
                WeeklyScheduleSummary(
                    week_number=week_number,
                    start_date=start,
                    end_date=start + timedelta(days=7) - timedelta(microseconds=1),
                    total_events=len(week_events),
                    completed_events=len(completed),
                    total_minutes=sum(event.session_duration for event in week_events),
                    completed_minutes=sum(
                        event.actual_duration or event.session_duration for event in completed
                    ),
                    on_track=not due or due_done / len(due) >= 0.8,
                )
            )
        return summaries

    # Preferences --------------------------------------------------------------

    def get_preferences(self, student_id: str) -> Optional[SchedulePreferences]:
        with session_scope(commit=False) as session:
            return self._repository.get_preferences(session, student_id)

    def upsert_preferences(self, preferences: SchedulePreferences) -> SchedulePreferences:
        with session_scope() as session:
            return self._repository.upsert_preferences(session, preferences)


__all__ = [
    "CalendarStore",
    "classify_pace",
    "pace_ratio",
    "student_lock",
]
