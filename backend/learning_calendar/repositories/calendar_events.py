"""Database-backed calendar event, study session and preference repository."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ..db.models import (
    CalendarAuditEventModel,
    CalendarEventModel,
    SchedulePreferencesModel,
    StudySessionModel,
)
from ..errors import DependencyCycleError, NotFoundError
from ..models import (
    CalendarEvent,
    CalendarEventFilters,
    CreateCalendarEventInput,
    SchedulePreferences,
    StudySession,
    UpdateCalendarEventInput,
    as_utc,
    utcnow,
)

_PREFERENCE_FIELDS = (
    "catalog_owner_id",
    "target_completion_date",
    "available_hours_per_week",
    "preferred_days",
    "preferred_time_slots",
    "session_length",
    "skill_level",
    "primary_goal",
    "learning_style",
    "pace_preference",
    "break_frequency",
    "timezone",
)


def whole_days_between(start: datetime, end: datetime) -> int:
    """Floor of the day difference ``end - start``; negative when ``end`` is earlier."""
    delta = as_utc(end) - as_utc(start)
    return math.floor(delta.total_seconds() / 86400)


def ensure_acyclic(graph: Mapping[str, Set[str]], lesson_id: str, prerequisites: Iterable[str]) -> None:
    """Raise ``DependencyCycleError`` when ``lesson_id`` is reachable from its own prerequisites.

    ``graph`` maps a lesson id to the lesson ids it requires, across the
    student's existing events.
    """
    pending = [item for item in prerequisites if item]
    seen: Set[str] = set()
    while pending:
        current = pending.pop()
        if current == lesson_id:
            raise DependencyCycleError(
                f"Lesson '{lesson_id}' cannot depend on itself through its prerequisites."
            )
        if current in seen:
            continue
        seen.add(current)
        pending.extend(graph.get(current, ()))


class CalendarEventRepository:
    """Persistence helper for calendar events, study sessions and schedule preferences."""

    # ------------------------------------------------------------------
    # Calendar events
    # ------------------------------------------------------------------

    def get(self, session: Session, event_id: str) -> CalendarEvent | None:
        model = session.get(CalendarEventModel, event_id)
        if model is None:
            return None
        return self._to_domain(model)

    def create(self, session: Session, payload: CreateCalendarEventInput) -> CalendarEvent:
        graph = self._dependency_graph(session, payload.student_id)
        model = self._insert(session, graph, payload)
        session.flush()
        self._record_audit(session, payload.student_id, "event_create", {"event_id": model.id})
        return self._to_domain(model)

    def bulk_create(
        self,
        session: Session,
        student_id: str,
        drafts: Sequence[CreateCalendarEventInput],
    ) -> List[CalendarEvent]:
        graph = self._dependency_graph(session, student_id)
        models: List[CalendarEventModel] = []
        for draft in drafts:
            if draft.student_id != student_id:
                draft = draft.model_copy(update={"student_id": student_id})
            models.append(self._insert(session, graph, draft))
        session.flush()
        self._record_audit(session, student_id, "events_bulk_create", {"count": len(models)})
        return [self._to_domain(model) for model in models]

    def list_events(self, session: Session, filters: CalendarEventFilters) -> List[CalendarEvent]:
        stmt = select(CalendarEventModel).where(CalendarEventModel.student_id == filters.student_id)
        if filters.start_date is not None:
            stmt = stmt.where(CalendarEventModel.scheduled_date >= as_utc(filters.start_date))
        if filters.end_date is not None:
            stmt = stmt.where(CalendarEventModel.scheduled_date <= as_utc(filters.end_date))
        if filters.completed is not None:
            stmt = stmt.where(CalendarEventModel.completed.is_(filters.completed))
        if filters.lesson_id is not None:
            stmt = stmt.where(CalendarEventModel.lesson_id == filters.lesson_id)
        stmt = stmt.order_by(CalendarEventModel.scheduled_date.asc(), CalendarEventModel.created_at.asc())
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def upcoming(self, session: Session, student_id: str, now: datetime, limit: int) -> List[CalendarEvent]:
        stmt = (
            select(CalendarEventModel)
            .where(
                CalendarEventModel.student_id == student_id,
                CalendarEventModel.completed.is_(False),
                CalendarEventModel.scheduled_date >= as_utc(now),
            )
            .order_by(CalendarEventModel.scheduled_date.asc())
            .limit(limit)
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars()]

    def update(self, session: Session, event_id: str, changes: UpdateCalendarEventInput) -> CalendarEvent:
        model = self._require_model(session, event_id)
        if changes.scheduled_date is not None:
            model.scheduled_date = as_utc(changes.scheduled_date)
        if changes.session_duration is not None:
            model.session_duration = changes.session_duration
        if changes.completed is not None:
            model.completed = changes.completed
            if not changes.completed:
                model.completed_at = None
        if changes.completed_at is not None:
            model.completed_at = as_utc(changes.completed_at)
        if changes.completed and model.completed_at is None:
            model.completed_at = utcnow()
        if changes.rescheduled_from is not None:
            model.rescheduled_from = as_utc(changes.rescheduled_from)
            model.reschedule_count = (model.reschedule_count or 0) + 1
        if changes.notes is not None:
            model.notes = changes.notes
        session.flush()
        self._record_audit(
            session,
            model.student_id,
            "event_update",
            {"event_id": model.id, "fields": sorted(changes.model_dump(exclude_none=True))},
        )
        return self._to_domain(model)

    def mark_complete(
        self,
        session: Session,
        event_id: str,
        *,
        completed_at: datetime,
        actual_duration: Optional[int] = None,
    ) -> CalendarEvent:
        model = self._require_model(session, event_id)
        model.completed = True
        model.completed_at = as_utc(completed_at)
        if actual_duration:
            model.actual_duration = actual_duration
        session.flush()
        self._record_audit(session, model.student_id, "event_complete", {"event_id": model.id})
        return self._to_domain(model)

    def reschedule(
        self,
        session: Session,
        event_id: str,
        new_date: datetime,
        *,
        cascade: bool = False,
        visited: Optional[Set[str]] = None,
    ) -> List[CalendarEvent]:
        """Move an event, and with ``cascade`` every event that requires its lesson.

        Dependents shift by the same whole-day difference relative to their
        own dates. ``visited`` holds the ids already moved in this cascade so
        legacy cyclic data cannot recurse forever.
        """
        visited = set() if visited is None else visited
        model = self._require_model(session, event_id)
        visited.add(model.id)

        original = as_utc(model.scheduled_date)
        target = as_utc(new_date)
        model.scheduled_date = target
        model.rescheduled_from = original
        model.reschedule_count = (model.reschedule_count or 0) + 1
        session.flush()
        self._record_audit(
            session,
            model.student_id,
            "event_reschedule",
            {"event_id": model.id, "from": original.isoformat(), "to": target.isoformat()},
        )
        moved = [self._to_domain(model)]

        if not cascade:
            return moved

        days_diff = whole_days_between(original, target)
        for dependent in self._dependents(session, model):
            if dependent.id in visited:
                continue
            shifted = as_utc(dependent.scheduled_date) + timedelta(days=days_diff)
            moved.extend(
                self.reschedule(session, dependent.id, shifted, cascade=True, visited=visited)
            )
        return moved

    def delete(self, session: Session, event_id: str) -> bool:
        model = session.get(CalendarEventModel, event_id)
        if model is None:
            return False
        student_id = model.student_id
        session.delete(model)
        session.flush()
        self._record_audit(session, student_id, "event_delete", {"event_id": event_id})
        return True

    def delete_incomplete(self, session: Session, student_id: str, event_ids: Iterable[str]) -> int:
        ids = [event_id for event_id in event_ids if event_id]
        if not ids:
            return 0
        stmt = (
            delete(CalendarEventModel)
            .where(
                CalendarEventModel.student_id == student_id,
                CalendarEventModel.id.in_(ids),
                CalendarEventModel.completed.is_(False),
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        removed = int(result.rowcount or 0)
        self._record_audit(session, student_id, "events_skip", {"event_ids": ids, "removed": removed})
        return removed

    def scheduled_lesson_ids(self, session: Session, student_id: str) -> Set[str]:
        stmt = select(CalendarEventModel.lesson_id).where(CalendarEventModel.student_id == student_id)
        return set(session.execute(stmt).scalars())

    def latest_event(self, session: Session, student_id: str, *, incomplete_only: bool = False) -> CalendarEvent | None:
        stmt = select(CalendarEventModel).where(CalendarEventModel.student_id == student_id)
        if incomplete_only:
            stmt = stmt.where(CalendarEventModel.completed.is_(False))
        stmt = stmt.order_by(CalendarEventModel.scheduled_date.desc()).limit(1)
        model = session.execute(stmt).scalars().first()
        return self._to_domain(model) if model is not None else None

    # ------------------------------------------------------------------
    # Study sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        session: Session,
        student_id: str,
        *,
        started_at: datetime,
        event_id: Optional[str] = None,
    ) -> StudySession:
        model = StudySessionModel(
            student_id=student_id,
            event_id=event_id,
            started_at=as_utc(started_at),
            completed=False,
        )
        session.add(model)
        session.flush()
        self._record_audit(session, student_id, "session_start", {"session_id": model.id})
        return self._session_to_domain(model)

    def end_session(
        self,
        session: Session,
        session_id: str,
        *,
        ended_at: datetime,
        completed: bool,
    ) -> StudySession | None:
        model = session.get(StudySessionModel, session_id)
        if model is None:
            return None
        ended = as_utc(ended_at)
        elapsed = ended - as_utc(model.started_at)
        model.ended_at = ended
        model.duration_minutes = max(0, math.floor(elapsed.total_seconds() / 60))
        model.completed = completed
        session.flush()
        self._record_audit(
            session,
            model.student_id,
            "session_end",
            {"session_id": model.id, "duration_minutes": model.duration_minutes},
        )
        return self._session_to_domain(model)

    def completed_sessions(self, session: Session, student_id: str) -> List[StudySession]:
        stmt = (
            select(StudySessionModel)
            .where(
                StudySessionModel.student_id == student_id,
                StudySessionModel.completed.is_(True),
            )
            .order_by(StudySessionModel.started_at.desc())
        )
        return [self._session_to_domain(model) for model in session.execute(stmt).scalars()]

    # ------------------------------------------------------------------
    # Schedule preferences
    # ------------------------------------------------------------------

    def get_preferences(self, session: Session, student_id: str) -> SchedulePreferences | None:
        model = session.get(SchedulePreferencesModel, student_id)
        if model is None:
            return None
        return self._preferences_to_domain(model)

    def upsert_preferences(self, session: Session, preferences: SchedulePreferences) -> SchedulePreferences:
        model = session.get(SchedulePreferencesModel, preferences.student_id)
        if model is None:
            model = SchedulePreferencesModel(student_id=preferences.student_id)
            session.add(model)
        for field in _PREFERENCE_FIELDS:
            value = getattr(preferences, field)
            if isinstance(value, datetime):
                value = as_utc(value)
            elif isinstance(value, list):
                value = list(value)
            setattr(model, field, value)
        session.flush()
        self._record_audit(session, preferences.student_id, "preferences_upsert", {})
        return self._preferences_to_domain(model)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_model(self, session: Session, event_id: str) -> CalendarEventModel:
        model = session.get(CalendarEventModel, event_id)
        if model is None:
            raise NotFoundError(f"Calendar event '{event_id}' does not exist.")
        return model

    def _insert(
        self,
        session: Session,
        graph: Dict[str, Set[str]],
        payload: CreateCalendarEventInput,
    ) -> CalendarEventModel:
        prerequisites = [item for item in payload.prerequisites if item]
        ensure_acyclic(graph, payload.lesson_id, prerequisites)
        graph.setdefault(payload.lesson_id, set()).update(prerequisites)

        model = CalendarEventModel(
            student_id=payload.student_id,
            lesson_id=payload.lesson_id,
            scheduled_date=as_utc(payload.scheduled_date),
            session_duration=payload.session_duration,
            completed=False,
            learning_objectives=list(payload.learning_objectives),
            prerequisites=prerequisites,
            estimated_difficulty=payload.estimated_difficulty,
            notes=payload.notes,
        )
        session.add(model)
        return model

    def _dependency_graph(self, session: Session, student_id: str) -> Dict[str, Set[str]]:
        stmt = select(CalendarEventModel.lesson_id, CalendarEventModel.prerequisites).where(
            CalendarEventModel.student_id == student_id
        )
        graph: Dict[str, Set[str]] = {}
        for lesson_id, prerequisites in session.execute(stmt):
            graph.setdefault(lesson_id, set()).update(prerequisites or [])
        return graph

    def _dependents(self, session: Session, model: CalendarEventModel) -> List[CalendarEventModel]:
        # JSON containment is not portable across backends; filter in Python.
        stmt = (
            select(CalendarEventModel)
            .where(
                CalendarEventModel.student_id == model.student_id,
                CalendarEventModel.id != model.id,
            )
            .order_by(CalendarEventModel.scheduled_date.asc())
        )
        return [
            candidate
            for candidate in session.execute(stmt).scalars()
            if model.lesson_id in (candidate.prerequisites or [])
        ]

    def _to_domain(self, model: CalendarEventModel) -> CalendarEvent:
        return CalendarEvent(
            id=model.id,
            student_id=model.student_id,
            lesson_id=model.lesson_id,
            scheduled_date=as_utc(model.scheduled_date),
            session_duration=model.session_duration,
            completed=bool(model.completed),
            completed_at=as_utc(model.completed_at) if model.completed_at else None,
            actual_duration=model.actual_duration,
            learning_objectives=list(model.learning_objectives or []),
            prerequisites=list(model.prerequisites or []),
            estimated_difficulty=model.estimated_difficulty,
            reschedule_count=model.reschedule_count or 0,
            rescheduled_from=as_utc(model.rescheduled_from) if model.rescheduled_from else None,
            notes=model.notes,
            created_at=as_utc(model.created_at) if model.created_at else None,
            updated_at=as_utc(model.updated_at) if model.updated_at else None,
        )

    def _session_to_domain(self, model: StudySessionModel) -> StudySession:
        return StudySession(
            id=model.id,
            student_id=model.student_id,
            event_id=model.event_id,
            started_at=as_utc(model.started_at),
            ended_at=as_utc(model.ended_at) if model.ended_at else None,
            duration_minutes=model.duration_minutes,
            completed=bool(model.completed),
            notes=model.session_notes,
        )

    def _preferences_to_domain(self, model: SchedulePreferencesModel) -> SchedulePreferences:
        payload: Dict[str, Any] = {"student_id": model.student_id}
        for field in _PREFERENCE_FIELDS:
            payload[field] = getattr(model, field)
        if payload["target_completion_date"] is not None:
            payload["target_completion_date"] = as_utc(payload["target_completion_date"])
        payload["preferred_days"] = list(model.preferred_days or [])
        payload["preferred_time_slots"] = list(model.preferred_time_slots or [])
        payload["created_at"] = as_utc(model.created_at) if model.created_at else None
        payload["updated_at"] = as_utc(model.updated_at) if model.updated_at else None
        return SchedulePreferences.model_validate(payload)

    def _record_audit(self, session: Session, student_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        event = CalendarAuditEventModel(
            student_id=student_id,
            event_type=event_type,
            payload=payload,
            actor="system",
        )
        session.add(event)


calendar_events = CalendarEventRepository()

__all__ = [
    "CalendarEventRepository",
    "calendar_events",
    "ensure_acyclic",
    "whole_days_between",
]
