"""Calendar generation: catalog -> skill filter -> feasibility -> oracle -> persisted events."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from time import perf_counter
from typing import List, Optional, Sequence

from zoneinfo import ZoneInfo

from .calendar_store import CalendarStore
from .catalog import LessonCatalog
from .config import Settings, get_settings
from .errors import NoContentError, OracleResponseError
from .feasibility import ensure_feasible, filter_by_skill_level
from .models import (
    CalendarEvent,
    CalendarGenerationResult,
    CreateCalendarEventInput,
    Lesson,
    OnboardingPreferences,
    SchedulePreferences,
    as_utc,
    utcnow,
)
from .oracle import (
    ScheduleOracle,
    ScheduleRequest,
    build_schedule_request,
    parse_schedule_response,
    resolve_scheduled_date,
    validate_schedule_items,
)
from .rewards import RewardNotifier
from .telemetry import emit_event

logger = logging.getLogger(__name__)

CALENDAR_CREATED_MILESTONE = "calendar-created"


class CalendarGenerator:
    """Builds and persists a student's initial learning calendar."""

    def __init__(
        self,
        catalog: LessonCatalog,
        oracle: ScheduleOracle,
        store: CalendarStore,
        rewards: RewardNotifier,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self._catalog = catalog
        self._oracle = oracle
        self._store = store
        self._rewards = rewards
        self._settings = settings

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def generate(
        self,
        student_id: str,
        catalog_owner_id: str,
        preferences: OnboardingPreferences,
        *,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[CalendarEvent]:
        """Generate, persist and return the student's calendar events.

        ``now`` anchors date resolution for the whole call. ``timeout`` bounds
        the oracle call in seconds; on expiry nothing is persisted.
        """
        started = perf_counter()
        anchor = as_utc(now or utcnow())
        logger.info("Generating calendar for student %s (catalog owner %s)", student_id, catalog_owner_id)
        try:
            events = await self._generate(student_id, catalog_owner_id, preferences, anchor, timeout)
        except Exception as exc:
            logger.exception("Calendar generation failed for student %s", student_id)
            emit_event(
                "calendar_generation",
                status="error",
                student_id=student_id,
                catalog_owner_id=catalog_owner_id,
                error=type(exc).__name__,
                duration_ms=round((perf_counter() - started) * 1000.0, 2),
            )
            raise

        emit_event(
            "calendar_generation",
            status="success",
            student_id=student_id,
            catalog_owner_id=catalog_owner_id,
            event_count=len(events),
            duration_ms=round((perf_counter() - started) * 1000.0, 2),
        )
        logger.info("Generated %d calendar events for student %s", len(events), student_id)
        return events

    async def _generate(
        self,
        student_id: str,
        catalog_owner_id: str,
        preferences: OnboardingPreferences,
        anchor: datetime,
        timeout: Optional[float],
    ) -> List[CalendarEvent]:
        lessons = self._catalog.list_lessons(catalog_owner_id)
        if not lessons:
            raise NoContentError(f"No lessons found for catalog owner '{catalog_owner_id}'.")
        logger.debug("Found %d lessons", len(lessons))

        relevant = filter_by_skill_level(lessons, preferences.skill_level)
        if not relevant:
            raise NoContentError(
                f"No lessons match skill level '{preferences.skill_level}' for catalog owner '{catalog_owner_id}'."
            )
        logger.debug("%d lessons match skill level %s", len(relevant), preferences.skill_level)

        ensure_feasible(relevant, preferences)

        request = build_schedule_request(relevant, preferences)
        raw = await self._propose(request, timeout)

        drafts = self._materialize(student_id, request, raw, preferences, anchor)
        drafts = self._add_review_sessions(drafts, relevant)

        events = self._store.bulk_create_events(student_id, drafts)

        self._save_preferences(student_id, catalog_owner_id, preferences, anchor)
        self._notify_milestone(student_id)
        return events

    async def _propose(self, request: ScheduleRequest, timeout: Optional[float]) -> object:
        limit = timeout if timeout is not None else self.settings.oracle_timeout_seconds
        try:
            return await asyncio.wait_for(self._oracle.propose(request), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise OracleResponseError(f"Scheduling oracle timed out after {limit:g}s.") from exc
        except OracleResponseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise OracleResponseError(f"Scheduling oracle call failed: {exc}") from exc

    def _materialize(
        self,
        student_id: str,
        request: ScheduleRequest,
        raw: object,
        preferences: OnboardingPreferences,
        anchor: datetime,
    ) -> List[CreateCalendarEventInput]:
        items = parse_schedule_response(raw)
        accepted = validate_schedule_items(items, request)
        if not accepted:
            raise OracleResponseError("Scheduling oracle returned no usable schedule items.")

        local_now = anchor.astimezone(ZoneInfo(preferences.timezone or self.settings.default_timezone))
        drafts: List[CreateCalendarEventInput] = []
        for entry in accepted:
            item = entry.item
            scheduled = resolve_scheduled_date(local_now, item.week_number, item.day_of_week, item.time_slot)
            drafts.append(
                CreateCalendarEventInput(
                    student_id=student_id,
                    lesson_id=entry.lesson.id,
                    scheduled_date=as_utc(scheduled),
                    session_duration=item.estimated_duration,
                    learning_objectives=item.learning_objectives or list(entry.lesson.learning_objectives),
                    estimated_difficulty=item.difficulty,
                )
            )
        return drafts

    def _add_review_sessions(
        self,
        drafts: List[CreateCalendarEventInput],
        lessons: Sequence[Lesson],
    ) -> List[CreateCalendarEventInput]:
        """Hook for spacing reinforcement sessions between lessons; adds none."""
        return drafts

    def _save_preferences(
        self,
        student_id: str,
        catalog_owner_id: str,
        preferences: OnboardingPreferences,
        anchor: datetime,
    ) -> None:
        snapshot = SchedulePreferences(
            student_id=student_id,
            catalog_owner_id=catalog_owner_id,
            target_completion_date=anchor + timedelta(weeks=preferences.target_completion_weeks),
            available_hours_per_week=preferences.available_hours_per_week,
            preferred_days=list(preferences.preferred_days),
            preferred_time_slots=list(preferences.preferred_time_slots),
            session_length=preferences.session_length,
            skill_level=preferences.skill_level,
            primary_goal=preferences.primary_goal,
            learning_style=preferences.learning_style,
            pace_preference=preferences.pace_preference,
            break_frequency=preferences.break_frequency,
            timezone=preferences.timezone,
        )
        try:
            self._store.upsert_preferences(snapshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to save schedule preferences for %s: %s", student_id, exc)

    def _notify_milestone(self, student_id: str) -> None:
        try:
            self._rewards.notify_milestone(student_id, CALENDAR_CREATED_MILESTONE)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to signal %s milestone for %s: %s", CALENDAR_CREATED_MILESTONE, student_id, exc)


def summarize_generation(events: Sequence[CalendarEvent], message: Optional[str] = None) -> CalendarGenerationResult:
    if not events:
        stamp = utcnow()
        return CalendarGenerationResult(start_date=stamp, end_date=stamp, message=message)
    dates = [event.scheduled_date for event in events]
    return CalendarGenerationResult(
        events=list(events),
        total_events=len(events),
        total_duration=sum(event.session_duration for event in events),
        start_date=min(dates),
        end_date=max(dates),
        message=message or f"Scheduled {len(events)} sessions.",
    )


__all__ = [
    "CALENDAR_CREATED_MILESTONE",
    "CalendarGenerator",
    "summarize_generation",
]
