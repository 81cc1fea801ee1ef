"""Adaptive scheduler: classifies a student's progress and applies schedule remediations."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from .calendar_store import CalendarStore, pace_ratio, student_lock
from .catalog import LessonCatalog
from .models import (
    AdaptationAction,
    AdaptationSuggestion,
    CalendarEvent,
    CalendarEventFilters,
    CreateCalendarEventInput,
    ProgressAnalysis,
    as_utc,
    utcnow,
)
from .telemetry import emit_event

logger = logging.getLogger(__name__)

BREAK_THRESHOLD_DAYS = 7
BEHIND_OVERDUE_THRESHOLD = 5
HIGH_SEVERITY_OVERDUE = 10
AHEAD_PACE_THRESHOLD = 1.5
NO_SESSION_DAYS = 999

BONUS_SPACING_DAYS = 3
BONUS_DURATION_MINUTES = 60
BONUS_DIFFICULTY = 4
MAX_BONUS_LESSONS = 3
MAX_SKIPPED_EVENTS = 3


class AdaptiveScheduler:
    """Computes a fresh progress snapshot on every call; nothing is cached between calls."""

    def __init__(self, store: CalendarStore, catalog: LessonCatalog) -> None:
        self._store = store
        self._catalog = catalog

    def analyze_progress(self, student_id: str, *, now: Optional[datetime] = None) -> ProgressAnalysis:
        current = as_utc(now or utcnow())
        events = self._store.get_all(student_id)

        completed = sum(1 for event in events if event.completed)
        overdue = sum(1 for event in events if not event.completed and event.scheduled_date < current)
        ratio = pace_ratio(events, current)

        last_session = self._store.last_completed_session(student_id)
        if last_session is None:
            days_since = NO_SESSION_DAYS
        else:
            elapsed = current - as_utc(last_session.started_at)
            days_since = max(0, math.floor(elapsed.total_seconds() / 86400))

        return ProgressAnalysis(
            total_scheduled=len(events),
            completed=completed,
            overdue=overdue,
            on_track=0.8 <= ratio <= 1.2,
            pace_ratio=ratio,
            days_since_last_session=days_since,
        )

    def analyze_and_adapt(self, student_id: str, *, now: Optional[datetime] = None) -> AdaptationSuggestion:
        current = as_utc(now or utcnow())
        analysis = self.analyze_progress(student_id, now=current)
        suggestion = self.suggest(student_id, analysis)
        emit_event(
            "adaptation_analyzed",
            student_id=student_id,
            type=suggestion.type,
            severity=suggestion.severity,
            overdue=analysis.overdue,
            pace_ratio=round(analysis.pace_ratio, 3),
            days_since_last_session=analysis.days_since_last_session,
            actions=[action.action for action in suggestion.suggestions],
        )
        return suggestion

    def suggest(self, student_id: str, analysis: ProgressAnalysis) -> AdaptationSuggestion:
        """Classify ``analysis``; the first matching rule wins."""
        if analysis.days_since_last_session >= BREAK_THRESHOLD_DAYS:
            return self._welcome_back(analysis)
        if analysis.overdue > BEHIND_OVERDUE_THRESHOLD:
            return self._behind_schedule(student_id, analysis)
        if analysis.pace_ratio > AHEAD_PACE_THRESHOLD:
            return self._ahead_of_schedule(student_id, analysis)
        return AdaptationSuggestion(
            type="on-track",
            severity="low",
            message="You're on track! Keep up the great work!",
        )

    def _welcome_back(self, analysis: ProgressAnalysis) -> AdaptationSuggestion:
        days = analysis.days_since_last_session
        return AdaptationSuggestion(
            type="returning-after-break",
            severity="medium",
            message=f"Welcome back! It's been {days} days. Let's ease back in with a gentle catchup plan.",
            suggestions=[AdaptationAction(action="extend-timeline", weeks=math.ceil(days / 7))],
        )

    def _behind_schedule(self, student_id: str, analysis: ProgressAnalysis) -> AdaptationSuggestion:
        suggestions = [AdaptationAction(action="extend-timeline", weeks=math.ceil(analysis.overdue / 3))]

        preferences = self._store.get_preferences(student_id)
        if preferences is not None and preferences.available_hours_per_week >= 10:
            suggestions.append(
                AdaptationAction(
                    action="reduce-hours",
                    new_hours=max(5, preferences.available_hours_per_week - 3),
                )
            )

        skip_count = min(MAX_SKIPPED_EVENTS, analysis.overdue // 2)
        optional = self._optional_event_ids(student_id, skip_count)
        if optional:
            suggestions.append(AdaptationAction(action="skip-optional", videos_to_skip=optional))

        return AdaptationSuggestion(
            type="behind-schedule",
            severity="high" if analysis.overdue > HIGH_SEVERITY_OVERDUE else "medium",
            message=(
                f"You have {analysis.overdue} overdue sessions. "
                "Let's adjust your schedule to help you catch up."
            ),
            suggestions=suggestions,
        )

    def _ahead_of_schedule(self, student_id: str, analysis: ProgressAnalysis) -> AdaptationSuggestion:
        suggestions: List[AdaptationAction] = []

        bonus = self._bonus_lesson_ids(student_id)
        if bonus:
            suggestions.append(AdaptationAction(action="add-advanced-content", videos=bonus))

        days_ahead = math.floor((analysis.pace_ratio - 1) * 30)
        last_open = self._store.latest_event(student_id, incomplete_only=True)
        if last_open is not None and days_ahead > 0:
            suggestions.append(
                AdaptationAction(
                    action="finish-early",
                    new_date=last_open.scheduled_date - timedelta(days=days_ahead),
                )
            )

        return AdaptationSuggestion(
            type="ahead-of-schedule",
            severity="low",
            message="Amazing work! You're ahead of schedule. Want to add more content or finish early?",
            suggestions=suggestions,
        )

    def _optional_event_ids(self, student_id: str, limit: int) -> List[str]:
        if limit <= 0:
            return []
        pending = self._store.get_by_date_range(CalendarEventFilters(student_id=student_id, completed=False))
        easy = [
            event
            for event in pending
            if event.estimated_difficulty is not None and event.estimated_difficulty <= 2
        ]
        easy.sort(key=lambda event: (event.estimated_difficulty, event.scheduled_date))
        return [event.id for event in easy[:limit]]

    def _bonus_lesson_ids(self, student_id: str) -> List[str]:
        preferences = self._store.get_preferences(student_id)
        if preferences is None or not preferences.catalog_owner_id:
            return []
        scheduled = self._store.scheduled_lesson_ids(student_id)
        lessons = self._catalog.list_lessons(preferences.catalog_owner_id)
        return [
            lesson.id
            for lesson in lessons
            if lesson.difficulty_level == "advanced" and lesson.id not in scheduled
        ][:MAX_BONUS_LESSONS]

    # Applying actions -----------------------------------------------------------

    def apply_adaptation(
        self,
        student_id: str,
        action: AdaptationAction,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """Apply one remediation and return how many events it created, moved or deleted."""
        current = as_utc(now or utcnow())
        with student_lock(student_id):
            if action.action == "extend-timeline":
                changed = self._extend_timeline(student_id, action.weeks or 0, current)
            elif action.action == "skip-optional":
                changed = self._store.delete_incomplete_events(student_id, action.videos_to_skip)
                logger.info("Skipped %d optional events for %s", changed, student_id)
            elif action.action == "add-advanced-content":
                changed = self._add_bonus_content(student_id, action.videos)
            else:
                logger.info(
                    "Adaptation %s for %s is informational; schedule left unchanged",
                    action.action,
                    student_id,
                )
                changed = 0

        emit_event("adaptation_applied", student_id=student_id, action=action.action, changed=changed)
        return changed

    def _extend_timeline(self, student_id: str, weeks: int, now: datetime) -> int:
        if weeks <= 0:
            return 0
        future: List[CalendarEvent] = self._store.get_by_date_range(
            CalendarEventFilters(student_id=student_id, start_date=now, completed=False)
        )
        if not future:
            return 0

        total_days = weeks * 7
        count = len(future)
        # Event i of n moves floor(total_days / n * (i + 1)) days; the last moves total_days.
        new_dates = [
            (event.id, event.scheduled_date + timedelta(days=(total_days * (index + 1)) // count))
            for index, event in enumerate(future)
        ]
        moved = self._store.shift_events(new_dates)
        logger.info("Extended timeline by %d weeks across %d events for %s", weeks, len(moved), student_id)
        return len(moved)

    def _add_bonus_content(self, student_id: str, lesson_ids: List[str]) -> int:
        if not lesson_ids:
            return 0
        last_event = self._store.latest_event(student_id)
        if last_event is None:
            logger.info("No scheduled events for %s; bonus content not added", student_id)
            return 0

        start = last_event.scheduled_date + timedelta(days=BONUS_SPACING_DAYS)
        drafts = [
            CreateCalendarEventInput(
                student_id=student_id,
                lesson_id=lesson_id,
                scheduled_date=start + timedelta(days=index * BONUS_SPACING_DAYS),
                session_duration=BONUS_DURATION_MINUTES,
                estimated_difficulty=BONUS_DIFFICULTY,
            )
            for index, lesson_id in enumerate(lesson_ids)
        ]
        created = self._store.bulk_create_events(student_id, drafts)
        logger.info("Added %d bonus lessons for %s", len(created), student_id)
        return len(created)


__all__ = ["AdaptiveScheduler"]
