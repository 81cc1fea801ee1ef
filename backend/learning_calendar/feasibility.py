"""Timeline feasibility checks and skill-level catalog filtering."""

from __future__ import annotations

import math
from typing import Iterable, List

from .errors import TimelineInfeasibleError
from .models import Lesson, OnboardingPreferences, SkillLevel, TimelineValidation

# Practice, quiz and break overhead applied on top of raw video time.
FEASIBILITY_BUFFER = 1.5


def filter_by_skill_level(lessons: Iterable[Lesson], skill_level: SkillLevel) -> List[Lesson]:
    """Select the lessons a student at ``skill_level`` should be scheduled.

    Beginners get beginner and intermediate material, intermediate students
    everything not tagged beginner, and advanced students the full catalog.
    Catalog order is preserved.
    """
    if skill_level == "beginner":
        return [
            lesson
            for lesson in lessons
            if lesson.difficulty_level in {"beginner", "intermediate"}
        ]
    if skill_level == "intermediate":
        return [lesson for lesson in lessons if lesson.difficulty_level != "beginner"]
    return list(lessons)


def validate_timeline(lessons: Iterable[Lesson], preferences: OnboardingPreferences) -> TimelineValidation:
    """Check whether the lessons fit the student's weeks and weekly hours."""
    total_minutes = sum(lesson.duration_minutes for lesson in lessons)
    total_hours = math.ceil(total_minutes / 60)
    estimated_hours = math.ceil(total_hours * FEASIBILITY_BUFFER)

    hours_per_week = preferences.available_hours_per_week
    weeks = preferences.target_completion_weeks
    available_hours = weeks * hours_per_week

    if estimated_hours > available_hours:
        suggested_weeks = math.ceil(estimated_hours / hours_per_week)
        return TimelineValidation(
            realistic=False,
            total_hours_needed=estimated_hours,
            total_hours_available=available_hours,
            suggestion=(
                f"This course needs approximately {estimated_hours} hours. "
                f"At {_format_hours(hours_per_week)} hours/week, we recommend "
                f"{suggested_weeks} weeks instead of {weeks}."
            ),
            suggested_weeks=suggested_weeks,
        )

    return TimelineValidation(
        realistic=True,
        total_hours_needed=estimated_hours,
        total_hours_available=available_hours,
    )


def ensure_feasible(lessons: Iterable[Lesson], preferences: OnboardingPreferences) -> TimelineValidation:
    """Return the acceptance, or raise ``TimelineInfeasibleError`` carrying the rejection."""
    validation = validate_timeline(lessons, preferences)
    if not validation.realistic:
        raise TimelineInfeasibleError(validation)
    return validation


def _format_hours(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


__all__ = [
    "FEASIBILITY_BUFFER",
    "ensure_feasible",
    "filter_by_skill_level",
    "validate_timeline",
]
