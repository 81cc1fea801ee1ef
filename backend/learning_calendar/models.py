"""Domain models for onboarding preferences, lessons, calendar events and adaptation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

SkillLevel = Literal["beginner", "intermediate", "advanced"]
SessionLength = Literal["short", "medium", "long"]
TimeSlot = Literal["morning", "afternoon", "evening", "late-night"]
Weekday = Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
LearningStyle = Literal["visual", "hands-on", "mixed"]
PacePreference = Literal["steady", "intensive", "flexible"]
BreakFrequency = Literal["frequent", "moderate", "minimal"]
LearningGoal = Literal["career-change", "skill-upgrade", "side-project", "curiosity"]

AdaptationType = Literal["on-track", "behind-schedule", "ahead-of-schedule", "returning-after-break"]
AdaptationSeverity = Literal["low", "medium", "high"]
AdaptationActionKind = Literal[
    "extend-timeline",
    "reduce-hours",
    "skip-optional",
    "add-advanced-content",
    "finish-early",
]
OnTrackStatus = Literal["ahead", "on-track", "behind"]

SESSION_LENGTH_MINUTES: Dict[str, int] = {
    "short": 25,
    "medium": 50,
    "long": 90,
}

TIME_SLOT_HOURS: Dict[str, int] = {
    "morning": 9,
    "afternoon": 14,
    "evening": 19,
    "late-night": 22,
}

# Matches datetime.weekday(): Monday is 0.
WEEKDAY_NUMBERS: Dict[str, int] = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OnboardingPreferences(BaseModel):
    """Availability and learning preferences captured during onboarding."""

    model_config = ConfigDict(frozen=True)

    skill_level: SkillLevel
    target_completion_weeks: int = Field(ge=1)
    available_hours_per_week: float = Field(gt=0)
    preferred_days: List[Weekday] = Field(min_length=1)
    preferred_time_slots: List[TimeSlot] = Field(min_length=1)
    session_length: SessionLength = "medium"
    learning_style: LearningStyle = "mixed"
    pace_preference: PacePreference = "steady"
    primary_goal: Optional[LearningGoal] = None
    break_frequency: Optional[BreakFrequency] = None
    timezone: Optional[str] = None
    previous_experience: Optional[str] = None

    @field_validator("preferred_days", "preferred_time_slots", mode="before")
    @classmethod
    def _normalise_choices(cls, value):
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, set)):
            return value
        seen: List[str] = []
        for entry in value:
            normalized = entry.strip().lower() if isinstance(entry, str) else entry
            if normalized not in seen:
                seen.append(normalized)
        return seen

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{value}'") from exc
        return value.strip()

    @property
    def session_minutes(self) -> int:
        return SESSION_LENGTH_MINUTES.get(self.session_length, 50)


class Lesson(BaseModel):
    """Catalog lesson (a processed video) available for scheduling."""

    id: str
    title: str
    duration_minutes: int = Field(ge=0)
    difficulty_level: Optional[SkillLevel] = None
    learning_objectives: List[str] = Field(default_factory=list)


class CalendarEvent(BaseModel):
    """A dated study session for one lesson on a student's calendar."""

    id: str
    student_id: str
    lesson_id: str
    scheduled_date: datetime
    session_duration: int = Field(ge=0)
    completed: bool = False
    completed_at: Optional[datetime] = None
    actual_duration: Optional[int] = Field(default=None, ge=0)
    learning_objectives: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    estimated_difficulty: Optional[int] = Field(default=None, ge=1, le=5)
    reschedule_count: int = Field(default=0, ge=0)
    rescheduled_from: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _completion_requires_timestamp(self) -> "CalendarEvent":
        if self.completed and self.completed_at is None:
            raise ValueError("Completed events must carry completed_at.")
        return self


class CreateCalendarEventInput(BaseModel):
    student_id: str
    lesson_id: str
    scheduled_date: datetime
    session_duration: int = Field(ge=0)
    learning_objectives: List[str] = Field(default_factory=list)
    prerequisites: List[str] = Field(default_factory=list)
    estimated_difficulty: Optional[int] = Field(default=None, ge=1, le=5)
    notes: Optional[str] = None


class UpdateCalendarEventInput(BaseModel):
    scheduled_date: Optional[datetime] = None
    session_duration: Optional[int] = Field(default=None, ge=0)
    completed: Optional[bool] = None
    completed_at: Optional[datetime] = None
    rescheduled_from: Optional[datetime] = None
    notes: Optional[str] = None


class CalendarEventFilters(BaseModel):
    student_id: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    completed: Optional[bool] = None
    lesson_id: Optional[str] = None


class StudySession(BaseModel):
    """Wall-clock record of a student actually studying."""

    id: str
    student_id: str
    event_id: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_minutes: Optional[int] = Field(default=None, ge=0)
    completed: bool = False
    notes: Optional[str] = None


class SchedulePreferences(BaseModel):
    """Per-student snapshot of the preferences a schedule was generated from."""

    student_id: str
    catalog_owner_id: Optional[str] = None
    target_completion_date: Optional[datetime] = None
    available_hours_per_week: float = Field(default=5, gt=0)
    preferred_days: List[str] = Field(default_factory=lambda: ["monday", "wednesday", "friday"])
    preferred_time_slots: List[str] = Field(default_factory=lambda: ["evening"])
    session_length: str = "medium"
    skill_level: Optional[str] = "beginner"
    primary_goal: Optional[str] = None
    learning_style: Optional[str] = None
    pace_preference: Optional[str] = None
    break_frequency: Optional[str] = None
    timezone: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TimelineValidation(BaseModel):
    realistic: bool
    total_hours_needed: int
    total_hours_available: float
    suggestion: Optional[str] = None
    suggested_weeks: Optional[int] = None


class StudyStats(BaseModel):
    total_sessions_completed: int = 0
    total_minutes_studied: int = 0
    average_session_length: int = 0
    completion_rate: float = 0.0
    streak_days: int = 0
    sessions_this_week: int = 0
    on_track_status: OnTrackStatus = "on-track"
    projected_completion_date: datetime = Field(default_factory=utcnow)


class WeeklyScheduleSummary(BaseModel):
    week_number: int = Field(ge=1)
    start_date: datetime
    end_date: datetime
    total_events: int = 0
    completed_events: int = 0
    total_minutes: int = 0
    completed_minutes: int = 0
    on_track: bool = True


class CalendarGenerationResult(BaseModel):
    events: List[CalendarEvent] = Field(default_factory=list)
    total_events: int = 0
    total_duration: int = 0
    start_date: datetime
    end_date: datetime
    message: Optional[str] = None


class ProgressAnalysis(BaseModel):
    total_scheduled: int = 0
    completed: int = 0
    overdue: int = 0
    on_track: bool = True
    pace_ratio: float = 1.0
    days_since_last_session: int = 999


class AdaptationAction(BaseModel):
    action: AdaptationActionKind
    weeks: Optional[int] = Field(default=None, ge=0)
    new_hours: Optional[float] = Field(default=None, gt=0)
    videos_to_skip: List[str] = Field(default_factory=list)
    videos: List[str] = Field(default_factory=list)
    new_date: Optional[datetime] = None


class AdaptationSuggestion(BaseModel):
    """Classified progress verdict with proposed remediation. Never persisted."""

    type: AdaptationType
    severity: AdaptationSeverity
    message: str
    suggestions: List[AdaptationAction] = Field(default_factory=list)


__all__ = [
    "AdaptationAction",
    "AdaptationActionKind",
    "AdaptationSeverity",
    "AdaptationSuggestion",
    "AdaptationType",
    "CalendarEvent",
    "CalendarEventFilters",
    "CalendarGenerationResult",
    "CreateCalendarEventInput",
    "Lesson",
    "OnboardingPreferences",
    "ProgressAnalysis",
    "SESSION_LENGTH_MINUTES",
    "SchedulePreferences",
    "SkillLevel",
    "StudySession",
    "StudyStats",
    "TIME_SLOT_HOURS",
    "TimeSlot",
    "TimelineValidation",
    "UpdateCalendarEventInput",
    "WEEKDAY_NUMBERS",
    "WeeklyScheduleSummary",
    "Weekday",
    "as_utc",
    "utcnow",
]
