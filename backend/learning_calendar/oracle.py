"""Schedule assignment protocol and the agent-backed scheduling oracle.

The oracle only ever sees lessons by their position in the request, so every
response is bounds-checked against the exact lesson list the request was
built from before any date is resolved.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, cast

from agents import Agent, ModelSettings, RunConfig, Runner
from openai.types.shared.reasoning import Reasoning
from openai.types.shared.reasoning_effort import ReasoningEffort
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import Settings, get_settings
from .errors import OracleResponseError
from .models import (
    TIME_SLOT_HOURS,
    WEEKDAY_NUMBERS,
    Lesson,
    OnboardingPreferences,
)
from .telemetry import emit_event

logger = logging.getLogger(__name__)

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


class ScheduleLessonEntry(BaseModel):
    index: int = Field(ge=0)
    title: str
    duration_minutes: int
    difficulty: str = "medium"


class ScheduleRequest(BaseModel):
    skill_level: str
    hours_per_week: float
    target_weeks: int = Field(ge=1)
    session_minutes: int
    sessions_per_week: int = Field(ge=0)
    lessons: List[ScheduleLessonEntry] = Field(default_factory=list)
    preferred_days: List[str] = Field(default_factory=list)
    preferred_time_slots: List[str] = Field(default_factory=list)
    learning_style: str = "mixed"
    pace_preference: str = "steady"
    source_lessons: List[Lesson] = Field(default_factory=list, exclude=True)


class ScheduleItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lesson_index: int = Field(validation_alias=AliasChoices("videoIndex", "video_index", "lesson_index"))
    week_number: int = Field(ge=1, validation_alias=AliasChoices("weekNumber", "week_number"))
    day_of_week: str = Field(validation_alias=AliasChoices("dayOfWeek", "day_of_week"))
    time_slot: str = Field(validation_alias=AliasChoices("timeSlot", "time_slot"))
    estimated_duration: int = Field(ge=0, validation_alias=AliasChoices("estimatedDuration", "estimated_duration"))
    learning_objectives: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("learningObjectives", "learning_objectives"),
    )
    difficulty: int = Field(ge=1, le=5)

    @field_validator("day_of_week", "time_slot")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("learning_objectives")
    @classmethod
    def _strip_objectives(cls, value: List[str]) -> List[str]:
        return [entry.strip() for entry in value if entry and entry.strip()]


@dataclass(frozen=True)
class AcceptedItem:
    item: ScheduleItem
    lesson: Lesson


class ScheduleOracle(Protocol):
    async def propose(self, request: ScheduleRequest) -> Any:
        """Return raw oracle output: JSON text, a list of items, or a dict with ``items``."""


def build_schedule_request(lessons: Sequence[Lesson], preferences: OnboardingPreferences) -> ScheduleRequest:
    session_minutes = preferences.session_minutes
    sessions_per_week = math.floor(preferences.available_hours_per_week * 60 / session_minutes)
    return ScheduleRequest(
        skill_level=preferences.skill_level,
        hours_per_week=preferences.available_hours_per_week,
        target_weeks=preferences.target_completion_weeks,
        session_minutes=session_minutes,
        sessions_per_week=sessions_per_week,
        lessons=[
            ScheduleLessonEntry(
                index=index,
                title=lesson.title,
                duration_minutes=lesson.duration_minutes,
                difficulty=lesson.difficulty_level or "medium",
            )
            for index, lesson in enumerate(lessons)
        ],
        preferred_days=list(preferences.preferred_days),
        preferred_time_slots=list(preferences.preferred_time_slots),
        learning_style=preferences.learning_style,
        pace_preference=preferences.pace_preference,
        source_lessons=list(lessons),
    )


def parse_schedule_response(raw: Any) -> List[ScheduleItem]:
    """Decode raw oracle output into schedule items.

    Text may surround the JSON array with prose; the bracketed block is
    extracted. Anything that is not a list of well-formed items raises
    ``OracleResponseError``.
    """
    payload = raw
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        payload = _decode_text(payload)
    if isinstance(payload, dict):
        if "items" not in payload:
            raise OracleResponseError("Oracle response object has no 'items' list.")
        payload = payload["items"]
    if not isinstance(payload, list):
        raise OracleResponseError(f"Oracle response must be a list, got {type(payload).__name__}.")

    items: List[ScheduleItem] = []
    for position, entry in enumerate(payload):
        if isinstance(entry, BaseModel):
            entry = entry.model_dump()
        try:
            items.append(ScheduleItem.model_validate(entry))
        except ValidationError as exc:
            raise OracleResponseError(f"Oracle schedule item {position} is malformed: {exc}") from exc
    return items


def _decode_text(text: str) -> Any:
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            pass
    match = _JSON_ARRAY.search(text)
    if not match:
        logger.error("Failed to locate a JSON array in oracle output: %.200s", text)
        raise OracleResponseError("Failed to parse oracle schedule response.")
    try:
        return json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise OracleResponseError(f"Oracle schedule response is not valid JSON: {exc}") from exc


def validate_schedule_items(items: Sequence[ScheduleItem], request: ScheduleRequest) -> List[AcceptedItem]:
    """Keep the items that reference a real lesson and honour the requested bounds.

    Rejected items are dropped with a warning; the per-week session limit is
    left to the oracle.
    """
    lessons = request.source_lessons
    days = set(request.preferred_days)
    slots = set(request.preferred_time_slots)
    accepted: List[AcceptedItem] = []
    dropped: Dict[str, int] = {}

    for item in items:
        reason: Optional[str] = None
        if not 0 <= item.lesson_index < len(lessons):
            reason = "index_out_of_bounds"
            logger.warning("Lesson index %s not found in schedule request, skipping", item.lesson_index)
        elif item.week_number > request.target_weeks:
            reason = "week_out_of_range"
            logger.warning(
                "Week %s exceeds the %s-week target, skipping lesson index %s",
                item.week_number,
                request.target_weeks,
                item.lesson_index,
            )
        elif item.day_of_week not in days:
            reason = "day_not_requested"
            logger.warning("Day %r was not requested, skipping lesson index %s", item.day_of_week, item.lesson_index)
        elif item.time_slot not in slots:
            reason = "slot_not_requested"
            logger.warning("Time slot %r was not requested, skipping lesson index %s", item.time_slot, item.lesson_index)

        if reason:
            dropped[reason] = dropped.get(reason, 0) + 1
            continue
        accepted.append(AcceptedItem(item=item, lesson=lessons[item.lesson_index]))

    if dropped:
        emit_event(
            "oracle_items_dropped",
            dropped=sum(dropped.values()),
            kept=len(accepted),
            reasons=dropped,
        )
    return accepted


def resolve_scheduled_date(now: datetime, week_number: int, day_of_week: str, time_slot: str) -> datetime:
    """Place a (week, weekday, slot) assignment on the calendar relative to ``now``.

    The date moves to the start of the target week, then forward (never
    back) to the requested weekday, and takes the slot's hour on the hour.
    Arithmetic happens in ``now``'s timezone.
    """
    day_key = day_of_week.strip().lower()
    slot_key = time_slot.strip().lower()
    if day_key not in WEEKDAY_NUMBERS:
        raise ValueError(f"Unknown weekday '{day_of_week}'")
    if slot_key not in TIME_SLOT_HOURS:
        raise ValueError(f"Unknown time slot '{time_slot}'")

    date = now + timedelta(days=(week_number - 1) * 7)
    days_to_add = (WEEKDAY_NUMBERS[day_key] - date.weekday() + 7) % 7
    date = date + timedelta(days=days_to_add)
    return date.replace(hour=TIME_SLOT_HOURS[slot_key], minute=0, second=0, microsecond=0)


ORACLE_INSTRUCTIONS = (
    "You are an expert learning designer who turns a course catalog into a weekly study plan. "
    "Start with easier lessons for quick wins, raise difficulty gradually, leave buffer between complex "
    "topics and keep natural rest days. Respond only with JSON matching the requested structure."
)

_ORACLE_CACHE: dict[str, Agent] = {}


def _oracle_agent(model: str) -> Agent:
    if model not in _ORACLE_CACHE:
        _ORACLE_CACHE[model] = Agent(
            name="Learning Calendar Scheduler",
            instructions=ORACLE_INSTRUCTIONS,
            model=model,
            tools=[],
            model_settings=ModelSettings(store=False),
        )
    return _ORACLE_CACHE[model]


def _reasoning_effort(value: str) -> ReasoningEffort:
    allowed = {"minimal", "low", "medium", "high"}
    effort = value if value in allowed else "medium"
    return cast(ReasoningEffort, effort)


def build_schedule_prompt(request: ScheduleRequest) -> str:
    days = ", ".join(request.preferred_days)
    slots = ", ".join(request.preferred_time_slots)
    example = [
        {
            "videoIndex": 0,
            "weekNumber": 1,
            "dayOfWeek": request.preferred_days[0] if request.preferred_days else "monday",
            "timeSlot": request.preferred_time_slots[0] if request.preferred_time_slots else "evening",
            "estimatedDuration": request.session_minutes,
            "learningObjectives": ["objective 1", "objective 2"],
            "difficulty": 2,
        }
    ]
    return (
        "Create a personalised learning schedule.\n\n"
        "STUDENT AND LESSONS:\n"
        f"{json.dumps(request.model_dump(mode='json'), ensure_ascii=False, indent=2)}\n\n"
        "Return ONLY a JSON array shaped like:\n"
        f"{json.dumps(example, ensure_ascii=False, indent=2)}\n\n"
        "Constraints:\n"
        f"- videoIndex is the 0-based index into the lessons list ({len(request.lessons)} lessons)\n"
        f"- weekNumber starts at 1 and must not exceed {request.target_weeks}\n"
        f"- dayOfWeek must be one of: {days}\n"
        f"- timeSlot must be one of: {slots}\n"
        f"- sessions should last about {request.session_minutes} minutes\n"
        f"- never schedule more than {request.sessions_per_week} sessions in a single week\n"
        "- difficulty is 1 (easiest) to 5 (hardest)\n"
        "- learningObjectives holds 2-3 clear, actionable outcomes"
    )


class AgentScheduleOracle:
    """Scheduling oracle backed by an OpenAI Agents SDK agent."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()

    async def propose(self, request: ScheduleRequest) -> Any:
        agent = _oracle_agent(self._settings.oracle_model)
        prompt = build_schedule_prompt(request)
        logger.info(
            "Requesting schedule for %d lessons over %d weeks (model=%s)",
            len(request.lessons),
            request.target_weeks,
            self._settings.oracle_model,
        )
        try:
            result = await Runner.run(
                agent,
                prompt,
                run_config=RunConfig(
                    model_settings=ModelSettings(
                        reasoning=Reasoning(
                            effort=_reasoning_effort(self._settings.oracle_reasoning),
                            summary="auto",
                        ),
                    )
                ),
            )
        except Exception as exc:  # noqa: BLE001
            raise OracleResponseError(f"Scheduling oracle call failed: {exc}") from exc
        return result.final_output


__all__ = [
    "AcceptedItem",
    "AgentScheduleOracle",
    "ScheduleItem",
    "ScheduleLessonEntry",
    "ScheduleOracle",
    "ScheduleRequest",
    "build_schedule_prompt",
    "build_schedule_request",
    "parse_schedule_response",
    "resolve_scheduled_date",
    "validate_schedule_items",
]
