from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest

from learning_calendar.calendar_store import CalendarStore
from learning_calendar.errors import (
    NoContentError,
    OracleResponseError,
    PersistenceError,
    TimelineInfeasibleError,
)
from learning_calendar.generator import CALENDAR_CREATED_MILESTONE, CalendarGenerator, summarize_generation
from learning_calendar.models import Lesson, OnboardingPreferences
from learning_calendar.oracle import ScheduleRequest

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)  # Monday
STUDENT = "student-1"
OWNER = "creator-1"


class FakeCatalog:
    def __init__(self, lessons: List[Lesson]) -> None:
        self.lessons = lessons

    def list_lessons(self, owner_id: str) -> List[Lesson]:
        return list(self.lessons)


class FakeOracle:
    def __init__(self, response: Any = None, *, error: Optional[Exception] = None, delay: float = 0) -> None:
        self.response = response
        self.error = error
        self.delay = delay
        self.requests: List[ScheduleRequest] = []

    async def propose(self, request: ScheduleRequest) -> Any:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeRewards:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: List[tuple[str, str]] = []

    def notify_milestone(self, student_id: str, milestone_key: str) -> None:
        if self.fail:
            raise ConnectionError("reward service unavailable")
        self.calls.append((student_id, milestone_key))


class PreferencesFailingStore(CalendarStore):
    def upsert_preferences(self, preferences):
        raise RuntimeError("preferences table locked")


class EventsFailingStore(CalendarStore):
    def bulk_create_events(self, student_id, drafts):
        raise PersistenceError("disk full")


def _catalog() -> List[Lesson]:
    return [
        Lesson(id="lesson-1", title="Setup", duration_minutes=45, difficulty_level="beginner",
               learning_objectives=["Install the toolchain"]),
        Lesson(id="lesson-2", title="Basics", duration_minutes=60, difficulty_level="beginner"),
        Lesson(id="lesson-3", title="Patterns", duration_minutes=90, difficulty_level="intermediate"),
    ]


def _preferences(**overrides) -> OnboardingPreferences:
    payload = {
        "skill_level": "beginner",
        "target_completion_weeks": 12,
        "available_hours_per_week": 10,
        "preferred_days": ["monday", "wednesday"],
        "preferred_time_slots": ["evening"],
    }
    payload.update(overrides)
    return OnboardingPreferences(**payload)


def _item(index: int, week: int, day: str, objectives: Optional[List[str]] = None) -> dict:
    return {
        "videoIndex": index,
        "weekNumber": week,
        "dayOfWeek": day,
        "timeSlot": "evening",
        "estimatedDuration": 50,
        "learningObjectives": objectives or [],
        "difficulty": 2,
    }


def _good_response() -> list:
    return [
        _item(0, 1, "monday"),
        _item(1, 1, "wednesday", ["Use variables"]),
        _item(7, 1, "wednesday"),
        _item(2, 2, "monday", ["Spot a pattern"]),
    ]


def _generator(oracle: FakeOracle, *, store: Optional[CalendarStore] = None, rewards: Optional[FakeRewards] = None,
               lessons: Optional[List[Lesson]] = None) -> CalendarGenerator:
    return CalendarGenerator(
        FakeCatalog(_catalog() if lessons is None else lessons),
        oracle,
        store or CalendarStore(),
        rewards or FakeRewards(),
    )


def test_generate_persists_valid_items_and_signals_milestone(telemetry_events) -> None:
    rewards = FakeRewards()
    store = CalendarStore()
    generator = _generator(FakeOracle(_good_response()), store=store, rewards=rewards)

    events = asyncio.run(generator.generate(STUDENT, OWNER, _preferences(), now=NOW))

    assert [event.lesson_id for event in events] == ["lesson-1", "lesson-2", "lesson-3"]
    assert [event.scheduled_date for event in events] == [
        datetime(2025, 3, 10, 19, tzinfo=timezone.utc),
        datetime(2025, 3, 12, 19, tzinfo=timezone.utc),
        datetime(2025, 3, 17, 19, tzinfo=timezone.utc),
    ]
    assert events[0].learning_objectives == ["Install the toolchain"]
    assert events[1].learning_objectives == ["Use variables"]
    assert all(event.student_id == STUDENT and not event.completed for event in events)
    assert [event.id for event in store.get_all(STUDENT)] == [event.id for event in events]

    preferences = store.get_preferences(STUDENT)
    assert preferences is not None
    assert preferences.catalog_owner_id == OWNER
    assert preferences.target_completion_date == NOW + timedelta(weeks=12)
    assert preferences.preferred_days == ["monday", "wednesday"]

    assert rewards.calls == [(STUDENT, CALENDAR_CREATED_MILESTONE)]
    names = [event.name for event in telemetry_events]
    assert "oracle_items_dropped" in names
    (outcome,) = [event for event in telemetry_events if event.name == "calendar_generation"]
    assert outcome.payload["status"] == "success"
    assert outcome.payload["event_count"] == 3


def test_generate_resolves_dates_in_student_timezone() -> None:
    generator = _generator(FakeOracle([_item(0, 1, "monday")]))

    (event,) = asyncio.run(
        generator.generate(STUDENT, OWNER, _preferences(timezone="America/New_York"), now=NOW)
    )

    # 19:00 EDT on Monday 2025-03-10.
    assert event.scheduled_date == datetime(2025, 3, 10, 23, tzinfo=timezone.utc)


def test_empty_catalog_is_no_content() -> None:
    oracle = FakeOracle(_good_response())

    with pytest.raises(NoContentError):
        asyncio.run(_generator(oracle, lessons=[]).generate(STUDENT, OWNER, _preferences(), now=NOW))
    assert oracle.requests == []


def test_skill_filter_that_removes_everything_is_no_content() -> None:
    lessons = [Lesson(id="lesson-9", title="Internals", duration_minutes=30, difficulty_level="advanced")]

    with pytest.raises(NoContentError):
        asyncio.run(_generator(FakeOracle([]), lessons=lessons).generate(STUDENT, OWNER, _preferences(), now=NOW))


def test_infeasible_timeline_stops_before_oracle(telemetry_events) -> None:
    oracle = FakeOracle(_good_response())
    preferences = _preferences(available_hours_per_week=1, target_completion_weeks=2)

    with pytest.raises(TimelineInfeasibleError) as excinfo:
        asyncio.run(_generator(oracle).generate(STUDENT, OWNER, preferences, now=NOW))

    assert excinfo.value.suggested_weeks == 6
    assert oracle.requests == []
    (outcome,) = [event for event in telemetry_events if event.name == "calendar_generation"]
    assert outcome.payload["status"] == "error"
    assert outcome.payload["error"] == "TimelineInfeasibleError"


def test_oracle_timeout_persists_nothing() -> None:
    store = CalendarStore()
    rewards = FakeRewards()
    generator = _generator(FakeOracle(_good_response(), delay=1), store=store, rewards=rewards)

    with pytest.raises(OracleResponseError, match="timed out"):
        asyncio.run(generator.generate(STUDENT, OWNER, _preferences(), now=NOW, timeout=0.01))

    assert store.get_all(STUDENT) == []
    assert store.get_preferences(STUDENT) is None
    assert rewards.calls == []


def test_oracle_failure_is_reported_as_oracle_error() -> None:
    generator = _generator(FakeOracle(error=ConnectionError("upstream reset")))

    with pytest.raises(OracleResponseError, match="upstream reset"):
        asyncio.run(generator.generate(STUDENT, OWNER, _preferences(), now=NOW))


@pytest.mark.parametrize(
    "response",
    [
        "Sorry, I cannot help with that.",
        [_item(5, 1, "monday"), _item(0, 1, "sunday")],
    ],
)
def test_unusable_oracle_output_persists_nothing(response) -> None:
    store = CalendarStore()

    with pytest.raises(OracleResponseError):
        asyncio.run(_generator(FakeOracle(response), store=store).generate(STUDENT, OWNER, _preferences(), now=NOW))

    assert store.get_all(STUDENT) == []


def test_best_effort_steps_do_not_fail_generation() -> None:
    store = PreferencesFailingStore()
    generator = _generator(FakeOracle(_good_response()), store=store, rewards=FakeRewards(fail=True))

    events = asyncio.run(generator.generate(STUDENT, OWNER, _preferences(), now=NOW))

    assert len(events) == 3
    assert store.get_preferences(STUDENT) is None
    assert len(store.get_all(STUDENT)) == 3


def test_event_persistence_failure_propagates() -> None:
    store = EventsFailingStore()
    rewards = FakeRewards()

    with pytest.raises(PersistenceError):
        asyncio.run(
            _generator(FakeOracle(_good_response()), store=store, rewards=rewards).generate(
                STUDENT, OWNER, _preferences(), now=NOW
            )
        )

    assert store.get_preferences(STUDENT) is None
    assert rewards.calls == []


def test_summarize_generation_reports_span_and_duration() -> None:
    events = asyncio.run(_generator(FakeOracle(_good_response())).generate(STUDENT, OWNER, _preferences(), now=NOW))

    summary = summarize_generation(events)

    assert summary.total_events == 3
    assert summary.total_duration == 150
    assert summary.start_date == datetime(2025, 3, 10, 19, tzinfo=timezone.utc)
    assert summary.end_date == datetime(2025, 3, 17, 19, tzinfo=timezone.utc)
    assert summary.message == "Scheduled 3 sessions."
    assert summarize_generation([], "Nothing yet").total_events == 0
