from __future__ import annotations

import gc
from datetime import datetime, timedelta, timezone

import pytest

from learning_calendar import calendar_store as calendar_store_module
from learning_calendar.calendar_store import CalendarStore, classify_pace, pace_ratio, student_lock
from learning_calendar.db.models import CalendarAuditEventModel, CalendarEventModel
from learning_calendar.db.session import session_scope
from learning_calendar.errors import DependencyCycleError, NotFoundError
from learning_calendar.models import (
    CalendarEventFilters,
    CreateCalendarEventInput,
    SchedulePreferences,
    UpdateCalendarEventInput,
)
from sqlalchemy import select

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)  # Monday
STUDENT = "student-1"


def _draft(lesson_id: str, offset_days: float, *, prerequisites=None, difficulty=None, student=STUDENT):
    return CreateCalendarEventInput(
        student_id=student,
        lesson_id=lesson_id,
        scheduled_date=NOW + timedelta(days=offset_days),
        session_duration=50,
        prerequisites=prerequisites or [],
        estimated_difficulty=difficulty,
    )


def test_create_and_fetch_event_normalises_to_utc() -> None:
    store = CalendarStore()
    created = store.create_event(_draft("lesson-1", 2, prerequisites=["lesson-0"], difficulty=3))

    fetched = store.get_event(created.id)

    assert fetched.lesson_id == "lesson-1"
    assert fetched.scheduled_date == NOW + timedelta(days=2)
    assert fetched.scheduled_date.tzinfo is not None
    assert fetched.prerequisites == ["lesson-0"]
    assert fetched.completed is False
    assert fetched.reschedule_count == 0


def test_missing_event_raises_not_found() -> None:
    store = CalendarStore()
    with pytest.raises(NotFoundError):
        store.get_event("missing")
    with pytest.raises(LookupError):
        store.reschedule("missing", NOW)


def test_upcoming_returns_future_incomplete_events_in_order() -> None:
    store = CalendarStore()
    store.bulk_create_events(
        STUDENT,
        [
            _draft("past", -1),
            _draft("later", 5),
            _draft("soon", 1),
            _draft("done", 2),
        ],
    )
    store.create_event(_draft("other", 1, student="student-2"))
    done = store.get_by_date_range(CalendarEventFilters(student_id=STUDENT, lesson_id="done"))[0]
    store.mark_complete(done.id, now=NOW)

    upcoming = store.get_upcoming(STUDENT, now=NOW)
    assert [event.lesson_id for event in upcoming] == ["soon", "later"]
    assert [event.lesson_id for event in store.get_upcoming(STUDENT, 1, now=NOW)] == ["soon"]


def test_date_range_and_get_all_are_ascending() -> None:
    store = CalendarStore()
    store.bulk_create_events(STUDENT, [_draft("c", 9), _draft("a", 1), _draft("b", 4)])

    assert [event.lesson_id for event in store.get_all(STUDENT)] == ["a", "b", "c"]
    window = store.get_by_date_range(
        CalendarEventFilters(student_id=STUDENT, start_date=NOW + timedelta(days=2), end_date=NOW + timedelta(days=9))
    )
    assert [event.lesson_id for event in window] == ["b", "c"]


def test_update_with_rescheduled_from_counts_reschedules() -> None:
    store = CalendarStore()
    event = store.create_event(_draft("lesson-1", 1))

    updated = store.update_event(
        event.id,
        UpdateCalendarEventInput(
            scheduled_date=NOW + timedelta(days=3),
            rescheduled_from=event.scheduled_date,
            notes="moved for travel",
        ),
    )
    again = store.update_event(event.id, UpdateCalendarEventInput(session_duration=25))

    assert updated.reschedule_count == 1
    assert updated.rescheduled_from == event.scheduled_date
    assert updated.notes == "moved for travel"
    assert again.reschedule_count == 1
    assert again.session_duration == 25


def test_mark_complete_overwrites_timestamp_on_repeat() -> None:
    store = CalendarStore()
    event = store.create_event(_draft("lesson-1", -1))

    first = store.mark_complete(event.id, 42, now=NOW)
    second = store.mark_complete(event.id, now=NOW + timedelta(hours=1))

    assert first.completed and first.completed_at == NOW
    assert first.actual_duration == 42
    assert second.completed_at == NOW + timedelta(hours=1)
    assert second.actual_duration == 42


def test_reschedule_without_cascade_moves_only_target() -> None:
    store = CalendarStore()
    first, second = store.bulk_create_events(
        STUDENT,
        [_draft("lesson-1", 1), _draft("lesson-2", 2, prerequisites=["lesson-1"])],
    )

    moved = store.reschedule(first.id, NOW + timedelta(days=4))

    assert [event.id for event in moved] == [first.id]
    assert moved[0].rescheduled_from == first.scheduled_date
    assert moved[0].reschedule_count == 1
    assert store.get_event(second.id).scheduled_date == second.scheduled_date


def test_cascade_shifts_every_dependent_by_the_same_days(telemetry_events) -> None:
    store = CalendarStore()
    root, child, grandchild, unrelated = store.bulk_create_events(
        STUDENT,
        [
            _draft("lesson-1", 1),
            _draft("lesson-2", 3, prerequisites=["lesson-1"]),
            _draft("lesson-3", 6, prerequisites=["lesson-2"]),
            _draft("lesson-4", 2),
        ],
    )

    # 2 days 12 hours later: dependents move by whole days only.
    new_date = root.scheduled_date + timedelta(days=2, hours=12)
    moved = store.reschedule(root.id, new_date, cascade=True)

    assert {event.id for event in moved} == {root.id, child.id, grandchild.id}
    assert store.get_event(root.id).scheduled_date == new_date
    assert store.get_event(child.id).scheduled_date == child.scheduled_date + timedelta(days=2)
    assert store.get_event(grandchild.id).scheduled_date == grandchild.scheduled_date + timedelta(days=2)
    assert store.get_event(unrelated.id).scheduled_date == unrelated.scheduled_date
    assert store.get_event(grandchild.id).rescheduled_from == grandchild.scheduled_date

    (event,) = [item for item in telemetry_events if item.name == "event_rescheduled"]
    assert event.payload["moved"] == 3
    assert event.payload["days_diff"] == 2
    assert event.payload["cascade"] is True


def test_cascade_handles_earlier_dates() -> None:
    store = CalendarStore()
    root, child = store.bulk_create_events(
        STUDENT,
        [_draft("lesson-1", 5), _draft("lesson-2", 8, prerequisites=["lesson-1"])],
    )

    store.reschedule(root.id, root.scheduled_date - timedelta(days=3), cascade=True)

    assert store.get_event(child.id).scheduled_date == child.scheduled_date - timedelta(days=3)


def test_cascade_terminates_on_legacy_cycles() -> None:
    with session_scope() as session:
        first = CalendarEventModel(
            student_id=STUDENT,
            lesson_id="lesson-1",
            scheduled_date=NOW,
            session_duration=30,
            prerequisites=["lesson-2"],
            learning_objectives=[],
        )
        second = CalendarEventModel(
            student_id=STUDENT,
            lesson_id="lesson-2",
            scheduled_date=NOW + timedelta(days=1),
            session_duration=30,
            prerequisites=["lesson-1"],
            learning_objectives=[],
        )
        session.add_all([first, second])
        session.flush()
        first_id, second_id = first.id, second.id

    moved = CalendarStore().reschedule(first_id, NOW + timedelta(days=1), cascade=True)

    assert [event.id for event in moved] == [first_id, second_id]


def test_insert_rejects_dependency_cycles() -> None:
    store = CalendarStore()
    store.create_event(_draft("lesson-1", 1, prerequisites=["lesson-2"]))

    with pytest.raises(DependencyCycleError):
        store.create_event(_draft("lesson-2", 2, prerequisites=["lesson-1"]))
    with pytest.raises(DependencyCycleError):
        store.create_event(_draft("lesson-9", 2, prerequisites=["lesson-9"]))

    assert [event.lesson_id for event in store.get_all(STUDENT)] == ["lesson-1"]


def test_bulk_insert_is_all_or_nothing() -> None:
    store = CalendarStore()

    with pytest.raises(DependencyCycleError):
        store.bulk_create_events(
            STUDENT,
            [
                _draft("lesson-1", 1),
                _draft("lesson-2", 2, prerequisites=["lesson-3"]),
                _draft("lesson-3", 3, prerequisites=["lesson-2"]),
            ],
        )

    assert store.get_all(STUDENT) == []


def test_delete_event_reports_whether_row_existed() -> None:
    store = CalendarStore()
    event = store.create_event(_draft("lesson-1", 1))

    assert store.delete_event(event.id) is True
    assert store.delete_event(event.id) is False
    with session_scope() as session:
        audit_types = session.execute(select(CalendarAuditEventModel.event_type)).scalars().all()
    assert "event_delete" in audit_types


def test_study_session_duration_is_whole_minutes() -> None:
    store = CalendarStore()
    event = store.create_event(_draft("lesson-1", 0))

    started = store.start_session(STUDENT, event.id, now=NOW)
    ended = store.end_session(started.id, now=NOW + timedelta(minutes=45, seconds=50))

    assert started.completed is False
    assert ended.duration_minutes == 45
    assert ended.completed is True
    assert ended.event_id == event.id
    assert ended.ended_at == NOW + timedelta(minutes=45, seconds=50)


def test_ending_unknown_session_defaults_to_zero_minutes() -> None:
    ended = CalendarStore().end_session("no-such-session", completed=False, now=NOW)

    assert ended.id == "no-such-session"
    assert ended.duration_minutes == 0
    assert ended.completed is False


def test_study_stats_aggregate_sessions_and_events() -> None:
    store = CalendarStore()
    events = store.bulk_create_events(
        STUDENT,
        [
            _draft("lesson-1", -6),
            _draft("lesson-2", -5),
            _draft("lesson-3", -4),
            _draft("lesson-4", -3),
            _draft("lesson-5", -2),
            _draft("lesson-6", 4),
            _draft("lesson-7", 9),
        ],
    )
    store.mark_complete(events[0].id, now=NOW - timedelta(days=6))
    store.mark_complete(events[1].id, now=NOW - timedelta(days=3))
    store.mark_complete(events[2].id, now=NOW - timedelta(days=2))
    store.mark_complete(events[3].id, now=NOW - timedelta(days=1))

    this_week = store.start_session(STUDENT, now=NOW - timedelta(hours=2))
    store.end_session(this_week.id, now=NOW - timedelta(hours=1, minutes=30))
    last_week = store.start_session(STUDENT, now=NOW - timedelta(days=2))
    store.end_session(last_week.id, now=NOW - timedelta(days=2) + timedelta(minutes=60))
    abandoned = store.start_session(STUDENT, now=NOW - timedelta(hours=3))
    store.end_session(abandoned.id, completed=False, now=NOW - timedelta(hours=2))

    stats = store.get_study_stats(STUDENT, now=NOW)

    assert stats.total_sessions_completed == 2
    assert stats.total_minutes_studied == 90
    assert stats.average_session_length == 45
    assert stats.completion_rate == 80.0
    assert stats.streak_days == 3
    assert stats.sessions_this_week == 1
    assert stats.on_track_status == "on-track"
    assert stats.projected_completion_date == events[6].scheduled_date


def test_study_stats_defaults_without_history() -> None:
    stats = CalendarStore().get_study_stats(STUDENT, now=NOW)

    assert stats.total_sessions_completed == 0
    assert stats.average_session_length == 0
    assert stats.completion_rate == 0.0
    assert stats.streak_days == 0
    assert stats.on_track_status == "on-track"
    assert stats.projected_completion_date == NOW


def test_pace_ignores_work_finished_ahead_of_its_date() -> None:
    store = CalendarStore()
    done_past, overdue, early_a, early_b = store.bulk_create_events(
        STUDENT,
        [_draft("lesson-1", -2), _draft("lesson-2", -1), _draft("lesson-3", 3), _draft("lesson-4", 5)],
    )
    for event in (done_past, early_a, early_b):
        store.mark_complete(event.id, now=NOW - timedelta(hours=1))

    events = store.get_all(STUDENT)

    assert pace_ratio(events, NOW) == 0.5
    assert store.get_study_stats(STUDENT, now=NOW).on_track_status == "behind"
    assert classify_pace(1.1) == "ahead"
    assert classify_pace(0.8) == "on-track"
    assert classify_pace(0.79) == "behind"
    assert pace_ratio([], NOW) == 1.0


def test_weekly_summaries_group_from_first_event_day() -> None:
    store = CalendarStore()
    events = store.bulk_create_events(
        STUDENT,
        [_draft("lesson-1", -10), _draft("lesson-2", -9), _draft("lesson-3", -2), _draft("lesson-4", 8)],
    )
    store.mark_complete(events[0].id, 30, now=NOW - timedelta(days=10))

    summaries = store.get_weekly_summaries(STUDENT, now=NOW)

    assert [summary.week_number for summary in summaries] == [1, 2, 3]
    first, second, third = summaries
    assert first.start_date == datetime(2025, 2, 28, tzinfo=timezone.utc)
    assert first.total_events == 2
    assert first.completed_events == 1
    assert first.total_minutes == 100
    assert first.completed_minutes == 30
    assert first.on_track is False
    assert second.total_events == 1
    assert second.on_track is False
    assert third.total_events == 1
    assert third.on_track is True
    assert CalendarStore().get_weekly_summaries("nobody") == []


def test_preferences_upsert_round_trip() -> None:
    store = CalendarStore()
    assert store.get_preferences(STUDENT) is None

    store.upsert_preferences(
        SchedulePreferences(
            student_id=STUDENT,
            catalog_owner_id="creator-1",
            target_completion_date=NOW + timedelta(weeks=8),
            available_hours_per_week=12,
            preferred_days=["tuesday"],
            preferred_time_slots=["morning"],
        )
    )
    updated = store.upsert_preferences(
        SchedulePreferences(student_id=STUDENT, catalog_owner_id="creator-1", available_hours_per_week=6)
    )

    stored = store.get_preferences(STUDENT)
    assert updated.available_hours_per_week == 6
    assert stored.available_hours_per_week == 6
    assert stored.preferred_days == ["monday", "wednesday", "friday"]
    assert stored.catalog_owner_id == "creator-1"
    assert stored.target_completion_date is None


def test_student_lock_is_reentrant_and_released_when_idle() -> None:
    with student_lock("student-9"):
        with student_lock("student-9"):
            assert "student-9" in calendar_store_module._student_locks

    gc.collect()

    assert "student-9" not in calendar_store_module._student_locks
