"""ORM models backing the learning calendar persistence layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LessonModel(TimestampMixin, Base):
    """Catalog lesson owned by a content creator; read-only to the scheduler."""

    __tablename__ = "lessons"
    __table_args__ = (Index("ix_lessons_owner_status", "owner_id", "processing_status"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    difficulty_level: Mapped[str | None] = mapped_column(String(20), nullable=True)
    learning_objectives: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    processing_status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)


class CalendarEventModel(TimestampMixin, Base):
    __tablename__ = "calendar_events"
    __table_args__ = (
        Index("ix_calendar_events_student_date", "student_id", "scheduled_date"),
        Index("ix_calendar_events_lesson", "lesson_id"),
        CheckConstraint(
            "estimated_difficulty IS NULL OR (estimated_difficulty BETWEEN 1 AND 5)",
            name="ck_calendar_events_difficulty",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lesson_id: Mapped[str] = mapped_column(String(64), nullable=False)
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_duration: Mapped[int] = mapped_column(Integer, nullable=False)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rescheduled_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    learning_objectives: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    prerequisites: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    estimated_difficulty: Mapped[int | None] = mapped_column(Integer, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    study_sessions: Mapped[list["StudySessionModel"]] = relationship(back_populates="event")


class StudySessionModel(Base):
    __tablename__ = "study_sessions"
    __table_args__ = (
        Index("ix_study_sessions_student_started", "student_id", "started_at"),
        Index("ix_study_sessions_event", "event_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("calendar_events.id", ondelete="SET NULL"), nullable=True
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    session_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    event: Mapped[CalendarEventModel | None] = relationship(back_populates="study_sessions")


class SchedulePreferencesModel(TimestampMixin, Base):
    __tablename__ = "schedule_preferences"

    student_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    catalog_owner_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_completion_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    available_hours_per_week: Mapped[float] = mapped_column(Float, default=5, nullable=False)
    preferred_days: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    preferred_time_slots: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    session_length: Mapped[str] = mapped_column(String(20), default="medium", nullable=False)
    skill_level: Mapped[str | None] = mapped_column(String(20), default="beginner", nullable=True)
    primary_goal: Mapped[str | None] = mapped_column(String(50), nullable=True)
    learning_style: Mapped[str | None] = mapped_column(String(20), nullable=True)
    pace_preference: Mapped[str | None] = mapped_column(String(20), nullable=True)
    break_frequency: Mapped[str | None] = mapped_column(String(20), nullable=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)


class StudentMilestoneModel(Base):
    __tablename__ = "student_milestones"
    __table_args__ = (
        UniqueConstraint("student_id", "milestone_key", name="uq_student_milestone_key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    milestone_key: Mapped[str] = mapped_column(String(64), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class CalendarAuditEventModel(Base):
    __tablename__ = "calendar_audit_events"
    __table_args__ = (Index("ix_calendar_audit_events_student", "student_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    student_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


__all__ = [
    "CalendarAuditEventModel",
    "CalendarEventModel",
    "LessonModel",
    "SchedulePreferencesModel",
    "StudentMilestoneModel",
    "StudySessionModel",
]
