"""Learning calendar schema: lessons, events, study sessions, preferences, milestones."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "20251021_01_learning_calendar"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "lessons",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("owner_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("difficulty_level", sa.String(length=20), nullable=True),
        sa.Column("learning_objectives", sa.JSON(), nullable=False),
        sa.Column("processing_status", sa.String(length=20), nullable=False, server_default="pending"),
    )
    op.create_index("ix_lessons_owner_status", "lessons", ["owner_id", "processing_status"])

    op.create_table(
        "calendar_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("lesson_id", sa.String(length=64), nullable=False),
        sa.Column("scheduled_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("session_duration", sa.Integer(), nullable=False),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("actual_duration", sa.Integer(), nullable=True),
        sa.Column("rescheduled_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("learning_objectives", sa.JSON(), nullable=False),
        sa.Column("prerequisites", sa.JSON(), nullable=False),
        sa.Column("estimated_difficulty", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "estimated_difficulty IS NULL OR (estimated_difficulty BETWEEN 1 AND 5)",
            name="ck_calendar_events_difficulty",
        ),
    )
    op.create_index("ix_calendar_events_student_date", "calendar_events", ["student_id", "scheduled_date"])
    op.create_index("ix_calendar_events_lesson", "calendar_events", ["lesson_id"])

    op.create_table(
        "study_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column(
            "event_id",
            sa.String(length=36),
            sa.ForeignKey("calendar_events.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("completed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("session_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_study_sessions_student_started", "study_sessions", ["student_id", "started_at"])
    op.create_index("ix_study_sessions_event", "study_sessions", ["event_id"])

    op.create_table(
        "schedule_preferences",
        sa.Column("student_id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("catalog_owner_id", sa.String(length=64), nullable=True),
        sa.Column("target_completion_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_hours_per_week", sa.Float(), nullable=False, server_default="5"),
        sa.Column("preferred_days", sa.JSON(), nullable=False),
        sa.Column("preferred_time_slots", sa.JSON(), nullable=False),
        sa.Column("session_length", sa.String(length=20), nullable=False, server_default="medium"),
        sa.Column("skill_level", sa.String(length=20), nullable=True),
        sa.Column("primary_goal", sa.String(length=50), nullable=True),
        sa.Column("learning_style", sa.String(length=20), nullable=True),
        sa.Column("pace_preference", sa.String(length=20), nullable=True),
        sa.Column("break_frequency", sa.String(length=20), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=True),
    )

    op.create_table(
        "student_milestones",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=False),
        sa.Column("milestone_key", sa.String(length=64), nullable=False),
        sa.Column("unlocked_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("student_id", "milestone_key", name="uq_student_milestone_key"),
    )
    op.create_index("ix_student_milestones_student_id", "student_milestones", ["student_id"])

    op.create_table(
        "calendar_audit_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("student_id", sa.String(length=64), nullable=True),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index("ix_calendar_audit_events_student", "calendar_audit_events", ["student_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_calendar_audit_events_student", table_name="calendar_audit_events")
    op.drop_table("calendar_audit_events")
    op.drop_index("ix_student_milestones_student_id", table_name="student_milestones")
    op.drop_table("student_milestones")
    op.drop_table("schedule_preferences")
    op.drop_index("ix_study_sessions_event", table_name="study_sessions")
    op.drop_index("ix_study_sessions_student_started", table_name="study_sessions")
    op.drop_table("study_sessions")
    op.drop_index("ix_calendar_events_lesson", table_name="calendar_events")
    op.drop_index("ix_calendar_events_student_date", table_name="calendar_events")
    op.drop_table("calendar_events")
    op.drop_index("ix_lessons_owner_status", table_name="lessons")
    op.drop_table("lessons")
