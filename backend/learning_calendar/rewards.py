"""Milestone signals sent to the reward collaborator."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import select

from .db.models import StudentMilestoneModel
from .db.session import session_scope
from .models import utcnow
from .telemetry import emit_event

logger = logging.getLogger(__name__)


class RewardNotifier(Protocol):
    def notify_milestone(self, student_id: str, milestone_key: str) -> None:
        """Signal that ``student_id`` reached ``milestone_key``."""


class DatabaseRewardNotifier:
    """Records each milestone once per student and emits a ``milestone_signal`` event.

    XP and achievement economics live in the reward service that consumes the
    signal; repeat notifications for the same key are ignored.
    """

    def notify_milestone(self, student_id: str, milestone_key: str) -> None:
        with session_scope() as session:
            stmt = select(StudentMilestoneModel).where(
                StudentMilestoneModel.student_id == student_id,
                StudentMilestoneModel.milestone_key == milestone_key,
            )
            if session.execute(stmt).scalar_one_or_none() is not None:
                logger.info("Milestone %s already recorded for %s", milestone_key, student_id)
                return
            session.add(
                StudentMilestoneModel(
                    student_id=student_id,
                    milestone_key=milestone_key,
                    unlocked_at=utcnow(),
                )
            )
        emit_event("milestone_signal", student_id=student_id, milestone_key=milestone_key)


__all__ = ["DatabaseRewardNotifier", "RewardNotifier"]
