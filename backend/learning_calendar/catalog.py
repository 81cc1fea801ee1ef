"""Lesson catalog collaborator."""

from __future__ import annotations

import logging
from typing import List, Protocol

from sqlalchemy import select

from .db.models import LessonModel
from .db.session import session_scope
from .models import Lesson

logger = logging.getLogger(__name__)

_KNOWN_LEVELS = {"beginner", "intermediate", "advanced"}


class LessonCatalog(Protocol):
    def list_lessons(self, owner_id: str) -> List[Lesson]:
        """Return the owner's processed lessons in catalog order."""


class DatabaseLessonCatalog:
    """Reads completed lessons from the ``lessons`` table, oldest first."""

    def list_lessons(self, owner_id: str) -> List[Lesson]:
        stmt = (
            select(LessonModel)
            .where(
                LessonModel.owner_id == owner_id,
                LessonModel.processing_status == "completed",
            )
            .order_by(LessonModel.created_at.asc(), LessonModel.id.asc())
        )
        with session_scope(commit=False) as session:
            rows = session.execute(stmt).scalars().all()
            lessons = [self._to_domain(row) for row in rows]
        logger.debug("Loaded %d lessons for catalog owner %s", len(lessons), owner_id)
        return lessons

    @staticmethod
    def _to_domain(row: LessonModel) -> Lesson:
        level = (row.difficulty_level or "").strip().lower()
        return Lesson(
            id=row.id,
            title=row.title,
            duration_minutes=max(0, row.duration_minutes or 0),
            difficulty_level=level if level in _KNOWN_LEVELS else None,
            learning_objectives=list(row.learning_objectives or []),
        )


__all__ = ["DatabaseLessonCatalog", "LessonCatalog"]
