"""Per-skill grade upsert: one grade per (submission, component skill)."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

import db
from engines.validation import InvalidStateError, NotFoundError, coerce_score
from rubric_levels import RUBRIC_LEVELS
from schemas import Grade

logger = logging.getLogger(__name__)


class GradeRecorder:
    """Idempotent grade writer.

    Existence is checked with an explicit lookup before branching into an
    update or an insert, so the same code works on stores without native
    upsert. Two writers can both miss the lookup; the UNIQUE index on
    ``(submission_id, component_skill_id)`` rejects the second insert, which
    then falls back to updating the row the first writer created.
    """

    def upsert(
        self,
        submission_id: int,
        component_skill_id: int,
        rubric_level: Optional[str],
        score: Any,
        feedback: Optional[str],
        grader_id: Optional[int],
        *,
        require_score: bool = False,
    ) -> Grade:
        """Create or overwrite the grade for ``(submission_id, component_skill_id)``.

        ``score=None`` is written as ``0`` when updating an existing grade or
        when ``require_score`` is set; otherwise a new grade keeps ``None`` to
        mean "not scored yet".
        """
        level = RUBRIC_LEVELS.normalize(rubric_level)
        numeric = coerce_score(score)
        if numeric is not None and numeric < 0:
            raise InvalidStateError("Score must not be negative")

        existing = db.get_existing_grade(submission_id, component_skill_id)
        if existing is not None:
            return self._update(existing.id, level, numeric, feedback, grader_id)

        if db.get_component_skill(component_skill_id) is None:
            raise NotFoundError(f"Component skill {component_skill_id} not found")

        create_score = numeric
        if create_score is None and require_score:
            create_score = 0.0
        try:
            return db.create_grade(
                submission_id,
                component_skill_id,
                level,
                create_score,
                feedback,
                grader_id,
            )
        except sqlite3.IntegrityError:
            existing = db.get_existing_grade(submission_id, component_skill_id)
            if existing is None:
                if db.get_submission(submission_id) is None:
                    raise NotFoundError("Submission not found")
                raise
            logger.info(
                "Concurrent grade insert for submission %s skill %s; updating instead",
                submission_id,
                component_skill_id,
            )
            return self._update(existing.id, level, numeric, feedback, grader_id)

    def _update(
        self,
        grade_id: int,
        level: Optional[str],
        score: Optional[float],
        feedback: Optional[str],
        grader_id: Optional[int],
    ) -> Grade:
        return db.update_grade(
            grade_id,
            level,
            score if score is not None else 0.0,
            feedback,
            grader_id,
        )
