"""Sticker and badge awarding from rubric outcomes."""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Iterable, List, Optional, Sequence

import db
from rubric_levels import RUBRIC_LEVELS
from schemas import Credential, Grade

logger = logging.getLogger(__name__)

BADGE_COLOR = "gold"


def _json_log(event: str, payload: dict) -> None:
    try:
        logger.info(json.dumps({"event": event, **payload}, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.info("%s %s", event, payload)


class CredentialAwarder:
    """Award each qualifying credential at most once per student.

    Returns only credentials created by this call so callers notify students
    about new achievements. A failure on one item is logged and skipped.
    """

    def award_for_grades(self, student_id: int, grades: Sequence[Grade]) -> List[Credential]:
        awarded: List[Credential] = []
        touched_competencies: list[int] = []

        for grade in grades:
            if not RUBRIC_LEVELS.is_award_eligible(grade.rubric_level):
                continue
            try:
                sticker, competency_id = self._award_sticker(student_id, grade)
            except Exception:
                logger.exception(
                    "Awarding sticker failed for student %s skill %s",
                    student_id,
                    grade.component_skill_id,
                )
                continue
            if sticker is not None:
                awarded.append(sticker)
            if competency_id is not None and competency_id not in touched_competencies:
                touched_competencies.append(competency_id)

        approver = next((g.graded_by for g in grades if g.graded_by is not None), None)
        for competency_id in touched_competencies:
            try:
                badge = self._award_badge(student_id, competency_id, approver)
            except Exception:
                logger.exception(
                    "Awarding badge failed for student %s competency %s",
                    student_id,
                    competency_id,
                )
                continue
            if badge is not None:
                awarded.append(badge)

        return awarded

    # ------------------------------------------------------------------
    def _award_sticker(self, student_id: int, grade: Grade) -> tuple[Optional[Credential], Optional[int]]:
        skill = db.get_component_skill(grade.component_skill_id)
        if skill is None:
            logger.warning("Skipping sticker for unknown component skill %s", grade.component_skill_id)
            return None, None

        if db.find_sticker(student_id, skill.id) is not None:
            return None, skill.competency_id

        level = RUBRIC_LEVELS.normalize(grade.rubric_level)
        display = RUBRIC_LEVELS.display_name(level)
        try:
            credential = db.create_credential(
                student_id,
                "sticker",
                f"{display} {skill.name}",
                component_skill_id=skill.id,
                description=f"Achieved {level} level in {skill.name}",
                color=RUBRIC_LEVELS.color_for(level),
                approved_by=grade.graded_by,
            )
        except sqlite3.IntegrityError:
            # Lost a race with a concurrent award; the other writer's sticker stands.
            return None, skill.competency_id

        _json_log(
            "credential_awarded",
            {"kind": "sticker", "student_id": student_id, "component_skill_id": skill.id, "level": level},
        )
        return credential, skill.competency_id

    def _award_badge(self, student_id: int, competency_id: int, approver: Optional[int]) -> Optional[Credential]:
        if db.find_badge(student_id, competency_id) is not None:
            return None

        skills = db.list_component_skills_for_competency(competency_id)
        if not skills:
            return None

        eligible_colors = self._eligible_colors()
        held = db.list_sticker_skill_ids(student_id, competency_id, eligible_colors)
        if not all(skill.id in held for skill in skills):
            return None

        competency = db.get_competency(competency_id)
        if competency is None:
            return None

        try:
            credential = db.create_credential(
                student_id,
                "badge",
                f"{competency.name} Badge",
                competency_id=competency_id,
                description=f"Achieved proficiency in all component skills for {competency.name}",
                color=BADGE_COLOR,
                approved_by=approver,
            )
        except sqlite3.IntegrityError:
            return None

        _json_log(
            "credential_awarded",
            {"kind": "badge", "student_id": student_id, "competency_id": competency_id},
        )
        return credential

    @staticmethod
    def _eligible_colors() -> List[str]:
        colors: Iterable[Optional[str]] = (
            RUBRIC_LEVELS.color_for(level.id)
            for level in RUBRIC_LEVELS
            if RUBRIC_LEVELS.is_award_eligible(level.id)
        )
        return [c for c in colors if c]
