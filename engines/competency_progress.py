"""Read-side aggregation of a student's grade history into skill trends."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import db
from env_validation import EngineSettings
from schemas import CompetencyProgressRecord

UNKNOWN_SKILL = "Unknown Skill"
UNKNOWN_COMPETENCY = "Unknown Competency"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def progress_direction(scores: Sequence[float], threshold: float = 5.0) -> str:
    """Compare the most recent score with the one before it.

    ``scores`` is ordered most recent first; fewer than two points is stable.
    """
    if len(scores) < 2:
        return "stable"
    delta = scores[0] - scores[1]
    if delta > threshold:
        return "improving"
    if delta < -threshold:
        return "declining"
    return "stable"


class CompetencyProgressAnalyzer:
    """Group a student's grades by competency and skill and summarise each group."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings.from_env()

    def progress_for_student(self, student_id: int) -> List[CompetencyProgressRecord]:
        return self.summarize(db.list_student_grade_history(student_id))

    def summarize(self, history: Sequence[Dict[str, Any]]) -> List[CompetencyProgressRecord]:
        groups: Dict[tuple[int, int], Dict[str, Any]] = {}
        for row in history:
            competency_id = row.get("competency_id") or 0
            skill_id = row.get("component_skill_id") or 0
            key = (competency_id, skill_id)
            group = groups.setdefault(
                key,
                {
                    "competency_id": competency_id,
                    "competency_name": row.get("competency_name") or UNKNOWN_COMPETENCY,
                    "component_skill_id": skill_id,
                    "component_skill_name": row.get("component_skill_name") or UNKNOWN_SKILL,
                    "points": [],
                },
            )
            score = row.get("score")
            group["points"].append((row.get("graded_at") or _EPOCH, float(score) if score is not None else 0.0))

        records: List[CompetencyProgressRecord] = []
        for group in groups.values():
            points = sorted(group["points"], key=lambda p: p[0], reverse=True)
            scores = [score for _, score in points]
            records.append(
                CompetencyProgressRecord(
                    competency_id=group["competency_id"],
                    competency_name=group["competency_name"],
                    component_skill_id=group["component_skill_id"],
                    component_skill_name=group["component_skill_name"],
                    average_score=round_half_up(sum(scores) / len(scores)),
                    total_scores=scores,
                    last_score=scores[0],
                    last_updated=points[0][0],
                    progress_direction=progress_direction(scores, self.settings.progress_trend_threshold),
                )
            )

        records.sort(key=lambda r: (r.competency_name, r.component_skill_name, r.component_skill_id))
        return records
