"""Pydantic schemas for the grading engine and helper utilities."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError

__all__ = [
    "Role",
    "Tier",
    "RubricLevelId",
    "Actor",
    "User",
    "Project",
    "Milestone",
    "LearnerOutcome",
    "Competency",
    "ComponentSkill",
    "Question",
    "Assessment",
    "Submission",
    "Grade",
    "GradeInput",
    "SkillScore",
    "Credential",
    "CompetencyProgressRecord",
    "GradeSubmissionResult",
    "PreviewFeedbackResult",
    "ShareCodeResult",
    "parse_json_safe",
]

Role = Literal["student", "teacher", "admin"]
Tier = Literal["free", "enterprise"]
RubricLevelId = Literal["emerging", "developing", "proficient", "applying"]
CredentialKind = Literal["sticker", "badge", "plaque"]
AssessmentType = Literal["teacher", "self_evaluation"]
ProgressDirection = Literal["improving", "declining", "stable"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Actor(BaseModel):
    """Acting user as supplied by the authorization context."""

    id: int
    role: Role
    tier: Tier = "free"
    school_id: int | None = None


class User(BaseModel):
    id: int
    username: str | None = None
    role: Role
    tier: Tier = "free"
    school_id: int | None = None

    def as_actor(self) -> Actor:
        return Actor(id=self.id, role=self.role, tier=self.tier, school_id=self.school_id)


class Project(BaseModel):
    id: int
    title: str = ""
    teacher_id: int | None = None
    school_id: int | None = None


class Milestone(BaseModel):
    id: int
    project_id: int | None = None
    title: str = ""


class LearnerOutcome(BaseModel):
    id: int
    name: str


class Competency(BaseModel):
    id: int
    name: str
    learner_outcome_id: int | None = None


class ComponentSkill(BaseModel):
    id: int
    name: str
    description: str | None = None
    competency_id: int | None = None
    competency_name: str | None = None
    learner_outcome_name: str | None = None


class Question(BaseModel):
    text: str = ""
    type: str | None = None

    model_config = {
        "extra": "allow",
    }


class Assessment(BaseModel):
    id: int
    title: str = ""
    description: str | None = None
    milestone_id: int | None = Field(
        default=None,
        description="Parent milestone; None marks a standalone assessment.",
    )
    assessment_type: AssessmentType = "teacher"
    questions: List[Question] = Field(default_factory=list)
    component_skill_ids: List[int] = Field(default_factory=list)
    due_date: datetime | None = None
    share_code: str | None = Field(
        default=None,
        description="Five uppercase letters, unique among assessments.",
    )
    share_code_expires_at: datetime | None = None
    reference_document_url: str | None = None
    created_by: int | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class Submission(BaseModel):
    id: int
    assessment_id: int | None = None
    student_id: int | None = None
    responses: Any = None
    submitted_at: datetime | None = Field(
        default=None,
        description="Absent while the submission is a draft.",
    )
    graded_at: datetime | None = Field(
        default=None,
        description="Absent while the submission is ungraded.",
    )
    feedback: str | None = None
    ai_generated_feedback: bool = False


class Grade(BaseModel):
    id: int
    submission_id: int
    component_skill_id: int
    rubric_level: RubricLevelId | None = None
    score: float | None = Field(default=None, ge=0.0)
    feedback: str | None = None
    graded_by: int | None = None
    graded_at: datetime = Field(default_factory=_utcnow)
    component_skill_name: str | None = None
    competency_name: str | None = None


class GradeInput(BaseModel):
    """Per-skill grade as supplied by a teacher."""

    component_skill_id: int
    rubric_level: str | None = None
    score: float | None = None
    feedback: str | None = None


class SkillScore(BaseModel):
    """One per-skill result from the AI scorer."""

    component_skill_id: int
    rubric_level: RubricLevelId
    score: float | None = None
    feedback: str = ""


class Credential(BaseModel):
    id: int
    student_id: int
    kind: CredentialKind
    component_skill_id: int | None = None
    competency_id: int | None = None
    subject_area: str | None = None
    title: str
    description: str | None = None
    color: str | None = None
    awarded_at: datetime = Field(default_factory=_utcnow)
    approved_by: int | None = None


class CompetencyProgressRecord(BaseModel):
    competency_id: int
    competency_name: str
    component_skill_id: int
    component_skill_name: str
    average_score: int
    total_scores: List[float] = Field(
        default_factory=list,
        description="Score history, most recent first.",
    )
    last_score: float
    last_updated: datetime
    progress_direction: ProgressDirection = "stable"


class GradeSubmissionResult(BaseModel):
    grades: List[Grade] = Field(default_factory=list)
    feedback: str | None = None
    submission: Submission
    credentials_awarded: List[Credential] = Field(default_factory=list)


class PreviewFeedbackResult(BaseModel):
    feedback: str
    request_count: int
    remaining_requests: int


class ShareCodeResult(BaseModel):
    share_code: str
    expires_at: datetime
    message: str = "Share code generated successfully"


_T = TypeVar("_T", bound=BaseModel)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except Exception:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass.

    Markdown code fences around the object are tolerated; any other trailing
    content after the first JSON object is rejected.
    """

    first_error: Exception | None = None
    cleaned = _strip_code_fence(text or "")
    try:
        return model.model_validate_json(cleaned)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(cleaned)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = cleaned[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except Exception:
        if first_error:
            raise first_error
        raise


def dump_for_prompt(payload: Dict[str, Any] | List[Any] | Any) -> str:
    """Serialise arbitrary response payloads compactly for LLM prompts."""

    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return json.dumps(payload, ensure_ascii=False, default=str)
