# app.py: GradeBridge v1.0.0 HTTP surface
# - Thin FastAPI layer over the grading engines
# - Acting user comes from the X-User-Id header
# - Typed engine errors map onto HTTP status codes

import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import db
from ai_scorer import LLMScorer
from engines.access import SubmissionAccessGuard
from engines.competency_progress import CompetencyProgressAnalyzer
from engines.grading_orchestrator import AIGradingOrchestrator
from engines.share_codes import ShareCodeIssuer
from engines.validation import AccessDeniedError, GradingError, NotFoundError
from env_validation import EngineSettings
from schemas import Actor, Assessment, GradeInput, Submission

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        from env_validation import validate_environment
        validate_environment()

        db.init()
        logger.info("Grading engine ready (db=%s, model=%s)", db.DB_PATH, SCORER.model)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="GradeBridge", version="1.0.0", lifespan=_lifespan)

SETTINGS = EngineSettings.from_env()
SCORER = LLMScorer()
GUARD = SubmissionAccessGuard()
SHARE_CODES = ShareCodeIssuer(settings=SETTINGS)
PROGRESS = CompetencyProgressAnalyzer(settings=SETTINGS)
ORCHESTRATOR = AIGradingOrchestrator(SCORER, guard=GUARD, settings=SETTINGS)


@app.exception_handler(GradingError)
async def _grading_error_handler(_: Request, exc: GradingError):
    if exc.status_code >= 500:
        logger.warning("Grading request failed: %s", exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# ---------- Request bodies ----------


class SubmissionBody(BaseModel):
    assessment_id: int
    responses: Any = None


class GradeBody(BaseModel):
    grades: List[GradeInput] = Field(default_factory=list)
    generate_ai_feedback: bool = False
    feedback: Optional[str] = None


class QuestionFeedbackBody(BaseModel):
    rubric_level: str


class PreviewFeedbackBody(BaseModel):
    assessment_id: int
    responses: Any = None


# ---------- Helpers ----------


def _actor(user_id: Optional[int]) -> Actor:
    if user_id is None:
        raise HTTPException(status_code=401, detail="X-User-Id header required")
    user = db.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="unknown user")
    return user.as_actor()


def _load_assessment(assessment_id: int) -> Assessment:
    assessment = db.get_assessment(assessment_id)
    if assessment is None:
        raise NotFoundError("Assessment not found")
    return assessment


def _load_submission(submission_id: int) -> Submission:
    submission = db.get_submission(submission_id)
    if submission is None:
        raise NotFoundError("Submission not found")
    return submission


def _assessment_for_grading(actor: Actor, submission: Submission) -> Assessment:
    if submission.assessment_id is None:
        raise AccessDeniedError()
    assessment = _load_assessment(submission.assessment_id)
    if not GUARD.can_grade(actor, assessment):
        raise AccessDeniedError()
    return assessment


def _require_self_or_staff(actor: Actor, student_id: int) -> None:
    if actor.role == "student" and actor.id != student_id:
        raise AccessDeniedError()


# ---------- Share codes ----------


@app.post("/assessments/{assessment_id}/share-code")
def create_share_code(assessment_id: int, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    if not GUARD.can_manage_share_code(actor, _load_assessment(assessment_id)):
        raise AccessDeniedError()
    return SHARE_CODES.issue(assessment_id).model_dump(mode="json")


@app.post("/assessments/{assessment_id}/share-code/regenerate")
def regenerate_share_code(assessment_id: int, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    if not GUARD.can_manage_share_code(actor, _load_assessment(assessment_id)):
        raise AccessDeniedError()
    return SHARE_CODES.regenerate(assessment_id).model_dump(mode="json")


@app.get("/assessments/by-code/{code}")
def get_assessment_by_code(code: str, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    assessment = SHARE_CODES.resolve(code)
    if not GUARD.can_access_assessment(actor, assessment):
        raise AccessDeniedError()
    return assessment.model_dump(mode="json")


# ---------- Submissions ----------


@app.post("/submissions")
def create_submission(
    body: SubmissionBody,
    background_tasks: BackgroundTasks,
    x_user_id: Optional[int] = Header(default=None),
):
    actor = _actor(x_user_id)
    if actor.role != "student":
        raise AccessDeniedError("Only students can submit assessments")
    assessment = _load_assessment(body.assessment_id)
    if not GUARD.can_access_assessment(actor, assessment):
        raise AccessDeniedError()
    submission = ORCHESTRATOR.submit(
        body.assessment_id,
        actor.id,
        body.responses,
        scheduler=background_tasks.add_task,
    )
    return submission.model_dump(mode="json")


@app.get("/submissions/{submission_id}")
def get_submission(submission_id: int, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    submission = _load_submission(submission_id)
    if not GUARD.can_view(actor, submission):
        raise AccessDeniedError()
    return {
        "submission": submission.model_dump(mode="json"),
        "grades": [g.model_dump(mode="json") for g in db.list_grades_by_submission(submission_id)],
        "grading_state": ORCHESTRATOR.grading_state(submission_id),
    }


@app.post("/submissions/{submission_id}/grade")
def grade_submission(
    submission_id: int,
    body: GradeBody,
    x_user_id: Optional[int] = Header(default=None),
):
    actor = _actor(x_user_id)
    _assessment_for_grading(actor, _load_submission(submission_id))
    result = ORCHESTRATOR.grade_submission(
        submission_id,
        actor.id,
        manual_grades=body.grades,
        generate_ai_feedback=body.generate_ai_feedback,
        feedback=body.feedback,
    )
    return result.model_dump(mode="json")


@app.post("/submissions/{submission_id}/questions/{question_index}/feedback")
def question_feedback(
    submission_id: int,
    question_index: int,
    body: QuestionFeedbackBody,
    x_user_id: Optional[int] = Header(default=None),
):
    actor = _actor(x_user_id)
    _assessment_for_grading(actor, _load_submission(submission_id))
    feedback = ORCHESTRATOR.question_feedback(submission_id, question_index, body.rubric_level)
    return {"feedback": feedback}


@app.post("/submissions/preview-feedback")
def preview_feedback(body: PreviewFeedbackBody, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    result = ORCHESTRATOR.preview_feedback(body.assessment_id, actor, body.responses)
    return result.model_dump(mode="json")


# ---------- Students ----------


@app.get("/students/{student_id}/competency-progress")
def competency_progress(student_id: int, x_user_id: Optional[int] = Header(default=None)):
    actor = _actor(x_user_id)
    _require_self_or_staff(actor, student_id)
    return [record.model_dump(mode="json") for record in PROGRESS.progress_for_student(student_id)]


@app.get("/students/{student_id}/credentials")
def student_credentials(
    student_id: int,
    kind: Optional[str] = None,
    x_user_id: Optional[int] = Header(default=None),
):
    actor = _actor(x_user_id)
    _require_self_or_staff(actor, student_id)
    return [c.model_dump(mode="json") for c in db.list_credentials(student_id, kind)]
