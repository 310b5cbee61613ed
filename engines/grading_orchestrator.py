"""Grading pipeline coordinating manual grades, the AI scorer and credentials.

Per-submission state machine::

    ungraded -> grading -> graded
                   |
                   +-> ungraded   (failure; grades already written stay)

AI scorer and storage failures inside the AI step never abort the pipeline:
the submission still reaches ``graded`` with placeholder feedback.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import db
from ai_scorer import AIScorer
from document_text import extract_text
from engines.access import SubmissionAccessGuard
from engines.credentials import CredentialAwarder
from engines.grade_recorder import GradeRecorder
from engines.validation import (
    AccessDeniedError,
    AIScorerError,
    GradingError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
    response_for_question,
    sanitize_for_prompt,
)
from env_validation import EngineSettings
from schemas import (
    Actor,
    Assessment,
    ComponentSkill,
    Grade,
    GradeInput,
    GradeSubmissionResult,
    PreviewFeedbackResult,
    SkillScore,
    Submission,
)

logger = logging.getLogger(__name__)

AI_FEEDBACK_FALLBACK = "AI feedback generation failed. Please provide manual feedback."
FEEDBACK_UNAVAILABLE = "Unable to generate feedback at this time"
DRAFT_SUBMISSION_ID = -1

Scheduler = Callable[[Callable[[], Any]], None]


def _json_log(event: str, payload: Dict[str, Any]) -> None:
    try:
        logger.info(json.dumps({"event": event, **payload}, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        logger.info("%s %s", event, payload)


def spawn_daemon_thread(task: Callable[[], Any]) -> None:
    """Run ``task`` on a daemon thread without waiting for it."""
    threading.Thread(target=task, daemon=True, name="auto-grade").start()


class PreviewFeedbackLimiter:
    """Process-local preview counter keyed by ``(student_id, assessment_id)``.

    A slot is reserved atomically before the scorer runs and released if the
    preview fails, so concurrent requests cannot overshoot the limit. The
    counter is not shared between processes.
    """

    def __init__(self, limit: int):
        self.limit = limit
        self._counts: Dict[tuple[int, int], int] = {}
        self._lock = threading.Lock()

    def count(self, student_id: int, assessment_id: int) -> int:
        with self._lock:
            return self._counts.get((student_id, assessment_id), 0)

    def reserve(self, student_id: int, assessment_id: int) -> int:
        key = (student_id, assessment_id)
        with self._lock:
            used = self._counts.get(key, 0)
            if used >= self.limit:
                raise RateLimitError(
                    f"Feedback request limit reached. You can request feedback up to {self.limit} times before submitting."
                )
            self._counts[key] = used + 1
            return used + 1

    def release(self, student_id: int, assessment_id: int) -> None:
        key = (student_id, assessment_id)
        with self._lock:
            used = self._counts.get(key, 0)
            if used <= 1:
                self._counts.pop(key, None)
            else:
                self._counts[key] = used - 1

    def clear(self, student_id: int, assessment_id: int) -> None:
        with self._lock:
            self._counts.pop((student_id, assessment_id), None)


class AIGradingOrchestrator:
    def __init__(
        self,
        scorer: AIScorer,
        *,
        recorder: Optional[GradeRecorder] = None,
        awarder: Optional[CredentialAwarder] = None,
        guard: Optional[SubmissionAccessGuard] = None,
        extractor: Callable[[Optional[str]], Optional[str]] = extract_text,
        settings: Optional[EngineSettings] = None,
        scheduler: Scheduler = spawn_daemon_thread,
        limiter: Optional[PreviewFeedbackLimiter] = None,
    ):
        self.scorer = scorer
        self.recorder = recorder or GradeRecorder()
        self.awarder = awarder or CredentialAwarder()
        self.guard = guard or SubmissionAccessGuard()
        self.extractor = extractor
        self.settings = settings or EngineSettings.from_env()
        self.scheduler = scheduler
        self.limiter = limiter or PreviewFeedbackLimiter(self.settings.preview_feedback_limit)
        self._in_flight: Counter[int] = Counter()
        self._state_lock = threading.Lock()

    # ------------------------------------------------------------------
    # grading
    # ------------------------------------------------------------------
    def grade_submission(
        self,
        submission_id: int,
        grader_id: Optional[int],
        manual_grades: Optional[Iterable[GradeInput | Dict[str, Any]]] = None,
        generate_ai_feedback: bool = False,
        feedback: Optional[str] = None,
    ) -> GradeSubmissionResult:
        manual = [
            item if isinstance(item, GradeInput) else GradeInput.model_validate(item)
            for item in manual_grades or []
        ]

        submission = db.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")

        self._enter_grading(submission_id)
        try:
            saved: List[Grade] = []
            for item in manual:
                saved.append(
                    self.recorder.upsert(
                        submission_id,
                        item.component_skill_id,
                        item.rubric_level,
                        item.score,
                        item.feedback,
                        grader_id,
                    )
                )

            if submission.assessment_id is None:
                raise InvalidStateError("Submission has no assessment")
            assessment = db.get_assessment(submission.assessment_id)
            if assessment is None:
                raise NotFoundError("Assessment not found")

            final_feedback = feedback
            if generate_ai_feedback:
                try:
                    if not manual:
                        self._generate_and_save_ai_grades(submission, assessment, grader_id, saved)
                    persisted = db.list_grades_by_submission(submission_id)
                    final_feedback = self.scorer.summarize(submission, persisted)
                except Exception as exc:
                    logger.warning(
                        "AI grading degraded for submission %s: %s", submission_id, exc, exc_info=True
                    )
                    final_feedback = AI_FEEDBACK_FALLBACK

            updates: Dict[str, Any] = {"graded_at": datetime.now(timezone.utc)}
            if final_feedback is not None:
                updates["feedback"] = final_feedback
            if generate_ai_feedback:
                updates["ai_generated_feedback"] = True
            updated = db.update_submission(submission_id, **updates)

            awarded = []
            if saved and submission.student_id is not None:
                awarded = self.awarder.award_for_grades(submission.student_id, saved)

            _json_log(
                "grading_completed",
                {
                    "submission_id": submission_id,
                    "grader_id": grader_id,
                    "manual_grades": len(manual),
                    "grades_written": len(saved),
                    "ai_requested": generate_ai_feedback,
                    "credentials_awarded": len(awarded),
                },
            )
            return GradeSubmissionResult(
                grades=saved,
                feedback=final_feedback,
                submission=updated,
                credentials_awarded=awarded,
            )
        finally:
            self._leave_grading(submission_id)

    def _generate_and_save_ai_grades(
        self,
        submission: Submission,
        assessment: Assessment,
        grader_id: Optional[int],
        saved: List[Grade],
    ) -> None:
        already_graded = {g.component_skill_id for g in db.list_grades_by_submission(submission.id)}
        skills = [s for s in self._target_skills(assessment) if s.id not in already_graded]
        if not skills:
            return

        reference_text = self._reference_text(assessment)
        for result in self._score(submission, assessment, skills, reference_text):
            # Appended as each write lands so a later failure keeps earlier grades.
            saved.append(
                self.recorder.upsert(
                    submission.id,
                    result.component_skill_id,
                    result.rubric_level,
                    result.score,
                    result.feedback,
                    grader_id,
                    require_score=True,
                )
            )

    def _score(
        self,
        submission: Submission,
        assessment: Assessment,
        skills: Sequence[ComponentSkill],
        reference_text: Optional[str],
    ) -> List[SkillScore]:
        wanted = {skill.id for skill in skills}
        results: List[SkillScore] = []
        seen: set[int] = set()
        for raw in self.scorer.score_skills(submission, assessment, skills, reference_text) or []:
            item = raw if isinstance(raw, SkillScore) else SkillScore.model_validate(raw)
            if item.component_skill_id not in wanted or item.component_skill_id in seen:
                logger.warning("Ignoring unexpected scorer result for skill %s", item.component_skill_id)
                continue
            seen.add(item.component_skill_id)
            results.append(item)
        return results

    def _target_skills(self, assessment: Assessment) -> List[ComponentSkill]:
        skills: List[ComponentSkill] = []
        for skill_id in dict.fromkeys(assessment.component_skill_ids):
            skill = db.get_component_skill(skill_id)
            if skill is not None:
                skills.append(skill)
        return skills

    def _reference_text(self, assessment: Assessment) -> Optional[str]:
        if not assessment.reference_document_url:
            return None
        try:
            return self.extractor(assessment.reference_document_url)
        except Exception:
            logger.debug("Reference text extraction failed", exc_info=True)
            return None

    # ------------------------------------------------------------------
    # state machine
    # ------------------------------------------------------------------
    def _enter_grading(self, submission_id: int) -> None:
        with self._state_lock:
            self._in_flight[submission_id] += 1

    def _leave_grading(self, submission_id: int) -> None:
        with self._state_lock:
            remaining = self._in_flight[submission_id] - 1
            if remaining > 0:
                self._in_flight[submission_id] = remaining
            else:
                self._in_flight.pop(submission_id, None)

    def is_grading(self, submission_id: int) -> bool:
        with self._state_lock:
            return submission_id in self._in_flight

    def grading_state(self, submission_id: int) -> str:
        if self.is_grading(submission_id):
            return "grading"
        submission = db.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        return "graded" if submission.graded_at else "ungraded"

    # ------------------------------------------------------------------
    # per-question and preview feedback
    # ------------------------------------------------------------------
    def question_feedback(self, submission_id: int, question_index: int, rubric_level: str) -> str:
        submission = db.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("Submission not found")
        if submission.assessment_id is None:
            raise InvalidStateError("Submission has no assessment")
        assessment = db.get_assessment(submission.assessment_id)
        if assessment is None:
            raise NotFoundError("Assessment not found")

        questions = assessment.questions
        if not questions or question_index < 0 or question_index >= len(questions):
            raise InvalidStateError("Invalid question index")

        question_text = sanitize_for_prompt(questions[question_index].text)
        response_text = sanitize_for_prompt(response_for_question(submission.responses, question_index))
        if not question_text or not response_text:
            raise InvalidStateError("Question and response cannot be empty")

        try:
            reply = self.scorer.score_single_question(question_text, response_text, rubric_level)
        except GradingError:
            raise
        except Exception as exc:
            raise AIScorerError("Failed to generate question feedback") from exc
        return reply or FEEDBACK_UNAVAILABLE

    def preview_feedback(self, assessment_id: int, student: Actor, responses: Any) -> PreviewFeedbackResult:
        if student.role != "student":
            raise AccessDeniedError("Only students can request feedback previews")
        assessment = db.get_assessment(assessment_id)
        if assessment is None:
            raise NotFoundError("Assessment not found")
        if assessment.assessment_type != "teacher":
            raise InvalidStateError("Feedback preview is only available for teacher assessments")
        if not self.guard.can_access_assessment(student, assessment):
            raise AccessDeniedError()
        if db.has_submission(student.id, assessment_id):
            raise InvalidStateError("Assessment already submitted")

        used = self.limiter.reserve(student.id, assessment_id)
        try:
            feedback = self._draft_feedback(assessment, student.id, responses)
        except Exception as exc:
            self.limiter.release(student.id, assessment_id)
            if isinstance(exc, GradingError):
                raise
            raise AIScorerError("Failed to generate feedback preview") from exc

        _json_log(
            "preview_feedback",
            {"student_id": student.id, "assessment_id": assessment_id, "request_count": used},
        )
        return PreviewFeedbackResult(
            feedback=feedback or FEEDBACK_UNAVAILABLE,
            request_count=used,
            remaining_requests=max(0, self.limiter.limit - used),
        )

    def _draft_feedback(self, assessment: Assessment, student_id: int, responses: Any) -> str:
        draft = Submission(
            id=DRAFT_SUBMISSION_ID,
            assessment_id=assessment.id,
            student_id=student_id,
            responses=responses,
        )
        skills = self._target_skills(assessment)
        names = {skill.id: skill for skill in skills}
        scores = self._score(draft, assessment, skills, self._reference_text(assessment)) if skills else []
        draft_grades = [
            Grade(
                id=-(idx + 1),
                submission_id=DRAFT_SUBMISSION_ID,
                component_skill_id=item.component_skill_id,
                rubric_level=item.rubric_level,
                score=item.score,
                feedback=item.feedback,
                component_skill_name=names[item.component_skill_id].name,
                competency_name=names[item.component_skill_id].competency_name,
            )
            for idx, item in enumerate(scores)
        ]
        return self.scorer.summarize(draft, draft_grades)

    # ------------------------------------------------------------------
    # submission and background auto-grading
    # ------------------------------------------------------------------
    def submit(
        self,
        assessment_id: int,
        student_id: int,
        responses: Any,
        scheduler: Optional[Scheduler] = None,
    ) -> Submission:
        """Record a real submission, reset preview quota and queue auto-grading."""
        assessment = db.get_assessment(assessment_id)
        if assessment is None:
            raise NotFoundError("Assessment not found")

        submission = db.create_submission(
            assessment_id,
            student_id,
            responses,
            submitted_at=datetime.now(timezone.utc),
        )
        self.limiter.clear(student_id, assessment_id)
        if self.settings.auto_grade_enabled and assessment.assessment_type == "teacher":
            self.schedule_auto_grade(submission.id, scheduler=scheduler)
        return submission

    def schedule_auto_grade(self, submission_id: int, scheduler: Optional[Scheduler] = None) -> None:
        (scheduler or self.scheduler)(lambda: self.auto_grade(submission_id))

    def auto_grade(self, submission_id: int) -> Optional[GradeSubmissionResult]:
        """Background grading that never overrides human grading.

        Re-checks everything at run time because a teacher may have graded
        the submission after it was queued.
        """
        try:
            submission = db.get_submission(submission_id)
            if submission is None or submission.assessment_id is None:
                return self._skip_auto_grade(submission_id, "missing")
            if self.is_grading(submission_id):
                return self._skip_auto_grade(submission_id, "in_progress")
            if submission.graded_at or submission.ai_generated_feedback:
                return self._skip_auto_grade(submission_id, "already_graded")

            assessment = db.get_assessment(submission.assessment_id)
            if assessment is None or assessment.assessment_type != "teacher":
                return self._skip_auto_grade(submission_id, "not_teacher_assessment")
            if db.list_grades_by_submission(submission_id):
                return self._skip_auto_grade(submission_id, "has_grades")

            return self.grade_submission(
                submission_id,
                assessment.created_by,
                generate_ai_feedback=True,
            )
        except Exception:
            logger.exception("Background AI auto-grading failed for submission %s", submission_id)
            return None

    @staticmethod
    def _skip_auto_grade(submission_id: int, reason: str) -> None:
        _json_log("auto_grade_skipped", {"submission_id": submission_id, "reason": reason})
        return None
