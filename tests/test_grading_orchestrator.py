import threading

import pytest

import db
from engines.grading_orchestrator import (
    AI_FEEDBACK_FALLBACK,
    FEEDBACK_UNAVAILABLE,
    AIGradingOrchestrator,
    PreviewFeedbackLimiter,
)
from engines.validation import (
    AccessDeniedError,
    AIScorerError,
    InvalidStateError,
    NotFoundError,
    RateLimitError,
)
from env_validation import EngineSettings


@pytest.fixture
def orchestrator(fake_scorer, settings, deferred_scheduler):
    return AIGradingOrchestrator(
        fake_scorer,
        settings=settings,
        extractor=lambda url: None,
        scheduler=deferred_scheduler,
    )


def _fresh_assessment(world, **kwargs):
    kwargs.setdefault("created_by", world.teacher.id)
    kwargs.setdefault("milestone_id", world.milestone.id)
    kwargs.setdefault("component_skill_ids", [world.s1.id, world.s2.id])
    kwargs.setdefault("questions", [{"text": "Explain the water cycle."}])
    return db.create_assessment("Practice", **kwargs)


# ---------- gradeSubmission ----------


def test_manual_grading_is_idempotent(world, orchestrator):
    payload = [{"component_skill_id": world.s1.id, "rubric_level": "developing", "score": 2}]
    orchestrator.grade_submission(world.submission.id, world.teacher.id, payload)
    payload[0].update(rubric_level="proficient", score=3)
    result = orchestrator.grade_submission(world.submission.id, world.teacher.id, payload)

    grades = db.list_grades_by_submission(world.submission.id)
    assert len(grades) == 1
    assert grades[0].rubric_level == "proficient"
    assert grades[0].score == 3
    assert result.submission.graded_at is not None


def test_manual_grading_keeps_teacher_feedback(world, orchestrator, fake_scorer):
    result = orchestrator.grade_submission(
        world.submission.id,
        world.teacher.id,
        [{"component_skill_id": world.s1.id, "rubric_level": "developing", "score": 2}],
        feedback="Solid start.",
    )
    assert result.feedback == "Solid start."
    assert result.submission.feedback == "Solid start."
    assert result.submission.ai_generated_feedback is False
    assert fake_scorer.summary_calls == []


def test_end_to_end_manual_then_ai(world, orchestrator, fake_scorer):
    fake_scorer.levels = {world.s2.id: ("applying", 4)}
    fake_scorer.summary = "You explain condensation clearly."

    first = orchestrator.grade_submission(
        world.submission.id,
        world.teacher.id,
        [{"component_skill_id": world.s1.id, "rubric_level": "proficient", "score": 3}],
    )
    second = orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)

    # Only the skill without a grade goes to the scorer.
    assert fake_scorer.score_calls[0]["skill_ids"] == [world.s2.id]
    grades = {g.component_skill_id: (g.rubric_level, g.score) for g in db.list_grades_by_submission(world.submission.id)}
    assert grades == {world.s1.id: ("proficient", 3), world.s2.id: ("applying", 4)}

    stickers = [c for c in first.credentials_awarded + second.credentials_awarded if c.kind == "sticker"]
    assert sorted(c.component_skill_id for c in stickers) == sorted([world.s1.id, world.s2.id])
    assert len(db.list_credentials(world.student.id, "sticker")) == 2

    assert second.feedback == "You explain condensation clearly."
    assert second.submission.feedback == "You explain condensation clearly."
    assert second.submission.graded_at is not None
    assert second.submission.ai_generated_feedback is True
    assert fake_scorer.summary_calls[-1] == [(world.s1.id, "proficient"), (world.s2.id, "applying")]


def test_ai_grading_skipped_when_manual_grades_supplied(world, orchestrator, fake_scorer):
    orchestrator.grade_submission(
        world.submission.id,
        world.teacher.id,
        [{"component_skill_id": world.s1.id, "rubric_level": "proficient", "score": 3}],
        generate_ai_feedback=True,
    )
    assert fake_scorer.score_calls == []
    assert len(fake_scorer.summary_calls) == 1


def test_scorer_failure_degrades_to_placeholder(world, orchestrator, fake_scorer):
    fake_scorer.fail_scoring = True
    result = orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)

    assert result.feedback == AI_FEEDBACK_FALLBACK
    assert result.submission.feedback == AI_FEEDBACK_FALLBACK
    assert result.submission.graded_at is not None
    assert orchestrator.grading_state(world.submission.id) == "graded"


def test_summary_failure_keeps_ai_grades(world, orchestrator, fake_scorer):
    fake_scorer.levels = {world.s1.id: ("applying", 4), world.s2.id: ("proficient", 3)}
    fake_scorer.fail_summary = True
    result = orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)

    assert result.feedback == AI_FEEDBACK_FALLBACK
    assert len(result.grades) == 2
    assert len([c for c in result.credentials_awarded if c.kind == "sticker"]) == 2


def test_unexpected_scorer_results_are_ignored(world, orchestrator, fake_scorer, monkeypatch):
    from schemas import SkillScore

    def noisy(submission, assessment, skills, reference_text=None):
        return [
            SkillScore(component_skill_id=world.s1.id, rubric_level="developing", score=2),
            SkillScore(component_skill_id=world.s1.id, rubric_level="applying", score=4),
            SkillScore(component_skill_id=9999, rubric_level="applying", score=4),
        ]

    monkeypatch.setattr(fake_scorer, "score_skills", noisy)
    result = orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)
    assert [(g.component_skill_id, g.rubric_level) for g in result.grades] == [(world.s1.id, "developing")]


def test_reference_text_reaches_scorer(world, fake_scorer, settings, deferred_scheduler):
    assessment = _fresh_assessment(world, reference_document_url="https://example.com/guide.pdf")
    submission = db.create_submission(assessment.id, world.student.id, ["answer"])
    seen = []

    def extractor(url):
        seen.append(url)
        return "Evaporation is driven by solar energy."

    orchestrator = AIGradingOrchestrator(
        fake_scorer, settings=settings, extractor=extractor, scheduler=deferred_scheduler
    )
    orchestrator.grade_submission(submission.id, world.teacher.id, generate_ai_feedback=True)
    assert seen == ["https://example.com/guide.pdf"]
    assert fake_scorer.score_calls[0]["reference_text"] == "Evaporation is driven by solar energy."


def test_broken_extractor_is_treated_as_no_reference(world, fake_scorer, settings, deferred_scheduler):
    assessment = _fresh_assessment(world, reference_document_url="https://example.com/guide.pdf")
    submission = db.create_submission(assessment.id, world.student.id, ["answer"])

    def extractor(url):
        raise OSError("disk full")

    orchestrator = AIGradingOrchestrator(
        fake_scorer, settings=settings, extractor=extractor, scheduler=deferred_scheduler
    )
    result = orchestrator.grade_submission(submission.id, world.teacher.id, generate_ai_feedback=True)
    assert fake_scorer.score_calls[0]["reference_text"] is None
    assert result.feedback == fake_scorer.summary


def test_missing_submission(world, orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.grade_submission(999, world.teacher.id, generate_ai_feedback=True)


def test_submission_without_assessment(world, orchestrator):
    orphan = db.create_submission(None, world.student.id, [])
    with pytest.raises(InvalidStateError):
        orchestrator.grade_submission(orphan.id, world.teacher.id)
    assert orchestrator.grading_state(orphan.id) == "ungraded"


# ---------- grading state ----------


def test_grading_state_transitions(world, orchestrator, fake_scorer, monkeypatch):
    observed = []
    original = fake_scorer.summarize

    def summarize(submission, grades):
        observed.append(orchestrator.grading_state(submission.id))
        return original(submission, grades)

    monkeypatch.setattr(fake_scorer, "summarize", summarize)
    assert orchestrator.grading_state(world.submission.id) == "ungraded"
    orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)

    assert observed == ["grading"]
    assert orchestrator.grading_state(world.submission.id) == "graded"


def test_overlapping_runs_keep_submission_in_flight(world, orchestrator, fake_scorer, monkeypatch):
    observed = []
    original = fake_scorer.summarize

    def summarize(submission, grades):
        if not observed:
            observed.append("outer")
            orchestrator.grade_submission(submission.id, world.teacher.id, generate_ai_feedback=True)
            observed.append(orchestrator.grading_state(submission.id))
            observed.append(orchestrator.is_grading(submission.id))
        return original(submission, grades)

    monkeypatch.setattr(fake_scorer, "summarize", summarize)
    orchestrator.grade_submission(world.submission.id, world.teacher.id, generate_ai_feedback=True)

    assert observed == ["outer", "grading", True]
    assert not orchestrator.is_grading(world.submission.id)
    assert orchestrator.grading_state(world.submission.id) == "graded"


def test_grading_state_unknown_submission(temp_db, orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.grading_state(42)


# ---------- question feedback ----------


def test_question_feedback_sanitizes_inputs(world, orchestrator, fake_scorer):
    db.update_submission(world.submission.id, responses={"0": "The\x00 sun\n\n heats   water"})
    reply = orchestrator.question_feedback(world.submission.id, 0, "proficient")

    assert reply == "Nice answer."
    assert fake_scorer.question_calls == [("What drives evaporation?", "The sun heats water", "proficient")]


def test_question_feedback_reads_answer_objects(world, orchestrator, fake_scorer):
    orchestrator.question_feedback(world.submission.id, 1, "applying")
    assert fake_scorer.question_calls[0][1] == "Vapour cools into droplets"


def test_question_feedback_empty_reply(world, orchestrator, fake_scorer):
    fake_scorer.question_reply = ""
    assert orchestrator.question_feedback(world.submission.id, 0, "proficient") == FEEDBACK_UNAVAILABLE


@pytest.mark.parametrize("index", [-1, 2, 10])
def test_question_feedback_bad_index(world, orchestrator, index):
    with pytest.raises(InvalidStateError):
        orchestrator.question_feedback(world.submission.id, index, "proficient")


def test_question_feedback_empty_response(world, orchestrator):
    db.update_submission(world.submission.id, responses=["   ", ""])
    with pytest.raises(InvalidStateError):
        orchestrator.question_feedback(world.submission.id, 0, "proficient")


def test_question_feedback_missing_submission(temp_db, orchestrator):
    with pytest.raises(NotFoundError):
        orchestrator.question_feedback(5, 0, "proficient")


# ---------- preview feedback ----------


def test_preview_limit_and_reset_on_submit(world, orchestrator, deferred_scheduler):
    assessment = _fresh_assessment(world)
    student = world.student.as_actor()

    results = [orchestrator.preview_feedback(assessment.id, student, ["draft"]) for _ in range(3)]
    assert [r.request_count for r in results] == [1, 2, 3]
    assert [r.remaining_requests for r in results] == [2, 1, 0]
    with pytest.raises(RateLimitError):
        orchestrator.preview_feedback(assessment.id, student, ["draft"])

    orchestrator.submit(assessment.id, student.id, ["final"])
    assert orchestrator.limiter.count(student.id, assessment.id) == 0
    # Once submitted, previews are refused for state, not for quota.
    with pytest.raises(InvalidStateError):
        orchestrator.preview_feedback(assessment.id, student, ["draft"])


def test_preview_limit_is_per_assessment(world, orchestrator):
    first = _fresh_assessment(world)
    second = _fresh_assessment(world)
    student = world.student.as_actor()
    for _ in range(3):
        orchestrator.preview_feedback(first.id, student, [])
    assert orchestrator.preview_feedback(second.id, student, []).request_count == 1


def test_preview_never_persists(world, orchestrator, fake_scorer):
    assessment = _fresh_assessment(world)
    result = orchestrator.preview_feedback(assessment.id, world.student.as_actor(), ["draft"])

    assert result.feedback == fake_scorer.summary
    assert fake_scorer.score_calls[0]["submission_id"] == -1
    assert not db.has_submission(world.student.id, assessment.id)
    assert db.list_credentials(world.student.id) == []


def test_preview_failure_does_not_use_a_slot(world, orchestrator, fake_scorer):
    assessment = _fresh_assessment(world)
    student = world.student.as_actor()
    fake_scorer.fail_scoring = True
    with pytest.raises(AIScorerError):
        orchestrator.preview_feedback(assessment.id, student, [])

    fake_scorer.fail_scoring = False
    assert orchestrator.preview_feedback(assessment.id, student, []).request_count == 1


def test_preview_guards(world, orchestrator):
    student = world.student.as_actor()
    with pytest.raises(AccessDeniedError):
        orchestrator.preview_feedback(_fresh_assessment(world).id, world.teacher.as_actor(), [])
    with pytest.raises(NotFoundError):
        orchestrator.preview_feedback(999, student, [])
    with pytest.raises(InvalidStateError):
        orchestrator.preview_feedback(_fresh_assessment(world, assessment_type="self_evaluation").id, student, [])
    with pytest.raises(InvalidStateError):
        orchestrator.preview_feedback(world.assessment.id, student, [])

    outsider = db.create_user("student").as_actor()
    with pytest.raises(AccessDeniedError):
        orchestrator.preview_feedback(_fresh_assessment(world).id, outsider, [])


def test_limiter_is_safe_under_concurrency():
    limiter = PreviewFeedbackLimiter(3)
    outcomes = []
    barrier = threading.Barrier(8)

    def attempt():
        barrier.wait()
        try:
            outcomes.append(limiter.reserve(1, 1))
        except RateLimitError:
            outcomes.append("limited")

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(o for o in outcomes if o != "limited") == [1, 2, 3]
    assert outcomes.count("limited") == 5


# ---------- submission and background auto-grading ----------


def test_submit_schedules_auto_grade(world, orchestrator, deferred_scheduler, fake_scorer):
    assessment = _fresh_assessment(world)
    submission = orchestrator.submit(assessment.id, world.student.id, ["final"])

    assert submission.submitted_at is not None
    assert len(deferred_scheduler.queued) == 1
    deferred_scheduler.queued[0]()

    graded = db.get_submission(submission.id)
    assert graded.graded_at is not None
    assert graded.ai_generated_feedback is True
    grades = db.list_grades_by_submission(submission.id)
    assert {g.graded_by for g in grades} == {world.teacher.id}


def test_submit_skips_scheduling_for_self_evaluations(world, orchestrator, deferred_scheduler):
    assessment = _fresh_assessment(world, assessment_type="self_evaluation")
    orchestrator.submit(assessment.id, world.student.id, [])
    assert deferred_scheduler.queued == []


def test_submit_respects_disabled_auto_grading(world, fake_scorer, deferred_scheduler):
    orchestrator = AIGradingOrchestrator(
        fake_scorer,
        settings=EngineSettings(auto_grade_enabled=False),
        scheduler=deferred_scheduler,
    )
    orchestrator.submit(_fresh_assessment(world).id, world.student.id, [])
    assert deferred_scheduler.queued == []


def test_auto_grade_never_clobbers_manual_grades(world, orchestrator, deferred_scheduler, fake_scorer):
    assessment = _fresh_assessment(world)
    submission = orchestrator.submit(assessment.id, world.student.id, ["final"])

    # Teacher grades one skill before the background task gets to run.
    db.create_grade(submission.id, world.s1.id, "proficient", 3, "teacher", world.teacher.id)
    deferred_scheduler.queued[0]()

    assert fake_scorer.score_calls == []
    assert fake_scorer.summary_calls == []
    grades = db.list_grades_by_submission(submission.id)
    assert [(g.component_skill_id, g.feedback) for g in grades] == [(world.s1.id, "teacher")]
    assert db.get_submission(submission.id).graded_at is None


def test_auto_grade_skips_graded_submissions(world, orchestrator, fake_scorer):
    orchestrator.grade_submission(world.submission.id, world.teacher.id, feedback="done")
    assert orchestrator.auto_grade(world.submission.id) is None
    assert fake_scorer.score_calls == []


def test_auto_grade_skips_missing_submission(temp_db, orchestrator):
    assert orchestrator.auto_grade(12345) is None


def test_auto_grade_contains_failures(world, orchestrator, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(orchestrator, "grade_submission", explode)
    assert orchestrator.auto_grade(world.submission.id) is None
