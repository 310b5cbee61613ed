import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ai_scorer import AIScorer  # noqa: E402
from engines.validation import AIScorerError  # noqa: E402
from env_validation import EngineSettings  # noqa: E402
from schemas import SkillScore  # noqa: E402


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def settings():
    return EngineSettings(
        share_code_ttl_days=7,
        share_code_max_attempts=10,
        preview_feedback_limit=3,
        progress_trend_threshold=5.0,
        auto_grade_enabled=True,
    )


class FakeScorer(AIScorer):
    """Scripted scorer: per-skill levels come from ``levels``, keyed by skill id."""

    def __init__(self, levels=None, summary="Great work overall.", question_reply="Nice answer."):
        self.levels = dict(levels or {})
        self.summary = summary
        self.question_reply = question_reply
        self.fail_scoring = False
        self.fail_summary = False
        self.score_calls = []
        self.summary_calls = []
        self.question_calls = []

    def score_skills(self, submission, assessment, skills, reference_text=None):
        self.score_calls.append(
            {
                "submission_id": submission.id,
                "skill_ids": [s.id for s in skills],
                "reference_text": reference_text,
            }
        )
        if self.fail_scoring:
            raise AIScorerError("scorer offline")
        results = []
        for skill in skills:
            level, score = self.levels.get(skill.id, ("developing", 2))
            results.append(
                SkillScore(
                    component_skill_id=skill.id,
                    rubric_level=level,
                    score=score,
                    feedback=f"AI feedback for {skill.name}",
                )
            )
        return results

    def summarize(self, submission, grades):
        self.summary_calls.append([(g.component_skill_id, g.rubric_level) for g in grades])
        if self.fail_summary:
            raise AIScorerError("summary offline")
        return self.summary

    def score_single_question(self, question_text, response_text, rubric_level):
        self.question_calls.append((question_text, response_text, rubric_level))
        return self.question_reply


@pytest.fixture
def fake_scorer():
    return FakeScorer()


@pytest.fixture
def world(temp_db):
    """A teacher-owned project with one milestone assessment covering two skills."""
    import db

    teacher = db.create_user("teacher", username="teacher")
    student = db.create_user("student", username="student")
    project = db.create_project(teacher.id, title="Water cycle")
    milestone = db.create_milestone(project.id, title="Research")
    db.enroll_student(project.id, student.id)

    outcome = db.create_learner_outcome("Scientific thinking")
    inquiry = db.create_competency("Inquiry", outcome.id)
    communication = db.create_competency("Communication", outcome.id)
    s1 = db.create_component_skill("Asking questions", inquiry.id, "Poses testable questions")
    s2 = db.create_component_skill("Presenting findings", communication.id, "Explains results clearly")

    assessment = db.create_assessment(
        "Water cycle check",
        created_by=teacher.id,
        milestone_id=milestone.id,
        questions=[{"text": "What drives evaporation?"}, {"text": "Describe condensation."}],
        component_skill_ids=[s1.id, s2.id],
    )
    submission = db.create_submission(
        assessment.id,
        student.id,
        ["The sun heats water", {"answer": "Vapour cools into droplets"}],
    )
    return SimpleNamespace(
        teacher=teacher,
        student=student,
        project=project,
        milestone=milestone,
        inquiry=inquiry,
        communication=communication,
        s1=s1,
        s2=s2,
        assessment=assessment,
        submission=submission,
    )


@pytest.fixture
def deferred_scheduler():
    """Scheduler that records tasks so tests decide when background work runs."""
    queued = []

    def schedule(task):
        queued.append(task)

    schedule.queued = queued
    return schedule
