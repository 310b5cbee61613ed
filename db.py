import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from db_pool import SQLiteConnectionPool
from schemas import (
    Assessment,
    Competency,
    ComponentSkill,
    Credential,
    Grade,
    LearnerOutcome,
    Milestone,
    Project,
    Submission,
    User,
)

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


def _insert(sql: str, params: Iterable = ()) -> int:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return int(cur.lastrowid)


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              username    TEXT UNIQUE,
              role        TEXT NOT NULL CHECK (role IN ('student','teacher','admin')),
              tier        TEXT NOT NULL DEFAULT 'free' CHECK (tier IN ('free','enterprise')),
              school_id   INTEGER,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS projects (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              title       TEXT NOT NULL DEFAULT '',
              teacher_id  INTEGER REFERENCES users(id),
              school_id   INTEGER,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS milestones (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              project_id  INTEGER REFERENCES projects(id) ON DELETE CASCADE,
              title       TEXT NOT NULL DEFAULT '',
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS project_students (
              project_id  INTEGER NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
              student_id  INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
              PRIMARY KEY (project_id, student_id)
            );

            CREATE TABLE IF NOT EXISTS learner_outcomes (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              name        TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS competencies (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              name                TEXT NOT NULL,
              learner_outcome_id  INTEGER REFERENCES learner_outcomes(id)
            );

            CREATE TABLE IF NOT EXISTS component_skills (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              name           TEXT NOT NULL,
              description    TEXT,
              competency_id  INTEGER REFERENCES competencies(id)
            );
            CREATE INDEX IF NOT EXISTS idx_component_skills_competency ON component_skills(competency_id);

            CREATE TABLE IF NOT EXISTS assessments (
              id                      INTEGER PRIMARY KEY AUTOINCREMENT,
              title                   TEXT NOT NULL DEFAULT '',
              description             TEXT,
              milestone_id            INTEGER REFERENCES milestones(id) ON DELETE SET NULL,
              assessment_type         TEXT NOT NULL DEFAULT 'teacher',
              questions               TEXT NOT NULL DEFAULT '[]',
              component_skill_ids     TEXT NOT NULL DEFAULT '[]',
              due_date                TEXT,
              share_code              TEXT UNIQUE,
              share_code_expires_at   TEXT,
              reference_document_url  TEXT,
              created_by              INTEGER REFERENCES users(id),
              created_at              TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS submissions (
              id                     INTEGER PRIMARY KEY AUTOINCREMENT,
              assessment_id          INTEGER REFERENCES assessments(id) ON DELETE CASCADE,
              student_id             INTEGER REFERENCES users(id),
              responses              TEXT,
              submitted_at           TEXT,
              graded_at              TEXT,
              feedback               TEXT,
              ai_generated_feedback  INTEGER NOT NULL DEFAULT 0
            );
            CREATE INDEX IF NOT EXISTS idx_submissions_student ON submissions(student_id);

            CREATE TABLE IF NOT EXISTS grades (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              submission_id       INTEGER NOT NULL REFERENCES submissions(id) ON DELETE CASCADE,
              component_skill_id  INTEGER NOT NULL REFERENCES component_skills(id),
              rubric_level        TEXT,
              score               REAL,
              feedback            TEXT,
              graded_by           INTEGER,
              graded_at           TEXT NOT NULL,
              UNIQUE (submission_id, component_skill_id)
            );

            CREATE TABLE IF NOT EXISTS credentials (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id          INTEGER NOT NULL REFERENCES users(id),
              kind                TEXT NOT NULL CHECK (kind IN ('sticker','badge','plaque')),
              component_skill_id  INTEGER REFERENCES component_skills(id),
              competency_id       INTEGER REFERENCES competencies(id),
              subject_area        TEXT,
              title               TEXT NOT NULL,
              description         TEXT,
              color               TEXT,
              awarded_at          TEXT NOT NULL,
              approved_by         INTEGER
            );
            CREATE UNIQUE INDEX IF NOT EXISTS uq_credentials_sticker
              ON credentials(student_id, component_skill_id) WHERE kind = 'sticker';
            CREATE UNIQUE INDEX IF NOT EXISTS uq_credentials_badge
              ON credentials(student_id, competency_id) WHERE kind = 'badge';
            """
        )
        con.commit()


# -------------- value helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_text(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _coerce_to_utc(dt).isoformat()


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return _coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        return _coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))


def _coerce_to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# -------------- users / projects --------------
def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        role=row["role"],
        tier=row["tier"],
        school_id=row["school_id"],
    )


def create_user(role: str, tier: str = "free", school_id: Optional[int] = None, username: Optional[str] = None) -> User:
    user_id = _insert(
        "INSERT INTO users(username, role, tier, school_id) VALUES (?,?,?,?)",
        (username, role, tier, school_id),
    )
    return get_user(user_id)


def get_user(user_id: int) -> Optional[User]:
    rows = _query("SELECT * FROM users WHERE id = ?", (user_id,))
    return _row_to_user(rows[0]) if rows else None


def create_project(teacher_id: Optional[int], title: str = "", school_id: Optional[int] = None) -> Project:
    project_id = _insert(
        "INSERT INTO projects(title, teacher_id, school_id) VALUES (?,?,?)",
        (title, teacher_id, school_id),
    )
    return get_project(project_id)


def get_project(project_id: int) -> Optional[Project]:
    rows = _query("SELECT id, title, teacher_id, school_id FROM projects WHERE id = ?", (project_id,))
    return Project(**dict(rows[0])) if rows else None


def create_milestone(project_id: Optional[int], title: str = "") -> Milestone:
    milestone_id = _insert(
        "INSERT INTO milestones(project_id, title) VALUES (?,?)",
        (project_id, title),
    )
    return get_milestone(milestone_id)


def get_milestone(milestone_id: int) -> Optional[Milestone]:
    rows = _query("SELECT id, project_id, title FROM milestones WHERE id = ?", (milestone_id,))
    return Milestone(**dict(rows[0])) if rows else None


def enroll_student(project_id: int, student_id: int) -> None:
    _exec(
        "INSERT OR IGNORE INTO project_students(project_id, student_id) VALUES (?,?)",
        (project_id, student_id),
    )


def list_student_project_ids(student_id: int) -> List[int]:
    rows = _query("SELECT project_id FROM project_students WHERE student_id = ?", (student_id,))
    return [int(row["project_id"]) for row in rows]


# -------------- competency taxonomy --------------
def create_learner_outcome(name: str) -> LearnerOutcome:
    outcome_id = _insert("INSERT INTO learner_outcomes(name) VALUES (?)", (name,))
    return LearnerOutcome(id=outcome_id, name=name)


def create_competency(name: str, learner_outcome_id: Optional[int] = None) -> Competency:
    competency_id = _insert(
        "INSERT INTO competencies(name, learner_outcome_id) VALUES (?,?)",
        (name, learner_outcome_id),
    )
    return Competency(id=competency_id, name=name, learner_outcome_id=learner_outcome_id)


def get_competency(competency_id: int) -> Optional[Competency]:
    rows = _query("SELECT id, name, learner_outcome_id FROM competencies WHERE id = ?", (competency_id,))
    return Competency(**dict(rows[0])) if rows else None


def create_component_skill(name: str, competency_id: Optional[int] = None, description: Optional[str] = None) -> ComponentSkill:
    skill_id = _insert(
        "INSERT INTO component_skills(name, description, competency_id) VALUES (?,?,?)",
        (name, description, competency_id),
    )
    return get_component_skill(skill_id)


_SKILL_SELECT = """
    SELECT cs.id, cs.name, cs.description, cs.competency_id,
           c.name AS competency_name, lo.name AS learner_outcome_name
    FROM component_skills cs
    LEFT JOIN competencies c ON c.id = cs.competency_id
    LEFT JOIN learner_outcomes lo ON lo.id = c.learner_outcome_id
"""


def get_component_skill(skill_id: int) -> Optional[ComponentSkill]:
    rows = _query(_SKILL_SELECT + " WHERE cs.id = ?", (skill_id,))
    return ComponentSkill(**dict(rows[0])) if rows else None


def list_component_skills_for_competency(competency_id: int) -> List[ComponentSkill]:
    rows = _query(_SKILL_SELECT + " WHERE cs.competency_id = ? ORDER BY cs.id", (competency_id,))
    return [ComponentSkill(**dict(row)) for row in rows]


# -------------- assessments --------------
def _row_to_assessment(row: sqlite3.Row) -> Assessment:
    questions = _decode_json_field(row["questions"]) or []
    skill_ids = _decode_json_field(row["component_skill_ids"]) or []
    return Assessment(
        id=row["id"],
        title=row["title"] or "",
        description=row["description"],
        milestone_id=row["milestone_id"],
        assessment_type=row["assessment_type"],
        questions=[q if isinstance(q, dict) else {"text": str(q)} for q in questions],
        component_skill_ids=[int(s) for s in skill_ids if isinstance(s, int)],
        due_date=_parse_timestamp(row["due_date"]),
        share_code=row["share_code"],
        share_code_expires_at=_parse_timestamp(row["share_code_expires_at"]),
        reference_document_url=row["reference_document_url"],
        created_by=row["created_by"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def create_assessment(
    title: str = "",
    *,
    created_by: Optional[int] = None,
    milestone_id: Optional[int] = None,
    assessment_type: str = "teacher",
    questions: Optional[Sequence[Dict[str, Any]]] = None,
    component_skill_ids: Optional[Sequence[int]] = None,
    due_date: Optional[datetime] = None,
    reference_document_url: Optional[str] = None,
    description: Optional[str] = None,
) -> Assessment:
    assessment_id = _insert(
        """
        INSERT INTO assessments(
            title, description, milestone_id, assessment_type, questions,
            component_skill_ids, due_date, reference_document_url, created_by, created_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            title,
            description,
            milestone_id,
            assessment_type,
            json_dumps(list(questions or [])),
            json_dumps([int(s) for s in component_skill_ids or []]),
            _to_text(due_date),
            reference_document_url,
            created_by,
            _to_text(utcnow()),
        ),
    )
    return get_assessment(assessment_id)


def get_assessment(assessment_id: int) -> Optional[Assessment]:
    rows = _query("SELECT * FROM assessments WHERE id = ?", (assessment_id,))
    return _row_to_assessment(rows[0]) if rows else None


def get_assessment_by_share_code(share_code: str) -> Optional[Assessment]:
    rows = _query("SELECT * FROM assessments WHERE share_code = ? LIMIT 1", (share_code,))
    return _row_to_assessment(rows[0]) if rows else None


def share_code_exists(share_code: str) -> bool:
    rows = _query("SELECT 1 FROM assessments WHERE share_code = ? LIMIT 1", (share_code,))
    return bool(rows)


def set_share_code(assessment_id: int, share_code: str, expires_at: datetime) -> Assessment:
    """Overwrite the share code; raises ``sqlite3.IntegrityError`` on a duplicate code."""
    _exec(
        "UPDATE assessments SET share_code = ?, share_code_expires_at = ? WHERE id = ?",
        (share_code, _to_text(expires_at), assessment_id),
    )
    return get_assessment(assessment_id)


# -------------- submissions --------------
def _row_to_submission(row: sqlite3.Row) -> Submission:
    return Submission(
        id=row["id"],
        assessment_id=row["assessment_id"],
        student_id=row["student_id"],
        responses=_decode_json_field(row["responses"]),
        submitted_at=_parse_timestamp(row["submitted_at"]),
        graded_at=_parse_timestamp(row["graded_at"]),
        feedback=row["feedback"],
        ai_generated_feedback=bool(row["ai_generated_feedback"]),
    )


def create_submission(
    assessment_id: Optional[int],
    student_id: Optional[int],
    responses: Any = None,
    submitted_at: Optional[datetime] = None,
) -> Submission:
    submission_id = _insert(
        "INSERT INTO submissions(assessment_id, student_id, responses, submitted_at) VALUES (?,?,?,?)",
        (assessment_id, student_id, json_dumps(responses), _to_text(submitted_at)),
    )
    return get_submission(submission_id)


def get_submission(submission_id: int) -> Optional[Submission]:
    rows = _query("SELECT * FROM submissions WHERE id = ?", (submission_id,))
    return _row_to_submission(rows[0]) if rows else None


_SUBMISSION_UPDATABLE = {"graded_at", "feedback", "ai_generated_feedback", "responses", "submitted_at"}


def update_submission(submission_id: int, **fields: Any) -> Submission:
    unknown = set(fields) - _SUBMISSION_UPDATABLE
    if unknown:
        raise ValueError(f"Cannot update submission fields: {', '.join(sorted(unknown))}")
    if fields:
        values: list[Any] = []
        for key, value in fields.items():
            if key in {"graded_at", "submitted_at"}:
                value = _to_text(value)
            elif key == "ai_generated_feedback":
                value = 1 if value else 0
            elif key == "responses":
                value = json_dumps(value)
            values.append(value)
        assignments = ", ".join(f"{key} = ?" for key in fields)
        _exec(f"UPDATE submissions SET {assignments} WHERE id = ?", (*values, submission_id))
    return get_submission(submission_id)


def has_submission(student_id: int, assessment_id: int) -> bool:
    rows = _query(
        "SELECT 1 FROM submissions WHERE student_id = ? AND assessment_id = ? LIMIT 1",
        (student_id, assessment_id),
    )
    return bool(rows)


def delete_submission(submission_id: int) -> None:
    _exec("DELETE FROM submissions WHERE id = ?", (submission_id,))


# -------------- grades --------------
_GRADE_SELECT = """
    SELECT g.id, g.submission_id, g.component_skill_id, g.rubric_level, g.score,
           g.feedback, g.graded_by, g.graded_at,
           cs.name AS component_skill_name, c.name AS competency_name
    FROM grades g
    LEFT JOIN component_skills cs ON cs.id = g.component_skill_id
    LEFT JOIN competencies c ON c.id = cs.competency_id
"""


def _row_to_grade(row: sqlite3.Row) -> Grade:
    item = dict(row)
    item["graded_at"] = _parse_timestamp(item.get("graded_at"))
    return Grade(**item)


def get_grade(grade_id: int) -> Optional[Grade]:
    rows = _query(_GRADE_SELECT + " WHERE g.id = ?", (grade_id,))
    return _row_to_grade(rows[0]) if rows else None


def get_existing_grade(submission_id: int, component_skill_id: int) -> Optional[Grade]:
    rows = _query(
        _GRADE_SELECT + " WHERE g.submission_id = ? AND g.component_skill_id = ? LIMIT 1",
        (submission_id, component_skill_id),
    )
    return _row_to_grade(rows[0]) if rows else None


def create_grade(
    submission_id: int,
    component_skill_id: int,
    rubric_level: Optional[str],
    score: Optional[float],
    feedback: Optional[str],
    graded_by: Optional[int],
    graded_at: Optional[datetime] = None,
) -> Grade:
    """Insert a grade; raises ``sqlite3.IntegrityError`` when the pair already exists."""
    grade_id = _insert(
        """
        INSERT INTO grades(submission_id, component_skill_id, rubric_level, score, feedback, graded_by, graded_at)
        VALUES (?,?,?,?,?,?,?)
        """,
        (
            submission_id,
            component_skill_id,
            rubric_level,
            score,
            feedback,
            graded_by,
            _to_text(graded_at or utcnow()),
        ),
    )
    return get_grade(grade_id)


def update_grade(
    grade_id: int,
    rubric_level: Optional[str],
    score: Optional[float],
    feedback: Optional[str],
    graded_by: Optional[int],
    graded_at: Optional[datetime] = None,
) -> Grade:
    _exec(
        """
        UPDATE grades
        SET rubric_level = ?, score = ?, feedback = ?, graded_by = ?, graded_at = ?
        WHERE id = ?
        """,
        (rubric_level, score, feedback, graded_by, _to_text(graded_at or utcnow()), grade_id),
    )
    return get_grade(grade_id)


def list_grades_by_submission(submission_id: int) -> List[Grade]:
    rows = _query(_GRADE_SELECT + " WHERE g.submission_id = ? ORDER BY g.graded_at, g.id", (submission_id,))
    return [_row_to_grade(row) for row in rows]


def list_student_grade_history(student_id: int) -> List[Dict[str, Any]]:
    """Return every grade on the student's submissions joined to skill and competency."""
    rows = _query(
        """
        SELECT g.id AS grade_id, g.submission_id, g.component_skill_id, g.score, g.graded_at,
               cs.name AS component_skill_name, cs.competency_id,
               c.name AS competency_name
        FROM grades g
        JOIN submissions s ON s.id = g.submission_id
        LEFT JOIN component_skills cs ON cs.id = g.component_skill_id
        LEFT JOIN competencies c ON c.id = cs.competency_id
        WHERE s.student_id = ?
        ORDER BY g.graded_at DESC, g.id DESC
        """,
        (student_id,),
    )
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["graded_at"] = _parse_timestamp(item.get("graded_at"))
        data.append(item)
    return data


# -------------- credentials --------------
def _row_to_credential(row: sqlite3.Row) -> Credential:
    item = dict(row)
    item["awarded_at"] = _parse_timestamp(item.get("awarded_at"))
    return Credential(**item)


def get_credential(credential_id: int) -> Optional[Credential]:
    rows = _query("SELECT * FROM credentials WHERE id = ?", (credential_id,))
    return _row_to_credential(rows[0]) if rows else None


def find_sticker(student_id: int, component_skill_id: int) -> Optional[Credential]:
    rows = _query(
        "SELECT * FROM credentials WHERE student_id = ? AND component_skill_id = ? AND kind = 'sticker' LIMIT 1",
        (student_id, component_skill_id),
    )
    return _row_to_credential(rows[0]) if rows else None


def find_badge(student_id: int, competency_id: int) -> Optional[Credential]:
    rows = _query(
        "SELECT * FROM credentials WHERE student_id = ? AND competency_id = ? AND kind = 'badge' LIMIT 1",
        (student_id, competency_id),
    )
    return _row_to_credential(rows[0]) if rows else None


def create_credential(
    student_id: int,
    kind: str,
    title: str,
    *,
    component_skill_id: Optional[int] = None,
    competency_id: Optional[int] = None,
    subject_area: Optional[str] = None,
    description: Optional[str] = None,
    color: Optional[str] = None,
    approved_by: Optional[int] = None,
    awarded_at: Optional[datetime] = None,
) -> Credential:
    """Insert a credential; raises ``sqlite3.IntegrityError`` for a duplicate sticker or badge."""
    credential_id = _insert(
        """
        INSERT INTO credentials(
            student_id, kind, component_skill_id, competency_id, subject_area,
            title, description, color, awarded_at, approved_by
        ) VALUES (?,?,?,?,?,?,?,?,?,?)
        """,
        (
            student_id,
            kind,
            component_skill_id,
            competency_id,
            subject_area,
            title,
            description,
            color,
            _to_text(awarded_at or utcnow()),
            approved_by,
        ),
    )
    return get_credential(credential_id)


def list_credentials(student_id: int, kind: Optional[str] = None) -> List[Credential]:
    if kind:
        rows = _query(
            "SELECT * FROM credentials WHERE student_id = ? AND kind = ? ORDER BY awarded_at, id",
            (student_id, kind),
        )
    else:
        rows = _query(
            "SELECT * FROM credentials WHERE student_id = ? ORDER BY awarded_at, id",
            (student_id,),
        )
    return [_row_to_credential(row) for row in rows]


def list_sticker_skill_ids(student_id: int, competency_id: int, colors: Sequence[str]) -> set[int]:
    """Skill ids in ``competency_id`` for which the student holds a sticker of one of ``colors``."""
    if not colors:
        return set()
    placeholders = ",".join("?" for _ in colors)
    rows = _query(
        f"""
        SELECT cr.component_skill_id
        FROM credentials cr
        JOIN component_skills cs ON cs.id = cr.component_skill_id
        WHERE cr.student_id = ? AND cr.kind = 'sticker'
          AND cs.competency_id = ? AND cr.color IN ({placeholders})
        """,
        (student_id, competency_id, *colors),
    )
    return {int(row["component_skill_id"]) for row in rows}
