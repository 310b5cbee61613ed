"""Authorization decisions for assessments and submissions.

Every check answers with a bare boolean; callers turn ``False`` into a
uniform "Access denied" without saying which rule failed.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

import db
from schemas import Actor, Assessment, Project, Submission


def owning_project(assessment: Assessment) -> Optional[Project]:
    """Follow assessment -> milestone -> project; ``None`` when the chain breaks."""
    if not assessment.milestone_id:
        return None
    milestone = db.get_milestone(assessment.milestone_id)
    if milestone is None or not milestone.project_id:
        return None
    return db.get_project(milestone.project_id)


def owns_assessment(assessment: Assessment, teacher_id: int) -> bool:
    """An explicit creator decides; otherwise the milestone's project teacher does."""
    if assessment.created_by:
        return assessment.created_by == teacher_id
    project = owning_project(assessment)
    if project is None or not project.teacher_id:
        return False
    return project.teacher_id == teacher_id


class SubmissionAccessGuard:
    """Role and tier aware access checks."""

    @staticmethod
    def _is_staff(actor: Actor) -> bool:
        return actor.role in ("teacher", "admin")

    @staticmethod
    def _bypasses_ownership(actor: Actor) -> bool:
        return actor.role == "admin" and actor.tier != "free"

    def can_grade(self, actor: Actor, assessment: Assessment) -> bool:
        if not self._is_staff(actor):
            return False
        if self._bypasses_ownership(actor):
            return True
        return owns_assessment(assessment, actor.id)

    def can_view(self, actor: Actor, submission: Submission, assessment: Optional[Assessment] = None) -> bool:
        if actor.role == "student":
            return submission.student_id is not None and submission.student_id == actor.id
        if not self._is_staff(actor) or not submission.assessment_id:
            return False
        if assessment is None or assessment.id != submission.assessment_id:
            assessment = db.get_assessment(submission.assessment_id)
        if assessment is None:
            return False
        return self.can_grade(actor, assessment)

    def can_manage_share_code(self, actor: Actor, assessment: Assessment) -> bool:
        return self.can_grade(actor, assessment)

    def can_access_assessment(self, actor: Actor, assessment: Assessment) -> bool:
        if actor.tier == "free":
            if self._is_staff(actor):
                return owns_assessment(assessment, actor.id)
            if actor.role == "student":
                project = owning_project(assessment)
                if project is None:
                    return False
                return project.id in db.list_student_project_ids(actor.id)
            return False

        if actor.role == "admin":
            return True
        if actor.role == "teacher":
            return owns_assessment(assessment, actor.id) or self._shares_school(actor, assessment)
        return actor.role == "student"

    def filter_accessible_assessments(self, actor: Actor, assessments: Iterable[Assessment]) -> List[Assessment]:
        """Admins of any tier see the full list; everyone else is checked one by one."""
        if actor.role == "admin":
            return list(assessments)
        return [a for a in assessments if self.can_access_assessment(actor, a)]

    @staticmethod
    def _shares_school(actor: Actor, assessment: Assessment) -> bool:
        if not actor.school_id:
            return False
        if assessment.created_by:
            creator = db.get_user(assessment.created_by)
            if creator is not None and creator.school_id == actor.school_id:
                return True
        project = owning_project(assessment)
        if project is None:
            return False
        if project.school_id and project.school_id == actor.school_id:
            return True
        if project.teacher_id:
            owner = db.get_user(project.teacher_id)
            return owner is not None and owner.school_id == actor.school_id
        return False
