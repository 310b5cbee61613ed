"""Short-lived share codes granting entry to an assessment."""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
import string
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import db
from engines.validation import (
    CodeExhaustionError,
    ExpiredError,
    NotFoundError,
    SHARE_CODE_LENGTH,
    validate_share_code,
)
from env_validation import EngineSettings
from schemas import Assessment, ShareCodeResult

logger = logging.getLogger(__name__)

ALPHABET = string.ascii_uppercase


def generate_code(length: int = SHARE_CODE_LENGTH) -> str:
    """Return ``length`` letters drawn uniformly from A-Z."""
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


class ShareCodeIssuer:
    """Issue, regenerate and resolve assessment share codes.

    The application-level uniqueness check is an optimisation; the UNIQUE
    column on ``assessments.share_code`` is the authoritative guard, and a
    lost race there is treated as one more collision.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        code_factory: Callable[[], str] = generate_code,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings or EngineSettings.from_env()
        self.code_factory = code_factory
        self.clock = clock

    def issue(self, assessment_id: int) -> ShareCodeResult:
        if db.get_assessment(assessment_id) is None:
            raise NotFoundError("Assessment not found")

        max_attempts = self.settings.share_code_max_attempts
        for attempt in range(1, max_attempts + 1):
            code = self.code_factory()
            if db.share_code_exists(code):
                logger.debug("Share code collision on attempt %s", attempt)
                continue
            expires_at = self.clock() + timedelta(days=self.settings.share_code_ttl_days)
            try:
                db.set_share_code(assessment_id, code, expires_at)
            except sqlite3.IntegrityError:
                logger.debug("Share code %s taken concurrently on attempt %s", code, attempt)
                continue
            logger.info(
                json.dumps(
                    {
                        "event": "share_code_issued",
                        "assessment_id": assessment_id,
                        "attempts": attempt,
                        "expires_at": expires_at.isoformat(),
                    }
                )
            )
            return ShareCodeResult(share_code=code, expires_at=expires_at)

        raise CodeExhaustionError(
            f"Unable to generate unique share code after {max_attempts} attempts"
        )

    def regenerate(self, assessment_id: int) -> ShareCodeResult:
        """Replace the current code; the old one stops resolving immediately."""
        result = self.issue(assessment_id)
        return result.model_copy(update={"message": "Share code regenerated successfully"})

    def resolve(self, code: str) -> Assessment:
        normalized = validate_share_code(code)
        assessment = db.get_assessment_by_share_code(normalized)
        if assessment is None:
            raise NotFoundError("Assessment not found with this code")
        expires_at = assessment.share_code_expires_at
        if expires_at is not None and self.clock() > expires_at:
            raise ExpiredError("This share code has expired")
        return assessment
