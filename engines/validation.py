"""Error taxonomy and input validation for the grading engine."""

import re
from typing import Any, Optional

SHARE_CODE_LENGTH = 5
PROMPT_TEXT_LIMIT = 5000

_SHARE_CODE_PATTERN = re.compile(r"^[A-Za-z]{%d}$" % SHARE_CODE_LENGTH)
_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")
_WHITESPACE = re.compile(r"\s+")


class GradingError(Exception):
    """Base class for typed grading engine failures."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)
        self.message = str(self.args[0])


class NotFoundError(GradingError):
    """Requested assessment, submission or skill does not exist."""

    status_code = 404


class InvalidFormatError(GradingError):
    """Share code is not exactly five letters."""

    status_code = 400


class ExpiredError(GradingError):
    """Share code has expired."""

    status_code = 410


class CodeExhaustionError(GradingError):
    """Unable to generate a unique share code after the maximum number of attempts."""

    status_code = 503


class AccessDeniedError(GradingError):
    """Access denied."""

    status_code = 403


class InvalidStateError(GradingError):
    """Operation is not valid in the current state."""

    status_code = 400


class RateLimitError(GradingError):
    """Request limit reached."""

    status_code = 429


class AIScorerError(GradingError):
    """AI scorer failed or returned an unusable reply."""

    status_code = 502


def validate_share_code(code: Any) -> str:
    """Return ``code`` upper-cased, or raise ``InvalidFormatError``.

    Only ASCII letters are accepted; lookups are never attempted for
    malformed input.
    """
    if not isinstance(code, str) or not _SHARE_CODE_PATTERN.match(code):
        raise InvalidFormatError("Invalid share code format")
    return code.upper()


def sanitize_for_prompt(value: Any, limit: int = PROMPT_TEXT_LIMIT) -> str:
    """Strip control characters, collapse whitespace and cap length."""
    if not isinstance(value, str):
        return ""
    cleaned = _CONTROL_CHARS.sub("", value).strip()
    collapsed = _WHITESPACE.sub(" ", cleaned)
    return collapsed[:limit]


def coerce_score(value: Any) -> Optional[float]:
    """Convert a loosely typed score to ``float``; ``None`` stays ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise InvalidStateError("Score must be numeric")
    try:
        score = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidStateError(f"Score must be numeric, got {value!r}") from exc
    if score != score:
        raise InvalidStateError("Score must be numeric")
    return score


def response_for_question(responses: Any, question_index: int) -> str:
    """Pick the answer text for ``question_index`` from a list or mapping of responses."""
    item: Any = None
    if isinstance(responses, list):
        if 0 <= question_index < len(responses):
            item = responses[question_index]
    elif isinstance(responses, dict):
        item = responses.get(str(question_index), responses.get(question_index))

    if isinstance(item, str):
        return item
    if isinstance(item, dict) and isinstance(item.get("answer"), str):
        return item["answer"]
    return ""
