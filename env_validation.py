"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_LLM_URL = "http://localhost:4891/v1/chat/completions"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Every engine knob has a default, so nothing is strictly required.
    required_vars: Dict[str, str] = {}

    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
        "LLM_URL": os.getenv("LLM_URL") or DEFAULT_LLM_URL,
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "LLM_API_KEY": "Bearer token for the AI scoring endpoint",
        "MODEL_ID": "Model used for AI-assisted grading",
    }

    missing = []
    for var, description in required_vars.items():
        if not os.getenv(var):
            missing.append(f"{var} ({description})")

    if missing:
        raise EnvironmentError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    url_vars = {"LLM_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    for var in ("SHARE_CODE_TTL_DAYS", "SHARE_CODE_MAX_ATTEMPTS", "PREVIEW_FEEDBACK_LIMIT"):
        value = os.getenv(var)
        if value is not None and get_env_int(var, 1) < 1:
            raise EnvironmentError(f"{var} must be a positive integer, got '{value}'")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.error("Invalid integer for %s: '%s'; using %s", name, value, default)
        return default


def get_env_float(name: str, default: float) -> float:
    """Get float value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.error("Invalid number for %s: '%s'; using %s", name, value, default)
        return default


@dataclass(frozen=True)
class EngineSettings:
    """Tunables shared by the grading engines."""

    share_code_ttl_days: int = 7
    share_code_max_attempts: int = 10
    preview_feedback_limit: int = 3
    progress_trend_threshold: float = 5.0
    auto_grade_enabled: bool = True

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            share_code_ttl_days=get_env_int("SHARE_CODE_TTL_DAYS", 7),
            share_code_max_attempts=get_env_int("SHARE_CODE_MAX_ATTEMPTS", 10),
            preview_feedback_limit=get_env_int("PREVIEW_FEEDBACK_LIMIT", 3),
            progress_trend_threshold=get_env_float("PROGRESS_TREND_THRESHOLD", 5.0),
            auto_grade_enabled=get_env_bool("AUTO_GRADE_ENABLED", True),
        )
