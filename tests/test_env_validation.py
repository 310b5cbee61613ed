import os

import pytest

from env_validation import (
    DEFAULT_LLM_URL,
    EngineSettings,
    EnvironmentError,
    get_env_bool,
    get_env_float,
    get_env_int,
    validate_environment,
)


@pytest.fixture(autouse=True)
def _restore_env(monkeypatch):
    # validate_environment writes defaults into os.environ; register the keys so they are undone.
    for name in ("DB_PATH", "LLM_URL"):
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)


def test_validate_environment_applies_defaults():
    validate_environment()
    assert os.environ["DB_PATH"] == "data.db"
    assert os.environ["LLM_URL"] == DEFAULT_LLM_URL


def test_validate_environment_rejects_bad_url(monkeypatch):
    monkeypatch.setenv("LLM_URL", "ftp://llm.local")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_validate_environment_rejects_non_positive_limits(monkeypatch):
    monkeypatch.setenv("LLM_URL", "http://llm.local")
    monkeypatch.setenv("PREVIEW_FEEDBACK_LIMIT", "0")
    with pytest.raises(EnvironmentError):
        validate_environment()


def test_env_helpers_fall_back_on_bad_input(monkeypatch):
    monkeypatch.setenv("X_INT", "seven")
    monkeypatch.setenv("X_FLOAT", "")
    monkeypatch.setenv("X_BOOL", "Yes")
    assert get_env_int("X_INT", 7) == 7
    assert get_env_float("X_FLOAT", 2.5) == 2.5
    assert get_env_bool("X_BOOL") is True
    assert get_env_bool("X_MISSING", True) is True


def test_engine_settings_from_env(monkeypatch):
    monkeypatch.setenv("SHARE_CODE_TTL_DAYS", "3")
    monkeypatch.setenv("SHARE_CODE_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("PREVIEW_FEEDBACK_LIMIT", "5")
    monkeypatch.setenv("PROGRESS_TREND_THRESHOLD", "2.5")
    monkeypatch.setenv("AUTO_GRADE_ENABLED", "false")

    settings = EngineSettings.from_env()
    assert settings == EngineSettings(
        share_code_ttl_days=3,
        share_code_max_attempts=4,
        preview_feedback_limit=5,
        progress_trend_threshold=2.5,
        auto_grade_enabled=False,
    )


def test_engine_settings_defaults(monkeypatch):
    for name in (
        "SHARE_CODE_TTL_DAYS",
        "SHARE_CODE_MAX_ATTEMPTS",
        "PREVIEW_FEEDBACK_LIMIT",
        "PROGRESS_TREND_THRESHOLD",
        "AUTO_GRADE_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    assert EngineSettings.from_env() == EngineSettings()
