"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from mailhub.core.config import AppSettings, load_app_settings


def test_defaults_loaded_without_env_file() -> None:
    """Default values should be returned when no overrides are present."""

    settings = load_app_settings(include_environment=False)
    assert settings.storage.db_path == Path("./mailhub.db")
    assert settings.sync.lookback_days == 14
    assert settings.queue.sync_concurrency == 2
    assert settings.queue.classification_concurrency == 5
    assert settings.classification.quarantine_category == "Quarantine"
    assert settings.vault.key is None


def test_env_file_overrides(tmp_path: Path) -> None:
    """Values defined in an env file should override defaults."""

    env_file = tmp_path / "test.env"
    env_file.write_text(
        "MAILHUB_SYNC__LOOKBACK_DAYS=3\n"
        "MAILHUB_LLM__PROVIDER=anthropic\n"
        "MAILHUB_SYNC__PRUNE_OUTSIDE_WINDOW=true\n"
        "UNRELATED=value\n",
        encoding="utf-8",
    )

    settings = load_app_settings(env_file=env_file, include_environment=False)
    assert settings.sync.lookback_days == 3
    assert settings.llm.provider == "anthropic"
    assert settings.sync.prune_outside_window is True


def test_environment_overrides_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / "test.env"
    env_file.write_text("MAILHUB_QUEUE__MAX_ATTEMPTS=2\n", encoding="utf-8")
    monkeypatch.setenv("MAILHUB_QUEUE__MAX_ATTEMPTS", "7")

    settings = load_app_settings(env_file=env_file)
    assert settings.queue.max_attempts == 7


def test_secret_values_lists_configured_secrets() -> None:
    settings = AppSettings.model_validate(
        {"vault": {"key": "ab" * 32}, "llm": {"api_key": "sk-test"}}
    )

    assert settings.secret_values() == ["ab" * 32, "sk-test"]
    assert "sk-test" not in repr(settings.llm)


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValidationError):
        AppSettings.model_validate({"classification": {"review_threshold": 1.5}})
