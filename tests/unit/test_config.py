"""Unit tests for engine settings."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from clawback.orchestrator.config import EngineSettings


def test_defaults_do_not_require_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CLAWBACK_STATE_PATH", raising=False)

    settings = EngineSettings(_env_file=None)

    assert settings.openai_api_key == ""
    assert settings.state_path == Path("clawback_state")
    assert settings.skill_max_turns == 20
    assert settings.orchestrator_max_turns == 50
    assert settings.rate_limit_base_delay_seconds == 15.0
    assert settings.serialize_workflow_runs is False


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CLAWBACK_STATE_PATH", str(tmp_path))
    monkeypatch.setenv("CLAWBACK_MODEL_SMALL", "tiny-model")
    monkeypatch.setenv("CLAWBACK_SKILL_MAX_TURNS", "5")
    monkeypatch.setenv("CLAWBACK_SERIALIZE_WORKFLOW_RUNS", "true")

    settings = EngineSettings(_env_file=None)

    assert settings.state_path == tmp_path
    assert settings.model_for("small") == "tiny-model"
    assert settings.model_for("standard") == settings.model_standard
    assert settings.skill_max_turns == 5
    assert settings.serialize_workflow_runs is True


def test_env_file_is_read(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text("LOG_LEVEL=DEBUG\nCLAWBACK_DISPATCH_WORKERS=2\n", encoding="utf-8")

    settings = EngineSettings(_env_file=env_file)

    assert settings.log_level == "DEBUG"
    assert settings.dispatch_workers == 2


def test_invalid_values_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAWBACK_ORCHESTRATOR_MAX_TURNS", "0")
    with pytest.raises(ValidationError):
        EngineSettings(_env_file=None)
