"""Tests for the command-line entrypoint."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from clawback.orchestrator import main as cli
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import Skill, TriggerRule
from clawback.orchestrator.storage import Stores


@pytest.fixture(autouse=True)
def isolated_cli(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, settings: EngineSettings) -> None:
    # No .env from the working tree, no global logging changes.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "configure_logging", lambda *_args, **_kwargs: None)


def test_validate_schedule(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["validate-schedule", "0 9 * * 1-5"]) == 0
    assert capsys.readouterr().out.strip() == "valid"

    assert cli.main(["validate-schedule", "0 9 * *"]) == 1
    assert capsys.readouterr().err.startswith("invalid:")


def test_next_runs(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["next-runs", "0 9 * * *", "--count", "3"]) == 0
    assert len(capsys.readouterr().out.strip().splitlines()) == 3

    assert cli.main(["next-runs", "bogus"]) == 1


def test_configuration_error_exits_2(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAWBACK_SKILL_MAX_TURNS", "-1")
    assert cli.main(["hitl-list"]) == 2


def test_sync_jobs_without_api_key(
    monkeypatch: pytest.MonkeyPatch, stores: Stores, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    skill = stores.skills.insert(
        Skill(name="standup", triggers=[TriggerRule(source="cron", schedule="0 9 * * *")])
    )

    assert cli.main(["sync-jobs"]) == 0

    [job] = stores.scheduled_jobs.all()
    assert job.skill_id == skill.id
    assert f"skill:{skill.id}#0" in capsys.readouterr().out


def test_emit_without_matches(capsys: pytest.CaptureFixture[str], stores: Stores) -> None:
    assert cli.main(["emit", "--source", "github", "--type", "push", "--payload", '{"ref": "main"}']) == 0

    output = json.loads(capsys.readouterr().out)
    assert output["workflowRuns"] == []
    assert output["runs"] == []
    assert stores.events.get(output["eventId"]).status == "completed"


def test_hitl_commands(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["hitl-list"]) == 0
    assert json.loads(capsys.readouterr().out) == []

    assert cli.main(["hitl-respond", "hitl_missing", "--response", "yes"]) == 1
    assert "not found" in capsys.readouterr().err
