"""Unit tests for SKILL.md loading and the definition registries."""

from __future__ import annotations

from pathlib import Path

import pytest

from clawback.orchestrator.models import Skill, TriggerRule, Workflow
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.skills.loader import (
    SkillFileError,
    discover_skill_files,
    load_skill_file,
    parse_skill_markdown,
)
from clawback.orchestrator.storage import Stores

REVIEWER_SKILL = """---
description: Review new pull requests
triggers:
  - source: github
    events: ["pull_request.opened"]
    filters:
      repository: acme/api
mcpServers:
  github:
    command: github-mcp
toolPermissions:
  deny: ["mcp__github__delete_*"]
notifications:
  onComplete: true
model: small
---
# Review

Leave a summary comment on the pull request.
"""


def _write_skill(root: Path, name: str, content: str) -> Path:
    path = root / name / "SKILL.md"
    path.parent.mkdir(parents=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_parse_front_matter_and_body() -> None:
    front_matter, body = parse_skill_markdown("---\nname: x\n---\nDo the thing.\n")
    assert front_matter == {"name": "x"}
    assert body == "Do the thing."

    assert parse_skill_markdown("Just instructions.") == ({}, "Just instructions.")


def test_front_matter_must_be_a_mapping() -> None:
    with pytest.raises(SkillFileError):
        parse_skill_markdown("---\n- a\n- b\n---\nbody")
    with pytest.raises(SkillFileError):
        parse_skill_markdown("---\nname: [unclosed\n---\nbody")


def test_load_skill_file(tmp_path: Path) -> None:
    path = _write_skill(tmp_path, "pr-reviewer", REVIEWER_SKILL)

    skill = load_skill_file(path)

    assert skill.name == "pr-reviewer"
    assert skill.description == "Review new pull requests"
    assert skill.instructions.startswith("# Review")
    assert skill.triggers[0].events == ["pull_request.opened"]
    assert skill.triggers[0].filters.repository == "acme/api"
    assert skill.mcp_servers == ["github"]
    assert skill.tool_permissions.deny == ["mcp__github__delete_*"]
    assert skill.notifications.on_complete is True
    assert skill.model == "small"
    assert skill.source_path == str(path)


def test_invalid_skill_file_raises(tmp_path: Path) -> None:
    path = _write_skill(tmp_path, "broken", "---\nmodel: enormous\n---\nbody")
    with pytest.raises(SkillFileError):
        load_skill_file(path)


def test_discover_skill_files(tmp_path: Path) -> None:
    _write_skill(tmp_path, "b", "body")
    _write_skill(tmp_path, "a", "body")
    (tmp_path / "empty").mkdir()
    (tmp_path / "README.md").write_text("not a skill", encoding="utf-8")

    assert [p.parent.name for p in discover_skill_files(tmp_path)] == ["a", "b"]
    assert discover_skill_files(tmp_path / "missing") == []


def test_sync_from_directory_upserts_and_skips_invalid(stores: Stores, tmp_path: Path) -> None:
    path = _write_skill(tmp_path, "pr-reviewer", REVIEWER_SKILL)
    _write_skill(tmp_path, "broken", "---\nmodel: enormous\n---\nbody")
    registry = SkillRegistry(stores.skills, tmp_path)

    registry.load()
    [first] = registry.list()
    assert first.name == "pr-reviewer"

    path.write_text(REVIEWER_SKILL.replace("Leave a summary", "Leave a detailed"), encoding="utf-8")
    registry.load()

    [second] = registry.list()
    assert second.id == first.id
    assert "detailed" in second.instructions
    assert len(stores.skills.all()) == 1


def test_registry_writes_through_and_hides_disabled(stores: Stores) -> None:
    registry = WorkflowRegistry(stores.workflows)
    workflow = registry.register(Workflow(name="release"))

    updated = registry.update(workflow.id, description="Ship it")
    assert updated.description == "Ship it"
    assert stores.workflows.get(workflow.id).description == "Ship it"

    registry.update(workflow.id, enabled=False)
    assert registry.get(workflow.id) is None
    assert stores.workflows.get(workflow.id).enabled is False

    reloaded = WorkflowRegistry(stores.workflows)
    reloaded.load()
    assert reloaded.list() == []

    assert registry.delete(workflow.id) is True
    assert stores.workflows.get(workflow.id) is None
    assert registry.delete(workflow.id) is False


def test_find_matching_and_scheduled(stores: Stores) -> None:
    registry = SkillRegistry(stores.skills)
    push = registry.register(Skill(name="push", triggers=[TriggerRule(source="github", events=["push"])]))
    nightly = registry.register(
        Skill(name="nightly", triggers=[TriggerRule(source="cron", schedule="0 2 * * *")])
    )

    matches = registry.find_matching(source="github", event_type="push", payload={})
    assert [m.owner.id for m in matches] == [push.id]
    assert registry.find_scheduled() == [(nightly, 0, "0 2 * * *")]
