"""Load skills authored as ``<skills_dir>/<name>/SKILL.md`` files.

A skill file is YAML front matter followed by the markdown instructions:

    ---
    name: PR reviewer
    triggers:
      - source: github
        events: ["pull_request.opened"]
    mcpServers: [github]
    toolPermissions:
      deny: ["mcp__github__delete_*"]
    ---
    Review the pull request and leave a summary comment.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from clawback.orchestrator.models import Skill

SKILL_FILE_NAME = "SKILL.md"

_FRONT_MATTER = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)(.*)\Z", re.DOTALL)


class SkillFileError(ValueError):
    pass


def parse_skill_markdown(content: str) -> tuple[dict[str, Any], str]:
    """Split a SKILL.md document into (front matter, instructions body)."""

    match = _FRONT_MATTER.match(content)
    if match is None:
        return {}, content.strip()

    try:
        front_matter = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise SkillFileError(f"Invalid YAML front matter: {e}") from e
    if not isinstance(front_matter, dict):
        raise SkillFileError("Front matter must be a mapping")
    return front_matter, match.group(2).strip()


def load_skill_file(path: Path) -> Skill:
    front_matter, instructions = parse_skill_markdown(path.read_text(encoding="utf-8"))

    data: dict[str, Any] = {
        key: value
        for key, value in front_matter.items()
        if key
        in {
            "name",
            "description",
            "triggers",
            "mcpServers",
            "toolPermissions",
            "notifications",
            "model",
            "knowledge",
        }
    }
    data.setdefault("name", path.parent.name)
    # Inline server configs are keyed by name; only the names are referenced here.
    if isinstance(data.get("mcpServers"), dict):
        data["mcpServers"] = list(data["mcpServers"])
    data["instructions"] = instructions
    data["sourcePath"] = str(path)

    try:
        return Skill.model_validate(data)
    except ValidationError as e:
        raise SkillFileError(f"{path}: {e}") from e


def discover_skill_files(skills_dir: Path) -> list[Path]:
    if not skills_dir.is_dir():
        return []
    return sorted(
        entry / SKILL_FILE_NAME
        for entry in skills_dir.iterdir()
        if entry.is_dir() and (entry / SKILL_FILE_NAME).is_file()
    )
