"""In-memory registries of skills and workflows.

Read-mostly caches over the stores. Every mutation writes through to the
store first and only then updates the cache, so the cache never holds
anything the store does not.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, ClassVar, Generic, TypeVar

from clawback.orchestrator.models import Skill, Workflow, utc_now
from clawback.orchestrator.skills.loader import (
    SkillFileError,
    discover_skill_files,
    load_skill_file,
)
from clawback.orchestrator.storage import DefinitionStore, SkillStore, WorkflowStore
from clawback.orchestrator.workflow.events import SKILL_ID_KEY, WORKFLOW_ID_KEY
from clawback.orchestrator.workflow.triggers import TriggerMatch, match_triggers, scheduled_rules

logger = logging.getLogger(__name__)

D = TypeVar("D", Skill, Workflow)


class DefinitionRegistry(Generic[D]):
    owner_key: ClassVar[str]

    def __init__(self, store: DefinitionStore[D]) -> None:
        self._store = store
        self._cache: dict[str, D] = {}
        self._lock = threading.Lock()

    def load(self) -> None:
        """Refresh the cache from the store (enabled definitions only)."""

        definitions = self._store.list(enabled_only=True)
        with self._lock:
            self._cache = {d.id: d for d in definitions}

    def get(self, definition_id: str) -> D | None:
        with self._lock:
            return self._cache.get(definition_id)

    def list(self) -> list[D]:
        with self._lock:
            return list(self._cache.values())

    def register(self, definition: D) -> D:
        created = self._store.insert(definition)
        self._cache_put(created)
        return created

    def update(self, definition_id: str, **changes: Any) -> D:
        def _apply(current: D) -> D:
            merged = {**current.model_dump(), **changes, "updated_at": utc_now()}
            return type(current).model_validate(merged)

        updated = self._store.replace(definition_id, _apply)
        self._cache_put(updated)
        return updated

    def delete(self, definition_id: str) -> bool:
        deleted = self._store.delete(definition_id)
        if deleted:
            with self._lock:
                self._cache.pop(definition_id, None)
        return deleted

    def find_matching(
        self, *, source: str, event_type: str, payload: Mapping[str, Any]
    ) -> list[TriggerMatch[D]]:
        return match_triggers(
            self.list(),
            source=source,
            event_type=event_type,
            payload=payload,
            owner_key=self.owner_key,
        )

    def find_scheduled(self) -> list[tuple[D, int, str]]:
        return [
            (definition, index, schedule)
            for definition in self.list()
            for index, schedule in scheduled_rules(definition)
        ]

    def _cache_put(self, definition: D) -> None:
        with self._lock:
            if definition.enabled:
                self._cache[definition.id] = definition
            else:
                self._cache.pop(definition.id, None)


class SkillRegistry(DefinitionRegistry[Skill]):
    owner_key = SKILL_ID_KEY

    def __init__(self, store: SkillStore, skills_dir: Path | None = None) -> None:
        super().__init__(store)
        self._skill_store = store
        self.skills_dir = skills_dir

    def load(self) -> None:
        if self.skills_dir is not None:
            self.sync_from_directory(self.skills_dir)
        super().load()

    def sync_from_directory(self, skills_dir: Path) -> list[Skill]:
        """Upsert every ``<name>/SKILL.md`` under ``skills_dir`` into the store."""

        synced: list[Skill] = []
        for path in discover_skill_files(skills_dir):
            try:
                skill = load_skill_file(path)
            except (OSError, SkillFileError) as e:
                logger.warning("Skipping invalid skill file", extra={"path": str(path), "error": str(e)})
                continue
            stored = self._skill_store.upsert_from_file(skill)
            self._cache_put(stored)
            synced.append(stored)
        logger.info(
            "Synced skills from directory",
            extra={"skills_dir": str(skills_dir), "count": len(synced)},
        )
        return synced


class WorkflowRegistry(DefinitionRegistry[Workflow]):
    owner_key = WORKFLOW_ID_KEY

    def __init__(self, store: WorkflowStore) -> None:
        super().__init__(store)
