"""Local-first JSON file stores.

One JSON list per collection under the configured state directory. Every
collection is guarded by its own lock, and every read-modify-write happens
under that lock, which is what gives status updates and HITL responses their
compare-and-swap semantics within one process.

This is intentionally minimal. A database-backed implementation only needs to
offer the same methods.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from clawback.errors import NotFoundError
from clawback.orchestrator.models import (
    Checkpoint,
    CheckpointType,
    Event,
    EventStatus,
    HitlRequest,
    Notification,
    Run,
    RunStatus,
    ScheduledJob,
    Skill,
    Workflow,
    WorkflowRun,
    WorkflowRunStatus,
    utc_now,
)
from clawback.orchestrator.workflow.state_machine import (
    RUN_TRANSITIONS,
    WORKFLOW_RUN_TRANSITIONS,
    transition,
)

logger = logging.getLogger(__name__)


M = TypeVar("M", bound=BaseModel)


class JsonCollection(Generic[M]):
    def __init__(self, path: Path, model: type[M]) -> None:
        self.path = path
        self._model = model
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _load_unlocked(self) -> list[M]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file", extra={"path": str(self.path)})
            return []
        if not isinstance(raw, list):
            return []
        return [self._model.model_validate(item) for item in raw]

    def _save_unlocked(self, items: list[M]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [item.model_dump(mode="json") for item in items]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def all(self) -> list[M]:
        with self._lock:
            return self._load_unlocked()

    def select(self, predicate: Callable[[M], bool]) -> list[M]:
        return [item for item in self.all() if predicate(item)]

    def get(self, record_id: str) -> M | None:
        for item in self.all():
            if _id_of(item) == record_id:
                return item
        return None

    def insert(self, record: M) -> M:
        with self._lock:
            items = self._load_unlocked()
            items.append(record)
            self._save_unlocked(items)
            return record

    def modify(self, record_id: str, fn: Callable[[M], M | None]) -> M | None:
        """Apply ``fn`` to one record under the lock.

        ``fn`` returns the replacement record, or None to leave the record
        unchanged (and make ``modify`` return None). Raises NotFoundError if
        there is no such record.
        """

        with self._lock:
            items = self._load_unlocked()
            for idx, item in enumerate(items):
                if _id_of(item) != record_id:
                    continue
                updated = fn(item)
                if updated is None:
                    return None
                items[idx] = updated
                self._save_unlocked(items)
                return updated
            raise NotFoundError(f"{self._model.__name__} {record_id} not found")

    def replace(self, record_id: str, fn: Callable[[M], M]) -> M:
        """Like ``modify`` for a ``fn`` that always returns a record."""

        updated = self.modify(record_id, fn)
        if updated is None:
            raise RuntimeError(f"{self._model.__name__} {record_id} was not replaced")
        return updated

    def update(self, record_id: str, **changes: Any) -> M:
        return self.replace(record_id, lambda item: _touch(item, changes))

    def delete(self, record_id: str) -> bool:
        with self._lock:
            items = self._load_unlocked()
            kept = [item for item in items if _id_of(item) != record_id]
            if len(kept) == len(items):
                return False
            self._save_unlocked(kept)
            return True


def _id_of(item: BaseModel) -> str:
    return str(getattr(item, "id"))


def _touch(item: M, changes: dict[str, Any]) -> M:
    if "updated_at" in type(item).model_fields:
        changes = {"updated_at": utc_now(), **changes}
    return item.model_copy(update=changes)


class EventStore(JsonCollection[Event]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, Event)

    def create(
        self,
        *,
        source: str,
        type: str,
        payload: dict[str, Any] | str,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        return self.insert(
            Event(source=source, type=type, payload=payload, metadata=metadata or {})
        )

    def claim(self, event_id: str) -> Event | None:
        """pending -> processing. Returns None if someone else got there first."""

        def _claim(event: Event) -> Event | None:
            if event.status != "pending":
                return None
            return _touch(event, {"status": "processing"})

        return self.modify(event_id, _claim)

    def set_status(self, event_id: str, status: EventStatus) -> Event:
        return self.update(event_id, status=status)

    def list_pending(self) -> list[Event]:
        return self.select(lambda e: e.status == "pending")


D = TypeVar("D", Skill, Workflow)


class DefinitionStore(JsonCollection[D]):
    def list(self, *, enabled_only: bool = False) -> list[D]:
        items = self.all()
        if enabled_only:
            return [item for item in items if item.enabled]
        return items


class SkillStore(DefinitionStore[Skill]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, Skill)

    def find_by_source_path(self, source_path: str) -> Skill | None:
        found = self.select(lambda s: s.source_path == source_path)
        return found[0] if found else None

    def upsert_from_file(self, skill: Skill) -> Skill:
        """Insert or refresh a skill authored as a SKILL.md file, keyed by path."""

        with self.lock:
            existing = self.find_by_source_path(skill.source_path or "")
            if existing is None:
                return self.insert(skill)
            refreshed = skill.model_copy(
                update={
                    "id": existing.id,
                    "enabled": existing.enabled,
                    "created_at": existing.created_at,
                    "updated_at": utc_now(),
                }
            )
            return self.replace(existing.id, lambda _old: refreshed)


class WorkflowStore(DefinitionStore[Workflow]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, Workflow)


class WorkflowRunStore(JsonCollection[WorkflowRun]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, WorkflowRun)

    def create(self, *, workflow_id: str, event_id: str, input: dict[str, Any]) -> WorkflowRun:
        return self.insert(WorkflowRun(workflow_id=workflow_id, event_id=event_id, input=input))

    def set_status(
        self, run_id: str, status: WorkflowRunStatus, **fields: Any
    ) -> WorkflowRun:
        def _apply(run: WorkflowRun) -> WorkflowRun:
            transition(current=run.status, to=status, allowed=WORKFLOW_RUN_TRANSITIONS)
            changes: dict[str, Any] = {"status": status, **fields}
            if status in {"completed", "failed", "cancelled"}:
                changes["completed_at"] = utc_now()
            return _touch(run, changes)

        return self.replace(run_id, _apply)

    def add_skill_run(self, run_id: str, skill_run_id: str) -> WorkflowRun:
        return self.update_with(run_id, lambda r: {"skill_run_ids": [*r.skill_run_ids, skill_run_id]})

    def update_with(
        self, run_id: str, changes: Callable[[WorkflowRun], dict[str, Any]]
    ) -> WorkflowRun:
        return self.replace(run_id, lambda r: _touch(r, changes(r)))


class RunStore(JsonCollection[Run]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, Run)

    def create(self, *, skill_id: str, event_id: str, input: dict[str, Any]) -> Run:
        return self.insert(Run(skill_id=skill_id, event_id=event_id, input=input))

    def set_status(self, run_id: str, status: RunStatus, **fields: Any) -> Run:
        def _apply(run: Run) -> Run:
            transition(current=run.status, to=status, allowed=RUN_TRANSITIONS)
            changes: dict[str, Any] = {"status": status, **fields}
            if status in {"completed", "failed"}:
                changes["completed_at"] = utc_now()
            return _touch(run, changes)

        return self.replace(run_id, _apply)


@dataclass(frozen=True, slots=True)
class CheckpointOwner:
    """Exactly one of a skill run or a workflow run."""

    run_id: str | None = None
    workflow_run_id: str | None = None

    @staticmethod
    def run(run_id: str) -> CheckpointOwner:
        return CheckpointOwner(run_id=run_id)

    @staticmethod
    def workflow_run(workflow_run_id: str) -> CheckpointOwner:
        return CheckpointOwner(workflow_run_id=workflow_run_id)

    def owns(self, checkpoint: Checkpoint) -> bool:
        if self.run_id is not None:
            return checkpoint.run_id == self.run_id
        return checkpoint.workflow_run_id == self.workflow_run_id


class CheckpointStore(JsonCollection[Checkpoint]):
    """Append-only, strictly sequenced per owning run."""

    def __init__(self, path: Path) -> None:
        super().__init__(path, Checkpoint)

    def append(
        self,
        owner: CheckpointOwner,
        type: CheckpointType,
        data: Any,
        state: list[dict[str, Any]] | None = None,
    ) -> Checkpoint:
        with self.lock:
            items = self._load_unlocked()
            sequence = sum(1 for cp in items if owner.owns(cp))
            checkpoint = Checkpoint(
                run_id=owner.run_id,
                workflow_run_id=owner.workflow_run_id,
                sequence=sequence,
                type=type,
                data=data,
                state=state,
            )
            items.append(checkpoint)
            self._save_unlocked(items)
            return checkpoint

    def get_next_sequence(self, owner: CheckpointOwner) -> int:
        return len(self.list_for(owner))

    def list_for(self, owner: CheckpointOwner) -> list[Checkpoint]:
        found = self.select(owner.owns)
        return sorted(found, key=lambda cp: cp.sequence)


class HitlRequestStore(JsonCollection[HitlRequest]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, HitlRequest)

    def create(
        self,
        *,
        workflow_run_id: str,
        checkpoint_id: str,
        prompt: str,
        context: str | None = None,
        options: list[str] | None = None,
        timeout_at: datetime | None = None,
    ) -> HitlRequest:
        return self.insert(
            HitlRequest(
                workflow_run_id=workflow_run_id,
                checkpoint_id=checkpoint_id,
                prompt=prompt,
                context=context,
                options=options,
                timeout_at=timeout_at,
            )
        )

    def list_pending(self) -> list[HitlRequest]:
        return self.select(lambda h: h.status == "pending")

    def list_for_workflow_run(self, workflow_run_id: str) -> list[HitlRequest]:
        return self.select(lambda h: h.workflow_run_id == workflow_run_id)

    def respond(self, hitl_id: str, response: str) -> HitlRequest | None:
        """pending -> responded. None if the request is missing or not pending."""

        def _respond(req: HitlRequest) -> HitlRequest | None:
            if req.status != "pending":
                return None
            return req.model_copy(
                update={"status": "responded", "response": response, "responded_at": utc_now()}
            )

        return self._compare_and_swap(hitl_id, _respond)

    def cancel(self, hitl_id: str) -> HitlRequest | None:
        def _cancel(req: HitlRequest) -> HitlRequest | None:
            if req.status != "pending":
                return None
            return req.model_copy(update={"status": "cancelled"})

        return self._compare_and_swap(hitl_id, _cancel)

    def expire_overdue(self, now: datetime) -> list[HitlRequest]:
        expired: list[HitlRequest] = []
        with self.lock:
            items = self._load_unlocked()
            for idx, req in enumerate(items):
                if req.status == "pending" and req.timeout_at is not None and req.timeout_at <= now:
                    items[idx] = req.model_copy(update={"status": "expired"})
                    expired.append(items[idx])
            if expired:
                self._save_unlocked(items)
        return expired

    def _compare_and_swap(
        self, hitl_id: str, fn: Callable[[HitlRequest], HitlRequest | None]
    ) -> HitlRequest | None:
        try:
            return self.modify(hitl_id, fn)
        except NotFoundError:
            return None


class ScheduledJobStore(JsonCollection[ScheduledJob]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, ScheduledJob)

    def create(
        self,
        *,
        trigger_index: int,
        schedule: str,
        next_run_at: datetime,
        skill_id: str | None = None,
        workflow_id: str | None = None,
    ) -> ScheduledJob:
        return self.insert(
            ScheduledJob(
                skill_id=skill_id,
                workflow_id=workflow_id,
                trigger_index=trigger_index,
                schedule=schedule,
                next_run_at=next_run_at,
            )
        )

    def find_due(self, now: datetime) -> list[ScheduledJob]:
        due = self.select(lambda j: j.enabled and j.next_run_at <= now)
        return sorted(due, key=lambda j: j.next_run_at)

    def find_for_owner(
        self, *, skill_id: str | None = None, workflow_id: str | None = None, trigger_index: int
    ) -> ScheduledJob | None:
        found = self.select(
            lambda j: j.skill_id == skill_id
            and j.workflow_id == workflow_id
            and j.trigger_index == trigger_index
        )
        return found[0] if found else None

    def update_after_run(
        self, job_id: str, *, last_run_at: datetime, next_run_at: datetime
    ) -> ScheduledJob:
        return self.update(job_id, last_run_at=last_run_at, next_run_at=next_run_at)

    def set_enabled(self, job_id: str, enabled: bool) -> ScheduledJob:
        return self.update(job_id, enabled=enabled)


class NotificationStore(JsonCollection[Notification]):
    def __init__(self, path: Path) -> None:
        super().__init__(path, Notification)


@dataclass
class Stores:
    events: EventStore
    skills: SkillStore
    workflows: WorkflowStore
    workflow_runs: WorkflowRunStore
    runs: RunStore
    checkpoints: CheckpointStore
    hitl_requests: HitlRequestStore
    scheduled_jobs: ScheduledJobStore
    notifications: NotificationStore

    @classmethod
    def open(cls, state_path: Path) -> Stores:
        return cls(
            events=EventStore(state_path / "events.json"),
            skills=SkillStore(state_path / "skills.json"),
            workflows=WorkflowStore(state_path / "workflows.json"),
            workflow_runs=WorkflowRunStore(state_path / "workflow_runs.json"),
            runs=RunStore(state_path / "runs.json"),
            checkpoints=CheckpointStore(state_path / "checkpoints.json"),
            hitl_requests=HitlRequestStore(state_path / "hitl_requests.json"),
            scheduled_jobs=ScheduledJobStore(state_path / "scheduled_jobs.json"),
            notifications=NotificationStore(state_path / "notifications.json"),
        )
