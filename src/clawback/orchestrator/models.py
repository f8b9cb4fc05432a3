"""Domain records for events, definitions, runs and their execution history.

All records are pydantic models. Field names are snake_case in Python and
camelCase on the wire (SKILL.md front matter, REST responses); both spellings
are accepted on input.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

EventStatus = Literal["pending", "processing", "completed", "failed"]
RunStatus = Literal["pending", "running", "completed", "failed"]
WorkflowRunStatus = Literal[
    "pending", "running", "waiting_for_input", "completed", "failed", "cancelled"
]
CheckpointType = Literal[
    "assistant_message",
    "tool_call",
    "tool_result",
    "skill_spawn",
    "skill_complete",
    "hitl_request",
    "hitl_response",
    "error",
]
HitlStatus = Literal["pending", "responded", "expired", "cancelled"]
NotificationType = Literal["success", "error", "info", "warning"]
ModelTier = Literal["large", "standard", "small"]


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Event(Record):
    id: str = Field(default_factory=lambda: new_id("evt"))
    source: str
    type: str
    # May arrive pre-serialized from ingestion; see workflow.events.parse_payload.
    payload: dict[str, Any] | str = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = "pending"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TriggerFilters(Record):
    repository: str | None = None
    ref: list[str] | None = None

    def is_empty(self) -> bool:
        return not self.repository and not self.ref


class TriggerRule(Record):
    source: str
    events: list[str] | None = None
    schedule: str | None = None
    filters: TriggerFilters | None = None

    @property
    def is_scheduled(self) -> bool:
        return bool(self.schedule)


class ToolPermissions(Record):
    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)


class NotificationSettings(Record):
    on_complete: bool = False
    on_error: bool = False


class Skill(Record):
    """A task definition: one trigger-activated, single-step automation."""

    id: str = Field(default_factory=lambda: new_id("skill"))
    name: str
    description: str | None = None
    instructions: str = ""
    triggers: list[TriggerRule] = Field(default_factory=list)
    mcp_servers: list[str] = Field(default_factory=list)
    tool_permissions: ToolPermissions = Field(default_factory=ToolPermissions)
    model: ModelTier = "standard"
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    knowledge: list[str] = Field(default_factory=list)
    enabled: bool = True
    source_path: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Workflow(Record):
    id: str = Field(default_factory=lambda: new_id("wf"))
    name: str
    description: str | None = None
    instructions: str = ""
    triggers: list[TriggerRule] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    orchestrator_model: ModelTier = "standard"
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class WorkflowRun(Record):
    id: str = Field(default_factory=lambda: new_id("wfrun"))
    workflow_id: str
    event_id: str
    status: WorkflowRunStatus = "pending"
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    skill_run_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class Run(Record):
    id: str = Field(default_factory=lambda: new_id("run"))
    skill_id: str
    event_id: str
    status: RunStatus = "pending"
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None


class Checkpoint(Record):
    id: str = Field(default_factory=lambda: new_id("cp"))
    run_id: str | None = None
    workflow_run_id: str | None = None
    sequence: int = Field(ge=0)
    type: CheckpointType
    data: Any = None
    # Full serialized turn history; only hitl_request checkpoints carry it.
    state: list[dict[str, Any]] | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _exactly_one_owner(self) -> Checkpoint:
        if (self.run_id is None) == (self.workflow_run_id is None):
            raise ValueError("checkpoint must belong to exactly one of run_id / workflow_run_id")
        return self


class HitlRequest(Record):
    id: str = Field(default_factory=lambda: new_id("hitl"))
    workflow_run_id: str
    checkpoint_id: str
    status: HitlStatus = "pending"
    prompt: str
    context: str | None = None
    options: list[str] | None = None
    response: str | None = None
    timeout_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    responded_at: datetime | None = None


class ScheduledJob(Record):
    id: str = Field(default_factory=lambda: new_id("job"))
    skill_id: str | None = None
    workflow_id: str | None = None
    trigger_index: int = Field(ge=0)
    schedule: str
    last_run_at: datetime | None = None
    next_run_at: datetime
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _exactly_one_owner(self) -> ScheduledJob:
        if (self.skill_id is None) == (self.workflow_id is None):
            raise ValueError("scheduled job must belong to exactly one of skill_id / workflow_id")
        return self

    @property
    def owner_id(self) -> str:
        return self.skill_id or self.workflow_id or ""

    @property
    def owner_kind(self) -> Literal["skill", "workflow"]:
        return "skill" if self.skill_id is not None else "workflow"


class Notification(Record):
    id: str = Field(default_factory=lambda: new_id("notif"))
    type: NotificationType
    title: str
    message: str
    run_id: str | None = None
    owner_id: str | None = None
    read: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class SkillRunResult(Record):
    """What the orchestrator sees after spawning a skill."""

    run_id: str | None = None
    skill_id: str
    skill_name: str
    status: Literal["completed", "failed"]
    output: Any = None
    error: str | None = None
