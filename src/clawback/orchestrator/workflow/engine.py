"""Orchestrator engine: multi-turn workflow runs that spawn skills and can pause.

The orchestrator's working memory is its turn history. Pausing for a human
serializes that history verbatim into a ``hitl_request`` checkpoint; resuming
loads it back, appends one tool-result turn carrying the human's answer and
re-enters the same loop. No thread or connection is held while a run waits.
"""

from __future__ import annotations

import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from datetime import timedelta
from typing import Any

from clawback.errors import OrchestrationError, ResumeError, WorkflowFailedError
from clawback.llm.provider import Completion, LLMProvider, Message
from clawback.llm.retry import call_with_rate_limit_retry
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import (
    Event,
    Skill,
    SkillRunResult,
    Workflow,
    WorkflowRun,
    utc_now,
)
from clawback.orchestrator.notifications import NotificationService
from clawback.orchestrator.registry import SkillRegistry, WorkflowRegistry
from clawback.orchestrator.skills.executor import TaskExecutor
from clawback.orchestrator.storage import CheckpointOwner, Stores
from clawback.orchestrator.workflow.events import format_event_block, parse_payload
from clawback.orchestrator.workflow.operations import (
    ORCHESTRATOR_TOOLS,
    CompleteWorkflow,
    FailWorkflow,
    RequestHumanInput,
    SpawnSkill,
    UnknownOperation,
    parse_operation,
)
from clawback.orchestrator.workflow.state_machine import IllegalTransitionError

logger = logging.getLogger(__name__)

SPAWN_EVENT_SOURCE = "workflow"
SPAWN_EVENT_TYPE = "skill_spawn"

NOT_EXECUTED_MESSAGE = "Not executed: workflow paused for human input"


def build_orchestrator_prompt(workflow: Workflow, skills: list[Skill], event: Event) -> str:
    skill_descriptions = "\n\n".join(
        f"- **{s.name}** (ID: {s.id})\n"
        f"  {s.description or 'No description'}\n"
        f"  Triggers: {', '.join(_describe_trigger(t.source, t.events) for t in s.triggers)}"
        for s in skills
    )
    return f"""You are an AI orchestrator executing the workflow "{workflow.name}".

## Workflow Description
{workflow.description or "No description provided."}

## Your Instructions
{workflow.instructions}

## Available Skills
You can spawn any of these skills to accomplish parts of the workflow:

{skill_descriptions}

## Orchestration Guidelines

1. **Analyze the trigger event** to understand what needs to be done
2. **Plan your approach** - decide which skills to run and in what order
3. **Spawn skills** using the `spawn_skill` tool with appropriate inputs
4. **Handle results** - check skill outputs and decide next steps
5. **Handle errors** - if a skill fails, decide whether to retry, skip, or fail the workflow
6. **Request human input** - use `request_human_input` when you need confirmation, clarification, or a decision before proceeding
7. **Complete the workflow** - call `complete_workflow` with a summary when done
8. **Fail gracefully** - call `fail_workflow` if the workflow cannot be completed

## Event Context
- Source: {event.source}
- Type: {event.type}
- Event ID: {event.id}

## Important Notes
- You can spawn multiple skills if needed
- Skills may return data that should be passed to subsequent skills
- Always include a clear reason when spawning skills
- Summarize the overall outcome when completing the workflow"""


def build_orchestrator_user_message(event: Event, payload: dict[str, Any]) -> str:
    return (
        "Execute this workflow for the following trigger event:\n\n"
        f"{format_event_block(event, payload)}\n\n"
        "Analyze the event and orchestrate the appropriate skills to complete the workflow."
    )


def _describe_trigger(source: str, events: list[str] | None) -> str:
    return f"{source}/{','.join(events) if events else 'any'}"


def _tool_error(message: str) -> str:
    return json.dumps({"error": message})


class OrchestratorEngine:
    def __init__(
        self,
        *,
        settings: EngineSettings,
        llm: LLMProvider,
        stores: Stores,
        skills: SkillRegistry,
        workflows: WorkflowRegistry,
        task_executor: TaskExecutor,
        notifications: NotificationService | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self._stores = stores
        self._skills = skills
        self._workflows = workflows
        self._task_executor = task_executor
        self._notifications = notifications
        self._sleep = sleep
        self._workflow_locks: dict[str, threading.Lock] = {}
        self._workflow_locks_guard = threading.Lock()

    def execute(self, workflow: Workflow, event: Event) -> WorkflowRun:
        """Run ``workflow`` for ``event`` until it completes, fails or pauses.

        Returns:
            The WorkflowRun, either ``completed`` or ``waiting_for_input``.

        Raises:
            WorkflowFailedError: The orchestrator called ``fail_workflow``.
            Exception: Any other failure. The run is already marked ``failed``.
        """

        payload = parse_payload(event.payload)
        run = self._stores.workflow_runs.create(
            workflow_id=workflow.id,
            event_id=event.id,
            input={"event": {"source": event.source, "type": event.type, "payload": payload}},
        )
        logger.info(
            "Starting workflow run",
            extra={"workflow_id": workflow.id, "workflow_run_id": run.id, "event_id": event.id},
        )

        with self._serialized(workflow.id):
            run = self._stores.workflow_runs.set_status(run.id, "running")
            messages: list[Message] = [
                {"role": "user", "content": build_orchestrator_user_message(event, payload)}
            ]
            return self._drive(workflow, event, run, messages)

    def resume_from_checkpoint(self, hitl_request_id: str) -> WorkflowRun:
        """Continue a paused run from the state saved when it asked for input.

        Raises:
            ResumeError: The request is missing or not responded to, or its
                checkpoint has no saved turn history.
        """

        hitl = self._stores.hitl_requests.get(hitl_request_id)
        if hitl is None:
            raise ResumeError(f"HITL request {hitl_request_id} not found")
        if hitl.status != "responded":
            raise ResumeError(f"HITL request {hitl_request_id} has not been responded to")

        checkpoint = self._stores.checkpoints.get(hitl.checkpoint_id)
        if checkpoint is None or checkpoint.state is None:
            raise ResumeError(f"Checkpoint {hitl.checkpoint_id} has no stored state")
        tool_use_id = checkpoint.data.get("toolUseId") if isinstance(checkpoint.data, dict) else None
        if not isinstance(tool_use_id, str):
            raise ResumeError(f"Checkpoint {checkpoint.id} does not reference the paused tool call")

        run = self._stores.workflow_runs.get(hitl.workflow_run_id)
        if run is None:
            raise ResumeError(f"Workflow run {hitl.workflow_run_id} not found")
        workflow = self._workflows.get(run.workflow_id)
        if workflow is None:
            raise ResumeError(f"Workflow {run.workflow_id} not found or disabled")
        event = self._stores.events.get(run.event_id)
        if event is None:
            raise ResumeError(f"Trigger event {run.event_id} not found")

        responded_at = hitl.responded_at or utc_now()
        messages: list[Message] = [
            *checkpoint.state,
            self._llm.tool_result_message(
                tool_use_id,
                json.dumps({"response": hitl.response, "respondedAt": responded_at.isoformat()}),
            ),
        ]

        with self._serialized(workflow.id):
            try:
                run = self._stores.workflow_runs.set_status(run.id, "running")
            except IllegalTransitionError as e:
                raise ResumeError(f"Workflow run {run.id} cannot be resumed: {e}") from e

            self._stores.checkpoints.append(
                CheckpointOwner.workflow_run(run.id),
                "hitl_response",
                {"hitlRequestId": hitl.id, "response": hitl.response},
            )
            logger.info(
                "Resuming workflow run",
                extra={"workflow_run_id": run.id, "hitl_request_id": hitl.id},
            )
            return self._drive(workflow, event, run, messages)

    def _drive(
        self, workflow: Workflow, event: Event, run: WorkflowRun, messages: list[Message]
    ) -> WorkflowRun:
        owner = CheckpointOwner.workflow_run(run.id)
        try:
            return self._orchestrate(workflow, event, run, messages)
        except WorkflowFailedError:
            raise
        except Exception as e:
            logger.exception(
                "Workflow run failed", extra={"workflow_run_id": run.id, "workflow_id": workflow.id}
            )
            self._stores.checkpoints.append(owner, "error", {"message": str(e)})
            self._mark_failed(run.id, str(e))
            raise

    def _orchestrate(
        self, workflow: Workflow, event: Event, run: WorkflowRun, messages: list[Message]
    ) -> WorkflowRun:
        skills = [s for s in (self._skills.get(sid) for sid in workflow.skills) if s is not None]
        if not skills:
            raise OrchestrationError("No valid skills found for workflow")

        owner = CheckpointOwner.workflow_run(run.id)
        system_prompt = build_orchestrator_prompt(workflow, skills, event)
        last_text = ""

        for _ in range(self._settings.orchestrator_max_turns):
            completion = self._complete(system_prompt, messages, workflow)
            messages.append(completion.message)

            if completion.text:
                self._stores.checkpoints.append(owner, "assistant_message", {"text": completion.text})
                last_text = completion.text

            if not completion.tool_calls:
                break

            tool_messages: list[Message] = []
            for index, call in enumerate(completion.tool_calls):
                self._stores.checkpoints.append(
                    owner,
                    "tool_call",
                    {"toolName": call.name, "toolInput": call.arguments, "toolUseId": call.id},
                )
                match parse_operation(call):
                    case SpawnSkill() as op:
                        content = self._spawn_skill(op, workflow, run, skills)
                    case CompleteWorkflow() as op:
                        return self._complete_run(
                            run.id, {"summary": op.summary, "results": op.results or {}}
                        )
                    case FailWorkflow() as op:
                        self._stores.checkpoints.append(
                            owner,
                            "error",
                            {"message": op.error, "partialResults": op.partial_results or {}},
                        )
                        self._mark_failed(run.id, op.error)
                        raise WorkflowFailedError(op.error, op.partial_results)
                    case RequestHumanInput() as op:
                        skipped = [
                            self._llm.tool_result_message(c.id, _tool_error(NOT_EXECUTED_MESSAGE))
                            for c in completion.tool_calls[index + 1 :]
                        ]
                        return self._pause(
                            op, workflow, run, [*messages, *tool_messages, *skipped]
                        )
                    case UnknownOperation() as op:
                        logger.warning(
                            "Orchestrator requested an invalid operation",
                            extra={"workflow_run_id": run.id, "tool": op.name, "error": op.error},
                        )
                        content = _tool_error(op.error)
                        self._stores.checkpoints.append(
                            owner,
                            "tool_result",
                            {"toolUseId": call.id, "content": content, "isError": True},
                        )
                tool_messages.append(self._llm.tool_result_message(call.id, content))

            messages.extend(tool_messages)
        else:
            raise OrchestrationError(
                f"Orchestrator exceeded {self._settings.orchestrator_max_turns} turns"
            )

        current = self._stores.workflow_runs.get(run.id)
        skill_run_ids = current.skill_run_ids if current is not None else []
        return self._complete_run(run.id, {"summary": last_text, "skillRuns": skill_run_ids})

    def _spawn_skill(
        self, op: SpawnSkill, workflow: Workflow, run: WorkflowRun, skills: list[Skill]
    ) -> str:
        owner = CheckpointOwner.workflow_run(run.id)
        skill = next((s for s in skills if s.id == op.skill_id), None)
        if skill is None:
            content = _tool_error(f"Skill {op.skill_id} is not available in this workflow")
            self._stores.checkpoints.append(
                owner, "tool_result", {"toolUseId": op.call_id, "content": content, "isError": True}
            )
            return content

        logger.info(
            "Spawning skill",
            extra={"workflow_run_id": run.id, "skill_id": skill.id, "reason": op.reason},
        )
        self._stores.checkpoints.append(
            owner,
            "skill_spawn",
            {"skillId": skill.id, "skillName": skill.name, "inputs": op.inputs, "reason": op.reason},
        )
        spawn_event = self._stores.events.create(
            source=SPAWN_EVENT_SOURCE,
            type=SPAWN_EVENT_TYPE,
            payload={
                "workflowRunId": run.id,
                "workflowId": workflow.id,
                "parentEventId": run.event_id,
                "inputs": op.inputs,
                "reason": op.reason,
            },
        )

        try:
            skill_run = self._task_executor.execute(skill, spawn_event)
            result = SkillRunResult(
                run_id=skill_run.id,
                skill_id=skill.id,
                skill_name=skill.name,
                status="completed",
                output=skill_run.output,
            )
            self._stores.events.set_status(spawn_event.id, "completed")
        except Exception as e:
            logger.warning(
                "Spawned skill failed",
                extra={"workflow_run_id": run.id, "skill_id": skill.id, "error": str(e)},
            )
            failed = self._stores.runs.select(lambda r: r.event_id == spawn_event.id)
            result = SkillRunResult(
                run_id=failed[0].id if failed else None,
                skill_id=skill.id,
                skill_name=skill.name,
                status="failed",
                error=str(e),
            )
            self._stores.events.set_status(spawn_event.id, "failed")

        if result.run_id is not None:
            self._stores.workflow_runs.add_skill_run(run.id, result.run_id)
        result_data = result.model_dump(mode="json", by_alias=True)
        self._stores.checkpoints.append(owner, "skill_complete", result_data)
        return json.dumps(result_data, ensure_ascii=False)

    def _pause(
        self,
        op: RequestHumanInput,
        workflow: Workflow,
        run: WorkflowRun,
        history: list[Message],
    ) -> WorkflowRun:
        owner = CheckpointOwner.workflow_run(run.id)
        checkpoint = self._stores.checkpoints.append(
            owner,
            "hitl_request",
            {
                "toolUseId": op.call_id,
                "prompt": op.prompt,
                "context": op.context,
                "options": op.options,
                "timeoutMinutes": op.timeout_minutes,
            },
            state=history,
        )
        timeout_at = (
            utc_now() + timedelta(minutes=op.timeout_minutes) if op.timeout_minutes else None
        )
        hitl = self._stores.hitl_requests.create(
            workflow_run_id=run.id,
            checkpoint_id=checkpoint.id,
            prompt=op.prompt,
            context=op.context,
            options=op.options,
            timeout_at=timeout_at,
        )
        paused = self._stores.workflow_runs.set_status(run.id, "waiting_for_input")
        logger.info(
            "Workflow run waiting for human input",
            extra={"workflow_run_id": run.id, "hitl_request_id": hitl.id},
        )
        if self._notifications is not None:
            self._notifications.notify(
                type="warning",
                title=f"{workflow.name} needs input",
                message=op.prompt,
                run_id=run.id,
                owner_id=workflow.id,
            )
        return paused

    def _complete_run(self, run_id: str, output: dict[str, Any]) -> WorkflowRun:
        completed = self._stores.workflow_runs.set_status(run_id, "completed", output=output)
        logger.info("Workflow run completed", extra={"workflow_run_id": run_id})
        return completed

    def _mark_failed(self, run_id: str, error: str) -> None:
        try:
            self._stores.workflow_runs.set_status(run_id, "failed", error=error)
        except IllegalTransitionError:
            # Cancelled while running; keep the cancellation.
            logger.warning(
                "Workflow run already terminal, not marking failed",
                extra={"workflow_run_id": run_id, "error": error},
            )

    def _complete(self, system_prompt: str, messages: list[Message], workflow: Workflow) -> Completion:
        return call_with_rate_limit_retry(
            lambda: self._llm.complete(
                system_prompt=system_prompt,
                tools=ORCHESTRATOR_TOOLS,
                messages=messages,
                model_tier=workflow.orchestrator_model,
            ),
            max_retries=self._settings.rate_limit_max_retries,
            base_delay=self._settings.rate_limit_base_delay_seconds,
            max_delay=self._settings.rate_limit_max_delay_seconds,
            sleep=self._sleep,
        )

    @contextlib.contextmanager
    def _serialized(self, workflow_id: str) -> Iterator[None]:
        if not self._settings.serialize_workflow_runs:
            yield
            return
        with self._workflow_locks_guard:
            lock = self._workflow_locks.setdefault(workflow_id, threading.Lock())
        with lock:
            yield
