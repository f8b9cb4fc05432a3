"""Single-step agent loop for one skill and one event.

The executor never pauses and never spawns: it drives the model through tool
calls until the model stops asking for tools (or the turn cap is hit) and
records the final text as the run output.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from clawback.llm.provider import Completion, LLMProvider, Message, ToolSpec
from clawback.llm.retry import call_with_rate_limit_retry
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import Event, ModelTier, Run, Skill
from clawback.orchestrator.storage import CheckpointOwner, CheckpointStore, RunStore
from clawback.orchestrator.tools import ToolRouter, ToolServer, ToolServerResolver
from clawback.orchestrator.workflow.events import format_event_block, parse_payload

logger = logging.getLogger(__name__)


def _no_tool_servers(_name: str) -> ToolServer | None:
    return None


def build_skill_system_prompt(skill: Skill, event: Event) -> str:
    return f"""You are an AI assistant executing the skill "{skill.name}".

## Instructions

{skill.instructions}

## Event Context

- Source: {event.source}
- Type: {event.type}
- Event ID: {event.id}

## Guidelines

1. Analyze the event payload carefully
2. Use available tools to accomplish the task
3. Provide clear, actionable feedback
4. If you encounter errors, explain what went wrong

Execute the skill based on the event data provided."""


def build_skill_user_message(event: Event, payload: dict[str, Any]) -> str:
    return f"Process this {event.type} event from {event.source}:\n\n{format_event_block(event, payload)}"


class TaskExecutor:
    """Runs a skill against an event and persists the resulting Run."""

    def __init__(
        self,
        *,
        settings: EngineSettings,
        llm: LLMProvider,
        runs: RunStore,
        checkpoints: CheckpointStore,
        tool_resolver: ToolServerResolver | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self._runs = runs
        self._checkpoints = checkpoints
        self._tool_resolver = tool_resolver or _no_tool_servers
        self._sleep = sleep

    def execute(self, skill: Skill, event: Event) -> Run:
        """Execute ``skill`` for ``event``.

        Returns:
            The completed Run.

        Raises:
            Exception: Whatever stopped the loop. The Run is already marked
                ``failed`` with the error message when this propagates.
        """

        payload = parse_payload(event.payload)
        run = self._runs.create(
            skill_id=skill.id,
            event_id=event.id,
            input={"event": {"source": event.source, "type": event.type, "payload": payload}},
        )
        owner = CheckpointOwner.run(run.id)
        log_extra = {"run_id": run.id, "skill_id": skill.id, "event_id": event.id}

        try:
            self._runs.set_status(run.id, "running")
            logger.info("Running skill", extra={**log_extra, "skill": skill.name})
            output = self._run_agent_loop(skill, event, payload, owner)
        except Exception as e:
            logger.warning("Skill run failed", extra={**log_extra, "error": str(e)})
            self._checkpoints.append(owner, "error", {"message": str(e)})
            self._runs.set_status(run.id, "failed", error=str(e))
            raise

        completed = self._runs.set_status(run.id, "completed", output=output)
        logger.info("Skill run completed", extra=log_extra)
        return completed

    def _run_agent_loop(
        self, skill: Skill, event: Event, payload: dict[str, Any], owner: CheckpointOwner
    ) -> dict[str, Any]:
        system_prompt = build_skill_system_prompt(skill, event)
        messages: list[Message] = [
            {"role": "user", "content": build_skill_user_message(event, payload)}
        ]
        final_response = ""

        with ToolRouter(
            server_names=skill.mcp_servers,
            permissions=skill.tool_permissions,
            resolver=self._tool_resolver,
        ) as router:
            for _ in range(self._settings.skill_max_turns):
                completion = self._complete(system_prompt, router.tools, messages, skill.model)
                messages.append(completion.message)

                for text in completion.text_blocks:
                    self._checkpoints.append(owner, "assistant_message", {"text": text})
                if completion.text:
                    final_response = completion.text

                if not completion.tool_calls:
                    return {"response": final_response}

                for call in completion.tool_calls:
                    self._checkpoints.append(
                        owner,
                        "tool_call",
                        {"toolName": call.name, "toolInput": call.arguments, "toolUseId": call.id},
                    )
                    outcome = router.call(call.name, call.arguments)
                    self._checkpoints.append(
                        owner,
                        "tool_result",
                        {"toolUseId": call.id, "content": outcome.content, "isError": outcome.is_error},
                    )
                    messages.append(self._llm.tool_result_message(call.id, outcome.content))

        logger.warning(
            "Skill reached turn limit",
            extra={"skill_id": skill.id, "max_turns": self._settings.skill_max_turns},
        )
        return {"response": final_response}

    def _complete(
        self,
        system_prompt: str,
        tools: list[ToolSpec],
        messages: list[Message],
        model_tier: ModelTier,
    ) -> Completion:
        return call_with_rate_limit_retry(
            lambda: self._llm.complete(
                system_prompt=system_prompt,
                tools=tools,
                messages=messages,
                model_tier=model_tier,
            ),
            max_retries=self._settings.rate_limit_max_retries,
            base_delay=self._settings.rate_limit_base_delay_seconds,
            max_delay=self._settings.rate_limit_max_delay_seconds,
            sleep=self._sleep,
        )
