"""The operations an orchestrator model may request.

The model names operations by string at the API boundary; inside the engine
each tool call is parsed exactly once into one variant of the closed
``Operation`` union and dispatched with a single ``match``. Anything that is
not a well-formed call to one of the four operations becomes
``UnknownOperation`` and is reported back to the model as a tool error.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from clawback.llm.provider import ToolCall, ToolSpec

SPAWN_SKILL = "spawn_skill"
COMPLETE_WORKFLOW = "complete_workflow"
FAIL_WORKFLOW = "fail_workflow"
REQUEST_HUMAN_INPUT = "request_human_input"


class _OperationArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    call_id: str


class SpawnSkill(_OperationArgs):
    skill_id: str = Field(alias="skillId", min_length=1)
    inputs: dict[str, Any]
    reason: str | None = None


class CompleteWorkflow(_OperationArgs):
    summary: str
    results: dict[str, Any] | None = None


class FailWorkflow(_OperationArgs):
    error: str
    partial_results: dict[str, Any] | None = Field(default=None, alias="partialResults")


class RequestHumanInput(_OperationArgs):
    prompt: str
    context: str | None = None
    options: list[str] | None = None
    timeout_minutes: float | None = Field(default=None, gt=0)


class UnknownOperation(_OperationArgs):
    name: str
    arguments: dict[str, Any]
    error: str


Operation = SpawnSkill | CompleteWorkflow | FailWorkflow | RequestHumanInput | UnknownOperation

_VARIANTS: dict[str, type[_OperationArgs]] = {
    SPAWN_SKILL: SpawnSkill,
    COMPLETE_WORKFLOW: CompleteWorkflow,
    FAIL_WORKFLOW: FailWorkflow,
    REQUEST_HUMAN_INPUT: RequestHumanInput,
}


def parse_operation(call: ToolCall) -> Operation:
    variant = _VARIANTS.get(call.name)
    if variant is None:
        return UnknownOperation(
            call_id=call.id,
            name=call.name,
            arguments=call.arguments,
            error=f"Unknown tool: {call.name}",
        )
    try:
        return variant.model_validate({**call.arguments, "call_id": call.id})  # type: ignore[return-value]
    except ValidationError as e:
        return UnknownOperation(
            call_id=call.id,
            name=call.name,
            arguments=call.arguments,
            error=f"Invalid arguments for {call.name}: {e.errors(include_url=False)}",
        )


ORCHESTRATOR_TOOLS: list[ToolSpec] = [
    ToolSpec(
        name=SPAWN_SKILL,
        description=(
            "Execute a skill with the given inputs. The skill will process the inputs and "
            "return results. Use this to delegate work to specialized skills."
        ),
        parameters={
            "type": "object",
            "properties": {
                "skillId": {"type": "string", "description": "The ID of the skill to execute"},
                "inputs": {
                    "type": "object",
                    "description": "Input data to pass to the skill. This will be included in the event payload.",
                    "additionalProperties": True,
                },
                "reason": {
                    "type": "string",
                    "description": "Brief explanation of why you're spawning this skill",
                },
            },
            "required": ["skillId", "inputs"],
        },
    ),
    ToolSpec(
        name=COMPLETE_WORKFLOW,
        description=(
            "Mark the workflow as completed with a summary of what was accomplished. "
            "Call this when all required skills have been executed successfully."
        ),
        parameters={
            "type": "object",
            "properties": {
                "summary": {
                    "type": "string",
                    "description": "A summary of what was accomplished in this workflow run",
                },
                "results": {
                    "type": "object",
                    "description": "Key results from the workflow execution",
                    "additionalProperties": True,
                },
            },
            "required": ["summary"],
        },
    ),
    ToolSpec(
        name=FAIL_WORKFLOW,
        description=(
            "Mark the workflow as failed with an error message. Call this if a critical "
            "skill fails or the workflow cannot be completed."
        ),
        parameters={
            "type": "object",
            "properties": {
                "error": {"type": "string", "description": "Description of why the workflow failed"},
                "partialResults": {
                    "type": "object",
                    "description": "Any partial results that were obtained before failure",
                    "additionalProperties": True,
                },
            },
            "required": ["error"],
        },
    ),
    ToolSpec(
        name=REQUEST_HUMAN_INPUT,
        description=(
            "Pause the workflow and request input from a human operator. Use this when you "
            "need confirmation, clarification, or a decision before proceeding. The workflow "
            "will be paused until the human responds."
        ),
        parameters={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "What you need from the human - be specific and clear",
                },
                "context": {
                    "type": "string",
                    "description": "Additional context to help the human understand the situation",
                },
                "options": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Suggested responses the human can choose from",
                },
                "timeout_minutes": {
                    "type": "number",
                    "description": "How long to wait for a response before the request expires",
                },
            },
            "required": ["prompt"],
        },
    ),
]
