"""OpenAI LLM provider implementation."""

from __future__ import annotations

import json
import logging
from typing import Any

import openai
from openai import OpenAI

from clawback.llm.provider import (
    Completion,
    LLMError,
    LLMProvider,
    Message,
    RateLimitError,
    ToolCall,
    ToolSpec,
)
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import ModelTier

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """Chat-completions provider with function tools.

    The turn history is the chat-completions ``messages`` list minus the
    system message, which is prepended on every call.
    """

    def __init__(self, settings: EngineSettings, client: OpenAI | None = None) -> None:
        """Initialize the OpenAI provider.

        Args:
            settings: Engine settings.
            client: Pre-built client (tests).

        Raises:
            ValueError: If no client is given and the API key is missing.
        """
        if client is None and not settings.openai_api_key:
            raise ValueError("OPENAI_API_KEY is required")

        self.settings = settings
        self.client = client or OpenAI(
            api_key=settings.openai_api_key, base_url=settings.openai_base_url
        )

        logger.info("OpenAI provider initialized", extra={"model": settings.model_standard})

    def complete(
        self,
        *,
        system_prompt: str,
        tools: list[ToolSpec],
        messages: list[Message],
        model_tier: ModelTier = "standard",
    ) -> Completion:
        model = self.settings.model_for(model_tier)
        request: dict[str, Any] = {
            "model": model,
            "max_tokens": self.settings.max_output_tokens,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
        }
        if tools:
            request["tools"] = [_to_openai_tool(t) for t in tools]

        logger.debug(
            "Requesting completion", extra={"model": model, "turns": len(messages)}
        )
        try:
            response = self.client.chat.completions.create(**request)
        except openai.RateLimitError as e:
            raise RateLimitError(str(e)) from e
        except openai.OpenAIError as e:
            raise LLMError(str(e)) from e

        choice = response.choices[0]
        return _to_completion(choice.message, choice.finish_reason)

    def tool_result_message(self, tool_call_id: str, content: str) -> Message:
        return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


def _to_openai_tool(tool: ToolSpec) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _to_completion(message: Any, finish_reason: str | None) -> Completion:
    content = message.content or ""
    raw_calls = message.tool_calls or []

    assistant: Message = {"role": "assistant", "content": content or None}
    calls: list[ToolCall] = []
    if raw_calls:
        assistant["tool_calls"] = [
            {
                "id": c.id,
                "type": "function",
                "function": {"name": c.function.name, "arguments": c.function.arguments},
            }
            for c in raw_calls
        ]
        calls = [
            ToolCall(id=c.id, name=c.function.name, arguments=_parse_arguments(c.function.arguments))
            for c in raw_calls
        ]

    return Completion(
        message=assistant,
        text_blocks=[content] if content else [],
        tool_calls=calls,
        stop_reason=finish_reason,
    )


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        # Leave it to the operation parser to report the bad call back to the model.
        return {"__raw_arguments__": raw}
    return parsed if isinstance(parsed, dict) else {"__raw_arguments__": raw}
