"""Abstract base class for language-model providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from clawback.errors import ClawbackError
from clawback.orchestrator.models import ModelTier

# One turn of the conversation, exactly as the provider API consumes it.
Message = dict[str, Any]


class LLMError(ClawbackError):
    """A non-retryable failure from the completion service."""


class RateLimitError(LLMError):
    """The completion service asked us to slow down. Retryable."""


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True, slots=True)
class Completion:
    """One model turn.

    ``message`` is the assistant turn to append to the history verbatim, so a
    serialized history can be replayed against the API unchanged.
    """

    message: Message
    text_blocks: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.text_blocks)


class LLMProvider(ABC):
    """Abstract base class for LLM providers.

    This interface allows pluggable completion backends.
    """

    @abstractmethod
    def complete(
        self,
        *,
        system_prompt: str,
        tools: list[ToolSpec],
        messages: list[Message],
        model_tier: ModelTier = "standard",
    ) -> Completion:
        """Request the next assistant turn.

        Args:
            system_prompt: Instructions for the whole conversation.
            tools: Tools the model may call this turn.
            messages: The turn history so far (not including the system prompt).
            model_tier: Which configured model to use.

        Returns:
            The assistant turn.

        Raises:
            RateLimitError: The service is rate limiting us.
            LLMError: Any other provider failure.
        """

    @abstractmethod
    def tool_result_message(self, tool_call_id: str, content: str) -> Message:
        """Build the turn that answers one tool call."""
