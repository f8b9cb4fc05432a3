"""LLM package initialization."""

from clawback.llm.factory import LLMFactory
from clawback.llm.provider import (
    Completion,
    LLMError,
    LLMProvider,
    Message,
    RateLimitError,
    ToolCall,
    ToolSpec,
)
from clawback.llm.retry import call_with_rate_limit_retry

__all__ = [
    "Completion",
    "LLMError",
    "LLMFactory",
    "LLMProvider",
    "Message",
    "RateLimitError",
    "ToolCall",
    "ToolSpec",
    "call_with_rate_limit_retry",
]
