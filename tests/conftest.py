"""Test configuration and fixtures."""

from __future__ import annotations

import copy
import json
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from clawback.llm.provider import Completion, LLMProvider, Message, ToolCall, ToolSpec
from clawback.orchestrator.config import EngineSettings
from clawback.orchestrator.models import ModelTier, Notification
from clawback.orchestrator.notifications import NotificationService
from clawback.orchestrator.runtime import Runtime
from clawback.orchestrator.storage import Stores

CompletionFactory = Callable[..., Completion]


def _completion(text: str | None = None, *calls: tuple[str, str, dict[str, Any]]) -> Completion:
    """Build an assistant turn in chat-completions format.

    ``calls`` are ``(tool_call_id, tool_name, arguments)`` triples.
    """

    message: Message = {"role": "assistant", "content": text}
    tool_calls = [ToolCall(id=call_id, name=name, arguments=args) for call_id, name, args in calls]
    if tool_calls:
        message["tool_calls"] = [
            {
                "id": c.id,
                "type": "function",
                "function": {"name": c.name, "arguments": json.dumps(c.arguments)},
            }
            for c in tool_calls
        ]
    return Completion(
        message=message,
        text_blocks=[text] if text else [],
        tool_calls=tool_calls,
        stop_reason="tool_calls" if tool_calls else "stop",
    )


class ScriptedLLM(LLMProvider):
    """Replays a fixed list of completions and records every request."""

    def __init__(self, script: list[Completion | Exception] | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[dict[str, Any]] = []

    def complete(
        self,
        *,
        system_prompt: str,
        tools: list[ToolSpec],
        messages: list[Message],
        model_tier: ModelTier = "standard",
    ) -> Completion:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "tools": [t.name for t in tools],
                "messages": copy.deepcopy(messages),
                "model_tier": model_tier,
            }
        )
        if not self.script:
            return _completion("done")
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    def tool_result_message(self, tool_call_id: str, content: str) -> Message:
        return {"role": "tool", "tool_call_id": tool_call_id, "content": content}


class FakeToolServer:
    def __init__(self, tools: dict[str, Any]) -> None:
        # tool name -> return value, or an Exception to raise
        self._tools = tools
        self.connected = False
        self.closed = False
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def connect(self) -> None:
        self.connected = True

    def list_tools(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=name, description=f"{name} tool", parameters={"type": "object"})
            for name in self._tools
        ]

    def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        self.calls.append((name, arguments))
        result = self._tools[name]
        if isinstance(result, Exception):
            raise result
        return result

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def completion() -> CompletionFactory:
    return _completion


@pytest.fixture
def scripted_llm() -> Callable[..., ScriptedLLM]:
    return ScriptedLLM


@pytest.fixture
def fake_tool_server() -> Callable[[dict[str, Any]], FakeToolServer]:
    return FakeToolServer


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    path = tmp_path / "clawback_state"
    path.mkdir()
    return path


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, state_dir: Path) -> EngineSettings:
    """Engine settings isolated from the developer's environment and .env."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("CLAWBACK_STATE_PATH", str(state_dir))
    monkeypatch.delenv("CLAWBACK_SKILLS_DIR", raising=False)
    monkeypatch.setenv("CLAWBACK_RATE_LIMIT_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("CLAWBACK_SCHEDULER_ENABLED", "false")
    return EngineSettings(_env_file=None)


@pytest.fixture
def stores(state_dir: Path) -> Stores:
    return Stores.open(state_dir)


@pytest.fixture
def notification_log() -> list[Notification]:
    return []


@pytest.fixture
def make_runtime(
    settings: EngineSettings, notification_log: list[Notification]
) -> Iterator[Callable[..., Runtime]]:
    """Build a Runtime over the temporary state directory with a scripted provider."""

    created: list[Runtime] = []

    def _make(llm: LLMProvider | None = None, **kwargs: Any) -> Runtime:
        runtime = Runtime(settings, llm=llm or ScriptedLLM(), sleep=lambda _s: None, **kwargs)
        runtime.notifications.subscribe("test", notification_log.append)
        created.append(runtime)
        return runtime

    yield _make

    for runtime in created:
        runtime.close()


@pytest.fixture
def notifications(stores: Stores, notification_log: list[Notification]) -> NotificationService:
    service = NotificationService(stores.notifications)
    service.subscribe("test", notification_log.append)
    return service
