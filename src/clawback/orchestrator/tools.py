"""Routing model tool calls to tool-protocol servers.

Tools are exposed to the model under qualified names
``mcp__<server>__<tool>`` so a call can be routed back to the server that
offers it, and so permission globs such as ``mcp__github__*`` can target a
whole server.
"""

from __future__ import annotations

import fnmatch
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from clawback.llm.provider import ToolSpec
from clawback.orchestrator.models import ToolPermissions

logger = logging.getLogger(__name__)

QUALIFIED_PREFIX = "mcp"
SEPARATOR = "__"


class ToolServer(Protocol):
    """What the engine needs from a tool-protocol server connection."""

    def connect(self) -> None: ...

    def list_tools(self) -> list[ToolSpec]: ...

    def call_tool(self, name: str, arguments: dict[str, Any]) -> Any: ...

    def close(self) -> None: ...


# Resolves a server name referenced by a skill; None if unknown or disabled.
ToolServerResolver = Callable[[str], "ToolServer | None"]


def qualify(server: str, tool: str) -> str:
    return f"{QUALIFIED_PREFIX}{SEPARATOR}{server}{SEPARATOR}{tool}"


def is_tool_allowed(tool_name: str, permissions: ToolPermissions) -> bool:
    """Deny always wins; an empty allow list allows everything not denied."""

    if any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in permissions.deny):
        return False
    if not permissions.allow:
        return True
    return any(fnmatch.fnmatchcase(tool_name, pattern) for pattern in permissions.allow)


@dataclass(frozen=True, slots=True)
class ToolOutcome:
    content: str
    is_error: bool = False


@dataclass
class ToolRouter:
    """Connects the servers a skill references and routes its tool calls.

    Use as a context manager so every connected server is closed.
    """

    server_names: list[str]
    permissions: ToolPermissions
    resolver: ToolServerResolver
    _servers: dict[str, ToolServer] = field(default_factory=dict, init=False)
    _tools: dict[str, ToolSpec] = field(default_factory=dict, init=False)
    _routes: dict[str, tuple[str, str]] = field(default_factory=dict, init=False)

    def __enter__(self) -> ToolRouter:
        try:
            self.open()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def open(self) -> None:
        for name in self.server_names:
            server = self.resolver(name)
            if server is None:
                logger.warning("Tool server not found or disabled", extra={"server": name})
                continue
            server.connect()
            self._servers[name] = server
            for tool in server.list_tools():
                qualified = qualify(name, tool.name)
                if not is_tool_allowed(qualified, self.permissions):
                    logger.debug("Tool denied by permissions", extra={"tool": qualified})
                    continue
                self._tools[qualified] = ToolSpec(
                    name=qualified, description=tool.description, parameters=tool.parameters
                )
                self._routes[qualified] = (name, tool.name)

    def close(self) -> None:
        servers, self._servers = self._servers, {}
        self._tools = {}
        self._routes = {}
        for name, server in servers.items():
            try:
                server.close()
            except Exception:
                logger.exception("Failed to close tool server", extra={"server": name})

    @property
    def tools(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def call(self, qualified_name: str, arguments: dict[str, Any]) -> ToolOutcome:
        """Execute one tool call. Failures become error outcomes for the model."""

        route = self._routes.get(qualified_name)
        if route is None:
            return ToolOutcome(
                content=json.dumps({"error": f"Tool not available: {qualified_name}"}),
                is_error=True,
            )
        server_name, tool_name = route
        try:
            result = self._servers[server_name].call_tool(tool_name, arguments)
        except Exception as e:
            logger.warning(
                "Tool call failed", extra={"tool": qualified_name, "error": str(e)}
            )
            return ToolOutcome(content=json.dumps({"error": str(e)}), is_error=True)
        if isinstance(result, str):
            return ToolOutcome(content=result)
        return ToolOutcome(content=json.dumps(result, ensure_ascii=False, default=str))
