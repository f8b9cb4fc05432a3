"""Unit tests for tool permissions and routing."""

from __future__ import annotations

import json

import pytest

from clawback.orchestrator.models import ToolPermissions
from clawback.orchestrator.tools import ToolRouter, is_tool_allowed, qualify


def test_deny_wins_over_allow() -> None:
    permissions = ToolPermissions(allow=["*"], deny=["mcp__github__*"])

    assert is_tool_allowed("mcp__github__create_issue", permissions) is False
    assert is_tool_allowed("mcp__slack__post_message", permissions) is True


def test_empty_allow_list_allows_everything_not_denied() -> None:
    permissions = ToolPermissions(deny=["mcp__*__delete_*"])

    assert is_tool_allowed("mcp__github__get_issue", permissions) is True
    assert is_tool_allowed("mcp__github__delete_repo", permissions) is False


def test_non_empty_allow_list_restricts() -> None:
    permissions = ToolPermissions(allow=["mcp__github__get_*"])

    assert is_tool_allowed("mcp__github__get_issue", permissions) is True
    assert is_tool_allowed("mcp__github__create_issue", permissions) is False


def test_qualified_name_format() -> None:
    assert qualify("github", "create_issue") == "mcp__github__create_issue"


def test_router_filters_routes_and_closes(fake_tool_server) -> None:
    github = fake_tool_server({"get_issue": {"number": 7}, "delete_repo": "gone", "flaky": RuntimeError("boom")})
    servers = {"github": github}

    router = ToolRouter(
        server_names=["github", "missing"],
        permissions=ToolPermissions(deny=["mcp__github__delete_*"]),
        resolver=servers.get,
    )
    with router:
        names = sorted(t.name for t in router.tools)
        assert names == ["mcp__github__flaky", "mcp__github__get_issue"]

        ok = router.call("mcp__github__get_issue", {"number": 7})
        assert ok.is_error is False
        assert json.loads(ok.content) == {"number": 7}

        denied = router.call("mcp__github__delete_repo", {})
        assert denied.is_error is True
        assert "not available" in json.loads(denied.content)["error"]

        failed = router.call("mcp__github__flaky", {})
        assert failed.is_error is True
        assert json.loads(failed.content) == {"error": "boom"}

    assert github.connected is True
    assert github.closed is True
    assert github.calls == [("get_issue", {"number": 7}), ("flaky", {})]


class _BrokenServer:
    def __init__(self, *, fail_on: str) -> None:
        self.fail_on = fail_on
        self.closed = False

    def connect(self) -> None:
        if self.fail_on == "connect":
            raise ConnectionError("refused")

    def list_tools(self) -> list:
        if self.fail_on == "list_tools":
            raise RuntimeError("handshake failed")
        return []

    def call_tool(self, name: str, arguments: dict) -> None:
        raise AssertionError("never called")

    def close(self) -> None:
        self.closed = True


def test_failed_connect_closes_servers_already_connected(fake_tool_server) -> None:
    good = fake_tool_server({"get_issue": {}})
    bad = _BrokenServer(fail_on="connect")
    servers = {"good": good, "bad": bad}

    router = ToolRouter(
        server_names=["good", "bad"], permissions=ToolPermissions(), resolver=servers.get
    )
    with pytest.raises(ConnectionError):
        with router:
            pass

    assert good.connected is True
    assert good.closed is True
    assert router.tools == []


def test_failed_tool_listing_closes_the_connected_server() -> None:
    server = _BrokenServer(fail_on="list_tools")

    router = ToolRouter(
        server_names=["flaky"], permissions=ToolPermissions(), resolver={"flaky": server}.get
    )
    with pytest.raises(RuntimeError, match="handshake failed"):
        with router:
            pass

    assert server.closed is True
