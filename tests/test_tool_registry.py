"""Tests for ToolRegistry dispatch, approval gating and result normalization."""

from __future__ import annotations

import asyncio
import json

import pytest

from anvil.schemas import ToolCall, ToolResult
from anvil.tools.registry import ToolRegistry


def _make_registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def echo(text: str) -> str:
        return text

    async def slow() -> str:
        await asyncio.sleep(5)
        return "never"

    async def broken() -> str:
        raise ValueError("boom")

    async def mcp_error() -> dict:
        return {"content": [{"type": "text", "text": "not allowed"}], "is_error": True}

    async def mcp_ok() -> dict:
        return {"content": [{"type": "text", "text": "line 1"}, {"type": "text", "text": "line 2"}], "data": {"n": 2}}

    async def structured() -> ToolResult:
        return ToolResult(tool_call_id="ignored", success=True, output="typed")

    async def delete(path: str, force: bool = False) -> str:
        return f"deleted {path}"

    registry.register("echo", echo, {"type": "object", "description": "Echo text"})
    registry.register("slow", slow, {"type": "object"})
    registry.register("broken", broken, {"type": "object"})
    registry.register("mcp_error", mcp_error, {"type": "object"})
    registry.register("mcp_ok", mcp_ok, {"type": "object"})
    registry.register("structured", structured, {"type": "object"})
    registry.register(
        "delete",
        delete,
        {"type": "object"},
        description="Delete a file",
        requires_approval=lambda args: not args.get("force"),
        destructive=True,
    )
    return registry


class TestDispatch:
    @pytest.mark.asyncio
    async def test_runs_handler(self):
        result = await _make_registry().execute(ToolCall(id="c1", name="echo", arguments={"text": "hi"}))
        assert result.success
        assert result.output == "hi"
        assert result.tool_call_id == "c1"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await _make_registry().execute(ToolCall(name="nope"))
        assert not result.success
        assert result.error == "Unknown tool: nope"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_result(self):
        result = await _make_registry().execute(ToolCall(name="broken"))
        assert not result.success
        assert result.error == "Tool error: boom"

    @pytest.mark.asyncio
    async def test_bad_arguments_become_failed_result(self):
        result = await _make_registry().execute(ToolCall(name="echo", arguments={"wrong": 1}))
        assert not result.success
        assert result.error.startswith("Tool error:")

    @pytest.mark.asyncio
    async def test_timeout(self):
        result = await _make_registry().execute(ToolCall(name="slow"), timeout=0.01)
        assert not result.success
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_mcp_responses_normalized(self):
        registry = _make_registry()
        err = await registry.execute(ToolCall(name="mcp_error"))
        ok = await registry.execute(ToolCall(name="mcp_ok"))
        assert not err.success
        assert err.error == "not allowed"
        assert ok.success
        assert ok.output == "line 1\nline 2"
        assert ok.data == {"n": 2}

    @pytest.mark.asyncio
    async def test_tool_result_gets_call_id(self):
        result = await _make_registry().execute(ToolCall(id="c9", name="structured"))
        assert result.tool_call_id == "c9"
        assert result.output == "typed"


class TestApprovalGate:
    @pytest.mark.asyncio
    async def test_gated_call_not_run(self):
        result = await _make_registry().execute(ToolCall(name="delete", arguments={"path": "a.txt"}))
        assert result.needs_approval
        assert not result.success
        assert result.approval.action == "delete: Delete a file"
        assert result.approval.destructive
        assert json.loads(result.approval.preview) == {"path": "a.txt"}

    @pytest.mark.asyncio
    async def test_predicate_can_skip_gate(self):
        result = await _make_registry().execute(
            ToolCall(name="delete", arguments={"path": "a.txt", "force": True})
        )
        assert result.success
        assert result.output == "deleted a.txt"

    @pytest.mark.asyncio
    async def test_approved_call_runs(self):
        result = await _make_registry().execute(
            ToolCall(name="delete", arguments={"path": "a.txt"}), approved=True
        )
        assert result.success
        assert not result.needs_approval


class TestDefinitions:
    def test_definitions_and_listing(self):
        registry = _make_registry()
        assert "echo" in registry.list_tools()
        defs = {d.name: d for d in registry.tool_definitions()}
        assert defs["echo"].description == "Echo text"
        assert defs["delete"].description == "Delete a file"
        assert defs["echo"].to_api()["input_schema"] == {"type": "object", "description": "Echo text"}
        assert registry.get("missing") is None
