"""Tool registry -- the default ToolExecutor.

Registers async tool handlers with their JSON schemas and dispatches
calls to them. Tools flagged as requiring approval are not run unless
the orchestrator passes ``approved=True``; instead the call comes back
with an ApprovalRequest attached.

Handlers may return plain text, an MCP-format dict
({"content": [{"type": "text", "text": "..."}], "is_error": bool}),
or a ToolResult. Handler errors and unknown tools become failed
ToolResults; they never propagate out of execute().
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from anvil.llm.types import ToolDefinition
from anvil.schemas import ApprovalRequest, ToolCall, ToolResult

logger = logging.getLogger(__name__)

ApprovalPolicy = bool | Callable[[dict[str, Any]], bool]


@dataclass
class RegisteredTool:
    name: str
    handler: Callable[..., Any]
    schema: dict[str, Any]
    description: str = ""
    requires_approval: ApprovalPolicy = False
    destructive: bool = False
    approval_reason: str = ""
    preview: Callable[[dict[str, Any]], str | None] | None = None

    def needs_approval(self, arguments: dict[str, Any]) -> bool:
        if callable(self.requires_approval):
            return bool(self.requires_approval(arguments))
        return self.requires_approval

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description or self.schema.get("description", ""),
            input_schema=self.schema,
        )


def _to_result(call: ToolCall, raw: Any) -> ToolResult:
    """Normalize a handler's return value."""
    if isinstance(raw, ToolResult):
        return raw.model_copy(update={"tool_call_id": call.id})
    if isinstance(raw, dict) and "content" in raw:
        text = "\n".join(
            block.get("text", "") for block in raw["content"] if block.get("type") == "text"
        )
        is_error = bool(raw.get("is_error"))
        return ToolResult(
            tool_call_id=call.id,
            success=not is_error,
            output="" if is_error else text,
            error=text if is_error else None,
            data=raw.get("data") or {},
        )
    return ToolResult(tool_call_id=call.id, success=True, output="" if raw is None else str(raw))


class ToolRegistry:
    """Registers tool handlers and dispatches tool calls."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        schema: dict[str, Any],
        *,
        description: str = "",
        requires_approval: ApprovalPolicy = False,
        destructive: bool = False,
        approval_reason: str = "",
        preview: Callable[[dict[str, Any]], str | None] | None = None,
    ) -> None:
        """Register a tool handler with its JSON schema."""
        if name in self._tools:
            logger.warning("Tool %s registered twice; replacing", name)
        self._tools[name] = RegisteredTool(
            name=name,
            handler=handler,
            schema=schema,
            description=description,
            requires_approval=requires_approval,
            destructive=destructive,
            approval_reason=approval_reason,
            preview=preview,
        )

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def tool_definitions(self) -> list[ToolDefinition]:
        return [t.definition() for t in self._tools.values()]

    async def execute(
        self,
        call: ToolCall,
        *,
        approved: bool = False,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run ``call``, or return it gated behind an ApprovalRequest."""
        tool = self._tools.get(call.name)
        if tool is None:
            return ToolResult(tool_call_id=call.id, success=False, error=f"Unknown tool: {call.name}")

        if not approved and tool.needs_approval(call.arguments):
            description = tool.definition().description
            return ToolResult(
                tool_call_id=call.id,
                approval=ApprovalRequest(
                    action=f"{tool.name}: {description}" if description else tool.name,
                    reason=tool.approval_reason or f"{tool.name} modifies state outside the conversation",
                    destructive=tool.destructive,
                    preview=self._preview(tool, call.arguments),
                ),
            )

        try:
            raw = await asyncio.wait_for(tool.handler(**call.arguments), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Tool %s timed out after %ss", call.name, timeout)
            return ToolResult(
                tool_call_id=call.id, success=False, error=f"Tool {call.name} timed out after {timeout}s"
            )
        except Exception as e:
            logger.exception("Tool dispatch error for %s", call.name)
            return ToolResult(tool_call_id=call.id, success=False, error=f"Tool error: {e}")
        return _to_result(call, raw)

    @staticmethod
    def _preview(tool: RegisteredTool, arguments: dict[str, Any]) -> str | None:
        if tool.preview is not None:
            try:
                return tool.preview(arguments)
            except Exception:
                logger.warning("Preview for %s failed", tool.name, exc_info=True)
                return None
        if not arguments:
            return None
        return json.dumps(arguments, indent=2, default=str)
