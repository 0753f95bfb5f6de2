"""Pydantic DTOs shared by the orchestrator and tool executors.

These models define the contract between the agent loop and anything
that runs tools. Also hosts the <tool_use> marker codec used to embed
tool-call directives in plain assistant text.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

TOOL_USE_OPEN = "<tool_use>"
TOOL_USE_CLOSE = "</tool_use>"

_TOOL_USE_RE = re.compile(
    re.escape(TOOL_USE_OPEN) + r"(.*?)" + re.escape(TOOL_USE_CLOSE),
    re.DOTALL,
)


def _call_id() -> str:
    return f"call_{uuid4().hex[:12]}"


class ToolCall(BaseModel):
    """A structured request to invoke a named tool."""

    id: str = Field(default_factory=_call_id)
    name: str
    arguments: dict[str, Any] = {}


class ApprovalRequest(BaseModel):
    """Attached to a ToolResult when the call must not run without sign-off."""

    action: str
    reason: str = ""
    destructive: bool = False
    preview: str | None = None


class ToolResult(BaseModel):
    """Outcome of one tool call.

    A populated ``approval`` means the tool has NOT run yet and needs a
    human decision first.
    """

    tool_call_id: str
    success: bool = False
    output: str = ""
    error: str | None = None
    data: dict[str, Any] = {}
    approval: ApprovalRequest | None = None

    @property
    def needs_approval(self) -> bool:
        return self.approval is not None


def render_tool_call(call: ToolCall) -> str:
    """Render a tool call as a <tool_use> block for assistant text."""
    body = json.dumps({"name": call.name, "arguments": call.arguments}, indent=2)
    return f"{TOOL_USE_OPEN}\n{body}\n{TOOL_USE_CLOSE}"


def extract_tool_calls(content: str) -> list[ToolCall]:
    """Parse every well-formed <tool_use> block out of model text.

    Blocks with invalid JSON or without a tool name are skipped.
    """
    calls: list[ToolCall] = []
    for match in _TOOL_USE_RE.finditer(content):
        raw = match.group(1).strip()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed tool_use block: %.80s", raw)
            continue
        if not isinstance(payload, dict) or not payload.get("name"):
            continue
        arguments = payload.get("arguments") or {}
        if not isinstance(arguments, dict):
            continue
        calls.append(ToolCall(name=payload["name"], arguments=arguments))
    return calls
