"""Model-service contract: messages, requests, responses and errors.

Every provider adapter (and the retry wrapper) implements ModelService;
the orchestrator only ever sees these types.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from anvil.schemas import ToolCall


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class Message:
    """A single message in a conversation."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": str(self.role), "content": self.content}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(role=Role(data["role"]), content=data.get("content", ""))


@dataclass
class ToolDefinition:
    """A tool as advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_api(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class CompletionRequest:
    messages: list[Message]
    tools: list[ToolDefinition] = field(default_factory=list)
    system_prompt: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    model: str | None = None


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class CompletionResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # end_turn, max_tokens, tool_use, stop_sequence
    usage: Usage = field(default_factory=Usage)
    model: str = ""


@dataclass
class StreamEvent:
    """A single event delivered through a stream callback."""

    type: str  # text_delta, tool_call, done
    text: str = ""
    tool_call: ToolCall | None = None
    stop_reason: str = ""
    usage: Usage | None = None


StreamCallback = Callable[[StreamEvent], None]


class ErrorType(StrEnum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    INVALID_REQUEST = "invalid_request"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


_RETRYABLE = frozenset({
    ErrorType.RATE_LIMIT,
    ErrorType.TIMEOUT,
    ErrorType.NETWORK,
    ErrorType.SERVER,
})


class LLMError(Exception):
    """Categorized failure from a model service."""

    def __init__(
        self,
        error_type: ErrorType,
        message: str,
        status_code: int | None = None,
        details: str = "",
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.status_code = status_code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.error_type in _RETRYABLE

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.error_type} error (HTTP {self.status_code}): {self.message}"
        return f"{self.error_type} error: {self.message}"


class ModelService(Protocol):
    """Anything that can turn a CompletionRequest into a reply."""

    async def complete(self, request: CompletionRequest) -> CompletionResponse: ...

    async def stream(self, request: CompletionRequest, callback: StreamCallback) -> None:
        """Deliver the reply incrementally through ``callback``.

        Implementations may invoke the callback from any thread. Raises
        LLMError on failure.
        """
        ...
