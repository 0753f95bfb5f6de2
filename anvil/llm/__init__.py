"""LLM module -- model-service contract, Anthropic adapter, retries, usage.

Public API:
    ModelService        - Protocol implemented by every adapter
    AnthropicClient     - httpx-based Anthropic Messages adapter
    RetryingModelService, RetryConfig - exponential backoff wrapper
    TokenTracker, TokenStats - usage accounting
"""

from anvil.llm.anthropic import AnthropicClient
from anvil.llm.retry import RetryConfig, RetryingModelService
from anvil.llm.tokens import TokenStats, TokenTracker, format_token_count
from anvil.llm.types import (
    CompletionRequest,
    CompletionResponse,
    ErrorType,
    LLMError,
    Message,
    ModelService,
    Role,
    StreamCallback,
    StreamEvent,
    ToolDefinition,
    Usage,
)

__all__ = [
    "AnthropicClient",
    "CompletionRequest",
    "CompletionResponse",
    "ErrorType",
    "LLMError",
    "Message",
    "ModelService",
    "RetryConfig",
    "RetryingModelService",
    "Role",
    "StreamCallback",
    "StreamEvent",
    "TokenStats",
    "TokenTracker",
    "ToolDefinition",
    "Usage",
    "format_token_count",
]
