"""Anthropic Messages API adapter over httpx.

Implements ModelService.complete and ModelService.stream with direct
httpx calls (no SDK). HTTP and transport failures are classified into
LLMError categories; retrying is left to RetryingModelService.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from anvil.config import Settings
from anvil.llm.types import (
    CompletionRequest,
    CompletionResponse,
    ErrorType,
    LLMError,
    Message,
    Role,
    StreamCallback,
    StreamEvent,
    Usage,
)
from anvil.schemas import ToolCall, render_tool_call

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

# In-stream / body error types -> taxonomy
_API_ERROR_TYPES: dict[str, ErrorType] = {
    "authentication_error": ErrorType.AUTH,
    "permission_error": ErrorType.AUTH,
    "rate_limit_error": ErrorType.RATE_LIMIT,
    "invalid_request_error": ErrorType.INVALID_REQUEST,
    "not_found_error": ErrorType.INVALID_REQUEST,
    "request_too_large": ErrorType.INVALID_REQUEST,
    "overloaded_error": ErrorType.SERVER,
    "api_error": ErrorType.SERVER,
}


def classify_status(status_code: int) -> ErrorType:
    """Map an HTTP status to an error category."""
    if status_code in (401, 403):
        return ErrorType.AUTH
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code in (400, 404, 413, 422):
        return ErrorType.INVALID_REQUEST
    if status_code == 408:
        return ErrorType.TIMEOUT
    if status_code >= 500:
        return ErrorType.SERVER
    return ErrorType.UNKNOWN


def _error_from_response(status_code: int, body: bytes) -> LLMError:
    try:
        error_data = json.loads(body)
        error = error_data.get("error", {})
        error_type = error.get("type", "unknown")
        error_msg = error.get("message", "unknown error")
    except (ValueError, AttributeError):
        error_type = "http_error"
        error_msg = body.decode(errors="replace")[:500]
    return LLMError(
        classify_status(status_code),
        f"{error_type} - {error_msg}",
        status_code=status_code,
        details=body.decode(errors="replace")[:2000],
    )


def _error_from_transport(exc: httpx.HTTPError) -> LLMError:
    if isinstance(exc, httpx.TimeoutException):
        return LLMError(ErrorType.TIMEOUT, f"API request timed out: {exc}")
    return LLMError(ErrorType.NETWORK, f"HTTP error: {exc}")


def _format_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Split out system messages and merge consecutive same-role turns.

    Returns (system_text, api_messages).
    """
    system_parts: list[str] = []
    formatted: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            system_parts.append(msg.content)
            continue
        role = str(msg.role)
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"] += "\n\n" + msg.content
        else:
            formatted.append({"role": role, "content": msg.content})
    return "\n\n".join(system_parts), formatted


class AnthropicClient:
    """ModelService backed by the Anthropic Messages API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http
        self._owns_http = http is None
        self._headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }
        if settings.anthropic_api_key:
            self._headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning("ANTHROPIC_API_KEY is not set -- API calls will fail")

    async def start(self) -> None:
        """Initialize the httpx client with timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=timeout,
            limits=limits,
        )
        logger.info("httpx client initialized (model: %s)", settings.model)

    async def close(self) -> None:
        """Clean up httpx client."""
        if self._http and self._owns_http:
            await self._http.aclose()
        self._http = None

    def _build_payload(self, request: CompletionRequest, stream: bool = False) -> dict[str, Any]:
        """Build the Messages API payload shared by complete() and stream()."""
        extra_system, messages = _format_messages(request.messages)
        system = "\n\n".join(p for p in (request.system_prompt, extra_system) if p)

        payload: dict[str, Any] = {
            "model": request.model or self._settings.model,
            "max_tokens": request.max_tokens or self._settings.max_tokens,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        temperature = request.temperature
        if temperature is None:
            temperature = self._settings.temperature
        payload["temperature"] = temperature
        if request.tools:
            payload["tools"] = [t.to_api() for t in request.tools]
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(request)
        try:
            response = await self._http.post("/v1/messages", json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise _error_from_transport(e) from e

        if response.status_code != 200:
            raise _error_from_response(response.status_code, response.content)

        data = response.json()
        return self._parse_response(data)

    def _parse_response(self, data: dict[str, Any]) -> CompletionResponse:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                text_parts.append(block["text"])
            elif block.get("type") == "tool_use":
                call = ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {})
                tool_calls.append(call)
                text_parts.append(render_tool_call(call))

        usage = data.get("usage") or {}
        return CompletionResponse(
            content="\n".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=data.get("stop_reason") or "end_turn",
            usage=Usage(
                prompt_tokens=usage.get("input_tokens", 0),
                completion_tokens=usage.get("output_tokens", 0),
            ),
            model=data.get("model", ""),
        )

    async def stream(self, request: CompletionRequest, callback: StreamCallback) -> None:
        """Stream a reply, invoking ``callback`` per event.

        Text deltas are forwarded as they arrive; tool_use blocks are
        accumulated and delivered whole once their block closes.
        """
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self._build_payload(request, stream=True)
        blocks: dict[int, dict[str, Any]] = {}
        usage = Usage()
        stop_reason = ""

        try:
            async with self._http.stream(
                "POST", "/v1/messages", json=payload, headers=self._headers
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise _error_from_response(response.status_code, body)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed SSE line: %.80s", line)
                        continue

                    event_type = data.get("type")
                    if event_type == "ping":
                        continue

                    if event_type == "error":
                        error = data.get("error", {})
                        raise LLMError(
                            _API_ERROR_TYPES.get(error.get("type", ""), ErrorType.UNKNOWN),
                            f"{error.get('type', 'unknown')}: {error.get('message', '')}",
                        )

                    if event_type == "message_start":
                        start_usage = data.get("message", {}).get("usage") or {}
                        usage.prompt_tokens = start_usage.get("input_tokens", 0)

                    elif event_type == "content_block_start":
                        block = data.get("content_block", {})
                        if block.get("type") == "tool_use":
                            blocks[data.get("index", 0)] = {
                                "id": block.get("id", ""),
                                "name": block.get("name", ""),
                                "input_parts": [],
                            }

                    elif event_type == "content_block_delta":
                        delta = data.get("delta", {})
                        if delta.get("type") == "text_delta":
                            callback(StreamEvent(type="text_delta", text=delta.get("text", "")))
                        elif delta.get("type") == "input_json_delta":
                            acc = blocks.get(data.get("index", 0))
                            if acc:
                                acc["input_parts"].append(delta.get("partial_json", ""))

                    elif event_type == "content_block_stop":
                        acc = blocks.pop(data.get("index", 0), None)
                        if acc:
                            input_json = "".join(acc["input_parts"])
                            try:
                                arguments = json.loads(input_json) if input_json else {}
                            except json.JSONDecodeError:
                                arguments = {}
                            call = ToolCall(id=acc["id"], name=acc["name"], arguments=arguments)
                            callback(StreamEvent(type="tool_call", tool_call=call))

                    elif event_type == "message_delta":
                        stop_reason = data.get("delta", {}).get("stop_reason") or stop_reason
                        delta_usage = data.get("usage") or {}
                        usage.completion_tokens = delta_usage.get(
                            "output_tokens", usage.completion_tokens
                        )
        except httpx.HTTPError as e:
            raise _error_from_transport(e) from e

        callback(StreamEvent(type="done", stop_reason=stop_reason or "end_turn", usage=usage))
