"""Tests for the orchestrator's streaming path.

Covers callback marshalling from foreign threads, tool calls delivered
as stream events, and error propagation from a failing stream.
"""

from __future__ import annotations

import asyncio

import pytest

from anvil.agent.orchestrator import AgentOrchestrator, ModelServiceError
from anvil.llm.types import ErrorType, LLMError, StreamEvent, Usage
from anvil.schemas import ToolCall
from anvil.tools.registry import ToolRegistry


class ThreadedStreamModel:
    """Streams each reply from a worker thread, like a blocking SDK would."""

    def __init__(self, *replies: list[StreamEvent]) -> None:
        self.replies = list(replies)
        self.calls = 0

    async def complete(self, request):
        raise AssertionError("complete() must not be used when streaming")

    async def stream(self, request, callback) -> None:
        self.calls += 1
        events = self.replies.pop(0)

        def produce() -> None:
            for event in events:
                callback(event)

        await asyncio.to_thread(produce)


class FailingStreamModel:
    async def complete(self, request):
        raise AssertionError("unused")

    async def stream(self, request, callback) -> None:
        callback(StreamEvent(type="text_delta", text="partial "))
        raise LLMError(ErrorType.NETWORK, "connection reset")


def _text_reply(*chunks: str, usage: Usage | None = None) -> list[StreamEvent]:
    events = [StreamEvent(type="text_delta", text=c) for c in chunks]
    events.append(StreamEvent(type="done", stop_reason="end_turn", usage=usage or Usage(7, 3)))
    return events


def _make_registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def echo(text: str = "") -> str:
        return text

    registry.register("echo", echo, {"type": "object", "description": "Echo"})
    return registry


class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_assembled_from_threaded_callbacks(self, settings):
        model = ThreadedStreamModel(_text_reply("The ans", "wer is ", "4."))
        seen: list[StreamEvent] = []
        orch = AgentOrchestrator(model, _make_registry(), settings, on_stream=seen.append)

        response = await orch.process_request("What is 2+2?")

        assert response.message == "The answer is 4."
        assert response.done
        assert [e.type for e in seen] == ["text_delta", "text_delta", "text_delta", "done"]
        assert orch.token_tracker.get_stats().total_tokens == 10

    @pytest.mark.asyncio
    async def test_async_stream_handler_awaited(self, settings):
        model = ThreadedStreamModel(_text_reply("hello"))
        chunks: list[str] = []

        async def handler(event: StreamEvent) -> None:
            await asyncio.sleep(0)
            if event.type == "text_delta":
                chunks.append(event.text)

        orch = AgentOrchestrator(model, _make_registry(), settings, on_stream=handler)
        await orch.process_request("hi")
        assert chunks == ["hello"]

    @pytest.mark.asyncio
    async def test_settings_stream_flag_enables_streaming(self, settings):
        settings.stream = True
        model = ThreadedStreamModel(_text_reply("ok"))
        orch = AgentOrchestrator(model, _make_registry(), settings)
        response = await orch.process_request("hi")
        assert response.message == "ok"
        assert model.calls == 1

    @pytest.mark.asyncio
    async def test_streamed_tool_call_executed(self, settings):
        call = ToolCall(id="toolu_1", name="echo", arguments={"text": "pong"})
        model = ThreadedStreamModel(
            [
                StreamEvent(type="text_delta", text="Calling echo."),
                StreamEvent(type="tool_call", tool_call=call),
                StreamEvent(type="done", stop_reason="tool_use", usage=Usage(5, 5)),
            ],
            _text_reply("Got pong."),
        )
        orch = AgentOrchestrator(model, _make_registry(), settings, on_stream=lambda e: None)

        response = await orch.process_request("ping")

        assert response.tool_results[0].output == "pong"
        assistant_first = orch.context.get_messages()[1].content
        assert assistant_first.startswith("Calling echo.\n<tool_use>")
        assert '"name": "echo"' in assistant_first
        assert response.message == "Got pong."

    @pytest.mark.asyncio
    async def test_stream_error_surfaces_as_model_error(self, settings):
        orch = AgentOrchestrator(FailingStreamModel(), _make_registry(), settings, on_stream=lambda e: None)

        with pytest.raises(ModelServiceError) as exc_info:
            await orch.process_request("hi")
        assert exc_info.value.error_type == ErrorType.NETWORK
        assert exc_info.value.retryable
