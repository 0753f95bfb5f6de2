"""Shared fixtures: scripted model service, in-memory storage, settings."""

from __future__ import annotations

import pytest

from anvil.config import Settings
from anvil.llm.types import CompletionRequest, CompletionResponse, StreamEvent, Usage

# ---------------------------------------------------------------------------
# Scripted model service
# ---------------------------------------------------------------------------


class FakeModel:
    """ModelService that replays queued replies and records every request.

    A queued str becomes a CompletionResponse; a queued exception is raised.
    """

    def __init__(self, *replies) -> None:
        self.replies: list = list(replies)
        self.requests: list[CompletionRequest] = []

    def queue(self, *replies) -> None:
        self.replies.extend(replies)

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("FakeModel ran out of scripted replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            reply = CompletionResponse(content=reply, usage=Usage(prompt_tokens=10, completion_tokens=5))
        return reply

    async def stream(self, request: CompletionRequest, callback) -> None:
        reply = await self.complete(request)
        text = reply.content
        for i in range(0, len(text), 8):
            callback(StreamEvent(type="text_delta", text=text[i:i + 8]))
        for call in reply.tool_calls:
            callback(StreamEvent(type="tool_call", tool_call=call))
        callback(StreamEvent(type="done", stop_reason=reply.stop_reason, usage=reply.usage))


# ---------------------------------------------------------------------------
# In-memory Storage with failure injection
# ---------------------------------------------------------------------------


class MemoryStorage:
    """Dict-backed Storage. Paths in ``fail_writes``/``fail_deletes`` raise OSError."""

    def __init__(self, files: dict[str, bytes] | None = None) -> None:
        self.files: dict[str, bytes] = dict(files or {})
        self.fail_writes: set[str] = set()
        self.fail_deletes: set[str] = set()

    def read(self, path: str) -> bytes:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    def exists(self, path: str) -> bool:
        return path in self.files

    def write(self, path: str, data: bytes) -> None:
        if path in self.fail_writes:
            raise OSError(f"disk full: {path}")
        self.files[path] = data

    def delete(self, path: str) -> None:
        if path in self.fail_deletes:
            raise OSError(f"permission denied: {path}")
        if path not in self.files:
            raise FileNotFoundError(path)
        del self.files[path]

    def rename(self, old_path: str, new_path: str) -> None:
        if old_path not in self.files:
            raise FileNotFoundError(old_path)
        self.files[new_path] = self.files.pop(old_path)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        ANTHROPIC_API_KEY="sk-ant-test-key",
        sessions_dir=str(tmp_path / "sessions"),
        workspace_dir=str(tmp_path / "workspace"),
        max_iterations=5,
        tool_timeout=5.0,
    )


@pytest.fixture
def fake_model() -> FakeModel:
    return FakeModel()


@pytest.fixture
def memory_storage() -> MemoryStorage:
    return MemoryStorage()
