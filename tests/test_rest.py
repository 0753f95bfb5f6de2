"""Integration tests for REST API endpoints.

Uses httpx AsyncClient with ASGITransport for async HTTP testing. The
orchestrators behind the pool talk to the scripted FakeModel and a
ToolRegistry carrying the change-set tools over in-memory storage.
"""

from __future__ import annotations

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from anvil.agent.changes import ChangeManager
from anvil.agent.orchestrator import AgentOrchestrator
from anvil.api.rest import create_app
from anvil.api.sessions import SessionPool
from anvil.llm.types import ErrorType, LLMError
from anvil.storage.sessions import SessionStore
from anvil.tools.changes import register_change_tools
from anvil.tools.registry import ToolRegistry

# ---------------------------------------------------------------------------
# Helpers / fixtures
# ---------------------------------------------------------------------------


def _tool_use(name: str, **arguments) -> str:
    return f"<tool_use>\n{json.dumps({'name': name, 'arguments': arguments})}\n</tool_use>"


@pytest.fixture
def pool(fake_model, settings, memory_storage) -> SessionPool:
    def factory(session_id: str) -> AgentOrchestrator:
        changes = ChangeManager(memory_storage)
        registry = ToolRegistry()
        register_change_tools(registry, changes, session_id=session_id)
        return AgentOrchestrator(fake_model, registry, settings, changes=changes, session_id=session_id)

    return SessionPool(factory, store=SessionStore(settings.sessions_dir))


@pytest_asyncio.fixture
async def client(pool, settings):
    app = create_app(pool=pool, settings=settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _chat(client, message: str, session_id: str | None = None):
    body = {"message": message}
    if session_id:
        body["session_id"] = session_id
    return await client.post("/chat", json=body)


# ---------------------------------------------------------------------------
# /chat
# ---------------------------------------------------------------------------


class TestChat:
    @pytest.mark.asyncio
    async def test_health(self, client, settings):
        r = await client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy", "model": settings.model, "sessions": 0}

    @pytest.mark.asyncio
    async def test_chat_returns_response(self, client, fake_model):
        fake_model.queue("Hello there.")
        r = await _chat(client, "Hi")
        assert r.status_code == 200
        data = r.json()
        assert data["session_id"]
        assert data["message"] == "Hello there."
        assert data["done"] is True
        assert data["phase"] == "verify"

    @pytest.mark.asyncio
    async def test_chat_same_session_keeps_history(self, client, fake_model, pool):
        fake_model.queue("First.", "Second.")
        r1 = await _chat(client, "one", session_id="s1")
        r2 = await _chat(client, "two", session_id="s1")
        assert r1.json()["session_id"] == r2.json()["session_id"] == "s1"
        handle = await pool.get("s1")
        assert handle.orchestrator.context.size() == 4

    @pytest.mark.asyncio
    async def test_chat_missing_message(self, client):
        r = await client.post("/chat", json={"session_id": "s1"})
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_chat_invalid_json(self, client):
        r = await client.post("/chat", content=b"{oops", headers={"content-type": "application/json"})
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_chat_invalid_session_id(self, client):
        r = await _chat(client, "hi", session_id="../../etc")
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_model_error_is_502_and_turn_undone(self, client, fake_model, pool):
        fake_model.queue(LLMError(ErrorType.RATE_LIMIT, "slow down", status_code=429))
        r = await _chat(client, "hi", session_id="s1")

        assert r.status_code == 502
        assert r.json()["error_type"] == "rate_limit"
        handle = await pool.get("s1")
        assert handle.orchestrator.context.size() == 0

    @pytest.mark.asyncio
    async def test_loop_exhausted_is_500(self, client, fake_model, settings):
        settings.max_iterations = 1
        fake_model.queue(_tool_use("preview_changes"))
        r = await _chat(client, "loop", session_id="s1")
        assert r.status_code == 500
        assert "maximum iterations" in r.json()["error"]
        assert r.json()["response"]["done"] is True


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class TestApprovals:
    async def _suspend(self, client, fake_model) -> str:
        fake_model.queue(
            f"{_tool_use('stage_write', path='a.txt', content='hi')}\n{_tool_use('apply_changes')}",
        )
        r = await _chat(client, "Create a.txt", session_id="s1")
        data = r.json()
        assert data["requires_approval"] is True
        return data["pending_approvals"][0]["id"]

    @pytest.mark.asyncio
    async def test_approve_then_continue(self, client, fake_model, memory_storage):
        approval_id = await self._suspend(client, fake_model)

        listing = await client.get("/sessions/s1/approvals")
        assert listing.json()["pending_count"] == 1

        r = await client.post(f"/sessions/s1/approvals/{approval_id}/approve")
        assert r.status_code == 200
        assert r.json()["result"]["success"] is True
        assert memory_storage.files == {"a.txt": b"hi"}

        fake_model.queue("Created a.txt.")
        r = await client.post("/chat/s1/continue")
        assert r.status_code == 200
        assert r.json()["done"] is True

    @pytest.mark.asyncio
    async def test_approve_twice_conflicts(self, client, fake_model):
        approval_id = await self._suspend(client, fake_model)
        await client.post(f"/sessions/s1/approvals/{approval_id}/approve")
        r = await client.post(f"/sessions/s1/approvals/{approval_id}/approve")
        assert r.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_approval_404(self, client, fake_model):
        await self._suspend(client, fake_model)
        r = await client.post("/sessions/s1/approvals/approval_99/approve")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_reject_with_reason(self, client, fake_model, memory_storage):
        approval_id = await self._suspend(client, fake_model)
        r = await client.post(f"/sessions/s1/approvals/{approval_id}/reject", json={"reason": "not yet"})
        assert r.status_code == 200
        assert r.json()["approval"]["status"] == "rejected"
        assert r.json()["approval"]["reason"] == "not yet"
        assert memory_storage.files == {}

    @pytest.mark.asyncio
    async def test_continue_with_pending_conflicts(self, client, fake_model):
        await self._suspend(client, fake_model)
        r = await client.post("/chat/s1/continue")
        assert r.status_code == 409


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    @pytest.mark.asyncio
    async def test_unknown_session_404(self, client):
        r = await client.get("/sessions/nope")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_status(self, client, fake_model):
        fake_model.queue("Plan:\n1. Look around", "Looked.", "Verified.")
        await _chat(client, "Explore", session_id="s1")

        r = await client.get("/sessions/s1")
        data = r.json()
        assert r.status_code == 200
        assert data["phase"] == "verify"
        assert data["progress"] == 100.0
        assert data["plan"][0]["status"] == "completed"
        assert data["usage"]["request_count"] == 3
        assert data["context"]["message_count"] == 6
        assert data["open_change_set"] is None

    @pytest.mark.asyncio
    async def test_list_and_search(self, client, fake_model):
        fake_model.queue("a", "b")
        await _chat(client, "parser bug", session_id="s1")
        await _chat(client, "logging", session_id="s2")

        r = await client.get("/sessions")
        assert {s["id"] for s in r.json()["sessions"]} == {"s1", "s2"}

        r = await client.get("/sessions", params={"q": "parser"})
        assert [s["id"] for s in r.json()["sessions"]] == ["s1"]

    @pytest.mark.asyncio
    async def test_delete(self, client, fake_model):
        fake_model.queue("a")
        await _chat(client, "hi", session_id="s1")
        r = await client.delete("/sessions/s1")
        assert r.status_code == 200
        assert (await client.get("/sessions/s1")).status_code == 404
        assert (await client.delete("/sessions/s1")).status_code == 404

    @pytest.mark.asyncio
    async def test_reset(self, client, fake_model, pool):
        fake_model.queue("a")
        await _chat(client, "hi", session_id="s1")
        r = await client.post("/sessions/s1/reset")
        assert r.status_code == 200
        handle = await pool.get("s1")
        assert handle.orchestrator.context.size() == 0

    @pytest.mark.asyncio
    async def test_teaching_mode(self, client, fake_model, pool):
        fake_model.queue("a")
        await _chat(client, "hi", session_id="s1")

        bad = await client.put("/sessions/s1/teaching", json={"mode": "loud"})
        assert bad.status_code == 400

        ok = await client.put("/sessions/s1/teaching", json={"mode": "expert"})
        assert ok.status_code == 200
        handle = await pool.get("s1")
        assert handle.orchestrator.teaching_config.link_docs


# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------


class TestChanges:
    @pytest.mark.asyncio
    async def test_changes_preview_and_rollback(self, client, fake_model, memory_storage):
        memory_storage.files["a.txt"] = b"old"
        fake_model.queue(f"{_tool_use('stage_write', path='a.txt', content='new')}\n{_tool_use('apply_changes')}")
        r = await _chat(client, "Edit a.txt", session_id="s1")
        approval_id = r.json()["pending_approvals"][0]["id"]

        changes = await client.get("/sessions/s1/changes")
        assert "Change Set: Auto-generated" in changes.json()["preview"]
        assert changes.json()["history"] == []

        await client.post(f"/sessions/s1/approvals/{approval_id}/approve")
        assert memory_storage.files["a.txt"] == b"new"

        r = await client.post("/sessions/s1/changes/rollback")
        assert r.status_code == 200
        assert r.json()["change_set"]["rolled_back"] is True
        assert memory_storage.files["a.txt"] == b"old"

        again = await client.post("/sessions/s1/changes/rollback")
        assert again.status_code == 409
