"""Tests for JSON session persistence and the live session pool."""

from __future__ import annotations

import time

import pytest

from anvil.agent.approval import ApprovalStatus
from anvil.agent.orchestrator import AgentOrchestrator
from anvil.api.sessions import SessionPool
from anvil.llm.types import Message, Role
from anvil.schemas import ApprovalRequest, ToolCall
from anvil.storage.sessions import Session, SessionNotFoundError, SessionStore, generate_session_id
from anvil.tools.registry import ToolRegistry


def _make_session(session_id: str = "s1", *texts: str) -> Session:
    session = Session(id=session_id)
    session.set_messages([Message(Role.USER if i % 2 == 0 else Role.ASSISTANT, t) for i, t in enumerate(texts)])
    return session


class TestSessionStore:
    def test_save_and_load(self, tmp_path):
        store = SessionStore(tmp_path)
        session = _make_session("s1", "hello", "hi there")
        session.metadata.total_tokens = 42

        store.save(session)
        loaded = store.load("s1")

        assert loaded.get_messages() == [Message(Role.USER, "hello"), Message(Role.ASSISTANT, "hi there")]
        assert loaded.metadata.total_tokens == 42
        assert store.exists("s1")

    def test_load_missing_raises(self, tmp_path):
        with pytest.raises(SessionNotFoundError):
            SessionStore(tmp_path).load("missing")

    def test_invalid_id_rejected(self, tmp_path):
        store = SessionStore(tmp_path)
        with pytest.raises(ValueError):
            store.load("../etc/passwd")

    def test_delete(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_make_session("s1", "x"))
        store.delete("s1")
        assert not store.exists("s1")
        with pytest.raises(SessionNotFoundError):
            store.delete("s1")

    def test_list_most_recent_first_and_skips_corrupt(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_make_session("older", "a"))
        time.sleep(0.01)
        store.save(_make_session("newer", "b"))
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        assert [s.id for s in store.list()] == ["newer", "older"]
        summaries = store.list_summaries()
        assert summaries[0].message_count == 1
        assert summaries[0].preview == "b"

    def test_search(self, tmp_path):
        store = SessionStore(tmp_path)
        store.save(_make_session("s1", "Refactor the Parser"))
        store.save(_make_session("s2", "add logging"))
        assert [s.id for s in store.search("parser")] == ["s1"]

    def test_preview(self):
        assert Session(id="x").preview() == "Empty session"
        long = _make_session("x", "y" * 150)
        assert long.preview() == "y" * 100 + "..."
        named = Session(id="x", name="Bug hunt")
        assert named.preview() == "Bug hunt"

    def test_generated_ids_are_valid(self, tmp_path):
        store = SessionStore(tmp_path)
        session_id = generate_session_id()
        store.save(Session(id=session_id))
        assert store.exists(session_id)


class TestSessionPool:
    def _make_pool(self, fake_model, settings, store=None, max_sessions=10) -> SessionPool:
        def factory(session_id: str) -> AgentOrchestrator:
            return AgentOrchestrator(fake_model, ToolRegistry(), settings, session_id=session_id)

        return SessionPool(factory, store=store, max_sessions=max_sessions)

    @pytest.mark.asyncio
    async def test_get_or_create_reuses_live_handle(self, fake_model, settings):
        pool = self._make_pool(fake_model, settings)
        first = await pool.get_or_create("abc")
        again = await pool.get_or_create("abc")
        assert first is again
        assert len(pool) == 1

    @pytest.mark.asyncio
    async def test_generates_id_when_missing(self, fake_model, settings):
        pool = self._make_pool(fake_model, settings)
        handle = await pool.get_or_create()
        assert handle.id
        assert handle.orchestrator.session_id == handle.id

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, fake_model, settings):
        pool = self._make_pool(fake_model, settings)
        with pytest.raises(SessionNotFoundError):
            await pool.get("nope")

    @pytest.mark.asyncio
    async def test_evicted_session_restored_from_store(self, fake_model, settings, tmp_path):
        store = SessionStore(tmp_path)
        pool = self._make_pool(fake_model, settings, store=store, max_sessions=1)
        fake_model.queue("Hello!")

        first = await pool.get_or_create("first")
        await first.orchestrator.process_request("Hi")
        await pool.get_or_create("second")

        assert len(pool) == 1
        assert store.exists("first")
        restored = await pool.get("first")
        assert restored is not first
        assert [m.content for m in restored.orchestrator.context.get_messages()] == ["Hi", "Hello!"]

    @pytest.mark.asyncio
    async def test_persist_records_tokens(self, fake_model, settings, tmp_path):
        store = SessionStore(tmp_path)
        pool = self._make_pool(fake_model, settings, store=store)
        fake_model.queue("ok")
        handle = await pool.get_or_create("s1")
        await handle.orchestrator.process_request("hi")

        pool.persist(handle)

        assert store.load("s1").metadata.total_tokens == 15

    @pytest.mark.asyncio
    async def test_remove(self, fake_model, settings, tmp_path):
        store = SessionStore(tmp_path)
        pool = self._make_pool(fake_model, settings, store=store)
        handle = await pool.get_or_create("s1")
        pool.persist(handle)

        await pool.remove("s1")

        assert not store.exists("s1")
        with pytest.raises(SessionNotFoundError):
            await pool.remove("s1")

    @pytest.mark.asyncio
    async def test_session_awaiting_approval_is_not_evicted(self, fake_model, settings, tmp_path):
        store = SessionStore(tmp_path)
        pool = self._make_pool(fake_model, settings, store=store, max_sessions=1)
        first = await pool.get_or_create("one")
        item = first.orchestrator.approvals.add(
            ToolCall(name="write_file", arguments={"path": "a.txt"}),
            ApprovalRequest(action="Write a.txt", destructive=True),
        )

        await pool.get_or_create("two")

        assert len(pool) == 2
        assert await pool.get("one") is first
        assert first.orchestrator.approvals.get(item.id).status == ApprovalStatus.PENDING

    @pytest.mark.asyncio
    async def test_eviction_skips_to_next_idle_session(self, fake_model, settings, tmp_path):
        store = SessionStore(tmp_path)
        pool = self._make_pool(fake_model, settings, store=store, max_sessions=2)
        busy = await pool.get_or_create("busy")
        await pool.get_or_create("idle")

        async with busy.lock:
            await pool.get_or_create("new")

        assert {h.id for h in pool.handles()} == {"busy", "new"}
        assert store.exists("idle")
