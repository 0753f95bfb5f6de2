"""Live session pool: one orchestrator and one request lock per session.

An orchestrator supports a single in-flight call, so every request for a
session runs under that session's asyncio.Lock. The pool is LRU-bounded;
evicted or restarted sessions are restored from the SessionStore.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field

from anvil.agent.orchestrator import AgentOrchestrator
from anvil.storage.sessions import Session, SessionNotFoundError, SessionStore, generate_session_id

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[str], AgentOrchestrator]


@dataclass
class SessionHandle:
    id: str
    orchestrator: AgentOrchestrator
    record: Session
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class SessionPool:
    def __init__(
        self,
        factory: OrchestratorFactory,
        store: SessionStore | None = None,
        max_sessions: int = 100,
    ) -> None:
        self._factory = factory
        self._store = store
        self._max = max_sessions
        self._live: OrderedDict[str, SessionHandle] = OrderedDict()
        self._pool_lock = asyncio.Lock()

    @property
    def store(self) -> SessionStore | None:
        return self._store

    def __len__(self) -> int:
        return len(self._live)

    def handles(self) -> list[SessionHandle]:
        """Live handles, least recently used first."""
        return list(self._live.values())

    async def get_or_create(self, session_id: str | None = None) -> SessionHandle:
        """Live handle for ``session_id``, restoring or creating as needed."""
        async with self._pool_lock:
            session_id = session_id or generate_session_id()
            handle = self._lookup(session_id)
            if handle is None:
                handle = self._open(Session(id=session_id), restore=False)
                logger.info("Created session %s", session_id)
            return handle

    async def get(self, session_id: str) -> SessionHandle:
        """Live handle for an existing session. Raises SessionNotFoundError."""
        async with self._pool_lock:
            handle = self._lookup(session_id)
            if handle is None:
                raise SessionNotFoundError(session_id)
            return handle

    async def remove(self, session_id: str) -> None:
        """Forget a session in memory and on disk."""
        async with self._pool_lock:
            live = self._live.pop(session_id, None)
            stored = self._store is not None and self._store.exists(session_id)
            if stored:
                self._store.delete(session_id)
            if live is None and not stored:
                raise SessionNotFoundError(session_id)

    def persist(self, handle: SessionHandle) -> None:
        """Save the session's conversation (no-op without a store)."""
        if self._store is None:
            return
        orchestrator = handle.orchestrator
        handle.record.set_messages(orchestrator.context.get_messages())
        handle.record.metadata.total_tokens = orchestrator.token_tracker.get_stats().total_tokens
        self._store.save(handle.record)

    # ------------------------------------------------------------------
    # Internal (caller holds _pool_lock)
    # ------------------------------------------------------------------

    def _lookup(self, session_id: str) -> SessionHandle | None:
        handle = self._live.get(session_id)
        if handle is not None:
            self._live.move_to_end(session_id)
            return handle
        if self._store is not None and self._store.exists(session_id):
            record = self._store.load(session_id)
            logger.info("Restored session %s (%d messages)", session_id, len(record.messages))
            return self._open(record, restore=True)
        return None

    def _open(self, record: Session, restore: bool) -> SessionHandle:
        orchestrator = self._factory(record.id)
        if restore:
            for message in record.get_messages():
                orchestrator.context.add_message(message)
        handle = SessionHandle(id=record.id, orchestrator=orchestrator, record=record)
        self._live[record.id] = handle

        while len(self._live) > self._max:
            evicted = next(
                (h for h in self._live.values() if h.id != record.id and self._evictable(h)),
                None,
            )
            if evicted is None:
                # Every other session is busy or awaiting approval; run over the bound
                break
            del self._live[evicted.id]
            self.persist(evicted)
            logger.debug("Evicted session %s", evicted.id)
        return handle

    @staticmethod
    def _evictable(handle: SessionHandle) -> bool:
        # Pending approvals and lifecycle state live only in memory
        return not handle.lock.locked() and not handle.orchestrator.approvals.has_pending()
