"""JSON-file session persistence.

One ``<id>.json`` file per session under a base directory. The agent
core defines no file format of its own; this store loads and saves the
conversation through ConversationContext.get_messages()/add_message().
"""

from __future__ import annotations

import logging
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError

from anvil.llm.types import Message, Role

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")
_PREVIEW_CHARS = 100


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"session {session_id} not found")
        self.session_id = session_id


class StoredMessage(BaseModel):
    role: Role
    content: str

    def to_message(self) -> Message:
        return Message(self.role, self.content)


class SessionMetadata(BaseModel):
    model: str = ""
    total_tokens: int = 0
    working_dir: str = ""
    tags: list[str] = Field(default_factory=list)
    custom: dict[str, str] = Field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(UTC)


def generate_session_id() -> str:
    return f"{_now():%Y%m%d-%H%M%S}-{uuid4().hex[:6]}"


class Session(BaseModel):
    id: str = Field(default_factory=generate_session_id)
    name: str = ""
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    messages: list[StoredMessage] = Field(default_factory=list)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)

    def set_messages(self, messages: list[Message]) -> None:
        self.messages = [StoredMessage(role=m.role, content=m.content) for m in messages]

    def get_messages(self) -> list[Message]:
        return [m.to_message() for m in self.messages]

    def preview(self) -> str:
        """Name if set, else the first user message (truncated)."""
        if self.name and self.name != self.id:
            return self.name
        for msg in self.messages:
            if msg.role == Role.USER:
                text = msg.content
                return text[:_PREVIEW_CHARS] + "..." if len(text) > _PREVIEW_CHARS else text
        return "Empty session"


class SessionSummary(BaseModel):
    """Lightweight listing entry."""

    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    message_count: int
    total_tokens: int
    preview: str


class SessionStore:
    """Directory of JSON session files."""

    def __init__(self, base_dir: str | os.PathLike[str]) -> None:
        self.base_dir = Path(base_dir).expanduser()
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id):
            raise ValueError(f"invalid session id: {session_id!r}")
        return self.base_dir / f"{session_id}.json"

    def save(self, session: Session) -> None:
        """Write the session, stamping updated_at. Replaces atomically."""
        session.updated_at = _now()
        path = self._path(session.id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, path)

    def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e
        return Session.model_validate_json(raw)

    def exists(self, session_id: str) -> bool:
        return self._path(session_id).exists()

    def delete(self, session_id: str) -> None:
        try:
            self._path(session_id).unlink()
        except FileNotFoundError as e:
            raise SessionNotFoundError(session_id) from e

    def list(self) -> list[Session]:
        """All readable sessions, most recently updated first.

        Corrupted files are skipped with a warning.
        """
        sessions = []
        for path in self.base_dir.glob("*.json"):
            try:
                sessions.append(Session.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable session file %s: %s", path.name, e)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    def list_summaries(self) -> list[SessionSummary]:
        return [
            SessionSummary(
                id=s.id,
                name=s.name,
                created_at=s.created_at,
                updated_at=s.updated_at,
                message_count=len(s.messages),
                total_tokens=s.metadata.total_tokens,
                preview=s.preview(),
            )
            for s in self.list()
        ]

    def search(self, query: str) -> list[Session]:
        """Case-insensitive match on session name or any message content."""
        needle = query.lower()
        return [
            s for s in self.list()
            if needle in s.name.lower() or any(needle in m.content.lower() for m in s.messages)
        ]
