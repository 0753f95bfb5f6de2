"""Storage module -- session persistence."""

from anvil.storage.sessions import (
    Session,
    SessionNotFoundError,
    SessionStore,
    SessionSummary,
)

__all__ = ["Session", "SessionNotFoundError", "SessionStore", "SessionSummary"]
