"""API module -- Starlette REST surface and the live session pool."""

from anvil.api.rest import create_app
from anvil.api.sessions import SessionHandle, SessionPool

__all__ = ["SessionHandle", "SessionPool", "create_app"]
