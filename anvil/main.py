"""Anvil agent entry point.

Initializes all components and starts the server:
  Settings -> EventBus -> ModelService -> SessionStore -> SessionPool -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from anvil.agent.changes import ChangeManager, LocalStorage
from anvil.agent.orchestrator import AgentOrchestrator
from anvil.api.sessions import SessionPool
from anvil.config import Settings
from anvil.events import ALL_EVENTS, Event, EventBus
from anvil.llm.anthropic import AnthropicClient
from anvil.llm.retry import RetryConfig, RetryingModelService
from anvil.storage.sessions import SessionStore
from anvil.tools.changes import register_change_tools
from anvil.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

audit_logger = logging.getLogger("anvil.audit")


async def _audit(event: Event) -> None:
    audit_logger.info("%s session=%s %s", event.type, event.session_id, event.data)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. EventBus - agent events, audited to the log
    2. AnthropicClient wrapped in RetryingModelService
    3. SessionStore - JSON session files
    4. SessionPool - one orchestrator per live session
    """
    bus = EventBus()
    bus.on(ALL_EVENTS, _audit)
    await bus.start()

    client = AnthropicClient(settings)
    await client.start()
    model = RetryingModelService(client, RetryConfig.from_settings(settings))

    store = SessionStore(settings.sessions_dir)

    def make_orchestrator(session_id: str) -> AgentOrchestrator:
        changes = ChangeManager(LocalStorage(settings.workspace_dir))
        registry = ToolRegistry()
        register_change_tools(registry, changes, bus=bus, session_id=session_id)
        return AgentOrchestrator(
            model,
            registry,
            settings,
            changes=changes,
            bus=bus,
            session_id=session_id,
        )

    pool = SessionPool(make_orchestrator, store=store, max_sessions=settings.max_sessions)

    return {
        "bus": bus,
        "client": client,
        "model": model,
        "store": store,
        "pool": pool,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Anvil...")

    pool = components.get("pool")
    if pool:
        for handle in pool.handles():
            pool.persist(handle)

    bus = components.get("bus")
    if bus:
        await bus.stop()

    client = components.get("client")
    if client:
        await client.close()

    logger.info("Anvil shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components come up in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Anvil started: model=%s, workspace=%s, sessions=%s",
            settings.model,
            settings.workspace_dir,
            settings.sessions_dir,
        )
        yield
        await shutdown_components(components)

    from anvil.api.rest import create_app

    return create_app(
        pool=_lazy_component(components, "pool"),
        settings=settings,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Proxy that defers attribute access to a dict-backed component.

    Allows create_app() to receive component references before lifespan
    has initialized them.
    """

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized -- lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)

    def __len__(self):
        return len(self._resolve())


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Anvil agent")
    logger.info("Model: %s (stream=%s)", settings.model, settings.stream)
    logger.info("Teaching mode: %s", settings.teaching_mode)

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- /chat endpoints will fail")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
