"""Concierge entry point.

Initializes all components and starts the server:
  Settings -> Database -> Services -> ToolRegistry -> CompletionClient
  -> TurnOrchestrator -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from concierge.api.completion import CompletionClient
from concierge.api.runner import TurnOrchestrator
from concierge.api.tools import build_tool_registry
from concierge.chat.locks import UserLocks
from concierge.config import Settings
from concierge.services import (
    CalendarService,
    ContactDirectory,
    MessageLog,
    TaskService,
    TwilioGateway,
)
from concierge.storage.conversations import SqlConversationStore
from concierge.storage.costs import SqlCostSink
from concierge.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = Database(settings)
    await database.connect()

    cost_sink = SqlCostSink(database)
    store = SqlConversationStore(database)

    gateway = TwilioGateway(settings)
    await gateway.start()

    registry = build_tool_registry(
        tasks=TaskService(database),
        calendar=CalendarService(database),
        contacts=ContactDirectory(database),
        gateway=gateway,
        message_log=MessageLog(database),
        cost_sink=cost_sink,
    )

    client = CompletionClient(settings)
    await client.start()

    orchestrator = TurnOrchestrator(
        settings,
        client=client,
        registry=registry,
        store=store,
        cost_sink=cost_sink,
        locks=UserLocks(),
    )

    return {
        "database": database,
        "gateway": gateway,
        "registry": registry,
        "client": client,
        "orchestrator": orchestrator,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Concierge...")

    # Let streaming turns whose callers disconnected finish their side effects
    orchestrator = components.get("orchestrator")
    if orchestrator:
        await orchestrator.drain()

    client = components.get("client")
    if client:
        await client.close()

    gateway = components.get("gateway")
    if gateway:
        await gateway.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Concierge shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Store on app.state for access in tests
        app.state.components = components

        logger.info("Concierge started: %s", settings.app_name)
        logger.info(
            "Turns: max_tool_rounds=%d, turn_timeout=%.0fs, history=%d messages",
            settings.max_tool_rounds,
            settings.turn_timeout,
            settings.history_max_messages,
        )
        yield

        await shutdown_components(components)

    from concierge.api.rest import create_app

    return create_app(
        orchestrator=_lazy_component(components, "orchestrator"),
        registry=_lazy_component(components, "registry"),
        database=_lazy_component(components, "database"),
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


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting %s", settings.app_name)
    logger.info("Model: %s", settings.model)
    if not settings.database_url:
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- /chat endpoints will fail")
    if not settings.twilio_configured:
        logger.warning("Twilio credentials not set -- sendSMS and makeCall will report as unavailable")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
