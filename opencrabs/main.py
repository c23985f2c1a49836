"""OpenCrabs agent entry point.

Initializes all components and starts the server:
  Settings -> Database -> SessionStore -> Provider -> Tools -> AgentService -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from opencrabs.agent.builtin_tools import register_builtin_tools
from opencrabs.agent.provider import AnthropicProvider
from opencrabs.agent.queue import SessionMessageQueue
from opencrabs.agent.service import AgentService
from opencrabs.agent.tools import ToolRegistry
from opencrabs.config import Settings
from opencrabs.events import ProgressBroadcaster
from opencrabs.storage.database import Database
from opencrabs.storage.sessions import SessionStore

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Build the object graph bottom-up: storage, provider, tools, service.

    The returned dict is what the lifespan keeps on app.state.

    The REST surface has no interactive approver: unless
    auto_approve_tools is set, tools that need approval are denied.
    """
    database = Database(settings)
    await database.connect()
    store = SessionStore(database)

    provider = AnthropicProvider(settings)
    await provider.start()

    tools = ToolRegistry()
    register_builtin_tools(tools)

    broadcaster = ProgressBroadcaster()
    message_queue = SessionMessageQueue()

    service = AgentService(
        provider,
        store,
        settings,
        tools=tools,
        progress_callback=broadcaster,
    )

    return {
        "database": database,
        "store": store,
        "provider": provider,
        "tools": tools,
        "broadcaster": broadcaster,
        "message_queue": message_queue,
        "service": service,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down OpenCrabs...")

    provider = components.get("provider")
    if provider:
        await provider.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("OpenCrabs shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    # Closure to share components between lifespan and app
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))

        # Exposed for embedders and tests
        app.state.components = components

        logger.info(
            "OpenCrabs started: model=%s, tools=%s, max_tool_iterations=%d, workspace=%s",
            settings.model,
            ",".join(components["tools"].names),
            settings.max_tool_iterations,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    # Import here to avoid circular imports at module level
    from opencrabs.api.rest import create_app

    return create_app(
        service=_lazy_component(components, "service"),
        store=_lazy_component(components, "store"),
        database=_lazy_component(components, "database"),
        broadcaster=_lazy_component(components, "broadcaster"),
        message_queue=_lazy_component(components, "message_queue"),
        lifespan=lifespan,
    )


class _LazyProxy:
    """Stand-in for a component that only exists once the lifespan has run.

    Routes are bound at build time, components at startup; attribute
    access and calls resolve against the shared dict on every use.
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

    def __call__(self, *args, **kwargs):
        return self._resolve()(*args, **kwargs)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    """Bind a proxy to components[key]."""
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting OpenCrabs agent core")
    logger.info("Model: %s", settings.model)
    logger.info("Database: %s", settings.db_url)

    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "/chat endpoints will fail"
        )
    if settings.auto_approve_tools:
        logger.warning("auto_approve_tools is enabled -- every tool call runs without approval")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
