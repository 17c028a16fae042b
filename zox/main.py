"""zox entry point.

Initializes all components and starts the server:
  Settings -> HTTP clients -> Providers -> Retrieval -> Tools -> EventBus
  -> AgentLoop -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from zox.agent.history import HistoryStore
from zox.agent.loop import AgentLoop
from zox.config import Settings
from zox.events import EventBus
from zox.providers import ModelProvider, build_provider
from zox.providers.gemini import KeyManager
from zox.retrieval.embeddings import CloudEmbeddingProvider, LocalEmbeddingProvider
from zox.retrieval.store import SemanticStore
from zox.tools.builtin import default_registry
from zox.tools.workspace import Workspace

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.

    1. httpx clients - one per upstream (cloud API, local runtime)
    2. Embedding provider + SemanticStore
    3. Tool registry + workspace
    4. EventBus
    5. AgentLoop (builds providers lazily through the lookup table)
    """
    timeout = httpx.Timeout(
        connect=settings.api_timeout_connect,
        read=settings.api_timeout_read,
        write=10.0,
        pool=10.0,
    )
    cloud_http = httpx.AsyncClient(
        base_url=settings.cloud_base_url,
        timeout=timeout,
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    # Model loads can take minutes on first use
    local_http = httpx.AsyncClient(
        base_url=settings.local_base_url,
        timeout=httpx.Timeout(connect=5.0, read=600.0, write=10.0, pool=10.0),
    )

    keys = KeyManager(settings.api_keys)
    if settings.embedding_backend == "local":
        embedder = LocalEmbeddingProvider(
            model=settings.local_embedding_model, base_url=settings.local_base_url
        )
    else:
        embedder = CloudEmbeddingProvider(
            keys, model=settings.embedding_model, base_url=settings.cloud_base_url
        )
    retrieval = SemanticStore(embedder)

    workspace = Workspace(settings.workspace_dir)
    workspace.ensure()
    registry = default_registry()
    history = HistoryStore(settings.history_dir)

    bus = EventBus(max_queue=settings.event_queue_size)
    await bus.start()

    clients = {"cloud": cloud_http, "local": local_http}

    def provider_for(kind: str) -> ModelProvider:
        return build_provider(kind, settings, clients[kind])

    loop = AgentLoop(
        settings,
        providers=provider_for,
        registry=registry,
        workspace=workspace,
        retrieval=retrieval,
        bus=bus,
        history=history,
    )
    await loop.start()

    return {
        "cloud_http": cloud_http,
        "local_http": local_http,
        "embedder": embedder,
        "retrieval": retrieval,
        "workspace": workspace,
        "registry": registry,
        "history": history,
        "bus": bus,
        "loop": loop,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down zox...")

    loop = components.get("loop")
    if loop:
        await loop.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    embedder = components.get("embedder")
    if embedder:
        await embedder.close()

    for key in ("local_http", "cloud_http"):
        client = components.get(key)
        if client:
            await client.aclose()

    logger.info("zox shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in the lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components

        logger.info(
            "zox started: provider=%s, max_steps=%d, workspace=%s",
            components["loop"].provider_kind,
            settings.max_steps,
            settings.workspace_dir,
        )
        yield

        await shutdown_components(components)

    from zox.api.rest import create_app

    return create_app(
        loop=_lazy_component(components, "loop"),
        bus=_lazy_component(components, "bus"),
        history=_lazy_component(components, "history"),
        registry=_lazy_component(components, "registry"),
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
            raise RuntimeError(f"Component '{key}' not yet initialized, lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def _lazy_component(components: dict, key: str) -> _LazyProxy:
    return _LazyProxy(components, key)


def main() -> None:
    """Entry point: parse settings, build the app and run the server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting zox on %s:%d", settings.host, settings.port)
    logger.info(
        "Models: router=%s basic=%s advanced=%s agent=%s local=%s",
        settings.router_model,
        settings.basic_model,
        settings.advanced_model,
        settings.agent_model,
        settings.local_model,
    )
    if not settings.api_keys:
        logger.warning("GEMINI_API_KEYS is not set; cloud mode will fail, use offline mode")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
