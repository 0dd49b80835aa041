"""Orchestra process entry point.

Builds every component once, in dependency order, into an AppContext:
  Settings -> Store -> EventBus -> Transport -> Dispatcher -> Registry
  -> TurnEngine -> AgentDelegationEngine -> built-in tools -> Orchestrator

The host owns the lifecycle: create_context() at startup,
shutdown_context() at teardown. Nothing is kept in module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from orchestra.collaborations.registry import CollaborationRegistry
from orchestra.config import Settings
from orchestra.engine.delegation import AgentDelegationEngine
from orchestra.engine.turns import EngineCapabilities, TurnEngine
from orchestra.events import EventBus, Notifier
from orchestra.llm.prompts import JinjaPromptRenderer, PromptRenderer
from orchestra.llm.transport import AnthropicTransport, ModelTransport
from orchestra.orchestrator import Orchestrator
from orchestra.storage.database import Database
from orchestra.storage.persistence import InteractionStore, MemoryInteractionStore
from orchestra.storage.sql_store import DatabaseInteractionStore
from orchestra.tools.builtin import register_builtin_tools
from orchestra.tools.dispatch import ToolDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: InteractionStore
    transport: ModelTransport
    dispatcher: ToolDispatcher
    registry: CollaborationRegistry
    turns: TurnEngine
    delegation: AgentDelegationEngine
    orchestrator: Orchestrator
    bus: EventBus | None = None
    database: Database | None = None


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def create_context(
    settings: Settings | None = None,
    transport: ModelTransport | None = None,
    dispatcher: ToolDispatcher | None = None,
    capabilities: EngineCapabilities | None = None,
    renderer: PromptRenderer | None = None,
    store: InteractionStore | None = None,
) -> AppContext:
    """Initialize all components in dependency order.

    Any collaborator passed in is used as-is; the rest are built from settings.
    """
    settings = settings or Settings()

    database = None
    if store is None:
        if settings.persistence == "database":
            database = Database(settings)
            await database.connect()
            store = DatabaseInteractionStore(database)
        else:
            store = MemoryInteractionStore()

    bus = None
    if settings.event_bus_enabled:
        bus = EventBus(max_queue=settings.event_bus_queue_size)
        await bus.start()
    notifier = Notifier(bus)

    if transport is None:
        anthropic = AnthropicTransport(settings)
        await anthropic.start()
        transport = anthropic

    dispatcher = dispatcher or ToolDispatcher()
    renderer = renderer or JinjaPromptRenderer()
    registry = CollaborationRegistry(store)

    turns = TurnEngine(
        settings=settings,
        transport=transport,
        dispatcher=dispatcher,
        store=store,
        registry=registry,
        renderer=renderer,
        notifier=notifier,
        capabilities=capabilities,
    )
    delegation = AgentDelegationEngine(settings, turns, registry, dispatcher, renderer)
    register_builtin_tools(dispatcher, delegation, turns.compactor, settings, transport.context_window)
    orchestrator = Orchestrator(registry, store, turns, delegation, notifier)

    logger.info(
        "Orchestra context ready (model=%s, context_window=%d, persistence=%s, tools=%d)",
        transport.model, transport.context_window, settings.persistence, len(dispatcher.tool_names),
    )
    return AppContext(
        settings=settings,
        store=store,
        transport=transport,
        dispatcher=dispatcher,
        registry=registry,
        turns=turns,
        delegation=delegation,
        orchestrator=orchestrator,
        bus=bus,
        database=database,
    )


async def shutdown_context(context: AppContext) -> None:
    """Tear down in reverse order. Each step is isolated so one failure never blocks the rest."""
    close = getattr(context.transport, "close", None)
    if close is not None:
        try:
            await close()
        except Exception:
            logger.exception("Error closing model transport")
    if context.bus is not None:
        try:
            await context.bus.stop()
        except Exception:
            logger.exception("Error stopping event bus")
    context.registry.evict_loaded_interactions()
    if context.database is not None:
        try:
            await context.database.disconnect()
        except Exception:
            logger.exception("Error disconnecting database")
    logger.info("Orchestra context shut down")
