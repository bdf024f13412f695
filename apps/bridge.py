import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import Optional

from adapters.agent.agent_backend import AgentBackend
from adapters.agent.opencode_client import OpencodeClient, pump_events
from adapters.chat.chat_adapter import ChatAdapter
from config.settings import BridgeSettings, load_settings
from engine.delayed_registry import DelayedResponseRegistry
from engine.permission_arbiter import PermissionArbiter
from engine.question_flow import QuestionFlowEngine
from engine.turn_engine import TurnEngine
from shared.scheduler import AsyncioScheduler, Scheduler, wait_or_stop
from store.conversation_store import ConversationStore
from store.interaction_ledger import InteractionLedger
from store.kv import KeyValueStore, build_store

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

MAINTENANCE_INTERVAL = 30.0


@dataclass
class Bridge:
    settings: BridgeSettings
    engine: TurnEngine
    backend: AgentBackend


def build_bridge(
    chat: ChatAdapter,
    settings: Optional[BridgeSettings] = None,
    backend: Optional[AgentBackend] = None,
    store: Optional[KeyValueStore] = None,
    scheduler: Optional[Scheduler] = None,
) -> Bridge:
    """Builds every repository object once and hands them to the engines by reference."""
    settings = settings or load_settings()
    backend = backend or OpencodeClient(settings.agent_base_url)
    scheduler = scheduler or AsyncioScheduler()

    conversations = ConversationStore(store or build_store(settings))
    engine = TurnEngine(
        settings=settings,
        chat=chat,
        backend=backend,
        conversations=conversations,
        ledger=InteractionLedger(conversations, capacity=settings.ledger_capacity),
        questions=QuestionFlowEngine(backend, clock=scheduler.now),
        permissions=PermissionArbiter(settings.tool_whitelist, settings.permission_timeout, clock=scheduler.now),
        delayed=DelayedResponseRegistry(clock=scheduler.now),
        scheduler=scheduler,
    )
    logger.info("[BRIDGE] agent=%s store=%s whitelist=%s",
                settings.agent_base_url, settings.store_backend, ",".join(settings.tool_whitelist))
    return Bridge(settings=settings, engine=engine, backend=backend)


async def maintenance_loop(engine: TurnEngine, stop_event: asyncio.Event,
                           interval: float = MAINTENANCE_INTERVAL) -> None:
    """Runs until stop_event is set."""
    while not stop_event.is_set():
        try:
            expired = await engine.run_maintenance()
            if expired:
                logger.info("[BRIDGE] maintenance expired %d permission request(s)", expired)
        except Exception:
            logger.exception("[BRIDGE] maintenance tick failed")
        await wait_or_stop(stop_event, interval)


@asynccontextmanager
async def lifespan(bridge: Bridge):
    stop_event = asyncio.Event()

    tasks = [asyncio.create_task(maintenance_loop(bridge.engine, stop_event), name="maintenance_loop")]
    if isinstance(bridge.backend, OpencodeClient):
        tasks.append(asyncio.create_task(pump_events(bridge.backend, bridge.engine, stop_event),
                                         name="event_pump"))

    try:
        yield bridge
    finally:
        # Cooperative shutdown
        stop_event.set()
        try:
            await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=2.0)
        except asyncio.TimeoutError:
            # the event stream only notices stop_event between events
            for t in tasks:
                if not t.done():
                    t.cancel()
            for t in tasks:
                with suppress(asyncio.CancelledError):
                    await t
        await bridge.engine.shutdown()
        if isinstance(bridge.backend, OpencodeClient):
            await bridge.backend.aclose()
