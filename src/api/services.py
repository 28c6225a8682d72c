"""Service wiring - build every queue/matching service once per process"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from src.api.queue_notifier import QueueNotifier
from src.config import MatchingConfig, Settings
from src.data.stores import InMemoryProfileStore, InMemorySessionStore
from src.matching.events import InMemoryTransport, RealtimeTransport
from src.matching.matching_engine import MatchingEngine
from src.matching.priority_queue_store import Clock, PriorityQueueStore
from src.matching.queue_cleanup import QueueCleanupService


@dataclass
class ServiceContainer:
    """Everything the HTTP and WebSocket layers need, passed by reference"""
    config: MatchingConfig
    store: PriorityQueueStore
    engine: MatchingEngine
    cleanup: QueueCleanupService
    notifier: QueueNotifier
    transport: RealtimeTransport
    profile_store: InMemoryProfileStore
    session_store: InMemorySessionStore

    async def start(self) -> None:
        self.notifier.start()
        self.cleanup.start()

    async def stop(self) -> None:
        await self.cleanup.stop()
        await self.notifier.stop()


def build_services(settings: Settings,
                   profile_store: Optional[InMemoryProfileStore] = None,
                   session_store: Optional[InMemorySessionStore] = None,
                   transport: Optional[RealtimeTransport] = None,
                   clock: Optional[Clock] = None) -> ServiceContainer:
    """
    Construct the service graph from settings

    Args:
        settings: Application settings (invalid matching config raises here)
        profile_store: Profile source (defaults to in-memory, seeded from
            settings.profiles_path when set)
        session_store: Session and history store (defaults to in-memory)
        transport: Event feed (defaults to in-process)
        clock: Queue clock override for tests

    Returns:
        ServiceContainer
    """
    config = settings.matching_config()

    if profile_store is None:
        if settings.profiles_path is not None and settings.profiles_path.exists():
            profile_store = InMemoryProfileStore.from_file(settings.profiles_path)
        else:
            if settings.profiles_path is not None:
                logger.warning(f"Profiles file not found: {settings.profiles_path}")
            profile_store = InMemoryProfileStore()
    session_store = session_store or InMemorySessionStore()
    transport = transport or InMemoryTransport()

    store = PriorityQueueStore(config=config, transport=transport, clock=clock)
    engine = MatchingEngine(
        store=store,
        profile_store=profile_store,
        session_store=session_store,
        history_store=session_store,
        config=config,
    )
    cleanup = QueueCleanupService(
        store,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
        rebalance_interval_seconds=settings.rebalance_interval_seconds,
    )
    notifier = QueueNotifier(
        store,
        transport,
        position_update_interval_seconds=settings.position_update_interval_seconds,
        stats_broadcast_interval_seconds=settings.stats_broadcast_interval_seconds,
    )

    logger.info(f"Matching services ready ({len(profile_store)} profiles loaded)")
    return ServiceContainer(
        config=config,
        store=store,
        engine=engine,
        cleanup=cleanup,
        notifier=notifier,
        transport=transport,
        profile_store=profile_store,
        session_store=session_store,
    )
