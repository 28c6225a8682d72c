"""Queue notifier - fan queue events out to connected users"""

import asyncio
from typing import Callable, Dict, Optional

from loguru import logger

from src.matching.events import (
    MATCH_FOUND,
    QUEUE_EVENTS_TOPIC,
    QUEUE_REBALANCED,
    USER_JOINED,
    USER_LEFT,
    RealtimeTransport,
    UserChannel,
    make_event,
)
from src.matching.priority_queue_store import PriorityQueueStore


class QueueNotifier:
    """
    Manages per-user channels and turns store events into client messages

    Holds no authoritative state: positions and stats are always read from
    the store.
    """

    def __init__(self,
                 store: PriorityQueueStore,
                 transport: RealtimeTransport,
                 position_update_interval_seconds: float = 30.0,
                 stats_broadcast_interval_seconds: float = 60.0):
        self.store = store
        self.transport = transport
        self.position_update_interval_seconds = position_update_interval_seconds
        self.stats_broadcast_interval_seconds = stats_broadcast_interval_seconds

        # user_id -> channel
        self.active_connections: Dict[str, UserChannel] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def bind(self, user_id: str, channel: UserChannel) -> None:
        """Register a user's channel (replaces any earlier one)"""
        self.active_connections[user_id] = channel
        logger.info(f"Queue channel bound: user_id={user_id}")

    def unbind(self, user_id: str, channel: Optional[UserChannel] = None) -> None:
        """Drop a user's channel; with `channel` given, only if it is still the bound one"""
        current = self.active_connections.get(user_id)
        if current is None or (channel is not None and current is not channel):
            return
        del self.active_connections[user_id]
        logger.info(f"Queue channel unbound: user_id={user_id}")

    def is_connected(self, user_id: str) -> bool:
        return user_id in self.active_connections

    @property
    def connected_count(self) -> int:
        return len(self.active_connections)

    async def notify_user(self, user_id: str, message: dict) -> bool:
        """Send a message to one user; a failing channel is unbound"""
        channel = self.active_connections.get(user_id)
        if channel is None:
            return False
        try:
            await channel.send_json(message)
            return True
        except Exception as e:
            logger.error(f"Error sending {message.get('type')} to user {user_id}: {e}")
            self.unbind(user_id, channel)
            return False

    async def broadcast(self, message: dict) -> int:
        """Send a message to every bound user; returns the number delivered"""
        delivered = 0
        for user_id in list(self.active_connections):
            if await self.notify_user(user_id, message):
                delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._unsubscribe is not None

    def start(self) -> None:
        """Subscribe to the queue feed and start the periodic loops"""
        if self.is_running:
            return
        self._unsubscribe = self.transport.subscribe(QUEUE_EVENTS_TOPIC, self.handle_event)
        self._tasks = [
            asyncio.create_task(self._every(self.position_update_interval_seconds, self.send_position_updates)),
            asyncio.create_task(self._every(self.stats_broadcast_interval_seconds, self.broadcast_stats)),
        ]
        logger.info("Queue notifier started")

    async def stop(self) -> None:
        if not self.is_running:
            return
        self._unsubscribe()
        self._unsubscribe = None
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Queue notifier stopped")

    async def _every(self, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception as e:
                logger.error(f"Periodic notifier job {job.__name__} failed: {e}")

    # ------------------------------------------------------------------
    # Event mapping
    # ------------------------------------------------------------------

    async def handle_event(self, topic: str, event: dict) -> None:
        event_type = event.get("type")
        data = event.get("data", {})

        if event_type == USER_JOINED:
            user_id = data["user_id"]
            await self.notify_user(user_id, make_event("queue_joined", data))
            await self.send_position_update(user_id)
            await self.broadcast_stats()

        elif event_type == USER_LEFT:
            await self.notify_user(data["user_id"], make_event("queue_left", data))
            await self.broadcast_stats()

        elif event_type == MATCH_FOUND:
            for user_id, partner_id in (
                (data["user_id_a"], data["user_id_b"]),
                (data["user_id_b"], data["user_id_a"]),
            ):
                await self.notify_user(user_id, make_event("match_found", {
                    "partner_id": partner_id,
                    "session_id": data["session_id"],
                    "compatibility_score": data["compatibility_score"],
                    "session_type": data.get("session_type"),
                }))
            await self.broadcast_stats()

        elif event_type == QUEUE_REBALANCED:
            await self.broadcast(make_event("queue_rebalanced", data))

        else:
            logger.debug(f"Ignoring unknown queue event on {topic}: {event_type}")

    async def send_position_update(self, user_id: str) -> bool:
        status = await self.store.get_status(user_id)
        if status is None:
            return False
        return await self.notify_user(
            user_id, make_event("queue_position_update", status.model_dump(mode="json"))
        )

    async def send_position_updates(self) -> int:
        """Position update for every bound user who is still queued"""
        sent = 0
        for user_id in list(self.active_connections):
            if await self.send_position_update(user_id):
                sent += 1
        return sent

    async def broadcast_stats(self) -> int:
        if not self.active_connections:
            return 0
        stats = await self.store.get_stats()
        return await self.broadcast(make_event("queue_stats_update", stats.model_dump(mode="json")))
