"""Queue event feed - transport-agnostic publish/subscribe"""

from __future__ import annotations

import time
from collections import defaultdict
from typing import Any, Awaitable, Callable, Protocol

from loguru import logger


QUEUE_EVENTS_TOPIC = "queue:update"

# Event types published by the queue store
USER_JOINED = "user_joined"
USER_LEFT = "user_left"
MATCH_FOUND = "match_found"
QUEUE_REBALANCED = "queue_rebalanced"

EventHandler = Callable[[str, dict], Awaitable[None]]


class RealtimeTransport(Protocol):
    """Shared event feed; a broker-backed implementation lets several processes observe one stream"""

    async def publish(self, topic: str, payload: dict) -> None: ...

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]: ...


class UserChannel(Protocol):
    """Per-user addressable channel (a FastAPI WebSocket satisfies this)"""

    async def send_json(self, data: Any) -> None: ...


def make_event(event_type: str, data: dict) -> dict:
    return {
        "type": event_type,
        "timestamp": time.time(),
        "data": data,
    }


class InMemoryTransport:
    """In-process pub/sub; handlers run in subscription order"""

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[topic].append(handler)
        logger.debug(f"Subscribed {getattr(handler, '__name__', handler)} to {topic}")

        def unsubscribe() -> None:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return unsubscribe

    async def publish(self, topic: str, payload: dict) -> None:
        for handler in list(self._handlers.get(topic, [])):
            try:
                await handler(topic, payload)
            except Exception as e:
                logger.error(f"Event handler failed on {topic} ({payload.get('type')}): {e}")

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))
