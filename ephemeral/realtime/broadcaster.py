"""Per-hub fan-out of change events to connected viewers."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Optional, Protocol

from ephemeral.realtime.contracts import HubEvent

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 100


class EventPublisher(Protocol):
    """What the lifecycle engine emits events through."""

    async def emit(self, event: HubEvent) -> None:
        ...


class Subscription:
    """One viewer's bounded event queue.

    When the queue is full the oldest pending event is dropped, so a viewer
    that stops reading costs at most `maxsize` events of memory and never
    blocks publishers.
    """

    def __init__(self, broadcaster: "HubBroadcaster", hub_id: str, maxsize: int) -> None:
        self.id = uuid.uuid4().hex
        self.hub_id = hub_id
        self.dropped = 0
        self.closed = False
        self._broadcaster = broadcaster
        # None is the close sentinel.
        self._queue: asyncio.Queue[Optional[HubEvent]] = asyncio.Queue(maxsize=maxsize)

    def _force_put(self, item: Optional[HubEvent]) -> None:
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except asyncio.QueueEmpty:
                    pass

    def offer(self, event: HubEvent) -> None:
        if self.closed:
            return
        self._force_put(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Optional[HubEvent]:
        """Next event, or None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broadcaster.unsubscribe(self)
        self._force_put(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> HubEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class HubBroadcaster:
    """In-process pub/sub keyed by hub id.

    Only runs on the event loop thread; publish never awaits, so events for a
    hub reach each subscriber in publish order.
    """

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        if queue_size < 1:
            raise ValueError("queue_size must be positive")
        self.queue_size = queue_size
        self._subscribers: Dict[str, Dict[str, Subscription]] = {}

    def subscribe(self, hub_id: str) -> Subscription:
        sub = Subscription(self, hub_id, self.queue_size)
        self._subscribers.setdefault(hub_id, {})[sub.id] = sub
        logger.debug("Subscribed %s to hub %s", sub.id, hub_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.hub_id)
        if not subs:
            return
        subs.pop(sub.id, None)
        if not subs:
            del self._subscribers[sub.hub_id]
        if not sub.closed:
            sub.close()

    def publish(self, hub_id: str, event: HubEvent) -> int:
        subs = list(self._subscribers.get(hub_id, {}).values())
        for sub in subs:
            sub.offer(event)
        return len(subs)

    def subscriber_count(self, hub_id: str) -> int:
        return len(self._subscribers.get(hub_id, {}))

    async def emit(self, event: HubEvent) -> None:
        self.publish(event.hub_id, event)

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        for subs in list(self._subscribers.values()):
            for sub in list(subs.values()):
                sub.close()
