"""Cross-instance event relay over Redis pub/sub.

Each instance publishes hub events to `hub:{id}:events` and runs one listener
that pattern-subscribes to every hub channel and feeds its local
HubBroadcaster. Viewers connected to any instance therefore see events
produced on any other, in the order Redis executed the PUBLISH commands.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ephemeral.realtime.broadcaster import HubBroadcaster, Subscription
from ephemeral.realtime.contracts import HubEvent

logger = logging.getLogger(__name__)

CHANNEL_PATTERN = "hub:*:events"


def channel_for(hub_id: str) -> str:
    return f"hub:{hub_id}:events"


class RedisEventRelay:
    def __init__(
        self,
        client: aioredis.Redis,
        broadcaster: HubBroadcaster,
        reconnect_delay: float = 1.0,
    ) -> None:
        self._redis = client
        self.broadcaster = broadcaster
        self._reconnect_delay = reconnect_delay
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, hub_id: str) -> Subscription:
        return self.broadcaster.subscribe(hub_id)

    async def emit(self, event: HubEvent) -> None:
        try:
            await self._redis.publish(channel_for(event.hub_id), event.model_dump_json())
        except RedisError as exc:
            # The write already committed; viewers catch up on their next GET.
            logger.warning("Event relay publish failed for hub %s: %s", event.hub_id, exc.__class__.__name__)

    def dispatch(self, raw: str) -> None:
        try:
            event = HubEvent.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping malformed relay message")
            return
        self.broadcaster.publish(event.hub_id, event)

    async def _listen_once(self) -> None:
        pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
        try:
            await pubsub.psubscribe(CHANNEL_PATTERN)
            async for message in pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                self.dispatch(message["data"])
        finally:
            await pubsub.aclose()

    async def _run(self) -> None:
        while True:
            try:
                await self._listen_once()
            except asyncio.CancelledError:
                raise
            except RedisError as exc:
                logger.warning("Event relay listener lost Redis: %s; retrying", exc.__class__.__name__)
                await asyncio.sleep(self._reconnect_delay)

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.broadcaster.stop()
