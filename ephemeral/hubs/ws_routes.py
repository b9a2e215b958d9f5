"""Live hub viewer socket.

One connection runs three loops in a task group: a pump draining the viewer's
subscription, a reader for client frames, and a heartbeat that pings the peer
and closes the socket once the hub has expired. Whichever finishes first
cancels the group; the subscription is always released on the way out.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from starlette.websockets import WebSocketState

from ephemeral.common.errors import HubError, HubNotFound, StoreUnavailable
from ephemeral.hubs.models import PathData
from ephemeral.hubs.service import HubService
from ephemeral.realtime.broadcaster import Subscription
from ephemeral.realtime.contracts import HubEventType

router = APIRouter()
logger = logging.getLogger(__name__)

CLOSE_HUB_GONE = 4404
CLOSE_GOING_AWAY = 1001
CLOSE_STORE_ERROR = 1011


class _Connection:
    def __init__(self, websocket: WebSocket, hub_id: str, service: HubService, sub: Subscription) -> None:
        self.websocket = websocket
        self.hub_id = hub_id
        self.service = service
        self.sub = sub
        self._send_lock = asyncio.Lock()

    async def send(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(payload, default=str))

    async def close(self, code: int, reason: str = "") -> None:
        async with self._send_lock:
            if self.websocket.client_state == WebSocketState.CONNECTED:
                await self.websocket.close(code=code, reason=reason)

    async def pump(self) -> None:
        async for event in self.sub:
            await self.send(event.wire())
        # Subscription closed underneath us (shutdown).
        await self.close(CLOSE_GOING_AWAY, "server shutting down")

    async def reader(self) -> None:
        while True:
            message = await self.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            text = message.get("text")
            if text is None:
                # Binary frames carry nothing this protocol understands.
                await self.send({"type": "error", "payload": {"code": "ws.invalid_message"}})
                continue
            await self._handle(text)

    async def _handle(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self.send({"type": "error", "payload": {"code": "ws.invalid_json"}})
            return
        if not isinstance(message, dict):
            await self.send({"type": "error", "payload": {"code": "ws.invalid_message"}})
            return

        msg_type = message.get("type")
        if msg_type == "ping":
            await self.send({"type": "pong"})
        elif msg_type == "pong":
            pass
        elif msg_type == HubEventType.PATH_COMPLETED.value:
            try:
                path = PathData.model_validate(message.get("payload") or {})
            except ValidationError:
                await self.send({"type": "error", "payload": {"code": "ws.invalid_path"}})
                return
            try:
                await self.service.add_path(self.hub_id, path)
            except HubNotFound:
                await self.close(CLOSE_HUB_GONE, "hub not found")
            except HubError as exc:
                await self.send({"type": "error", "payload": {"code": exc.code}})
        else:
            await self.send({"type": "error", "payload": {"code": "ws.unknown_type"}})

    async def heartbeat(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                alive = await self.service.hub_alive(self.hub_id)
            except StoreUnavailable:
                # Cannot tell; keep the viewer until the store answers again.
                alive = True
            if not alive:
                logger.info("Hub %s expired; closing viewer socket", self.hub_id)
                await self.close(CLOSE_HUB_GONE, "hub expired")
                return
            await self.send({"type": "ping"})

    async def run_until_done(self, scope: anyio.CancelScope, loop: Callable[..., Awaitable[None]], *args) -> None:
        """Run one loop, then cancel its siblings however it ended."""
        try:
            await loop(*args)
        except (WebSocketDisconnect, RuntimeError):
            # Peer went away mid-send.
            pass
        except Exception as exc:
            logger.warning("Viewer socket for hub %s failed: %s", self.hub_id, exc.__class__.__name__)
        finally:
            scope.cancel()


@router.websocket("/ws/hubs/{hub_id}")
async def hub_socket(websocket: WebSocket, hub_id: str):
    service: HubService = websocket.app.state.hub_service
    events = websocket.app.state.hub_events
    await websocket.accept()

    # Subscribe before the existence check so no event between the two is lost.
    sub = events.subscribe(hub_id)
    conn = _Connection(websocket, hub_id, service, sub)
    try:
        try:
            alive = await service.hub_alive(hub_id)
        except StoreUnavailable:
            await conn.close(CLOSE_STORE_ERROR, "store unavailable")
            return
        if not alive:
            await conn.close(CLOSE_HUB_GONE, "hub not found")
            return

        logger.info("Viewer %s joined hub %s", sub.id, hub_id)
        async with anyio.create_task_group() as tg:
            tg.start_soon(conn.run_until_done, tg.cancel_scope, conn.pump)
            tg.start_soon(conn.run_until_done, tg.cancel_scope, conn.reader)
            tg.start_soon(
                conn.run_until_done, tg.cancel_scope, conn.heartbeat, service.settings.ws_heartbeat_seconds
            )
    finally:
        sub.close()
        logger.info("Viewer %s left hub %s (dropped=%d)", sub.id, hub_id, sub.dropped)
