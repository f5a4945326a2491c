"""Realtime fan-out hub over websockets."""

import asyncio
import logging
from collections import defaultdict

from fastapi import APIRouter, WebSocket
from starlette.websockets import WebSocketDisconnect

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ws"])


class WebSocketHub:
    def __init__(self) -> None:
        self._channel_connections: dict[str, set[WebSocket]] = defaultdict(set)
        self._socket_channels: dict[WebSocket, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def subscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channel_connections[channel].add(websocket)
            self._socket_channels[websocket].add(channel)

    async def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            self._channel_connections[channel].discard(websocket)
            if not self._channel_connections[channel]:
                self._channel_connections.pop(channel, None)
            self._socket_channels[websocket].discard(channel)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            for channel in list(self._socket_channels.get(websocket, set())):
                self._channel_connections[channel].discard(websocket)
                if not self._channel_connections[channel]:
                    self._channel_connections.pop(channel, None)
            self._socket_channels.pop(websocket, None)

    async def broadcast(self, channel: str, payload: dict[str, object]) -> None:
        async with self._lock:
            sockets = list(self._channel_connections.get(channel, set()))
        stale: list[WebSocket] = []
        for socket in sockets:
            try:
                await socket.send_json({"channel": channel, **payload})
            except Exception:
                stale.append(socket)
        for socket in stale:
            await self.disconnect(socket)


hub = WebSocketHub()
_pending: set[asyncio.Task[None]] = set()


def notify(channel: str, payload: dict[str, object]) -> None:
    """Schedule a broadcast without waiting for delivery."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.debug("No running loop; realtime event on %s not delivered", channel)
        return
    task = loop.create_task(hub.broadcast(channel, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    await websocket.accept()
    try:
        while True:
            data = await websocket.receive_json()
            action = str(data.get("action", ""))
            channel = str(data.get("channel", "")).strip()
            if action == "subscribe" and channel:
                await hub.subscribe(websocket, channel)
                await websocket.send_json({"type": "subscribed", "channel": channel})
            elif action == "unsubscribe" and channel:
                await hub.unsubscribe(websocket, channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})
            else:
                await websocket.send_json({"type": "error", "detail": "unknown action"})
    except WebSocketDisconnect:
        await hub.disconnect(websocket)
    except Exception:
        logger.exception("Realtime socket closed with error")
        await hub.disconnect(websocket)
