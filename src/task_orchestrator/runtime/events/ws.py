"""Websocket pub/sub hub for streaming execution state changes to clients."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


CHANNELS = {
    "tasks",
    "sessions",
    "system",
}


@dataclass
class _WsClient:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    task_ids: set[str] = field(default_factory=set)


class WebSocketHub:
    """Track websocket subscribers and route channel-scoped notifications."""
    def __init__(self) -> None:
        self._clients: dict[int, _WsClient] = {}
        self._counter = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the event loop used for cross-thread publish scheduling."""
        with self._lock:
            self._loop = loop

    async def _reply(self, websocket: WebSocket, event_type: str, client: _WsClient) -> None:
        await websocket.send_text(
            json.dumps(
                {
                    "channel": "system",
                    "type": event_type,
                    "payload": {"channels": sorted(client.channels), "task_ids": sorted(client.task_ids)},
                }
            )
        )

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client connection and process subscribe/unsubscribe traffic."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        client = _WsClient(ws=websocket)
        cid = id(websocket)
        self._clients[cid] = client
        try:
            await websocket.send_text(json.dumps({"channel": "system", "type": "connected", "payload": {"channels": sorted(CHANNELS)}}))
            while True:
                raw = await websocket.receive_text()
                message = json.loads(raw)
                action = message.get("action")
                channels = set(message.get("channels", []))
                task_ids = {str(task_id).strip() for task_id in message.get("task_ids", []) if str(task_id).strip()}
                single_task_id = str(message.get("task_id") or "").strip()
                if single_task_id:
                    task_ids.add(single_task_id)
                if action == "subscribe":
                    client.channels |= channels & CHANNELS
                    client.task_ids |= task_ids
                    await self._reply(websocket, "subscribed", client)
                elif action == "unsubscribe":
                    client.channels -= channels
                    client.task_ids -= task_ids
                    await self._reply(websocket, "unsubscribed", client)
                elif action == "ping":
                    await websocket.send_text(json.dumps({"channel": "system", "type": "pong", "payload": {}}))
        except Exception:
            logger.debug("WebSocket client loop terminated with exception", exc_info=True)
        finally:
            self._clients.pop(cid, None)

    async def publish(self, event: dict[str, Any]) -> None:
        """Send one notification to all subscribers matching channel and task filters."""
        self._counter += 1
        payload = json.dumps({**event, "seq": self._counter}, default=str)
        stale: list[int] = []
        for cid, client in list(self._clients.items()):
            if event.get("channel") not in client.channels and event.get("channel") != "system":
                continue
            if event.get("channel") != "system" and client.task_ids:
                if str(event.get("task_id") or "") not in client.task_ids:
                    continue
            try:
                await client.ws.send_text(payload)
            except Exception:
                stale.append(cid)
        for cid in stale:
            self._clients.pop(cid, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Schedule async publish from sync code paths without blocking callers."""
        if not self._clients:
            return
        with self._lock:
            loop = self._loop
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            running.create_task(self.publish(event))
            return
        if loop and loop.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), loop)
            return
        logger.debug("No running event loop available for publish_sync")


hub = WebSocketHub()
