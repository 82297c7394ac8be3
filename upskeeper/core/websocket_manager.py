"""
Pushes event bus traffic to connected UI clients over WebSocket.

Every bus event goes out as ``{"type": channel, "timestamp", "data"}``. The
manager also remembers the last event of each channel, so a UI that connects
late starts from the current connection state, static data, telemetry and
alert instead of waiting for the next poll.

Each client has its own bounded send queue drained by a sender task, so
``broadcast`` never waits on a socket. A client whose queue overflows or
whose send stalls past ``send_timeout`` is dropped.
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_SEND_TIMEOUT = 5.0


class PushMessage(BaseModel):
    type: str
    timestamp: str
    data: Any = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _message(message_type: str, data: Any = None) -> Dict[str, Any]:
    return PushMessage(type=message_type, timestamp=_now(), data=data).model_dump(mode="json")


class _Client:
    def __init__(self, client_id: str, websocket: WebSocket, queue_size: int):
        self.client_id = client_id
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.sender: Optional[asyncio.Task] = None


class WebSocketManager:
    """
    Tracks UI clients and fans bus events out to them.

    A keepalive task pings clients every ``keepalive_seconds`` while at least
    one is connected.
    """

    def __init__(
        self,
        keepalive_seconds: float = 30.0,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ):
        self._clients: Dict[str, _Client] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._keepalive_seconds = keepalive_seconds
        self._keepalive_task: Optional[asyncio.Task] = None
        self._queue_size = queue_size
        self._send_timeout = send_timeout
        self._closing: Set[asyncio.Task] = set()

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def latest(self) -> Dict[str, Dict[str, Any]]:
        """Last pushed message per channel."""
        return dict(self._latest)

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket and queue the hello message with the latest events."""
        await websocket.accept()
        client = _Client(str(uuid.uuid4()), websocket, self._queue_size)
        self._clients[client.client_id] = client
        client.sender = asyncio.create_task(self._drain(client))
        logger.info("UI client %s connected (%d connected)", client.client_id, len(self._clients))

        self.send(client.client_id, _message("hello", {"clientId": client.client_id, "latest": self.latest()}))
        if self._keepalive_task is None:
            self._keepalive_task = asyncio.create_task(self._keepalive())
        return client.client_id

    async def disconnect(self, client_id: str) -> None:
        self._forget(client_id)

    def _forget(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        logger.info("UI client %s disconnected", client_id)
        if client.sender is not None and client.sender is not asyncio.current_task():
            client.sender.cancel()
        if not self._clients and self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def broadcast(self, channel: str, data: Any) -> None:
        """Queue one bus event for every client and remember it as the channel's latest."""
        message = _message(channel, data)
        self._latest[channel] = message
        for client_id in list(self._clients):
            self.send(client_id, message)

    def send(self, client_id: str, message: Dict[str, Any]) -> None:
        """Queue a message for one client; a full queue drops the client."""
        client = self._clients.get(client_id)
        if client is None:
            return
        try:
            client.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("UI client %s is not reading; dropping it", client_id)
            self._forget(client_id)
            task = asyncio.create_task(self._close(client))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def handle_client_message(self, client_id: str, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        if message_type == "ping":
            self.send(client_id, _message("pong"))
        elif message_type == "snapshot":
            self.send(client_id, _message("snapshot", {"latest": self.latest()}))
        else:
            logger.warning("Ignoring message type %r from UI client %s", message_type, client_id)
            self.send(client_id, _message("error", {"message": f"Unknown message type: {message_type}"}))

    async def close_all(self) -> None:
        for client_id, client in list(self._clients.items()):
            await self.disconnect(client_id)
            await self._close(client)

    async def _drain(self, client: _Client) -> None:
        while True:
            message = await client.queue.get()
            try:
                await asyncio.wait_for(
                    client.websocket.send_text(json.dumps(message, separators=(",", ":"))),
                    timeout=self._send_timeout,
                )
            except WebSocketDisconnect:
                break
            except asyncio.TimeoutError:
                logger.warning("Send to UI client %s timed out; dropping it", client.client_id)
                break
            except Exception as e:
                logger.error("Dropping UI client %s after send failure: %s", client.client_id, e)
                break
        self._forget(client.client_id)
        await self._close(client)

    async def _close(self, client: _Client) -> None:
        try:
            await client.websocket.close()
        except (RuntimeError, WebSocketDisconnect) as e:
            logger.debug("UI client %s was already closed: %s", client.client_id, e)

    async def _keepalive(self) -> None:
        while self._clients:
            await asyncio.sleep(self._keepalive_seconds)
            message = _message("ping")
            for client_id in list(self._clients):
                self.send(client_id, message)
