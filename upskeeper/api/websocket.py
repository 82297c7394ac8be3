"""
``/ws``: live bus events for the UI.

On connect the client receives ``hello`` with its id and the latest event of
every channel, then each bus event as it is published. Clients may send
``{"type": "ping"}`` (answered with ``pong``) or ``{"type": "snapshot"}``
(answered with the latest events again).
"""

import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from ..core.websocket_manager import WebSocketManager

logger = logging.getLogger(__name__)


async def websocket_endpoint(websocket: WebSocket) -> None:
    manager: WebSocketManager = websocket.app.state.websocket_manager
    client_id = await manager.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                message = None
            if not isinstance(message, dict):
                manager.send(client_id, {"type": "error", "data": {"message": "Expected a JSON object"}})
                continue
            await manager.handle_client_message(client_id, message)
    except WebSocketDisconnect:
        logger.debug("UI client %s closed the socket", client_id)
    finally:
        await manager.disconnect(client_id)
