"""Connection handles for the signaling websocket."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


@dataclass(eq=False)
class ConnectionHandle:
    """One open signaling socket of a user; hashed by identity."""

    user_id: str
    websocket: Any
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    conversations: set[str] = field(default_factory=set)

    async def send(self, frame: dict[str, Any]) -> bool:
        return await safe_send_json(self.websocket, frame)

