from typing import Dict, Optional, Set
from fastapi import WebSocket
import asyncio
import structlog

from codeagent.domain.models.conversation_state import utcnow
from .schema.events import BaseEvent, ConnectionEvent, ErrorEvent

logger = structlog.get_logger(__name__)


class ConnectionManager:
    """Manages WebSocket connections, one per conversation"""

    def __init__(self, stale_after_seconds: int = 300):
        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_metadata: Dict[str, Dict] = {}
        self.stale_after_seconds = stale_after_seconds
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, conversation_id: str):
        """Accept a new WebSocket connection"""
        await websocket.accept()

        async with self._lock:
            previous = self.active_connections.get(conversation_id)
            self.active_connections[conversation_id] = websocket
            self.connection_metadata[conversation_id] = {
                "connected_at": utcnow(),
                "last_activity": utcnow()
            }

        if previous is not None and previous is not websocket:
            try:
                await previous.close(code=1000, reason="Replaced by a new connection")
            except Exception as e:
                logger.warning("Error closing replaced WebSocket", conversation_id=conversation_id, error=str(e))

        # Send connection confirmation
        await self.send_event(
            conversation_id,
            ConnectionEvent(status="connected", conversation_id=conversation_id)
        )

        logger.info("WebSocket connected", conversation_id=conversation_id)

    async def disconnect(self, conversation_id: str, websocket: Optional[WebSocket] = None):
        """Disconnect a WebSocket connection"""
        async with self._lock:
            current = self.active_connections.get(conversation_id)
            if current is None or (websocket is not None and current is not websocket):
                return
            self.active_connections.pop(conversation_id)
            self.connection_metadata.pop(conversation_id, None)

        try:
            await current.close()
        except Exception as e:
            # Already closed by the peer
            logger.debug("Error closing WebSocket", conversation_id=conversation_id, error=str(e))

        logger.info("WebSocket disconnected", conversation_id=conversation_id)

    async def send_event(self, conversation_id: str, event: BaseEvent) -> bool:
        """Send an event to the conversation's socket"""
        websocket = self.active_connections.get(conversation_id)
        if websocket is None:
            logger.debug("No socket for conversation", conversation_id=conversation_id)
            return False

        try:
            await websocket.send_json(event.model_dump(mode="json"))

            if conversation_id in self.connection_metadata:
                self.connection_metadata[conversation_id]["last_activity"] = utcnow()

            return True

        except Exception as e:
            logger.error("Failed to send event", conversation_id=conversation_id, error=str(e))
            await self.disconnect(conversation_id, websocket)
            return False

    async def send_error(self, conversation_id: str, error_message: str, error_code: Optional[str] = None):
        """Send an error event to a conversation"""
        error_event = ErrorEvent(
            payload={"message": error_message},
            error_code=error_code,
            conversation_id=conversation_id
        )
        await self.send_event(conversation_id, error_event)

    def touch(self, conversation_id: str):
        if conversation_id in self.connection_metadata:
            self.connection_metadata[conversation_id]["last_activity"] = utcnow()

    def get_active_conversations(self) -> Set[str]:
        return set(self.active_connections.keys())

    async def disconnect_all(self):
        for conversation_id in list(self.active_connections):
            await self.disconnect(conversation_id)

    async def health_check(self, interval_seconds: float = 60):
        """Periodic health check to clean up stale connections"""
        while True:
            try:
                current_time = utcnow()
                stale = [
                    conversation_id
                    for conversation_id, metadata in list(self.connection_metadata.items())
                    if (current_time - metadata["last_activity"]).total_seconds() > self.stale_after_seconds
                ]

                for conversation_id in stale:
                    logger.warning("Disconnecting stale connection", conversation_id=conversation_id)
                    await self.disconnect(conversation_id)

            except Exception as e:
                logger.error("Health check error", error=str(e))

            await asyncio.sleep(interval_seconds)
