import logging
from typing import Dict, Iterator

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from ..errors import ConfigurationError
from ..models import ChunkType, StreamChunk

logger = logging.getLogger(__name__)


class StreamManager:
    """Splits outbound text into chunks and delivers chunks to live session channels."""

    def __init__(self, chunk_size: int) -> None:
        if chunk_size <= 0:
            raise ConfigurationError(f"stream chunk size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self._connections: Dict[str, WebSocket] = {}

    def add_connection(self, session_id: str, websocket: WebSocket) -> None:
        """Register the live channel for a session. The latest connection wins."""
        self._connections[session_id] = websocket
        logger.info("Connection registered session_id=%s", session_id)

    def remove_connection(self, session_id: str, websocket: WebSocket | None = None) -> None:
        """Forget a session's channel; a stale websocket does not remove a newer one."""
        current = self._connections.get(session_id)
        if current is None or (websocket is not None and current is not websocket):
            return
        del self._connections[session_id]
        logger.info("Connection closed session_id=%s", session_id)

    def has_connection(self, session_id: str) -> bool:
        return session_id in self._connections

    def create_stream(self, content: str) -> Iterator[StreamChunk]:
        """Yield ``content`` as consecutive content chunks of at most chunk_size characters."""
        for start in range(0, len(content), self.chunk_size):
            yield StreamChunk(
                type=ChunkType.CONTENT,
                content=content[start : start + self.chunk_size],
            )

    async def send_chunk(self, session_id: str, chunk: StreamChunk) -> bool:
        """Send a chunk to the session's channel.

        Chunks for sessions without an open channel are dropped: there is no
        queueing, retry or backpressure.

        Returns:
            bool: True if the chunk was written to the channel.
        """
        websocket = self._connections.get(session_id)
        if websocket is None or websocket.client_state != WebSocketState.CONNECTED:
            logger.debug("Dropping %s chunk for session_id=%s (no open channel)", chunk.type, session_id)
            return False
        try:
            await websocket.send_json(chunk.to_dict())
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.error("WebSocket send failed session_id=%s: %s", session_id, e)
            self.remove_connection(session_id, websocket)
            return False
        return True
