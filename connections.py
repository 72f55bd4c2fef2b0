import asyncio
import json
from typing import Dict, Iterable, Optional

from fastapi import WebSocket

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """Tracks the live WebSocket of every connected participant on this instance.

    Format: {participant_id: websocket}. Room membership lives in the session
    directory; this only knows how to reach a participant.
    """

    def __init__(self):
        self._connections: Dict[str, WebSocket] = {}

    def register(self, participant_id: str, websocket: WebSocket):
        self._connections[participant_id] = websocket
        logger.debug(f"Registered connection {participant_id} (local connections: {len(self._connections)})")

    def unregister(self, participant_id: str):
        if self._connections.pop(participant_id, None) is not None:
            logger.debug(f"Removed connection {participant_id} from local tracking")

    def get(self, participant_id: str) -> Optional[WebSocket]:
        return self._connections.get(participant_id)

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    async def send(self, participant_id: str, message: dict) -> bool:
        websocket = self._connections.get(participant_id)
        if websocket is None:
            logger.debug(f"Dropping {message.get('type', 'unknown')} for {participant_id}: not connected")
            return False
        try:
            await websocket.send_text(json.dumps(message))
            return True
        except Exception as e:
            # Connection might be closed, its own receive loop cleans up
            logger.warning(f"Error sending to connection {participant_id}: {e}")
            return False

    async def broadcast(self, participant_ids: Iterable[str], message: dict, exclude: Optional[str] = None):
        targets = [pid for pid in participant_ids if pid != exclude]
        if not targets:
            return
        await asyncio.gather(*(self.send(pid, message) for pid in targets))
        logger.debug(f"Broadcasted {message.get('type', 'unknown')} to {len(targets)} connections")

    async def close(self, participant_id: str, code: int = 1000, reason: str = ""):
        websocket = self._connections.get(participant_id)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket {participant_id}: {e}")
