import time
from typing import Any

from connections import ConnectionManager
from directory import SessionDirectory
from errors import RoutingError
from logging_config import get_logger
from schemas.messages import SignalDelivery

logger = get_logger(__name__)


class SignalRelay:
    """Forwards negotiation payloads between room-mates.

    Only reads the directory. The payload body is passed through untouched.
    """

    def __init__(self, directory: SessionDirectory, connections: ConnectionManager):
        self.directory = directory
        self.connections = connections

    async def forward(self, sender_id: str, recipient_id: str, kind: str, body: Any) -> SignalDelivery:
        if self.directory.get_participant(sender_id) is None:
            raise RoutingError("Sender is not in a room")
        if self.directory.get_participant(recipient_id) is None:
            raise RoutingError("Target user not found")
        room_id = self.directory.are_room_mates(sender_id, recipient_id)
        if room_id is None:
            raise RoutingError("Users not in same room")

        delivery = SignalDelivery(from_=sender_id, room_id=room_id, kind=kind, body=body, timestamp=time.time())
        await self.connections.send(recipient_id, delivery.dump())
        logger.debug(f"Signal {kind} from {sender_id} to {recipient_id} in room {room_id}")
        return delivery
