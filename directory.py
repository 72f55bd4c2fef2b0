import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterator, List, Optional

from constants import DEFAULT_ROOM_CAPACITY
from errors import InvariantViolation
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Room:
    id: str
    host_id: Optional[str]
    created_at: float
    capacity: int = DEFAULT_ROOM_CAPACITY
    # join order, earliest first
    members: List[str] = field(default_factory=list)
    last_activity: float = 0.0
    empty_since: Optional[float] = None

    @property
    def member_count(self) -> int:
        return len(self.members)

    @property
    def is_full(self) -> bool:
        return len(self.members) >= self.capacity

    @property
    def is_empty(self) -> bool:
        return not self.members


@dataclass
class Participant:
    id: str
    nickname: str
    room_id: str
    joined_at: float


class _RoomLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class SessionDirectory:
    """Authoritative in-memory store of rooms and participants.

    Rooms and participants only reference each other by id. Every mutator checks
    the room invariants before touching state and raises InvariantViolation
    without side effects when a change would break them. Callers serialize
    mutations of one room with ``async with directory.lock(room_id)``.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._rooms: Dict[str, Room] = {}
        self._participants: Dict[str, Participant] = {}
        self._locks: Dict[str, _RoomLock] = {}

    @asynccontextmanager
    async def lock(self, room_id: str):
        entry = self._locks.get(room_id)
        if entry is None:
            entry = self._locks[room_id] = _RoomLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(room_id) is entry:
                del self._locks[room_id]

    def is_locked(self, room_id: str) -> bool:
        entry = self._locks.get(room_id)
        return entry is not None and entry.lock.locked()

    # Reads

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        return self._participants.get(participant_id)

    def rooms(self) -> Iterator[Room]:
        return iter(list(self._rooms.values()))

    def members_of(self, room_id: str) -> List[Participant]:
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return [self._participants[pid] for pid in room.members]

    def nicknames_in(self, room_id: str) -> set:
        return {p.nickname.lower() for p in self.members_of(room_id)}

    def are_room_mates(self, first_id: str, second_id: str) -> Optional[str]:
        """Return the shared room id when both participants are in the same room."""
        first = self._participants.get(first_id)
        second = self._participants.get(second_id)
        if first is None or second is None or first_id == second_id:
            return None
        if first.room_id != second.room_id:
            return None
        return first.room_id

    def counts(self) -> dict:
        active = [room for room in self._rooms.values() if room.members]
        return {
            "rooms_total": len(self._rooms),
            "rooms_active": len(active),
            "rooms_empty": len(self._rooms) - len(active),
            "participants": len(self._participants),
            "largest_room": max((room.member_count for room in active), default=0),
        }

    # Mutations

    def create_room(self, room_id: str, host_id: str, capacity: int = DEFAULT_ROOM_CAPACITY) -> Room:
        """Create an empty room that will be hosted by ``host_id`` once it joins."""
        if room_id in self._rooms:
            raise InvariantViolation(f"Room {room_id} already exists")
        if capacity < 1:
            raise InvariantViolation(f"Room capacity must be positive, got {capacity}")
        now = self.clock()
        room = Room(id=room_id, host_id=host_id, created_at=now, capacity=capacity, last_activity=now, empty_since=now)
        self._rooms[room_id] = room
        logger.info(f"Created room {room_id} with host {host_id} (capacity {capacity})")
        return room

    def add_member(self, room_id: str, participant_id: str, nickname: str) -> Participant:
        room = self._require_room(room_id)
        if participant_id in self._participants:
            raise InvariantViolation(f"Participant {participant_id} already belongs to a room")
        if room.is_full:
            raise InvariantViolation(f"Room {room_id} is at capacity ({room.capacity})")
        if nickname.lower() in self.nicknames_in(room_id):
            raise InvariantViolation(f"Nickname {nickname!r} already used in room {room_id}")
        if room.host_id is None and room.members:
            raise InvariantViolation(f"Room {room_id} has members but no host")
        if room.is_empty and room.host_id not in (None, participant_id):
            raise InvariantViolation(f"First member of room {room_id} must be its host")

        now = self.clock()
        participant = Participant(id=participant_id, nickname=nickname, room_id=room_id, joined_at=now)
        self._participants[participant_id] = participant
        room.members.append(participant_id)
        if room.host_id is None:
            room.host_id = participant_id
        room.empty_since = None
        room.last_activity = now
        logger.debug(f"Added {participant_id} to room {room_id} ({room.member_count}/{room.capacity})")
        return participant

    def remove_member(self, participant_id: str) -> Optional[Participant]:
        """Remove a participant from the directory and from its room.

        If the participant was the host, the earliest-joined remaining member
        becomes host in the same step. An emptied room is kept (host cleared)
        until ``delete_room_if_empty`` is called.
        """
        participant = self._participants.get(participant_id)
        if participant is None:
            return None
        room = self._rooms.get(participant.room_id)
        del self._participants[participant_id]
        if room is None:
            return participant

        room.members.remove(participant_id)
        now = self.clock()
        room.last_activity = now
        if room.host_id == participant_id:
            room.host_id = room.members[0] if room.members else None
        if not room.members:
            room.empty_since = now
        logger.debug(f"Removed {participant_id} from room {room.id} ({room.member_count} left)")
        return participant

    def set_host(self, room_id: str, host_id: str) -> Room:
        room = self._require_room(room_id)
        if host_id not in room.members:
            raise InvariantViolation(f"Host {host_id} is not a member of room {room_id}")
        room.host_id = host_id
        room.last_activity = self.clock()
        return room

    def delete_room_if_empty(self, room_id: str) -> bool:
        room = self._rooms.get(room_id)
        if room is None or room.members:
            return False
        del self._rooms[room_id]
        logger.info(f"Deleted empty room: {room_id}")
        return True

    def touch(self, room_id: str) -> None:
        room = self._rooms.get(room_id)
        if room is not None:
            room.last_activity = self.clock()

    def _require_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            raise InvariantViolation(f"Room {room_id} does not exist")
        return room
