import random
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from constants import (
    DEFAULT_ROOM_CAPACITY,
    EMPTY_ROOM_GRACE_SECONDS,
    NICKNAME_MAX_LENGTH,
    NICKNAME_MIN_LENGTH,
    RELAY_SERVERS,
    ROOM_ID_MAX_LENGTH,
    ROOM_IDLE_TIMEOUT_SECONDS,
)
from directory import Participant, Room, SessionDirectory
from errors import (
    AlreadyInRoomError,
    NicknameTakenError,
    RoomFullError,
    RoutingError,
    UnauthorizedError,
    ValidationError,
)
from logging_config import get_logger

logger = get_logger(__name__)

ROOM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
NICKNAME_PATTERN = re.compile(r"^[\w\s-]+$")


def validate_join_input(room_id_raw, nickname_raw) -> Tuple[str, str]:
    """Validate and normalize a join request, raising ValidationError with every violated rule."""
    errors = []

    if not room_id_raw or not isinstance(room_id_raw, str):
        errors.append("Room ID is required")
    else:
        room_id = room_id_raw.strip()
        if len(room_id) > ROOM_ID_MAX_LENGTH:
            errors.append(f"Room ID too long (max {ROOM_ID_MAX_LENGTH} characters)")
        elif not ROOM_ID_PATTERN.match(room_id):
            errors.append("Room ID contains invalid characters (only letters, numbers, hyphens, underscores allowed)")

    if not nickname_raw or not isinstance(nickname_raw, str):
        errors.append("Nickname is required")
    else:
        nickname = " ".join(nickname_raw.split())
        if len(nickname) < NICKNAME_MIN_LENGTH:
            errors.append(f"Nickname too short (min {NICKNAME_MIN_LENGTH} characters)")
        elif len(nickname) > NICKNAME_MAX_LENGTH:
            errors.append(f"Nickname too long (max {NICKNAME_MAX_LENGTH} characters)")
        elif not NICKNAME_PATTERN.match(nickname):
            errors.append("Nickname contains invalid characters")

    if errors:
        raise ValidationError(errors)
    return room_id.lower(), nickname


@dataclass
class JoinOutcome:
    participant: Participant
    room: Room
    existing_members: List[Participant]
    is_host: bool
    # room size right after this join, before any later join or leave
    member_count: int
    created_room: bool
    relay_servers: list


@dataclass
class LeaveOutcome:
    participant: Participant
    room_id: str
    remaining: List[str] = field(default_factory=list)
    new_host_id: Optional[str] = None
    room_deleted: bool = False


@dataclass
class KickOutcome:
    room_id: str
    target: Participant
    host: Participant
    reason: str
    leave: LeaveOutcome


class MembershipManager:
    """Join/leave/kick protocol on top of the session directory.

    All room mutations run under the directory's per-room lock, so two joins
    racing for the last seat cannot both get in.
    """

    def __init__(
        self,
        directory: SessionDirectory,
        default_capacity: int = DEFAULT_ROOM_CAPACITY,
        relay_servers: Optional[list] = None,
        empty_room_grace: float = EMPTY_ROOM_GRACE_SECONDS,
        idle_timeout: float = ROOM_IDLE_TIMEOUT_SECONDS,
    ):
        self.directory = directory
        self.default_capacity = default_capacity
        self.relay_servers = RELAY_SERVERS if relay_servers is None else relay_servers
        self.empty_room_grace = empty_room_grace
        self.idle_timeout = idle_timeout

    async def join(self, participant_id: str, room_id_raw, nickname_raw) -> JoinOutcome:
        room_id, nickname = validate_join_input(room_id_raw, nickname_raw)

        existing = self.directory.get_participant(participant_id)
        if existing is not None:
            raise AlreadyInRoomError(existing.room_id)

        async with self.directory.lock(room_id):
            # re-check, the same connection may have raced a second join-request
            existing = self.directory.get_participant(participant_id)
            if existing is not None:
                raise AlreadyInRoomError(existing.room_id)

            room = self.directory.get_room(room_id)
            created = False
            if room is None:
                room = self.directory.create_room(room_id, participant_id, self.default_capacity)
                created = True

            if room.is_full:
                logger.info(f"Join rejected: room {room_id} is full ({room.member_count}/{room.capacity})")
                raise RoomFullError(room.member_count, room.capacity)

            if nickname.lower() in self.directory.nicknames_in(room_id):
                suggestion = self._suggest_nickname(room_id, nickname)
                logger.info(f"Join rejected: nickname '{nickname}' already taken in room {room_id}")
                if created:
                    self.directory.delete_room_if_empty(room_id)
                raise NicknameTakenError(nickname, suggestion)

            existing_members = self.directory.members_of(room_id)
            participant = self.directory.add_member(room_id, participant_id, nickname)
            self.directory.touch(room_id)
            is_host = room.host_id == participant_id
            member_count = room.member_count

        logger.info(f"User {participant_id} ({nickname}) joined room {room_id} ({member_count}/{room.capacity})")
        return JoinOutcome(
            participant=participant,
            room=room,
            existing_members=existing_members,
            is_host=is_host,
            member_count=member_count,
            created_room=created,
            relay_servers=list(self.relay_servers),
        )

    def _suggest_nickname(self, room_id: str, nickname: str) -> str:
        taken = self.directory.nicknames_in(room_id)
        base = nickname[: NICKNAME_MAX_LENGTH - 3]
        candidates = [f"{base}_{n}" for n in random.sample(range(100), 100)]
        for candidate in candidates:
            if candidate.lower() not in taken:
                return candidate
        return f"{base[: NICKNAME_MAX_LENGTH - 9]}_{random.randint(1000, 99999)}"

    async def leave(self, participant_id: str) -> Optional[LeaveOutcome]:
        participant = self.directory.get_participant(participant_id)
        if participant is None:
            return None

        async with self.directory.lock(participant.room_id):
            return self._leave_locked(participant_id)

    def _leave_locked(self, participant_id: str) -> Optional[LeaveOutcome]:
        participant = self.directory.get_participant(participant_id)
        if participant is None:
            return None
        room = self.directory.get_room(participant.room_id)
        was_host = room is not None and room.host_id == participant_id

        self.directory.remove_member(participant_id)
        outcome = LeaveOutcome(participant=participant, room_id=participant.room_id)
        if room is None:
            return outcome

        if room.members:
            outcome.remaining = list(room.members)
            if was_host:
                new_host = room.members[0]
                self.directory.set_host(room.id, new_host)
                outcome.new_host_id = new_host
                logger.info(f"Host of room {room.id} transferred from {participant_id} to {new_host}")
        elif self.empty_room_grace <= 0:
            outcome.room_deleted = self.directory.delete_room_if_empty(room.id)

        logger.info(f"User {participant_id} left room {room.id} ({room.member_count} remaining)")
        return outcome

    async def kick(self, requester_id: str, target_id: str, reason: Optional[str] = None) -> KickOutcome:
        requester = self.directory.get_participant(requester_id)
        if requester is None:
            raise UnauthorizedError("Only room host can kick users")

        async with self.directory.lock(requester.room_id):
            room = self.directory.get_room(requester.room_id)
            if room is None or room.host_id != requester_id:
                raise UnauthorizedError("Only room host can kick users")
            if target_id == requester_id:
                raise ValidationError(["Cannot kick yourself"], message="Invalid kick request")
            target = self.directory.get_participant(target_id)
            if target is None or target.room_id != room.id:
                raise RoutingError("User not found in room")

            reason = reason or "Kicked by room host"
            leave = self._leave_locked(target_id)

        logger.info(f"Host {requester_id} kicked {target_id} from room {room.id}. Reason: {reason}")
        return KickOutcome(room_id=room.id, target=target, host=requester, reason=reason, leave=leave)

    def authorize_host_action(self, requester_id: str, target_id: str) -> Participant:
        """Check that ``requester_id`` hosts the room ``target_id`` is in and return the target."""
        requester = self.directory.get_participant(requester_id)
        room = self.directory.get_room(requester.room_id) if requester else None
        if room is None or room.host_id != requester_id:
            raise UnauthorizedError("Only room host can do this")
        target = self.directory.get_participant(target_id)
        if target is None or target.room_id != room.id or target_id == requester_id:
            raise RoutingError("User not found in room")
        return target

    def mute(self, requester_id: str, target_id: str) -> Participant:
        target = self.authorize_host_action(requester_id, target_id)
        logger.info(f"Host {requester_id} muted {target_id} in room {target.room_id}")
        return target

    async def sweep_idle_rooms(self, now: Optional[float] = None) -> List[str]:
        """Reclaim rooms that stayed empty past the grace window or the idle timeout."""
        now = self.directory.clock() if now is None else now
        threshold = self.empty_room_grace if self.empty_room_grace > 0 else self.idle_timeout
        threshold = min(threshold, self.idle_timeout)
        reclaimed = []
        for room in self.directory.rooms():
            if room.members:
                continue
            async with self.directory.lock(room.id):
                current = self.directory.get_room(room.id)
                if current is None or current.members or current.empty_since is None:
                    continue
                if now - current.empty_since >= threshold and self.directory.delete_room_if_empty(room.id):
                    reclaimed.append(room.id)
        if reclaimed:
            logger.info(f"Cleaned up {len(reclaimed)} idle rooms")
        return reclaimed
