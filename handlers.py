"""Server-side handling of client frames.

Each client message class maps to exactly one handler in HANDLERS; the table
is checked against the ClientMessage union at import time.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, get_args

from pydantic import ValidationError as PydanticValidationError

from constants import POOR_QUALITY_PACKET_LOSS, POOR_QUALITY_RTT_MS
from errors import InternalError, JoinError, SessionError, ValidationError
from logging_config import get_logger
from membership import LeaveOutcome
from schemas.messages import (
    ClientMessage,
    ForceMute,
    HostChanged,
    HostTransferred,
    JoinAccepted,
    JoinRejected,
    JoinRequest,
    Kicked,
    KickRequest,
    LeaveRequest,
    MemberInfo,
    MemberJoined,
    MemberKicked,
    MemberLeft,
    MuteRequest,
    PeerQuality,
    Ping,
    Pong,
    QualityReport,
    RoomMeta,
    SignalRequest,
    client_message_adapter,
)
from store import SessionStore

logger = get_logger(__name__)

Handler = Callable[[SessionStore, str, object], Awaitable[None]]


async def handle_join(store: SessionStore, participant_id: str, message: JoinRequest):
    logger.info(f"Join room request: {participant_id} wants to join {message.room_id} as {message.nickname}")
    try:
        outcome = await store.membership.join(participant_id, message.room_id, message.nickname)
    except JoinError as e:
        rejected = JoinRejected(error_kind=e.kind.value, message=e.message, details=e.details)
        await store.connections.send(participant_id, rejected.dump())
        return

    room = outcome.room
    accepted = JoinAccepted(
        participant_id=participant_id,
        existing_members=[MemberInfo(id=p.id, nickname=p.nickname) for p in outcome.existing_members],
        is_host=outcome.is_host,
        room_meta=RoomMeta(id=room.id, created_at=room.created_at, member_count=outcome.member_count, capacity=room.capacity),
        relay_servers=outcome.relay_servers,
    )
    await store.connections.send(participant_id, accepted.dump())

    joined = MemberJoined(id=participant_id, nickname=outcome.participant.nickname, joined_at=outcome.participant.joined_at)
    await store.connections.broadcast([p.id for p in outcome.existing_members], joined.dump())


async def announce_leave(store: SessionStore, outcome: LeaveOutcome):
    if not outcome.remaining:
        return
    if outcome.new_host_id:
        await store.connections.send(outcome.new_host_id, HostTransferred(room_id=outcome.room_id).dump())
        await store.connections.broadcast(outcome.remaining, HostChanged(new_host_id=outcome.new_host_id).dump())
    await store.connections.broadcast(outcome.remaining, MemberLeft(id=outcome.participant.id).dump())


async def handle_leave(store: SessionStore, participant_id: str, message: LeaveRequest):
    outcome = await store.membership.leave(participant_id)
    if outcome is not None:
        await announce_leave(store, outcome)


async def handle_signal(store: SessionStore, participant_id: str, message: SignalRequest):
    await store.relay.forward(participant_id, message.to, message.kind, message.body)


async def handle_kick(store: SessionStore, participant_id: str, message: KickRequest):
    outcome = await store.membership.kick(participant_id, message.target_id, message.reason)

    kicked = Kicked(reason=outcome.reason, host_nickname=outcome.host.nickname)
    await store.connections.send(outcome.target.id, kicked.dump())

    notice = MemberKicked(id=outcome.target.id, nickname=outcome.target.nickname, reason=outcome.reason)
    await store.connections.broadcast(outcome.leave.remaining, notice.dump())
    await announce_leave(store, outcome.leave)

    # leave the target time to show the notice before the socket goes away
    store.spawn(_disconnect_later(store, outcome.target.id, store.kick_disconnect_delay))


async def _disconnect_later(store: SessionStore, participant_id: str, delay: float):
    if delay > 0:
        await asyncio.sleep(delay)
    await store.connections.close(participant_id, code=1008, reason="Kicked by room host")


async def handle_mute(store: SessionStore, participant_id: str, message: MuteRequest):
    target = store.membership.mute(participant_id, message.target_id)
    await store.connections.send(target.id, ForceMute(by_id=participant_id).dump())


async def handle_quality_report(store: SessionStore, participant_id: str, message: QualityReport):
    participant = store.directory.get_participant(participant_id)
    if participant is None:
        return

    poor = message.avg_packet_loss > POOR_QUALITY_PACKET_LOSS or message.avg_rtt_ms > POOR_QUALITY_RTT_MS
    quality = "poor" if poor else "good"
    if poor:
        logger.warning(
            f"Poor connection quality for {participant.nickname} ({participant_id}): "
            f"loss={message.avg_packet_loss:.1f}% rtt={message.avg_rtt_ms:.0f}ms peers={message.peers_count}"
        )
    else:
        logger.debug(f"Quality report from {participant_id}: bitrate={message.avg_bitrate_kbps:.0f}kbps")

    room_mates = [p.id for p in store.directory.members_of(participant.room_id)]
    await store.connections.broadcast(room_mates, PeerQuality(id=participant_id, quality=quality).dump(), exclude=participant_id)


async def handle_ping(store: SessionStore, participant_id: str, message: Ping):
    participant = store.directory.get_participant(participant_id)
    room = store.directory.get_room(participant.room_id) if participant else None
    pong = Pong(
        timestamp=message.timestamp,
        server_timestamp=time.time() * 1000,
        room_id=room.id if room else None,
        room_user_count=room.member_count if room else 0,
    )
    await store.connections.send(participant_id, pong.dump())


HANDLERS: Dict[type, Handler] = {
    JoinRequest: handle_join,
    LeaveRequest: handle_leave,
    SignalRequest: handle_signal,
    KickRequest: handle_kick,
    MuteRequest: handle_mute,
    QualityReport: handle_quality_report,
    Ping: handle_ping,
}

_unhandled = set(get_args(get_args(ClientMessage)[0])) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"No handler for client messages: {sorted(cls.__name__ for cls in _unhandled)}")


def parse_client_message(raw: str):
    try:
        return client_message_adapter.validate_json(raw)
    except PydanticValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc']) or 'message'}: {err['msg']}" for err in e.errors()]
        raise ValidationError(problems, message="Invalid message") from e


async def dispatch_message(store: SessionStore, participant_id: str, raw: str) -> bool:
    """Parse one frame and run its handler; every failure becomes an error envelope.

    Returns False when the frame was rejected.
    """
    try:
        message = parse_client_message(raw)
        handler = HANDLERS[type(message)]
        await handler(store, participant_id, message)
        return True
    except SessionError as e:
        logger.info(f"Rejected message from {participant_id}: {e}")
        await store.connections.send(participant_id, e.to_envelope())
    except Exception as e:
        logger.error(f"Error handling message from {participant_id}: {e}", exc_info=True)
        await store.connections.send(participant_id, InternalError().to_envelope())
    return False
