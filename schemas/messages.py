"""Signaling messages exchanged over the WebSocket channel.

Every frame is a JSON object with a ``type`` tag. Client frames and server
frames are each a closed union, parsed with a discriminated TypeAdapter so
that an unknown ``type`` is a validation error rather than a silent no-op.
"""
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

SignalKind = Literal["offer", "answer", "candidate"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class MemberInfo(WireModel):
    id: str
    nickname: str


class RoomMeta(WireModel):
    id: str
    created_at: float
    member_count: int
    capacity: int


# Client -> server


class JoinRequest(WireModel):
    type: Literal["join-request"] = "join-request"
    room_id: str
    nickname: str


class SignalRequest(WireModel):
    type: Literal["signal"] = "signal"
    to: str
    kind: SignalKind
    body: Any = None


class KickRequest(WireModel):
    type: Literal["kick-request"] = "kick-request"
    target_id: str
    reason: Optional[str] = None


class MuteRequest(WireModel):
    type: Literal["mute-request"] = "mute-request"
    target_id: str


class QualityReport(WireModel):
    type: Literal["quality-report"] = "quality-report"
    peers_count: int = 0
    avg_bitrate_kbps: float = 0.0
    avg_packet_loss: float = 0.0
    avg_rtt_ms: float = 0.0


class LeaveRequest(WireModel):
    type: Literal["leave-request"] = "leave-request"


class Ping(WireModel):
    type: Literal["ping"] = "ping"
    timestamp: float


ClientMessage = Annotated[
    Union[JoinRequest, SignalRequest, KickRequest, MuteRequest, QualityReport, LeaveRequest, Ping],
    Field(discriminator="type"),
]
client_message_adapter = TypeAdapter(ClientMessage)


# Server -> client


class JoinAccepted(WireModel):
    type: Literal["join-accepted"] = "join-accepted"
    participant_id: str
    existing_members: List[MemberInfo]
    is_host: bool
    room_meta: RoomMeta
    relay_servers: List[dict]


class JoinRejected(WireModel):
    type: Literal["join-rejected"] = "join-rejected"
    error_kind: str
    message: str
    details: Any = None


class MemberJoined(WireModel):
    type: Literal["member-joined"] = "member-joined"
    id: str
    nickname: str
    joined_at: float


class MemberLeft(WireModel):
    type: Literal["member-left"] = "member-left"
    id: str


class HostChanged(WireModel):
    type: Literal["host-changed"] = "host-changed"
    new_host_id: str


class HostTransferred(WireModel):
    type: Literal["host-transferred"] = "host-transferred"
    room_id: str


class SignalDelivery(WireModel):
    type: Literal["signal"] = "signal"
    from_: str = Field(alias="from")
    room_id: str
    kind: SignalKind
    body: Any = None
    timestamp: float


class Kicked(WireModel):
    type: Literal["kicked"] = "kicked"
    reason: str
    host_nickname: Optional[str] = None


class MemberKicked(WireModel):
    type: Literal["member-kicked"] = "member-kicked"
    id: str
    nickname: str
    reason: str


class ForceMute(WireModel):
    type: Literal["force-mute"] = "force-mute"
    by_id: str


class PeerQuality(WireModel):
    type: Literal["peer-quality"] = "peer-quality"
    id: str
    quality: str


class Pong(WireModel):
    type: Literal["pong"] = "pong"
    timestamp: float
    server_timestamp: float
    room_id: Optional[str] = None
    room_user_count: int = 0


class ErrorEnvelope(WireModel):
    type: Literal["error"] = "error"
    kind: str
    message: str
    details: Any = None


ServerMessage = Annotated[
    Union[
        JoinAccepted,
        JoinRejected,
        MemberJoined,
        MemberLeft,
        HostChanged,
        HostTransferred,
        SignalDelivery,
        Kicked,
        MemberKicked,
        ForceMute,
        PeerQuality,
        Pong,
        ErrorEnvelope,
    ],
    Field(discriminator="type"),
]
server_message_adapter = TypeAdapter(ServerMessage)
