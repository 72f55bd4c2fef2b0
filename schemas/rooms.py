from pydantic import BaseModel
from typing import Optional


class RoomDetailsResponse(BaseModel):
    room_id: str
    created_at: float
    last_activity: float
    capacity: int
    member_count: int
    host_nickname: Optional[str]
    is_full: bool


class RoomCounts(BaseModel):
    total: int
    active: int
    empty: int


class ParticipantCounts(BaseModel):
    total: int
    largest_room: int


class Uptime(BaseModel):
    seconds: int
    human: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime: Uptime
    rooms: RoomCounts
    participants: ParticipantCounts
    environment: str


class RoomMetrics(BaseModel):
    id: str
    members: int
    capacity: int
    host: Optional[str]
    created_at: float
    age_seconds: float


class MetricsResponse(BaseModel):
    timestamp: str
    connections: int
    rate_limited_sources: int
    rooms: list[RoomMetrics]
