from datetime import datetime
import time

from fastapi import APIRouter, HTTPException, Request

from constants import ENVIRONMENT, ROOM_ID_MAX_LENGTH
from logging_config import get_logger
from membership import ROOM_ID_PATTERN
from schemas.rooms import (
    HealthResponse,
    MetricsResponse,
    ParticipantCounts,
    RoomCounts,
    RoomDetailsResponse,
    RoomMetrics,
    Uptime,
)

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


@rooms_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Aggregate room and participant counts for external monitoring. Read-only."""
    store = request.app.state.store
    uptime = int(time.time() - request.app.state.started_at)
    counts = store.directory.counts()
    return HealthResponse(
        status="ok",
        timestamp=datetime.now().isoformat(),
        uptime=Uptime(seconds=uptime, human=f"{uptime // 3600}h {(uptime % 3600) // 60}m {uptime % 60}s"),
        rooms=RoomCounts(total=counts["rooms_total"], active=counts["rooms_active"], empty=counts["rooms_empty"]),
        participants=ParticipantCounts(total=counts["participants"], largest_room=counts["largest_room"]),
        environment=ENVIRONMENT,
    )


@rooms_router.get("/metrics", response_model=MetricsResponse)
async def metrics(request: Request):
    store = request.app.state.store
    if store.production:
        raise HTTPException(status_code=403, detail="Metrics endpoint disabled in production")

    now = time.time()
    rooms = [
        RoomMetrics(
            id=room.id,
            members=room.member_count,
            capacity=room.capacity,
            host=room.host_id,
            created_at=room.created_at,
            age_seconds=now - room.created_at,
        )
        for room in store.directory.rooms()
    ]
    return MetricsResponse(
        timestamp=datetime.now().isoformat(),
        connections=len(store.connections),
        rate_limited_sources=store.rate_limiter.stats()["tracked_keys"],
        rooms=rooms,
    )


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get room details for a pre-join lobby.

    Returns:
    - room_id: Normalized room identifier
    - member_count / capacity / is_full: Occupancy
    - host_nickname: Current host's nickname
    """
    if len(room_id) > ROOM_ID_MAX_LENGTH or not ROOM_ID_PATTERN.match(room_id):
        raise HTTPException(status_code=400, detail="Invalid room ID")

    store = request.app.state.store
    room = store.directory.get_room(room_id.lower())
    if room is None:
        logger.debug(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    host = store.directory.get_participant(room.host_id) if room.host_id else None
    logger.info(f"Room details retrieved for {room.id}: {room.member_count}/{room.capacity} users online")
    return RoomDetailsResponse(
        room_id=room.id,
        created_at=room.created_at,
        last_activity=room.last_activity,
        capacity=room.capacity,
        member_count=room.member_count,
        host_nickname=host.nickname if host else None,
        is_full=room.is_full,
    )
