from contextlib import asynccontextmanager
from typing import Optional
import json
import time
import uuid

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL
from errors import RateLimitedError
from handlers import announce_leave, dispatch_message
from logging_config import get_logger, mask_address, setup_logging
from routers.rooms import rooms_router
from store import SessionStore

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


async def websocket_endpoint(websocket: WebSocket):
    """Signaling channel: one participant per connection, JSON frames tagged by ``type``.

    The connection is admitted by the rate limiter before anything else, then
    gets a server-issued participant id. Leaving the loop for any reason runs the
    leave protocol so the room never keeps a dead member.
    """
    store: SessionStore = websocket.app.state.store
    client_host = websocket.client.host if websocket.client else "unknown"

    admission = store.rate_limiter.admit(client_host)
    if not admission.allowed:
        logger.info(f"Connection rejected for {mask_address(client_host)}: rate limit exceeded")
        await websocket.accept()
        await websocket.send_text(json.dumps(RateLimitedError(admission.retry_after_seconds).to_envelope()))
        await websocket.close(code=1008, reason="Rate limit exceeded")
        return

    await websocket.accept()
    participant_id = uuid.uuid4().hex
    store.connections.register(participant_id, websocket)
    logger.info(f"User connected: {participant_id} from {mask_address(client_host)}")

    message_count = 0
    try:
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received message #{message_count} from connection {participant_id}")
            await dispatch_message(store, participant_id, data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {participant_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {participant_id}: {e}", exc_info=True)
    finally:
        store.connections.unregister(participant_id)
        try:
            outcome = await store.membership.leave(participant_id)
            if outcome is not None:
                await announce_leave(store, outcome)
        except Exception as e:
            logger.error(f"Error cleaning up after {participant_id}: {e}", exc_info=True)
        logger.info(f"User disconnected: {participant_id}")


def create_app(store: Optional[SessionStore] = None) -> FastAPI:
    session_store = store if store is not None else SessionStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.store.start()
        try:
            yield
        finally:
            await app.state.store.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.store = session_store
    app.state.started_at = time.time()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.add_api_websocket_route("/ws", websocket_endpoint)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
