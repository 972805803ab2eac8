from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from routers.rooms import rooms_router
from registry import room_registry, SignalingError
from schemas.signaling import (
    CONNECTED, ERROR, JOIN_ROOM, LEAVE_ROOM, SIGNAL_TYPES, USERS_IN_ROOM,
    Frame, JoinRoomRequest, SignalRequest,
)
from constants import CORS_ORIGINS, LOG_FILE, LOG_LEVEL, STATIC_DIR
import anyio
import uuid
import json
import asyncio
import os
from typing import Any
from logging_config import get_logger, setup_logging

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(rooms_router)

logger.info("FastAPI application initialized")


class WebSocketConnection:
    """Registry-facing handle for one websocket.

    Frames are written one at a time so concurrent broadcasts and routed
    signals never interleave on the same socket.
    """

    def __init__(self, websocket: WebSocket, member_id: str):
        self.websocket = websocket
        self.member_id = member_id
        self._send_lock = asyncio.Lock()

    async def send(self, event: str, data: Any):
        async with self._send_lock:
            await self.websocket.send_text(json.dumps({"type": event, "data": data}))


async def handle_frame(connection: WebSocketConnection, frame: Frame):
    member_id = connection.member_id
    if frame.type == JOIN_ROOM:
        request = JoinRoomRequest(room_id=frame.data if isinstance(frame.data, str) else "")
        existing = await room_registry.join(member_id, request.room_id)
        await connection.send(USERS_IN_ROOM, sorted(existing))
    elif frame.type == LEAVE_ROOM:
        await room_registry.leave(member_id)
    elif frame.type in SIGNAL_TYPES:
        request = SignalRequest.from_frame(frame.type, frame.data)
        await room_registry.route(member_id, frame.type, request.target, request.payload)
    else:
        raise SignalingError(f"unknown event type: {frame.type}")


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Signaling socket. One member id per connection, assigned here."""
    await websocket.accept()
    member_id = uuid.uuid4().hex
    connection = WebSocketConnection(websocket, member_id)
    room_registry.register(member_id, connection)
    logger.info(f"Client connected: {member_id}")

    try:
        await connection.send(CONNECTED, {"id": member_id})
        while True:
            raw = await websocket.receive_text()
            try:
                frame = Frame.model_validate(json.loads(raw))
                logger.debug(f"Received {frame.type} from {member_id}")
                await handle_frame(connection, frame)
            except ValueError as e:
                logger.warning(f"Rejected malformed message from {member_id}: {e}")
                await connection.send(ERROR, {"message": str(e)})
    except WebSocketDisconnect:
        logger.info(f"Client disconnected: {member_id}")
    except Exception as e:
        logger.error(f"WebSocket error for member {member_id}: {e}", exc_info=True)
    finally:
        # runs during shutdown too, so the rest of the room still hears user-left
        with anyio.CancelScope(shield=True):
            await room_registry.disconnect(member_id)


if os.path.isdir(STATIC_DIR):
    app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="static")
    logger.info(f"Serving static client from {STATIC_DIR}")
