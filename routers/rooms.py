from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse, RoomListResponse, RoomSummary
from registry import room_registry
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("", response_model=RoomListResponse)
async def list_rooms(request: Request):
    client_host = request.client.host if request.client else 'unknown'
    rooms = room_registry.rooms()
    logger.info(f"Room list request from {client_host}: {len(rooms)} active rooms")
    return RoomListResponse(
        rooms=[RoomSummary(room_id=room_id, member_count=count) for room_id, count in sorted(rooms.items())]
    )


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get the live membership of a room.

    Rooms only exist while someone is in them, so an empty room is a 404.
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    members = room_registry.members(room_id)
    if not members:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    return RoomDetailsResponse(
        room_id=room_id,
        member_count=len(members),
        members=sorted(members),
    )
