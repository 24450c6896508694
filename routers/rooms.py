from fastapi import APIRouter, HTTPException, Request, Depends
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, RoomExistsResponse
from typing import Optional
from errors import InvalidRoomCode
from registry import RoomRegistry
from room_codes import normalize_room_code, validate_room_code
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/api/rooms", tags=["rooms"])


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@rooms_router.post("", response_model=CreateRoomResponse)
async def create_room(
    request: Request,
    room: Optional[CreateRoomRequest] = None,
    registry: RoomRegistry = Depends(get_registry),
):
    # Body: { "roomCode": "ab12cd" }
    # Response 200: { "success": true, "roomCode": "AB12CD" }
    # Creating an existing room is a no-op that still succeeds.
    requested = room.roomCode if room else None
    logger.info(f"Room creation request from {client_host(request)}, roomCode: {requested}")

    try:
        room_code = validate_room_code(requested)
    except InvalidRoomCode as e:
        logger.warning(f"Room creation rejected for {requested!r}: {e.message}")
        raise HTTPException(status_code=400, detail="Invalid room code")

    registry.ensure_room(room_code)
    logger.info(f"Room {room_code} ready ({len(registry)} rooms)")
    return CreateRoomResponse(success=True, roomCode=room_code)


@rooms_router.post("/random", response_model=CreateRoomResponse)
async def create_random_room(request: Request, registry: RoomRegistry = Depends(get_registry)):
    """Create a room under a fresh server-generated code."""
    room_code = registry.generate_unused_code()
    registry.ensure_room(room_code)
    logger.info(f"Random room {room_code} created for {client_host(request)}")
    return CreateRoomResponse(success=True, roomCode=room_code)


@rooms_router.get("/{room_code}", response_model=RoomExistsResponse)
async def check_room(room_code: str, registry: RoomRegistry = Depends(get_registry)):
    """
    Report whether a room exists. Never creates one.

    The code is matched case-insensitively; malformed codes simply don't exist.
    """
    exists = registry.room_exists(room_code)
    logger.debug(f"Room check for {normalize_room_code(room_code)}: exists={exists}")
    return RoomExistsResponse(exists=exists)
