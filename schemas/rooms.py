from pydantic import BaseModel
from typing import Any, Optional


class CreateRoomRequest(BaseModel):
    # any JSON value; anything but a valid code string is rejected with 400
    roomCode: Optional[Any] = None

class CreateRoomResponse(BaseModel):
    success: bool
    roomCode: str

class RoomExistsResponse(BaseModel):
    exists: bool

class HealthResponse(BaseModel):
    status: str
    message: str
    timestamp: str
    rooms: int
    connections: int
