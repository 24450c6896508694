"""Error kinds shared by the registry, the session manager and the routers.

Every error carries a stable ``code`` that is sent to real-time clients in
``error`` messages, plus the room it concerns when one is known. The HTTP
layer maps them onto status codes itself.
"""

from typing import Optional


class CodeRoomError(Exception):
    code = "ERROR"

    def __init__(self, message: str = "", room: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.room = room


class InvalidRoomCode(CodeRoomError):
    code = "INVALID_ROOM_CODE"


class RoomNotFound(CodeRoomError):
    code = "ROOM_NOT_FOUND"


class PermissionDenied(CodeRoomError):
    code = "PERMISSION_DENIED"


class NotJoined(CodeRoomError):
    code = "NOT_JOINED"


class BadPayload(CodeRoomError):
    code = "BAD_PAYLOAD"


class PayloadTooLarge(CodeRoomError):
    code = "PAYLOAD_TOO_LARGE"


class TransportDisconnected(CodeRoomError):
    """Raised when queuing a message for a connection that already went away."""

    code = "DISCONNECTED"
