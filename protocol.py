"""Real-time message contract between connections and the server.

Frames are JSON text. Clients send ``{"event", "data", "ack"}``; when ``ack``
is set the server answers with exactly one ``ack`` (or ``error``) frame
carrying the same id. Server pushes look like ``{"event", "room", "data"}``.
"""

from __future__ import annotations

import json
from typing import Any, Optional, Type, TypeVar, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from errors import BadPayload

# client -> server
JOIN = "join"
LEAVE = "leave"
CODE_CHANGE = "code-change"
CHECK_ROOM = "check-room"
CREATE_ROOM = "create-room"
SET_PERMISSION = "set-permission"
PING = "ping"

# server -> client
CODE_UPDATE = "code-update"
PERMISSION_UPDATE = "permission-update"
ROOM_STATE = "room-state"
ACK = "ack"
ERROR = "error"
PONG = "pong"

# names used by the first web client
EVENT_ALIASES = {
    "join-room": JOIN,
    "leave-room": LEAVE,
}

AckId = Union[int, str]

ROOM_ID_ALIASES = AliasChoices("roomId", "room", "roomCode", "room_id")

T = TypeVar("T", bound=BaseModel)


class ClientEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    data: Any = None
    ack: Optional[AckId] = None

    @property
    def name(self) -> str:
        return EVENT_ALIASES.get(self.event, self.event)


class RoomRequest(BaseModel):
    """Payload of join / leave / check-room / create-room."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    room_id: str = Field(validation_alias=ROOM_ID_ALIASES)
    creator_token: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("creatorToken", "creator_token")
    )


class CodeChange(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    room_id: str = Field(validation_alias=ROOM_ID_ALIASES)
    text: str = Field(validation_alias=AliasChoices("text", "code"))


class PermissionChange(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    room_id: str = Field(validation_alias=ROOM_ID_ALIASES)
    permission: str


def decode_envelope(raw: Union[str, bytes]) -> ClientEnvelope:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise BadPayload(f"Message is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise BadPayload("Message must be a JSON object")
    return parse_payload(ClientEnvelope, payload)


def parse_payload(model: Type[T], data: Any) -> T:
    # join/check-room/create-room may carry the bare room code as data
    if isinstance(data, str) and model is RoomRequest:
        data = {"roomId": data}
    if not isinstance(data, dict):
        raise BadPayload(f"Expected an object payload for {model.__name__}")
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "payload" for err in e.errors())
        raise BadPayload(f"Invalid {model.__name__}: {fields}") from e


def push(event: str, data: Any = None, room: Optional[str] = None) -> dict:
    return {"event": event, "room": room, "data": data}


def ack_reply(ack: AckId, data: Any = None) -> dict:
    return {"event": ACK, "ack": ack, "data": data}


def error_reply(code: str, message: str, ack: Optional[AckId] = None, room: Optional[str] = None) -> dict:
    return {
        "event": ERROR,
        "ack": ack,
        "room": room,
        "data": {"code": code, "message": message},
    }


def encode(message: dict) -> str:
    return json.dumps(message, ensure_ascii=False)
