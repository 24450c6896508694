"""Creator identity and edit/view-only policy for rooms.

The server owns this state: a room's permission and its creator seat live on
the ``Room`` object, and every edit or mode change is checked here before the
registry is touched.
"""

from __future__ import annotations

import secrets
from enum import Enum
from typing import TYPE_CHECKING, Optional

from errors import BadPayload, PermissionDenied
from logging_config import get_logger

if TYPE_CHECKING:
    from registry import Room

logger = get_logger(__name__)


class Permission(str, Enum):
    EDIT = "edit"
    VIEW_ONLY = "view-only"

    @classmethod
    def parse(cls, value) -> "Permission":
        if isinstance(value, Permission):
            return value
        text = str(value or "").strip().lower()
        # older clients send "view"
        if text in ("view", "view_only", "viewonly"):
            return cls.VIEW_ONLY
        try:
            return cls(text)
        except ValueError:
            raise BadPayload(f"Unknown permission: {value!r}") from None


def is_creator(room: "Room", connection_id: str) -> bool:
    return room.creator_connection_id is not None and room.creator_connection_id == connection_id


def can_edit(room: "Room", connection_id: str) -> bool:
    if room.permission == Permission.EDIT:
        return True
    return is_creator(room, connection_id)


def require_edit(room: "Room", connection_id: str) -> None:
    if not can_edit(room, connection_id):
        logger.warning(f"Edit rejected: connection {connection_id} is read-only in room {room.code}")
        raise PermissionDenied("Room is view-only; only the creator can edit", room=room.code)


def require_creator(room: "Room", connection_id: str) -> None:
    if not is_creator(room, connection_id):
        logger.warning(f"Creator action rejected for connection {connection_id} in room {room.code}")
        raise PermissionDenied("Only the room creator can do this", room=room.code)


def claim_creator(room: "Room", connection_id: str, token: Optional[str] = None) -> bool:
    """Try to give ``connection_id`` the creator seat of ``room``.

    The first connection to touch a room that has never had a creator gets the
    seat and a fresh token. Afterwards the seat only moves to a connection that
    presents that token. Returns whether ``connection_id`` holds the seat.
    """
    if is_creator(room, connection_id):
        return True

    if room.creator_token is None:
        room.creator_token = secrets.token_urlsafe(24)
        room.creator_connection_id = connection_id
        logger.info(f"Connection {connection_id} is the creator of room {room.code}")
        return True

    if token and secrets.compare_digest(str(token), room.creator_token):
        previous = room.creator_connection_id
        room.creator_connection_id = connection_id
        logger.info(f"Creator seat of room {room.code} reclaimed by {connection_id} (was {previous})")
        return True

    return False


def release_creator(room: "Room", connection_id: str) -> None:
    """Free the creator seat held by a departing connection; the token stays valid."""
    if is_creator(room, connection_id):
        room.creator_connection_id = None
        logger.debug(f"Creator seat of room {room.code} released by {connection_id}")
