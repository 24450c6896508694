import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from constants import ROOM_PLACEHOLDER
from errors import RoomNotFound
from logging_config import get_logger
from permissions import Permission
from room_codes import generate_room_code, is_valid_room_code, normalize_room_code, validate_room_code

logger = get_logger(__name__)


@dataclass(eq=False)
class Room:
    code: str
    content: str = ROOM_PLACEHOLDER
    permission: Permission = Permission.EDIT
    creator_connection_id: Optional[str] = None
    creator_token: Optional[str] = field(default=None, repr=False)
    last_activity: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_activity = time.monotonic()


class RoomRegistry:
    """In-memory map of normalized room code -> Room.

    Being in the map is what "the room exists" means. One registry lives for
    the whole process and is handed to the routers and the session manager.
    Only the event loop thread touches it, so no locking is done.
    """

    def __init__(self, placeholder: str = ROOM_PLACEHOLDER):
        self.placeholder = placeholder
        self._rooms: Dict[str, Room] = {}
        logger.info("Initializing in-memory RoomRegistry")

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_code) -> bool:
        return self.room_exists(room_code)

    def codes(self) -> List[str]:
        return list(self._rooms)

    def ensure_room(self, room_code) -> Room:
        """Return the room for ``room_code``, creating it with placeholder content if needed."""
        code = validate_room_code(room_code)
        room = self._rooms.get(code)
        if room is None:
            room = Room(code=code, content=self.placeholder)
            self._rooms[code] = room
            logger.info(f"Room {code} created")
        else:
            logger.debug(f"Room {code} already exists")
        room.touch()
        return room

    def room_exists(self, room_code) -> bool:
        if not is_valid_room_code(room_code):
            return False
        return normalize_room_code(room_code) in self._rooms

    def find_room(self, room_code) -> Optional[Room]:
        if not is_valid_room_code(room_code):
            return None
        return self._rooms.get(normalize_room_code(room_code))

    def get_room(self, room_code) -> Room:
        room = self.find_room(room_code)
        if room is None:
            logger.debug(f"Room {normalize_room_code(room_code)} not found")
            raise RoomNotFound(f"Room {normalize_room_code(room_code)} not found", room=normalize_room_code(room_code))
        return room

    def get_content(self, room_code) -> str:
        return self.get_room(room_code).content

    def set_content(self, room_code, text: str) -> None:
        """Replace the room's buffer. No diffing and no history: last write wins."""
        room = self.get_room(room_code)
        room.content = text
        room.touch()
        logger.debug(f"Room {room.code} content set ({len(text)} chars)")

    def generate_unused_code(self, attempts: int = 100) -> str:
        for _ in range(attempts):
            code = generate_room_code()
            if code not in self._rooms:
                return code
        # 36**6 codes; only reachable with a nearly full registry
        raise RuntimeError("Could not find an unused room code")

    def prune_idle(self, max_idle_seconds: float, keep: Iterable[str] = ()) -> List[str]:
        """Drop rooms idle for longer than ``max_idle_seconds`` unless listed in ``keep``."""
        keep = set(keep)
        now = time.monotonic()
        removed = []
        for code, room in list(self._rooms.items()):
            if code in keep:
                continue
            if now - room.last_activity > max_idle_seconds:
                del self._rooms[code]
                removed.append(code)
        if removed:
            logger.info(f"Pruned {len(removed)} idle rooms: {removed}")
        return removed

    def clear(self) -> None:
        count = len(self._rooms)
        self._rooms.clear()
        logger.info(f"Registry cleared ({count} rooms dropped)")
