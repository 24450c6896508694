import random
import string

from constants import ROOM_CODE_LENGTH
from errors import InvalidRoomCode

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits

# **Room code rules**
# - exactly ROOM_CODE_LENGTH ASCII letters/digits, checked before uppercasing
# - case-insensitive; canonical form is uppercase ("ab12cd" -> "AB12CD")
# - no trimming: " ab12cd" is 7 characters and is rejected, never aliased


def normalize_room_code(room_code) -> str:
    """Return the canonical (uppercase) form of a room code without validating it."""
    if room_code is None:
        return ""
    return str(room_code).upper()


def is_valid_room_code(room_code) -> bool:
    return (
        isinstance(room_code, str)
        and len(room_code) == ROOM_CODE_LENGTH
        and room_code.isascii()
        and room_code.isalnum()
    )


def validate_room_code(room_code) -> str:
    """Raise InvalidRoomCode unless ``room_code`` is well formed, else return it normalized."""
    if room_code is None or room_code == "":
        raise InvalidRoomCode("Room code is required")
    if not isinstance(room_code, str):
        raise InvalidRoomCode("Room code must be a string")
    if len(room_code) != ROOM_CODE_LENGTH:
        raise InvalidRoomCode(f"Room code must be exactly {ROOM_CODE_LENGTH} characters")
    if not (room_code.isascii() and room_code.isalnum()):
        raise InvalidRoomCode("Room code must contain only letters and digits")
    return normalize_room_code(room_code)


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return ''.join(random.choices(ROOM_CODE_ALPHABET, k=length))
