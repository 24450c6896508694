import asyncio
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

import protocol
from constants import MAX_CONTENT_BYTES, OUTBOX_MAX_MESSAGES
from errors import BadPayload, CodeRoomError, NotJoined, PayloadTooLarge, TransportDisconnected
from logging_config import get_logger
from permissions import Permission, claim_creator, is_creator, release_creator, require_creator, require_edit
from registry import Room, RoomRegistry
from room_codes import validate_room_code

logger = get_logger(__name__)


class Connection:
    """One live client channel.

    Outbound messages are queued on ``outbox`` in the order the server produces
    them; the transport drains the queue with a single writer task. A ``None``
    on the queue tells the writer to close the socket.
    """

    def __init__(self, connection_id: str, max_pending: int = OUTBOX_MAX_MESSAGES):
        self.id = connection_id
        self.rooms: Set[str] = set()
        # rooms whose creator seat this connection has held
        self.creator_rooms: Set[str] = set()
        self.outbox: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self.closed = False

    def send(self, message: dict) -> None:
        if self.closed:
            raise TransportDisconnected(f"Connection {self.id} is closed")
        try:
            self.outbox.put_nowait(message)
        except asyncio.QueueFull:
            self._coalesce(message)

    def drain(self) -> List[dict]:
        """Pop every queued message without waiting."""
        messages = []
        while not self.outbox.empty():
            messages.append(self.outbox.get_nowait())
        return messages

    def _coalesce(self, message: dict) -> None:
        # A code-update carries the whole buffer, so only the newest one per room matters.
        pending = self.drain() + [message]
        latest = {}
        for index, item in enumerate(pending):
            if item.get("event") == protocol.CODE_UPDATE:
                latest[item.get("room")] = index
        kept = [
            item
            for index, item in enumerate(pending)
            if item.get("event") != protocol.CODE_UPDATE or latest[item.get("room")] == index
        ]
        if len(kept) > self.outbox.maxsize:
            self.closed = True
            self.outbox.put_nowait(None)
            logger.warning(f"Connection {self.id} fell {len(kept)} messages behind, disconnecting")
            raise TransportDisconnected(f"Connection {self.id} is too slow")
        logger.debug(f"Coalesced outbox for connection {self.id}: {len(pending)} -> {len(kept)} messages")
        for item in kept:
            self.outbox.put_nowait(item)


class SessionManager:
    """Tracks connections and room memberships and dispatches client events.

    All handlers are synchronous: a room mutation and the fan-out it causes are
    queued in one step, so peers see updates in the order they were applied.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        max_content_bytes: int = MAX_CONTENT_BYTES,
        outbox_size: int = OUTBOX_MAX_MESSAGES,
    ):
        self.registry = registry
        self.max_content_bytes = max_content_bytes
        self.outbox_size = outbox_size
        self.connections: Dict[str, Connection] = {}
        # room code -> connection ids
        self.room_members: Dict[str, Set[str]] = {}
        self._handlers: Dict[str, Callable[[Connection, Any], Any]] = {
            protocol.JOIN: self._on_join,
            protocol.LEAVE: self._on_leave,
            protocol.CODE_CHANGE: self._on_code_change,
            protocol.CHECK_ROOM: self._on_check_room,
            protocol.CREATE_ROOM: self._on_create_room,
            protocol.SET_PERMISSION: self._on_set_permission,
            protocol.PING: self._on_ping,
        }

    @property
    def connection_count(self) -> int:
        return len(self.connections)

    def members(self, room_code) -> Set[str]:
        return set(self.room_members.get(validate_room_code(room_code), ()))

    def active_room_codes(self) -> Set[str]:
        return {code for code, members in self.room_members.items() if members}

    # Connection lifecycle

    def connect(self, connection_id: Optional[str] = None) -> Connection:
        connection = Connection(connection_id or uuid.uuid4().hex, max_pending=self.outbox_size)
        self.connections[connection.id] = connection
        logger.info(f"Connection {connection.id} opened ({self.connection_count} connected)")
        return connection

    def disconnect(self, connection: Connection) -> None:
        if connection.closed and connection.id not in self.connections:
            return
        connection.closed = True
        for code in list(connection.rooms):
            self._remove_member(code, connection.id)
        for code in connection.rooms | connection.creator_rooms:
            self._release_seat(connection, code)
        connection.rooms.clear()
        self.connections.pop(connection.id, None)
        dropped = connection.drain()
        if dropped:
            logger.debug(f"Discarded {len(dropped)} undelivered messages for connection {connection.id}")
        logger.info(f"Connection {connection.id} closed ({self.connection_count} connected)")

    # Room operations

    def join(self, connection: Connection, room_code, creator_token: Optional[str] = None) -> bool:
        code = validate_room_code(room_code)
        room = self.registry.ensure_room(code)
        connection.rooms.add(code)
        self.room_members.setdefault(code, set()).add(connection.id)
        if claim_creator(room, connection.id, creator_token):
            connection.creator_rooms.add(code)
        logger.info(f"Connection {connection.id} joined room {code} ({len(self.room_members[code])} members)")

        self._deliver(connection, self._room_state(room, connection))
        if room.content:
            self._deliver(connection, protocol.push(protocol.CODE_UPDATE, room.content, room=code))
        return True

    def leave(self, connection: Connection, room_code) -> bool:
        code = validate_room_code(room_code)
        if code not in connection.rooms:
            return False
        connection.rooms.discard(code)
        self._remove_member(code, connection.id)
        self._release_seat(connection, code)
        logger.info(f"Connection {connection.id} left room {code}")
        return True

    def check_room(self, room_code) -> bool:
        return self.registry.room_exists(room_code)

    def create_room(self, connection: Connection, room_code) -> bool:
        """Ensure the room exists. Never fails for a well-formed code."""
        room = self.registry.ensure_room(room_code)
        if claim_creator(room, connection.id):
            connection.creator_rooms.add(room.code)
        logger.info(f"Room {room.code} created by connection {connection.id}")
        self._deliver(connection, self._room_state(room, connection))
        return True

    def edit(self, connection: Connection, room_code, text: str) -> bool:
        code = validate_room_code(room_code)
        if code not in connection.rooms:
            raise NotJoined(f"Join room {code} before editing it", room=code)
        if len(text.encode("utf-8")) > self.max_content_bytes:
            raise PayloadTooLarge(f"Content exceeds {self.max_content_bytes} bytes", room=code)

        room = self.registry.get_room(code)
        require_edit(room, connection.id)
        self.registry.set_content(code, text)
        self.broadcast(code, protocol.push(protocol.CODE_UPDATE, text, room=code), exclude=connection.id)
        return True

    def set_permission(self, connection: Connection, room_code, permission) -> str:
        code = validate_room_code(room_code)
        new_permission = Permission.parse(permission)
        room = self.registry.get_room(code)
        require_creator(room, connection.id)
        if room.permission != new_permission:
            room.permission = new_permission
            room.touch()
            logger.info(f"Room {code} permission set to {new_permission.value} by {connection.id}")
            self.broadcast(
                code,
                protocol.push(protocol.PERMISSION_UPDATE, {"permission": new_permission.value}, room=code),
                exclude=connection.id,
            )
        return new_permission.value

    def broadcast(self, room_code: str, message: dict, exclude: Optional[str] = None) -> int:
        """Queue ``message`` for every member of the room except ``exclude``."""
        delivered = 0
        for connection_id in list(self.room_members.get(room_code, ())):
            if connection_id == exclude:
                continue
            target = self.connections.get(connection_id)
            if target is None or target.closed:
                self._remove_member(room_code, connection_id)
                continue
            if self._deliver(target, message):
                delivered += 1
        logger.debug(f"Broadcast {message.get('event')} to {delivered} connections in room {room_code}")
        return delivered

    # Inbound dispatch

    def handle_message(self, connection: Connection, raw) -> None:
        """Decode one client frame and run it; failures become ``error`` replies to the sender."""
        ack = None
        try:
            envelope = protocol.decode_envelope(raw)
            ack = envelope.ack
            handler = self._handlers.get(envelope.name)
            if handler is None:
                raise BadPayload(f"Unknown event: {envelope.event}")
            logger.debug(f"Connection {connection.id} sent {envelope.name}")
            result = handler(connection, envelope.data)
        except CodeRoomError as e:
            logger.warning(f"Rejected message from connection {connection.id}: {e.code} {e.message}")
            self._deliver(connection, protocol.error_reply(e.code, e.message, ack=ack, room=e.room))
            return

        if ack is not None:
            self._deliver(connection, protocol.ack_reply(ack, result))

    def _on_join(self, connection: Connection, data):
        request = protocol.parse_payload(protocol.RoomRequest, data)
        return self.join(connection, request.room_id, request.creator_token)

    def _on_leave(self, connection: Connection, data):
        request = protocol.parse_payload(protocol.RoomRequest, data)
        return self.leave(connection, request.room_id)

    def _on_code_change(self, connection: Connection, data):
        change = protocol.parse_payload(protocol.CodeChange, data)
        return self.edit(connection, change.room_id, change.text)

    def _on_check_room(self, connection: Connection, data):
        request = protocol.parse_payload(protocol.RoomRequest, data)
        return self.check_room(request.room_id)

    def _on_create_room(self, connection: Connection, data):
        request = protocol.parse_payload(protocol.RoomRequest, data)
        return self.create_room(connection, request.room_id)

    def _on_set_permission(self, connection: Connection, data):
        change = protocol.parse_payload(protocol.PermissionChange, data)
        return self.set_permission(connection, change.room_id, change.permission)

    def _on_ping(self, connection: Connection, data):
        self._deliver(connection, protocol.push(protocol.PONG, data))
        return True

    # Helpers

    def _room_state(self, room: Room, connection: Connection) -> dict:
        creator = is_creator(room, connection.id)
        data = {
            "roomId": room.code,
            "permission": room.permission.value,
            "isCreator": creator,
        }
        if creator:
            data["creatorToken"] = room.creator_token
        return protocol.push(protocol.ROOM_STATE, data, room=room.code)

    def _deliver(self, connection: Connection, message: dict) -> bool:
        try:
            connection.send(message)
            return True
        except TransportDisconnected:
            logger.debug(f"Dropped {message.get('event')} for closed connection {connection.id}")
            return False

    def _release_seat(self, connection: Connection, room_code: str) -> None:
        connection.creator_rooms.discard(room_code)
        room = self.registry.find_room(room_code)
        if room is not None:
            release_creator(room, connection.id)

    def _remove_member(self, room_code: str, connection_id: str) -> None:
        members = self.room_members.get(room_code)
        if not members:
            return
        members.discard(connection_id)
        if not members:
            self.room_members.pop(room_code, None)
