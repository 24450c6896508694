import json

import pytest

import protocol
from constants import ROOM_PLACEHOLDER
from errors import InvalidRoomCode, NotJoined, PayloadTooLarge, PermissionDenied, TransportDisconnected
from permissions import Permission
from sessions import Connection, SessionManager


def send(sessions, connection, event, data=None, ack=None):
    sessions.handle_message(connection, json.dumps({"event": event, "data": data, "ack": ack}))
    return connection.drain()


def events(messages):
    return [message["event"] for message in messages]


def test_connect_and_disconnect(sessions):
    connection = sessions.connect()
    assert sessions.connection_count == 1
    assert connection.rooms == set()

    sessions.disconnect(connection)
    assert sessions.connection_count == 0
    assert connection.closed
    with pytest.raises(TransportDisconnected):
        connection.send({"event": "x"})


def test_disconnect_twice_is_harmless(sessions):
    connection = sessions.connect()
    sessions.disconnect(connection)
    sessions.disconnect(connection)
    assert sessions.connection_count == 0


def test_join_creates_room_and_sends_snapshot_to_joiner_only(sessions, registry):
    a = sessions.connect()
    b = sessions.connect()
    sessions.join(b, "AB12CD")
    b.drain()

    assert sessions.join(a, "ab12cd")

    messages = a.drain()
    assert events(messages) == [protocol.ROOM_STATE, protocol.CODE_UPDATE]
    assert messages[1] == protocol.push(protocol.CODE_UPDATE, ROOM_PLACEHOLDER, room="AB12CD")
    assert b.drain() == []
    assert registry.room_exists("AB12CD")
    assert a.rooms == {"AB12CD"}
    assert sessions.members("ab12cd") == {a.id, b.id}


def test_join_skips_snapshot_for_empty_room(sessions, registry):
    registry.ensure_room("AB12CD")
    registry.set_content("AB12CD", "")
    a = sessions.connect()
    sessions.join(a, "AB12CD")
    assert events(a.drain()) == [protocol.ROOM_STATE]


def test_connection_may_join_several_rooms(sessions):
    a = sessions.connect()
    sessions.join(a, "ROOM01")
    sessions.join(a, "ROOM02")
    assert a.rooms == {"ROOM01", "ROOM02"}
    assert sessions.active_room_codes() == {"ROOM01", "ROOM02"}


def test_first_joiner_becomes_creator(sessions, registry):
    a = sessions.connect()
    b = sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")

    state_a = a.drain()[0]["data"]
    state_b = b.drain()[0]["data"]
    assert state_a["isCreator"] is True
    assert state_a["creatorToken"] == registry.get_room("AB12CD").creator_token
    assert state_b["isCreator"] is False
    assert "creatorToken" not in state_b


def test_creator_reclaims_seat_from_new_connection(sessions, registry):
    home = sessions.connect()
    sessions.create_room(home, "AB12CD")
    token = home.drain()[0]["data"]["creatorToken"]
    sessions.disconnect(home)
    assert registry.get_room("AB12CD").creator_connection_id is None

    editor = sessions.connect()
    sessions.join(editor, "AB12CD", creator_token=token)
    assert editor.drain()[0]["data"]["isCreator"] is True
    assert registry.get_room("AB12CD").creator_connection_id == editor.id


def test_check_room_does_not_create_rooms(sessions, registry):
    a = sessions.connect()
    assert sessions.check_room("ZZ99ZZ") is False
    assert len(registry) == 0
    sessions.create_room(a, "zz99zz")
    assert sessions.check_room("ZZ99ZZ") is True


def test_create_room_always_succeeds_and_keeps_content(sessions, registry):
    a = sessions.connect()
    b = sessions.connect()
    assert sessions.create_room(a, "AB12CD") is True
    registry.set_content("AB12CD", "kept")
    assert sessions.create_room(b, "ab12cd") is True
    assert registry.get_content("AB12CD") == "kept"
    assert b.drain()[0]["data"]["isCreator"] is False


def test_edit_fans_out_to_others_without_echo(sessions, registry):
    a, b, c = sessions.connect(), sessions.connect(), sessions.connect()
    for connection in (a, b, c):
        sessions.join(connection, "AB12CD")
        connection.drain()

    sessions.edit(a, "AB12CD", "let x=1;")

    expected = protocol.push(protocol.CODE_UPDATE, "let x=1;", room="AB12CD")
    assert a.drain() == []
    assert b.drain() == [expected]
    assert c.drain() == [expected]
    assert registry.get_content("AB12CD") == "let x=1;"


def test_edit_does_not_leak_into_other_rooms(sessions):
    a, b = sessions.connect(), sessions.connect()
    sessions.join(a, "ROOM01")
    sessions.join(b, "ROOM02")
    a.drain(), b.drain()

    sessions.edit(a, "ROOM01", "only here")
    assert b.drain() == []


def test_updates_arrive_in_processing_order(sessions, registry):
    a, b, c = sessions.connect(), sessions.connect(), sessions.connect()
    for connection in (a, b, c):
        sessions.join(connection, "AB12CD")
        connection.drain()

    sessions.edit(a, "AB12CD", "one")
    sessions.edit(b, "AB12CD", "two")
    sessions.edit(a, "AB12CD", "three")

    assert [m["data"] for m in c.drain()] == ["one", "two", "three"]
    assert registry.get_content("AB12CD") == "three"


def test_edit_requires_membership(sessions, registry):
    a = sessions.connect()
    sessions.create_room(a, "AB12CD")
    with pytest.raises(NotJoined):
        sessions.edit(a, "AB12CD", "x")
    assert registry.get_content("AB12CD") == ROOM_PLACEHOLDER


def test_edit_rejects_oversized_content(registry):
    sessions = SessionManager(registry, max_content_bytes=8)
    a = sessions.connect()
    sessions.join(a, "AB12CD")
    with pytest.raises(PayloadTooLarge):
        sessions.edit(a, "AB12CD", "é" * 5)


def test_view_only_room_rejects_non_creator_edits(sessions, registry):
    creator, viewer = sessions.connect(), sessions.connect()
    sessions.join(creator, "AB12CD")
    sessions.join(viewer, "AB12CD")
    creator.drain(), viewer.drain()

    assert sessions.set_permission(creator, "AB12CD", "view-only") == "view-only"
    assert viewer.drain() == [
        protocol.push(protocol.PERMISSION_UPDATE, {"permission": "view-only"}, room="AB12CD")
    ]

    with pytest.raises(PermissionDenied):
        sessions.edit(viewer, "AB12CD", "vandalism")
    assert registry.get_content("AB12CD") == ROOM_PLACEHOLDER
    assert creator.drain() == []

    sessions.edit(creator, "AB12CD", "still works")
    assert viewer.drain()[0]["data"] == "still works"


def test_only_creator_changes_permission(sessions, registry):
    creator, other = sessions.connect(), sessions.connect()
    sessions.join(creator, "AB12CD")
    sessions.join(other, "AB12CD")
    with pytest.raises(PermissionDenied):
        sessions.set_permission(other, "AB12CD", "view-only")
    assert registry.get_room("AB12CD").permission == Permission.EDIT


def test_unchanged_permission_is_not_broadcast(sessions):
    creator, other = sessions.connect(), sessions.connect()
    sessions.join(creator, "AB12CD")
    sessions.join(other, "AB12CD")
    other.drain()
    sessions.set_permission(creator, "AB12CD", "edit")
    assert other.drain() == []


def test_leave_stops_delivery(sessions):
    a, b = sessions.connect(), sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")
    b.drain()

    assert sessions.leave(b, "ab12cd") is True
    assert sessions.leave(b, "AB12CD") is False
    sessions.edit(a, "AB12CD", "after leave")
    assert b.drain() == []


def test_disconnect_discards_memberships_and_frees_creator_seat(sessions, registry):
    a, b = sessions.connect(), sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")

    sessions.disconnect(a)

    assert sessions.members("AB12CD") == {b.id}
    assert registry.get_room("AB12CD").creator_connection_id is None
    sessions.edit(b, "AB12CD", "x")
    assert a.drain() == []


def test_broadcast_skips_stale_members(sessions):
    a, b = sessions.connect(), sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")
    b.closed = True

    assert sessions.broadcast("AB12CD", {"event": "x"}) == 1
    assert sessions.members("AB12CD") == {a.id}


def test_handle_message_acks_results(sessions):
    a = sessions.connect()
    assert send(sessions, a, "check-room", "ab12cd", ack=1) == [protocol.ack_reply(1, False)]

    messages = send(sessions, a, "create-room", "ab12cd", ack=2)
    assert events(messages) == [protocol.ROOM_STATE, protocol.ACK]
    assert messages[-1] == protocol.ack_reply(2, True)

    assert send(sessions, a, "check-room", "AB12CD", ack=3) == [protocol.ack_reply(3, True)]


def test_handle_message_without_ack_sends_no_reply(sessions):
    a, b = sessions.connect(), sessions.connect()
    send(sessions, a, "join-room", "AB12CD")
    send(sessions, b, "join", {"roomId": "AB12CD"})
    assert send(sessions, a, "code-change", {"room": "AB12CD", "code": "x"}) == []
    assert b.drain()[0]["data"] == "x"


def test_handle_message_reports_errors_to_sender_only(sessions):
    a, b = sessions.connect(), sessions.connect()
    send(sessions, b, "join", "AB12CD")

    reply = send(sessions, a, "code-change", {"roomId": "AB12CD", "text": "x"}, ack=9)
    assert reply == [protocol.error_reply("NOT_JOINED", "Join room AB12CD before editing it", ack=9, room="AB12CD")]
    assert b.drain() == []


@pytest.mark.parametrize(
    "raw, code",
    [
        ("garbage", "BAD_PAYLOAD"),
        ('{"event": "dance"}', "BAD_PAYLOAD"),
        ('{"event": "join", "data": {"nope": 1}}', "BAD_PAYLOAD"),
        ('{"event": "join", "data": "abc"}', "INVALID_ROOM_CODE"),
        ('{"event": "set-permission", "data": {"roomId": "AB12CD", "permission": "owner"}}', "BAD_PAYLOAD"),
    ],
)
def test_malformed_messages_become_error_replies(sessions, raw, code):
    a = sessions.connect()
    sessions.handle_message(a, raw)
    (reply,) = a.drain()
    assert reply["event"] == protocol.ERROR
    assert reply["data"]["code"] == code
    # the connection keeps working
    assert send(sessions, a, "ping", ack=1) == [protocol.push(protocol.PONG), protocol.ack_reply(1, True)]


def test_set_permission_on_unknown_room(sessions):
    a = sessions.connect()
    (reply,) = send(sessions, a, "set-permission", {"roomId": "ZZ99ZZ", "permission": "edit"}, ack=1)
    assert reply["data"]["code"] == "ROOM_NOT_FOUND"
    assert reply["room"] == "ZZ99ZZ"


def test_invalid_code_raises_directly(sessions):
    a = sessions.connect()
    with pytest.raises(InvalidRoomCode):
        sessions.join(a, "no")


def test_connection_outbox_is_fifo():
    connection = Connection("c1")
    for i in range(3):
        connection.send({"event": "n", "data": i})
    assert [m["data"] for m in connection.drain()] == [0, 1, 2]
    assert connection.drain() == []


def test_stalled_peer_keeps_only_latest_code_update(registry):
    sessions = SessionManager(registry, outbox_size=4)
    a = sessions.connect()
    b = sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")
    a.drain()

    for i in range(5000):
        sessions.edit(a, "AB12CD", f"edit {i}")

    assert b.outbox.qsize() <= 4
    assert not b.closed
    messages = b.drain()
    assert events(messages) == ["room-state", "code-update"]
    assert messages[-1]["data"] == "edit 4999"


def test_peer_too_far_behind_is_disconnected(registry):
    sessions = SessionManager(registry, outbox_size=3)
    a = sessions.connect()
    b = sessions.connect()
    sessions.join(a, "AB12CD")
    sessions.join(b, "AB12CD")
    a.drain()

    sessions.set_permission(a, "AB12CD", "view-only")
    sessions.set_permission(a, "AB12CD", "edit")

    assert b.closed
    assert b.drain() == [None]
    assert sessions.broadcast("AB12CD", protocol.push(protocol.CODE_UPDATE, "x", room="AB12CD"), exclude=a.id) == 0
    assert b.id not in sessions.members("AB12CD")


def test_full_outbox_coalesces_per_room():
    connection = Connection("c1", max_pending=3)
    connection.send(protocol.push(protocol.CODE_UPDATE, "a1", room="AAAAAA"))
    connection.send(protocol.push(protocol.CODE_UPDATE, "b1", room="BBBBBB"))
    connection.send(protocol.push(protocol.CODE_UPDATE, "a2", room="AAAAAA"))
    connection.send(protocol.push(protocol.CODE_UPDATE, "b2", room="BBBBBB"))

    assert [(m["room"], m["data"]) for m in connection.drain()] == [("AAAAAA", "a2"), ("BBBBBB", "b2")]
