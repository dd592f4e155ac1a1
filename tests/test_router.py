from roomhub.codec import encode
from roomhub.constants import MessageType
from roomhub.protocol import (
    CreateRoom,
    GetRooms,
    JoinRoom,
    LeaveRoom,
    Ping,
    RegisterUser,
    SendMessage,
    Typing,
    command_envelope,
)


def send(hub, conn, cmd) -> None:
    hub.handle_payload(conn, encode(command_envelope(cmd)))


def test_bad_payload_gets_error(hub, sink) -> None:
    hub.on_connect("c1")
    hub.handle_payload("c1", b"\xff\xfe not cbor")

    errors = sink.bodies("c1", MessageType.ERROR)
    assert len(errors) == 1
    assert errors[0]["message"].startswith("bad message:")
    assert hub.stats.get("pkts_bad") == 1
    assert hub.stats.get("pkts_in") == 1


def test_hub_event_from_client_is_rejected(hub, sink) -> None:
    hub.on_connect("c1")
    hub.handle_payload("c1", encode({0: 1, 1: int(MessageType.PONG), 2: b"x", 3: 1}))
    assert len(sink.bodies("c1", MessageType.ERROR)) == 1


def test_full_session(hub, sink) -> None:
    for conn in ("a", "b"):
        hub.on_connect(conn)
        send(hub, conn, RegisterUser(name=conn.upper()))
        send(hub, conn, JoinRoom(room_id="general"))

    send(hub, "a", Typing(room_id="general", is_typing=True))
    send(hub, "a", SendMessage(room_id="general", text="hello"))
    send(hub, "b", LeaveRoom(room_id="general"))

    assert sink.types_for("b") == [
        MessageType.USER_REGISTERED,
        MessageType.ROOMS_LIST,
        MessageType.ROOM_JOINED,
        MessageType.ROOM_UPDATE,
        MessageType.USER_TYPING,
        MessageType.RECEIVE_MESSAGE,
        MessageType.USER_TYPING,
        MessageType.ROOM_UPDATE,
    ]
    assert sink.bodies("a", MessageType.USER_LEFT) == [
        {"room": "general", "user": "B", "memberCount": 1}
    ]


def test_join_failure_uses_join_error(hub, sink) -> None:
    hub.on_connect("c1")
    send(hub, "c1", JoinRoom(room_id="general"))
    assert sink.bodies("c1", MessageType.JOIN_ERROR) == [{"message": "Please register first"}]

    send(hub, "c1", RegisterUser(name="alice"))
    send(hub, "c1", JoinRoom(room_id="nowhere"))
    assert len(sink.bodies("c1", MessageType.JOIN_ERROR)) == 2
    assert sink.bodies("c1", MessageType.ERROR) == []


def test_wrong_password_uses_join_error(hub, sink) -> None:
    for conn in ("a", "b"):
        hub.on_connect(conn)
        send(hub, conn, RegisterUser(name=conn))
    send(hub, "a", CreateRoom(room_id="vault", room_name="Vault", password="pw"))
    send(hub, "b", JoinRoom(room_id="vault", password="nope"))

    assert sink.bodies("b", MessageType.JOIN_ERROR) == [{"message": "Invalid password"}]
    assert hub.stats.get("errors_sent") == 1


def test_create_failure_uses_create_error(hub, sink) -> None:
    hub.on_connect("c1")
    send(hub, "c1", RegisterUser(name="alice"))
    send(hub, "c1", CreateRoom(room_id="general", room_name="General"))

    assert len(sink.bodies("c1", MessageType.CREATE_ERROR)) == 1


def test_send_to_unjoined_room_uses_error(hub, sink) -> None:
    hub.on_connect("c1")
    send(hub, "c1", RegisterUser(name="alice"))
    send(hub, "c1", SendMessage(room_id="general", text="hi"))

    errors = sink.bodies("c1", MessageType.ERROR)
    assert len(errors) == 1
    assert "not in room" in errors[0]["message"]


def test_get_rooms(hub, sink) -> None:
    hub.on_connect("c1")
    send(hub, "c1", GetRooms())
    rooms = sink.bodies("c1", MessageType.ROOMS_LIST)[0]["rooms"]
    assert [r["id"] for r in rooms] == ["general", "random", "tech"]


def test_ping_pong(hub, sink) -> None:
    hub.on_connect("c1")
    send(hub, "c1", Ping(client_time=1_000))

    pong = sink.bodies("c1", MessageType.PONG)[0]
    assert pong["clientTime"] == 1_000
    assert pong["serverTime"] >= 1_000
    assert pong["latency"] == pong["serverTime"] - 1_000


def test_frames_after_disconnect_leave_no_member_behind(hub, sink) -> None:
    hub.on_connect("c1")
    hub.on_disconnect("c1")

    send(hub, "c1", RegisterUser(name="alice"))
    send(hub, "c1", JoinRoom(room_id="general"))

    assert hub.registry.get("c1") is None
    assert hub.store.get("general").members == set()
    assert MessageType.USER_REGISTERED not in sink.types_for("c1")
