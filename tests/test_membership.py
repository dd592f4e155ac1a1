from dataclasses import replace

import pytest

import roomhub.membership as membership_module
from roomhub.constants import MessageType
from roomhub.core import HubCore
from roomhub.errors import (
    ConnectionClosed,
    InvalidPassword,
    NotRegistered,
    RoomAlreadyExists,
    RoomNotFound,
    ValidationError,
)
from roomhub.models import Room
from roomhub.passwords import hash_password, verify_password


def test_register_sends_identity_and_room_list(hub, sink) -> None:
    hub.on_connect("c1")
    u = hub.membership.register("c1", "  alice\n ")

    assert u.display_name == "alice"
    assert sink.types_for("c1") == [MessageType.USER_REGISTERED, MessageType.ROOMS_LIST]
    assert sink.bodies("c1", MessageType.USER_REGISTERED) == [
        {"userId": "c1", "username": "alice"}
    ]
    rooms = sink.bodies("c1", MessageType.ROOMS_LIST)[0]["rooms"]
    assert [r["id"] for r in rooms] == ["general", "random", "tech"]
    assert rooms[0] == {
        "id": "general",
        "name": "General",
        "memberCount": 0,
        "hasPassword": False,
        "messageCount": 0,
    }


def test_register_falls_back_to_generated_name(hub) -> None:
    hub.on_connect("abcdef123")
    assert hub.membership.register("abcdef123", "   ").display_name == "User_abcdef"
    assert hub.membership.register("abcdef123", None).display_name == "User_abcdef"


def test_duplicate_display_names_are_allowed(hub, user) -> None:
    user("c1", "sam")
    user("c2", "sam")
    assert hub.registry.get("c1").display_name == hub.registry.get("c2").display_name


def test_reregister_keeps_membership(hub, member) -> None:
    member("c1")
    u = hub.membership.register("c1", "renamed")

    assert u.display_name == "renamed"
    assert u.member_rooms == {"general"}
    assert "c1" in hub.store.get("general").members


def test_create_room_requires_registration(hub) -> None:
    hub.on_connect("c1")
    with pytest.raises(NotRegistered):
        hub.membership.create_room("c1", "ops", "Ops")


def test_create_room_rejects_bad_id(hub, user) -> None:
    user("c1")
    with pytest.raises(ValidationError):
        hub.membership.create_room("c1", "!!!", "Nothing")


def test_create_room_announces_and_auto_joins_creator(hub, user, sink) -> None:
    user("c1")
    hub.on_connect("idle")
    sink.clear()

    room = hub.membership.create_room("c1", "Project X", "Project X")

    assert room.id == "project-x"
    assert room.creator_id == "c1"
    assert room.members == set()
    assert sink.recipients(MessageType.NEW_ROOM) == ["c1", "idle"]
    assert sink.bodies("idle", MessageType.NEW_ROOM)[0]["id"] == "project-x"
    assert sink.bodies("c1", MessageType.AUTO_JOIN) == [
        {"roomId": "project-x", "roomName": "Project X"}
    ]


def test_create_room_hashes_password(hub, user) -> None:
    user("c1")
    room = hub.membership.create_room("c1", "secret", "Secret", "pw")

    assert room.has_password
    assert "pw" not in room.password_hash
    assert verify_password("pw", room.password_hash)
    assert room.summary()["hasPassword"] is True


def test_blank_password_creates_public_room(hub, user) -> None:
    user("c1")
    room = hub.membership.create_room("c1", "open", "Open", "   ")
    assert room.password_hash is None


def test_create_existing_room_fails(hub, user) -> None:
    user("c1")
    with pytest.raises(RoomAlreadyExists):
        hub.membership.create_room("c1", "General", "Another general")


def test_create_race_loses_to_concurrent_insert(hub, user, monkeypatch) -> None:
    user("c1")

    def racing_hash(password: str, *, iterations: int) -> str:
        # Another caller inserts the same id while the hash is being computed.
        with hub.state_lock:
            hub.store.insert_if_absent(Room(id="ops", display_name="Ops"))
        return hash_password(password, iterations=iterations)

    monkeypatch.setattr(membership_module, "hash_password", racing_hash)

    with pytest.raises(RoomAlreadyExists):
        hub.membership.create_room("c1", "ops", "Ops", "pw")
    assert hub.store.get("ops").password_hash is None


def test_join_error_priority(hub) -> None:
    hub.on_connect("c1")
    with pytest.raises(NotRegistered):
        hub.membership.join_room("c1", "no-such-room")

    hub.membership.register("c1", "alice")
    with pytest.raises(RoomNotFound):
        hub.membership.join_room("c1", "no-such-room")
    assert hub.stats.get("join_failures") == 1


def test_join_with_wrong_password_changes_nothing(hub, user, sink) -> None:
    user("owner")
    user("c2")
    hub.membership.create_room("owner", "vault", "Vault", "s3cret")
    sink.clear()

    with pytest.raises(InvalidPassword):
        hub.membership.join_room("c2", "vault", "guess")

    assert hub.store.get("vault").members == set()
    assert hub.registry.get("c2").member_rooms == set()
    assert sink.events == []


def test_join_with_password(hub, user) -> None:
    user("owner")
    user("c2")
    hub.membership.create_room("owner", "vault", "Vault", "s3cret")

    room = hub.membership.join_room("c2", "vault", "s3cret")
    assert "c2" in room.members


def test_join_notifies_joiner_members_and_everyone(hub, member, user, sink) -> None:
    member("a", name="alice")
    user("b", "bob")
    hub.on_connect("idle")
    sink.clear()

    hub.membership.join_room("b", "general")

    joined = sink.bodies("b", MessageType.ROOM_JOINED)
    assert joined == [{"roomId": "general", "roomName": "General", "previousMessages": []}]
    assert sink.bodies("a", MessageType.USER_JOINED) == [
        {"room": "general", "user": "bob", "memberCount": 2}
    ]
    assert sink.bodies("b", MessageType.USER_JOINED) == []
    assert sink.recipients(MessageType.ROOM_UPDATE) == ["a", "b", "idle"]
    assert sink.bodies("idle", MessageType.ROOM_UPDATE) == [
        {"roomId": "general", "memberCount": 2, "hasPassword": False}
    ]


def test_join_snapshot_is_limited_to_recent_history(hub, member, user, sink) -> None:
    member("a")
    for i in range(120):
        hub.broadcaster.send_message("a", "general", f"m{i}")
    user("b")
    sink.clear()

    hub.membership.join_room("b", "general")

    history = sink.bodies("b", MessageType.ROOM_JOINED)[0]["previousMessages"]
    assert len(history) == 100
    assert history[0]["text"] == "m20"
    assert history[-1]["text"] == "m119"


def test_rejoin_resends_snapshot_without_presence(hub, member, sink) -> None:
    member("a")
    member("b")
    sink.clear()

    hub.membership.join_room("a", "general")

    assert sink.types_for("a") == [MessageType.ROOM_JOINED]
    assert sink.types_for("b") == []


def test_auto_create_rooms_on_join(hub_config, sink, timers) -> None:
    hub = HubCore(replace(hub_config, auto_create_rooms=True), deliver=sink, timer_factory=timers)
    hub.on_connect("c1")
    hub.membership.register("c1", "alice")
    sink.clear()

    room = hub.membership.join_room("c1", "Lounge")

    assert room.id == "lounge"
    assert room.creator_id == "c1"
    assert not room.has_password
    assert sink.types_for("c1")[:2] == [MessageType.NEW_ROOM, MessageType.ROOM_JOINED]


def test_single_room_membership_leaves_other_rooms(hub_config, sink, timers) -> None:
    hub = HubCore(
        replace(hub_config, single_room_membership=True), deliver=sink, timer_factory=timers
    )
    for conn in ("a", "b"):
        hub.on_connect(conn)
        hub.membership.register(conn, conn)
        hub.membership.join_room(conn, "general")
    sink.clear()

    hub.membership.join_room("a", "random")

    assert hub.registry.get("a").member_rooms == {"random"}
    assert hub.store.get("general").members == {"b"}
    assert sink.bodies("b", MessageType.USER_LEFT) == [
        {"room": "general", "user": "a", "memberCount": 1}
    ]


def test_multi_room_membership_by_default(hub, member) -> None:
    member("a", "general")
    hub.membership.join_room("a", "random")
    assert hub.registry.get("a").member_rooms == {"general", "random"}


def test_leave_room(hub, member, sink) -> None:
    member("a", name="alice")
    member("b", name="bob")
    sink.clear()

    assert hub.membership.leave_room("b", "general") is True

    assert sink.bodies("a", MessageType.USER_LEFT) == [
        {"room": "general", "user": "bob", "memberCount": 1}
    ]
    assert sink.bodies("b", MessageType.USER_LEFT) == []
    assert "b" in sink.recipients(MessageType.ROOM_UPDATE)
    assert hub.registry.get("b").member_rooms == set()


def test_leave_room_not_joined_is_noop(hub, user, sink) -> None:
    user("a")
    sink.clear()
    assert hub.membership.leave_room("a", "general") is False
    assert hub.membership.leave_room("a", "missing") is False
    assert sink.events == []


def test_leave_room_requires_registration(hub) -> None:
    hub.on_connect("a")
    with pytest.raises(NotRegistered):
        hub.membership.leave_room("a", "general")


def test_disconnect_leaves_every_room(hub, member, sink) -> None:
    member("a", "general", name="alice")
    hub.membership.join_room("a", "random")
    member("b", "general")
    member("c", "random")
    sink.clear()

    hub.on_disconnect("a")

    assert sink.bodies("b", MessageType.USER_LEFT) == [
        {"room": "general", "user": "alice", "memberCount": 1}
    ]
    assert sink.bodies("c", MessageType.USER_LEFT) == [
        {"room": "random", "user": "alice", "memberCount": 1}
    ]
    assert "a" not in hub.store.get("general").members
    assert "a" not in hub.store.get("random").members
    assert hub.registry.get("a") is None
    assert "a" not in hub.registry.connection_ids()
    assert "a" not in sink.recipients(MessageType.ROOM_UPDATE)


def test_disconnect_unregistered_connection(hub) -> None:
    hub.on_connect("x")
    assert hub.membership.disconnect("x") is None
    assert hub.registry.connection_ids() == []


def test_list_rooms_reports_member_counts(hub, member) -> None:
    member("a")
    member("b")
    counts = {r["id"]: r["memberCount"] for r in hub.membership.list_rooms()}
    assert counts == {"general": 2, "random": 0, "tech": 0}


def test_closed_connection_cannot_register_again(hub, member) -> None:
    member("a")
    hub.on_disconnect("a")

    with pytest.raises(ConnectionClosed):
        hub.membership.register("a", "alice")
    with pytest.raises(NotRegistered):
        hub.membership.join_room("a", "general")

    assert hub.registry.get("a") is None
    assert hub.registry.get_stats() == {"connections": 0, "registered": 0}
    assert hub.store.get("general").members == set()


def test_unknown_connection_cannot_register(hub) -> None:
    with pytest.raises(ConnectionClosed):
        hub.membership.register("never-connected", "alice")
    assert hub.registry.get("never-connected") is None
