import os

import tomlkit

from roomhub.codec import dump_file, load_file
from roomhub.constants import KIND_SYSTEM, MessageType
from roomhub.core import HubCore
from roomhub.persistence import PersistenceScheduler


def make_scheduler(hub, hub_config) -> PersistenceScheduler:
    return PersistenceScheduler(
        hub,
        rooms_path=hub_config.rooms_path,
        history_path=hub_config.history_path,
    )


def test_missing_documents_start_fresh(hub, hub_config) -> None:
    sched = make_scheduler(hub, hub_config)

    assert sched.load_or_initialize() is False

    assert sorted(hub.store.rooms) == ["general", "random", "tech"]
    assert os.path.exists(hub_config.rooms_path)
    assert load_file(hub_config.history_path) == {"version": 1, "rooms": {}}


def test_corrupt_history_starts_fresh(hub, hub_config) -> None:
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write('[rooms.ops]\ndisplay_name = "Ops"\n')
    with open(hub_config.history_path, "wb") as f:
        f.write(b"\xff\x00garbage")

    assert make_scheduler(hub, hub_config).load_or_initialize() is False

    assert "ops" not in hub.store.rooms
    assert load_file(hub_config.history_path) == {"version": 1, "rooms": {}}


def test_truncated_history_starts_fresh(hub, hub_config) -> None:
    dump_file({"version": 1, "rooms": {"general": []}}, hub_config.history_path)
    with open(hub_config.history_path, "rb") as f:
        data = f.read()
    with open(hub_config.history_path, "wb") as f:
        f.write(data[: len(data) // 2])
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write("")

    assert make_scheduler(hub, hub_config).load_or_initialize() is False
    assert sorted(hub.store.rooms) == ["general", "random", "tech"]
    assert load_file(hub_config.history_path) == {"version": 1, "rooms": {}}


def test_corrupt_rooms_document_starts_fresh(hub, hub_config) -> None:
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write("[rooms\nnot toml")
    dump_file({"version": 1, "rooms": {}}, hub_config.history_path)

    assert make_scheduler(hub, hub_config).load_or_initialize() is False
    assert sorted(hub.store.rooms) == ["general", "random", "tech"]


def test_flush_and_restore(hub_config, sink, timers, member, hub) -> None:
    member("a")
    hub.membership.create_room("a", "vault", "The Vault", "pw")
    hub.membership.join_room("a", "vault", "pw")
    for i in range(3):
        hub.broadcaster.send_message("a", "general", f"m{i}")
    last_id = hub.store.get("general").log[-1].id

    assert make_scheduler(hub, hub_config).flush() is True
    assert hub.stats.get("persist_ok") == 1

    restored = HubCore(hub_config, deliver=sink, timer_factory=timers)
    assert make_scheduler(restored, hub_config).load_or_initialize() is True

    vault = restored.store.get("vault")
    assert vault.display_name == "The Vault"
    assert vault.creator_id == "a"
    assert vault.has_password
    assert vault.password_hash == hub.store.get("vault").password_hash
    # Live membership is never persisted.
    assert vault.members == set()

    general = restored.store.get("general")
    assert [m.payload for m in general.log] == ["m0", "m1", "m2"]
    assert general.log[0].author_name == "a"

    # New ids keep sorting after restored ones even if the clock went backwards.
    new_id, _ = general.next_message_id(ms=0)
    assert new_id > last_id


def test_snapshot_keeps_only_recent_history(hub, hub_config, member) -> None:
    member("a")
    for i in range(150):
        hub.broadcaster.send_message("a", "general", f"m{i}")

    make_scheduler(hub, hub_config).flush()

    records = load_file(hub_config.history_path)["rooms"]["general"]
    assert len(records) == 100
    assert records[0]["payload"] == "m50"


def test_rooms_document_is_toml_and_keeps_comments(hub, hub_config, user) -> None:
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write("# operator notes\n[rooms]\n")
    user("a")
    hub.membership.create_room("a", "ops", "Ops")

    make_scheduler(hub, hub_config).flush()

    with open(hub_config.rooms_path, encoding="utf-8") as f:
        text = f.read()
    assert "# operator notes" in text
    doc = tomlkit.parse(text)
    assert doc["rooms"]["ops"]["display_name"] == "Ops"
    assert doc["rooms"]["ops"]["creator_id"] == "a"
    assert "password_hash" not in doc["rooms"]["ops"]
    assert set(doc["rooms"]) == {"general", "random", "tech", "ops"}


def test_unreadable_password_hash_skips_room(hub, hub_config) -> None:
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write('[rooms.vault]\ndisplay_name = "Vault"\npassword_hash = "plaintext"\n')
    dump_file({"version": 1, "rooms": {}}, hub_config.history_path)

    assert make_scheduler(hub, hub_config).load_or_initialize() is True
    assert hub.store.get("vault") is None


def test_failed_write_is_reported_not_raised(hub, tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    sched = PersistenceScheduler(
        hub,
        rooms_path=str(blocker / "rooms.toml"),
        history_path=str(blocker / "history.cbor"),
    )

    assert sched.flush() is False
    assert hub.stats.get("persist_failed") == 1


def test_stop_flushes(hub, hub_config, member) -> None:
    member("a")
    hub.broadcaster.send_message("a", "general", "bye")
    sched = make_scheduler(hub, hub_config)
    sched.start()
    sched.stop(flush=True)

    records = load_file(hub_config.history_path)["rooms"]["general"]
    assert [r["payload"] for r in records] == ["bye"]


def test_stored_system_entries_replay_to_joiners(hub, hub_config, member, sink) -> None:
    record = {
        "id": "0000000000001-000000-aaaaaa",
        "kind": KIND_SYSTEM,
        "payload": "maintenance at noon",
        "timestamp": 1,
    }
    dump_file({"version": 1, "rooms": {"general": [record]}}, hub_config.history_path)
    with open(hub_config.rooms_path, "w", encoding="utf-8") as f:
        f.write("")

    assert make_scheduler(hub, hub_config).load_or_initialize() is True
    member("a")

    replay = sink.bodies("a", MessageType.ROOM_JOINED)[0]["previousMessages"]
    assert [(m["kind"], m["text"]) for m in replay] == [(KIND_SYSTEM, "maintenance at noon")]
    assert replay[0]["roomId"] == "general"
