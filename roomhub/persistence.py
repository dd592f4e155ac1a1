"""Periodic snapshots of room metadata and message history.

Two documents live side by side:

- ``rooms.toml``: one ``[rooms.<id>]`` table per room with its display name,
  creator and password hash. Comments and unrelated tables in an existing
  file are preserved.
- ``history.cbor``: ``{"version": 1, "rooms": {<id>: [message records]}}``
  holding the newest messages of each room.

Live membership is never written. Every write goes to a temp file next to
the target and is renamed into place, so a crash leaves either the old or the
new document, never a torn one.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any

import tomlkit
from cbor2 import CBORDecodeError
from tomlkit.exceptions import TOMLKitError

from .codec import dump_file, load_file
from .errors import PersistenceError
from .models import Message
from .passwords import is_valid_hash
from .util import expand_path

if TYPE_CHECKING:
    from .core import HubCore

HISTORY_FORMAT_VERSION = 1


def _atomic_write_text(path: str, text: str) -> None:
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class PersistenceScheduler:
    def __init__(
        self,
        hub: HubCore,
        *,
        rooms_path: str,
        history_path: str,
        interval_s: float | None = None,
        history_limit: int | None = None,
    ) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.persistence")
        self.rooms_path = expand_path(rooms_path)
        self.history_path = expand_path(history_path)
        self.interval_s = float(
            hub.config.persist_interval_s if interval_s is None else interval_s
        )
        self.history_limit = int(
            hub.config.persist_history_limit if history_limit is None else history_limit
        )

        self._write_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # Startup

    def load_or_initialize(self) -> bool:
        """
        Restore prior state into the hub.

        Returns True if both documents were read. If either is missing or
        unreadable the hub keeps its default rooms and both documents are
        rewritten empty; this is never fatal.
        """
        try:
            metadata = self._read_rooms()
            histories = self._read_history()
        except PersistenceError as e:
            self.log.warning("No usable prior state (%s); starting fresh", e)
            self._initialize_empty()
            return False

        with self.hub.state_lock:
            self.hub.store.restore(metadata, histories)

        self.log.info(
            "Restored %s rooms and %s messages",
            len(metadata),
            sum(len(v) for v in histories.values()),
        )
        return True

    def _initialize_empty(self) -> None:
        try:
            self._write_rooms({})
            self._write_history({})
        except OSError as e:
            self.log.warning("Failed to initialize persistence documents: %s", e)

    def _read_rooms(self) -> dict[str, dict[str, Any]]:
        p = self.rooms_path
        if not os.path.exists(p):
            raise PersistenceError(f"{p} does not exist")
        try:
            with open(p, encoding="utf-8") as f:
                doc = tomlkit.parse(f.read()).unwrap()
        except (OSError, UnicodeDecodeError, TOMLKitError) as e:
            raise PersistenceError(f"failed to read {p}: {e}") from e

        rooms = doc.get("rooms", {})
        if not isinstance(rooms, dict):
            raise PersistenceError(f"{p}: [rooms] must be a table")

        out: dict[str, dict[str, Any]] = {}
        for rid, tbl in rooms.items():
            if not isinstance(tbl, dict):
                self.log.warning("Skipping room %r: entry is not a table", rid)
                continue
            pw = tbl.get("password_hash")
            if pw is not None and not is_valid_hash(pw):
                # Loading it without the hash would silently unlock the room.
                self.log.warning("Skipping room %r: unreadable password hash", rid)
                continue
            out[str(rid)] = tbl
        return out

    def _read_history(self) -> dict[str, list[Message]]:
        p = self.history_path
        if not os.path.exists(p):
            raise PersistenceError(f"{p} does not exist")
        try:
            doc = load_file(p)
        except (OSError, CBORDecodeError, ValueError, EOFError) as e:
            raise PersistenceError(f"failed to read {p}: {e}") from e

        if not isinstance(doc, dict) or not isinstance(doc.get("rooms"), dict):
            raise PersistenceError(f"{p}: unexpected document layout")
        version = doc.get("version")
        if version != HISTORY_FORMAT_VERSION:
            raise PersistenceError(f"{p}: unsupported history version {version!r}")

        out: dict[str, list[Message]] = {}
        for rid, records in doc["rooms"].items():
            if not isinstance(records, list):
                continue
            msgs: list[Message] = []
            for rec in records:
                if not isinstance(rec, dict):
                    continue
                try:
                    msg = Message.from_record(rec)
                except ValueError as e:
                    self.log.debug("Dropping history record room=%s err=%s", rid, e)
                    continue
                msg.room_id = str(rid)
                msgs.append(msg)
            msgs.sort(key=lambda m: m.id)
            out[str(rid)] = msgs
        return out

    # Writes

    def _write_rooms(self, metadata: dict[str, dict[str, Any]]) -> None:
        p = self.rooms_path
        Path(p).parent.mkdir(parents=True, exist_ok=True)

        doc = None
        if os.path.exists(p):
            try:
                with open(p, encoding="utf-8") as f:
                    doc = tomlkit.parse(f.read())
            except (OSError, UnicodeDecodeError, TOMLKitError):
                doc = None
        if doc is None:
            doc = tomlkit.document()
            doc.add(tomlkit.comment("roomhub room registry (managed by the hub)"))

        rooms = tomlkit.table(is_super_table=True)
        for rid in sorted(metadata):
            tbl = tomlkit.table()
            for key, value in metadata[rid].items():
                # TOML has no null.
                if value is not None:
                    tbl[key] = value
            rooms[rid] = tbl
        doc["rooms"] = rooms

        _atomic_write_text(p, tomlkit.dumps(doc))

    def _write_history(self, histories: dict[str, list[dict[str, Any]]]) -> None:
        p = self.history_path
        Path(p).parent.mkdir(parents=True, exist_ok=True)
        dump_file({"version": HISTORY_FORMAT_VERSION, "rooms": histories}, p)

    def flush(self) -> bool:
        """Snapshot under the state lock, write outside it. Never raises."""
        with self.hub.state_lock:
            metadata, histories = self.hub.store.snapshot_for_persistence(self.history_limit)

        with self._write_lock:
            try:
                self._write_rooms(metadata)
                self._write_history(histories)
            except Exception:
                self.hub.stats.inc("persist_failed")
                self.log.exception("Snapshot write failed; will retry next interval")
                return False

        self.hub.stats.inc("persist_ok")
        self.log.debug(
            "Snapshot written rooms=%s messages=%s",
            len(metadata),
            sum(len(v) for v in histories.values()),
        )
        return True

    # Background loop

    def start(self) -> None:
        if self._thread is not None:
            return
        if self.interval_s <= 0:
            self.log.info("Periodic persistence disabled")
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="roomhub-persist", daemon=True
        )
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            self.flush()

    def stop(self, *, flush: bool = True) -> None:
        self._stop.set()
        t = self._thread
        self._thread = None
        if t is not None:
            t.join(timeout=5.0)
        if flush:
            self.flush()
