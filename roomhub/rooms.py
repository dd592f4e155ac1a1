"""Room storage for the hub.

This module owns room metadata, live membership sets and the bounded
per-room message log:
- Insert-if-absent room creation
- Membership bookkeeping (the coordinator decides when)
- Log append with hard/soft cap eviction
- Snapshot and restore for persistence
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .errors import ValidationError
from .models import Message, Room
from .util import default_room_name, normalize_room_id, normalize_room_name

if TYPE_CHECKING:
    from .core import HubCore


class RoomStore:
    """Owns every Room. All methods must be called with the hub state lock held."""

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.rooms")
        self.rooms: dict[str, Room] = {}

    def get(self, room_id: str) -> Room | None:
        return self.rooms.get(room_id)

    def resolve(self, room_id: Any) -> Room | None:
        """Look up a room by exact id, then by its normalized form."""
        if not isinstance(room_id, str):
            return None
        room = self.rooms.get(room_id)
        if room is not None:
            return room
        try:
            rid = normalize_room_id(room_id, max_chars=self.hub.config.max_room_id_len)
        except ValidationError:
            return None
        return self.rooms.get(rid)

    def insert_if_absent(self, room: Room) -> bool:
        """Insert `room` unless its id is taken. Returns True if inserted."""
        if room.id in self.rooms:
            return False
        self.rooms[room.id] = room
        return True

    def ensure_default_rooms(self, room_ids: tuple[str, ...] | list[str]) -> None:
        """Create the configured rooms under their normalized ids."""
        for raw in room_ids:
            try:
                rid = normalize_room_id(raw, max_chars=self.hub.config.max_room_id_len)
            except ValidationError as e:
                self.log.warning("Ignoring default room %r: %s", raw, e)
                continue
            if rid in self.rooms:
                continue
            if raw.strip() == rid:
                name = default_room_name(rid)
            else:
                name = normalize_room_name(raw, rid, max_chars=self.hub.config.max_room_name_len)
            self.rooms[rid] = Room(id=rid, display_name=name)

    def add_member(self, room: Room, connection_id: str) -> None:
        room.members.add(connection_id)

    def remove_member(self, room: Room, connection_id: str) -> bool:
        if connection_id not in room.members:
            return False
        room.members.discard(connection_id)
        return True

    def list_rooms(self) -> list[dict[str, Any]]:
        return [room.summary() for room in self.rooms.values()]

    def append_message(self, room: Room, msg: Message) -> int:
        """
        Append to the room log and apply the eviction policy.

        Once the log exceeds the hard cap it is trimmed to the soft cap, keeping
        the newest entries. Returns the number of evicted messages.
        """
        room.log.append(msg)
        hard = int(self.hub.config.history_hard_cap)
        soft = int(self.hub.config.history_soft_cap)
        if len(room.log) <= hard:
            return 0

        evicted = len(room.log) - soft
        room.log = room.log[-soft:]
        self.log.debug("Evicted %s messages room=%s kept=%s", evicted, room.id, soft)
        return evicted

    def history(self, room: Room, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        return list(room.log[-limit:])

    def snapshot_for_persistence(
        self, history_limit: int
    ) -> tuple[dict[str, dict[str, Any]], dict[str, list[dict[str, Any]]]]:
        """Copy metadata and the newest `history_limit` messages of every room."""
        metadata: dict[str, dict[str, Any]] = {}
        histories: dict[str, list[dict[str, Any]]] = {}
        for rid, room in self.rooms.items():
            metadata[rid] = room.metadata()
            histories[rid] = [m.to_record() for m in self.history(room, history_limit)]
        return metadata, histories

    def restore(
        self,
        metadata: dict[str, dict[str, Any]],
        histories: dict[str, list[Message]],
    ) -> None:
        """Overlay loaded metadata onto current rooms, then merge histories."""
        for rid, meta in metadata.items():
            room = self.rooms.get(rid)
            if room is None:
                room = Room(id=rid, display_name=default_room_name(rid))
                self.rooms[rid] = room
            name = meta.get("display_name")
            if isinstance(name, str) and name.strip():
                room.display_name = name
            room.password_hash = meta.get("password_hash") or None
            room.creator_id = meta.get("creator_id") or None
            created_at = meta.get("created_at")
            if isinstance(created_at, (int, float)):
                room.created_at = float(created_at)

        for rid, msgs in histories.items():
            room = self.rooms.get(rid)
            if room is None:
                self.log.debug("Dropping history for unknown room %s", rid)
                continue
            for m in msgs:
                room.observe_message_id(m.id)
            room.log = (room.log + list(msgs))[-int(self.hub.config.history_soft_cap):]

    def get_stats(self) -> dict[str, Any]:
        rooms_total = len(self.rooms)
        memberships = sum(len(r.members) for r in self.rooms.values())
        messages = sum(len(r.log) for r in self.rooms.values())
        top_rooms = sorted(
            ((rid, len(r.members)) for rid, r in self.rooms.items() if r.members),
            key=lambda x: (-x[1], x[0]),
        )[:5]
        return {
            "rooms_total": rooms_total,
            "memberships": memberships,
            "messages": messages,
            "top_rooms": top_rooms,
        }
