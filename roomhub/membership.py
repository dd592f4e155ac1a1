"""Registration, room creation, join and leave.

Password hashing and verification are slow on purpose, so they run between
two short critical sections: preconditions are checked under the state lock,
the hash work happens with the lock released, and the mutation re-checks
everything it depends on before applying.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import MessageType
from .errors import InvalidPassword, NotRegistered, RoomAlreadyExists, RoomNotFound
from .messages import Outgoing
from .models import Room, User
from .passwords import hash_password, verify_password
from .util import default_room_name, normalize_room_id, normalize_room_name

if TYPE_CHECKING:
    from .core import HubCore

# A join verifies the password it saw off-lock; if the room's hash changed
# underneath (room created concurrently by another join), verify again.
_JOIN_ATTEMPTS = 3


class MembershipCoordinator:
    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.membership")

    def register(self, connection_id: str, proposed_name: Any) -> User:
        with self.hub.transaction() as outgoing:
            user = self.hub.registry.register(connection_id, proposed_name)
            self.hub.stats.inc("registrations")
            self.hub.messages.queue(
                outgoing,
                connection_id,
                MessageType.USER_REGISTERED,
                {"userId": connection_id, "username": user.display_name},
            )
            self.hub.messages.queue(
                outgoing,
                connection_id,
                MessageType.ROOMS_LIST,
                {"rooms": self.hub.store.list_rooms()},
            )
        return user

    def create_room(
        self,
        connection_id: str,
        room_id: Any,
        display_name: Any = None,
        password: str | None = None,
    ) -> Room:
        cfg = self.hub.config
        with self.hub.state_lock:
            if self.hub.registry.get(connection_id) is None:
                raise NotRegistered()
            rid = normalize_room_id(room_id, max_chars=cfg.max_room_id_len)
            if self.hub.store.get(rid) is not None:
                raise RoomAlreadyExists(rid)
        name = normalize_room_name(display_name, rid, max_chars=cfg.max_room_name_len)

        password_hash = None
        if isinstance(password, str) and password.strip():
            password_hash = hash_password(password, iterations=cfg.password_hash_iterations)

        with self.hub.transaction() as outgoing:
            if self.hub.registry.get(connection_id) is None:
                raise NotRegistered()
            room = Room(
                id=rid,
                display_name=name,
                creator_id=connection_id,
                password_hash=password_hash,
            )
            if not self.hub.store.insert_if_absent(room):
                raise RoomAlreadyExists(rid)

            self.hub.stats.inc("rooms_created")
            self.hub.messages.broadcast_all(outgoing, MessageType.NEW_ROOM, room.summary())
            self.hub.messages.queue(
                outgoing,
                connection_id,
                MessageType.AUTO_JOIN,
                {"roomId": rid, "roomName": name},
            )

        self.log.info(
            "Room created room=%s name=%r creator=%s protected=%s",
            rid,
            name,
            connection_id,
            password_hash is not None,
        )
        return room

    def join_room(self, connection_id: str, room_id: Any, password: str | None = None) -> Room:
        cfg = self.hub.config
        supplied = password if isinstance(password, str) else ""

        for _ in range(_JOIN_ATTEMPTS):
            with self.hub.state_lock:
                if self.hub.registry.get(connection_id) is None:
                    raise NotRegistered()
                rid = normalize_room_id(room_id, max_chars=cfg.max_room_id_len)
                room = self.hub.store.get(rid)
                if room is None and not cfg.auto_create_rooms:
                    self.hub.stats.inc("join_failures")
                    raise RoomNotFound(rid)
                seen_hash = room.password_hash if room is not None else None

            if seen_hash is not None and not verify_password(supplied, seen_hash):
                self.hub.stats.inc("join_failures")
                self.log.info("Join rejected conn=%s room=%s reason=password", connection_id, rid)
                raise InvalidPassword()

            with self.hub.transaction() as outgoing:
                user = self.hub.registry.get(connection_id)
                if user is None:
                    raise NotRegistered()
                room = self.hub.store.get(rid)
                if room is None:
                    if not cfg.auto_create_rooms:
                        raise RoomNotFound(rid)
                    room = self._auto_create(outgoing, connection_id, rid)
                if room.password_hash != seen_hash:
                    continue
                self._join_locked(outgoing, user, room)
                return room

        self.hub.stats.inc("join_failures")
        raise InvalidPassword()

    def _auto_create(self, outgoing: Outgoing, connection_id: str, rid: str) -> Room:
        room = Room(id=rid, display_name=default_room_name(rid), creator_id=connection_id)
        self.hub.store.insert_if_absent(room)
        self.hub.stats.inc("rooms_created")
        self.hub.messages.broadcast_all(outgoing, MessageType.NEW_ROOM, room.summary())
        self.log.info("Room auto-created room=%s creator=%s", rid, connection_id)
        return room

    def _join_locked(self, outgoing: Outgoing, user: User, room: Room) -> None:
        if self.hub.config.single_room_membership:
            for other_id in sorted(user.member_rooms - {room.id}):
                other = self.hub.store.get(other_id)
                if other is not None:
                    self._leave_locked(outgoing, user, other)
                else:
                    user.member_rooms.discard(other_id)

        already = user.id in room.members
        self.hub.store.add_member(room, user.id)
        user.member_rooms.add(room.id)
        self.hub.registry.touch(user.id)

        history = self.hub.store.history(room, int(self.hub.config.join_history_limit))
        self.hub.messages.queue(
            outgoing,
            user.id,
            MessageType.ROOM_JOINED,
            {
                "roomId": room.id,
                "roomName": room.display_name,
                "previousMessages": [m.to_wire() for m in history],
            },
            room=room.id,
        )
        if already:
            return

        self.hub.stats.inc("joins")
        self.hub.messages.broadcast(
            outgoing,
            room.members,
            MessageType.USER_JOINED,
            {"room": room.id, "user": user.display_name, "memberCount": len(room.members)},
            room=room.id,
            exclude=user.id,
        )
        self.hub.messages.room_update(outgoing, room)
        self.log.info(
            "Join conn=%s name=%r room=%s members=%s",
            user.id,
            user.display_name,
            room.id,
            len(room.members),
        )

    def leave_room(self, connection_id: str, room_id: Any) -> bool:
        """Returns False when the connection was not a member (not an error)."""
        with self.hub.transaction() as outgoing:
            user = self.hub.registry.get(connection_id)
            if user is None:
                raise NotRegistered()
            room = self.hub.store.resolve(room_id)
            if room is None or connection_id not in room.members:
                return False
            self._leave_locked(outgoing, user, room)
            return True

    def _leave_locked(self, outgoing: Outgoing, user: User, room: Room) -> None:
        self.hub.typing.clear(outgoing, user.id, room.id)
        self.hub.store.remove_member(room, user.id)
        user.member_rooms.discard(room.id)

        self.hub.stats.inc("parts")
        self.hub.messages.broadcast(
            outgoing,
            room.members,
            MessageType.USER_LEFT,
            {"room": room.id, "user": user.display_name, "memberCount": len(room.members)},
            room=room.id,
        )
        self.hub.messages.room_update(outgoing, room)
        self.log.info(
            "Part conn=%s room=%s members=%s", user.id, room.id, len(room.members)
        )

    def disconnect(self, connection_id: str) -> User | None:
        with self.hub.transaction() as outgoing:
            self.hub.registry.disconnect(connection_id)
            self.hub.typing.clear_connection(outgoing, connection_id)
            user = self.hub.registry.unregister(connection_id)
            if user is None:
                return None

            for rid in sorted(user.member_rooms):
                room = self.hub.store.get(rid)
                if room is not None:
                    self._leave_locked(outgoing, user, room)
            user.member_rooms.clear()

        self.log.info("Connection closed conn=%s name=%r", connection_id, user.display_name)
        return user

    def list_rooms(self) -> list[dict[str, Any]]:
        with self.hub.state_lock:
            return self.hub.store.list_rooms()
