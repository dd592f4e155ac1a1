"""Typing indicators with idle expiry.

A user is "typing" in a room from an ``isTyping=true`` event until an
explicit false, a message send, a leave, or `typing_idle_s` without a
refresh. Peers are told only about transitions, never about refreshes.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .constants import MessageType
from .messages import Outgoing
from .util import default_timer

if TYPE_CHECKING:
    from .core import HubCore
    from .models import Room, User

TimerFactory = Callable[[float, Callable[[], None]], Any]


@dataclass
class _TypingEntry:
    timer: Any
    token: int


class PresenceTypingTracker:
    def __init__(self, hub: HubCore, *, timer_factory: TimerFactory | None = None) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.presence")
        self._timer_factory = timer_factory or default_timer
        # room id -> connection id -> entry
        self._typing: dict[str, dict[str, _TypingEntry]] = {}
        self._tokens = itertools.count(1)

    def set_typing(self, connection_id: str, room_id: str, is_typing: bool) -> None:
        with self.hub.transaction() as outgoing:
            user = self.hub.registry.get(connection_id)
            room = self.hub.store.resolve(room_id)
            if user is None or room is None or connection_id not in room.members:
                return

            if is_typing:
                self._start(outgoing, user, room)
            else:
                self.clear(outgoing, connection_id, room.id)

    def _start(self, outgoing: Outgoing, user: User, room: Room) -> None:
        entries = self._typing.setdefault(room.id, {})
        prev = entries.get(user.id)
        if prev is not None:
            prev.timer.cancel()

        token = next(self._tokens)
        conn, rid = user.id, room.id
        timer = self._timer_factory(
            float(self.hub.config.typing_idle_s),
            lambda: self._expire(conn, rid, token),
        )
        entries[user.id] = _TypingEntry(timer=timer, token=token)
        timer.start()

        if prev is None:
            self._announce(outgoing, room, user, True)

    def clear(self, outgoing: Outgoing, connection_id: str, room_id: str) -> bool:
        """Stop typing for one room. Caller holds the state lock."""
        entries = self._typing.get(room_id)
        if not entries:
            return False
        entry = entries.pop(connection_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entries:
            del self._typing[room_id]

        room = self.hub.store.get(room_id)
        user = self.hub.registry.get(connection_id)
        if room is not None:
            name = user.display_name if user is not None else connection_id
            self._announce_name(outgoing, room, connection_id, name, False)
        return True

    def clear_connection(self, outgoing: Outgoing, connection_id: str) -> list[str]:
        cleared: list[str] = []
        for rid in sorted(self._typing):
            if self.clear(outgoing, connection_id, rid):
                cleared.append(rid)
        return cleared

    def _expire(self, connection_id: str, room_id: str, token: int) -> None:
        with self.hub.transaction() as outgoing:
            entry = self._typing.get(room_id, {}).get(connection_id)
            # A newer refresh or an explicit stop already replaced this timer.
            if entry is None or entry.token != token:
                return
            self.log.debug("Typing expired conn=%s room=%s", connection_id, room_id)
            self.clear(outgoing, connection_id, room_id)

    def _announce(self, outgoing: Outgoing, room: Room, user: User, is_typing: bool) -> None:
        self._announce_name(outgoing, room, user.id, user.display_name, is_typing)

    def _announce_name(
        self, outgoing: Outgoing, room: Room, connection_id: str, name: str, is_typing: bool
    ) -> None:
        self.hub.messages.broadcast(
            outgoing,
            room.members,
            MessageType.USER_TYPING,
            {"room": room.id, "username": name, "isTyping": is_typing},
            room=room.id,
            exclude=connection_id,
        )

    def is_typing(self, room_id: str, connection_id: str) -> bool:
        with self.hub.state_lock:
            return connection_id in self._typing.get(room_id, {})

    def typing_in(self, room_id: str) -> list[str]:
        with self.hub.state_lock:
            return sorted(self._typing.get(room_id, {}))

    def clear_all(self) -> None:
        with self.hub.state_lock:
            for entries in self._typing.values():
                for entry in entries.values():
                    entry.timer.cancel()
            self._typing.clear()
