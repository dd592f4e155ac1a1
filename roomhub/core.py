"""Transport-independent hub state and operations.

`HubCore` owns every piece of mutable hub state and serializes access to it
with one re-entrant lock. Operations collect the events they produce into an
outgoing list; the list is handed to the delivery sink while the lock is
still held, so every recipient observes events in the order the state
changes were applied.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from .broadcast import MessageBroadcaster
from .config import HubRuntimeConfig
from .membership import MembershipCoordinator
from .messages import MessageHelper, Outgoing
from .presence import PresenceTypingTracker, TimerFactory
from .rooms import RoomStore
from .router import MessageRouter
from .session import ConnectionRegistry
from .stats import StatsManager

DeliverFn = Callable[[Outgoing], None]


class HubCore:
    def __init__(
        self,
        config: HubRuntimeConfig | None = None,
        *,
        deliver: DeliverFn | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.config = config or HubRuntimeConfig()
        self.log = logging.getLogger("roomhub.core")

        # Registry, room store and typing state are read and written together
        # by callbacks from transport threads and timer threads.
        self.state_lock = threading.RLock()
        self._deliver: DeliverFn = deliver or (lambda outgoing: None)

        self.stats = StatsManager(self)
        self.registry = ConnectionRegistry(self)
        self.store = RoomStore(self)
        self.messages = MessageHelper(self)
        self.typing = PresenceTypingTracker(self, timer_factory=timer_factory)
        self.membership = MembershipCoordinator(self)
        self.broadcaster = MessageBroadcaster(self)
        self.router = MessageRouter(self)

        with self.state_lock:
            self.store.ensure_default_rooms(self.config.default_rooms)

    @contextmanager
    def transaction(self) -> Iterator[Outgoing]:
        """
        Hold the state lock and collect outgoing events.

        Events are delivered only if the block completes without raising.
        """
        with self.state_lock:
            outgoing: Outgoing = []
            yield outgoing
            if outgoing:
                self._deliver(outgoing)

    def on_connect(self, connection_id: str) -> None:
        with self.state_lock:
            self.registry.connect(connection_id)
            self.stats.inc("connections")

    def on_disconnect(self, connection_id: str) -> None:
        self.membership.disconnect(connection_id)

    def handle_payload(self, connection_id: str, data: bytes) -> None:
        self.router.route_payload(connection_id, data)

    def shutdown(self) -> list[str]:
        """Cancel timers and forget every connection. Returns the dropped ids."""
        with self.state_lock:
            self.typing.clear_all()
            conns = self.registry.clear_all()
            for room in self.store.rooms.values():
                room.members.clear()
        return conns

    def snapshot(self) -> dict[str, Any]:
        return self.stats.snapshot()
