from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from .errors import ConnectionClosed
from .models import User
from .util import sanitize_display_name

if TYPE_CHECKING:
    from .core import HubCore


class ConnectionRegistry:
    """
    Maps live transport connections to registered users.

    This class is responsible for:
    - Tracking every live connection, registered or not
    - Creating, replacing and removing user records
    - Activity timestamps

    All methods must be called with the hub state lock held.
    """

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.session")
        self._connections: set[str] = set()
        self.users: dict[str, User] = {}

    def connect(self, connection_id: str) -> None:
        self._connections.add(connection_id)
        self.log.info("Connection opened conn=%s", connection_id)

    def disconnect(self, connection_id: str) -> None:
        self._connections.discard(connection_id)

    def connection_ids(self) -> list[str]:
        return sorted(self._connections)

    def register(self, connection_id: str, proposed_name: Any) -> User:
        """
        Create or replace the user record for a connection.

        Re-registering overwrites the display name but keeps room membership;
        it never implies a leave. Only live connections can register: a frame
        that is handled after its connection closed must not bring it back.
        """
        if connection_id not in self._connections:
            raise ConnectionClosed(connection_id)
        name = sanitize_display_name(
            proposed_name,
            connection_id,
            max_chars=self.hub.config.display_name_max_chars,
        )
        prev = self.users.get(connection_id)
        user = User(id=connection_id, display_name=name)
        if prev is not None:
            user.member_rooms = prev.member_rooms
            user.connected_at = prev.connected_at

        self.users[connection_id] = user

        self.log.info(
            "User registered conn=%s name=%r replaced=%s",
            connection_id,
            name,
            prev is not None,
        )
        return user

    def unregister(self, connection_id: str) -> User | None:
        return self.users.pop(connection_id, None)

    def get(self, connection_id: str) -> User | None:
        return self.users.get(connection_id)

    def touch(self, connection_id: str) -> None:
        user = self.users.get(connection_id)
        if user is not None:
            user.last_activity_at = time.time()

    def clear_all(self) -> list[str]:
        conns = sorted(self._connections)
        self._connections.clear()
        self.users.clear()
        return conns

    def get_stats(self) -> dict[str, Any]:
        return {
            "connections": len(self._connections),
            "registered": len(self.users),
        }
