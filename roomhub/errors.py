"""Error taxonomy for the hub.

Client-facing errors are raised by the coordinator and broadcaster and turned
into an error event for the originating connection by the router. None of them
are broadcast, and an operation that raises has not mutated any state.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for errors reported back to a single connection."""


class ValidationError(HubError):
    pass


class AuthError(HubError):
    pass


class InvalidPassword(AuthError):
    def __init__(self) -> None:
        super().__init__("Invalid password")


class NotFoundError(HubError):
    pass


class RoomNotFound(NotFoundError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id!r} does not exist")
        self.room_id = room_id


class PreconditionError(HubError):
    pass


class NotRegistered(PreconditionError):
    def __init__(self) -> None:
        super().__init__("Please register first")


class ConnectionClosed(PreconditionError):
    def __init__(self, connection_id: str) -> None:
        super().__init__("Connection is closed")
        self.connection_id = connection_id


class NotMember(PreconditionError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"You are not in room {room_id!r}")
        self.room_id = room_id


class RoomAlreadyExists(HubError):
    def __init__(self, room_id: str) -> None:
        super().__init__(f"Room {room_id!r} already exists")
        self.room_id = room_id


class PersistenceError(Exception):
    """Snapshot read/write failure. Logged by the scheduler, never sent to clients."""
