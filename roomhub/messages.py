"""Event queueing helpers for the hub."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from .constants import MessageType
from .envelope import make_envelope

if TYPE_CHECKING:
    from .core import HubCore

Outgoing = list[tuple[str, dict]]


class MessageHelper:
    """
    Builds event envelopes and appends them to an outgoing list.

    Nothing here touches the transport: the outgoing list is handed to the
    delivery sink when the enclosing transaction commits.
    """

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.messages")

    def queue(
        self,
        outgoing: Outgoing,
        connection_id: str,
        msg_type: MessageType,
        body: dict[str, Any] | None = None,
        *,
        room: str | None = None,
    ) -> None:
        outgoing.append((connection_id, make_envelope(msg_type, room=room, body=body)))

    def broadcast(
        self,
        outgoing: Outgoing,
        recipients: Iterable[str],
        msg_type: MessageType,
        body: dict[str, Any] | None = None,
        *,
        room: str | None = None,
        exclude: str | None = None,
    ) -> int:
        """Queue one envelope for every recipient except `exclude`."""
        env = make_envelope(msg_type, room=room, body=body)
        count = 0
        for conn in sorted(recipients):
            if conn == exclude:
                continue
            outgoing.append((conn, env))
            count += 1
        return count

    def broadcast_all(
        self,
        outgoing: Outgoing,
        msg_type: MessageType,
        body: dict[str, Any] | None = None,
    ) -> int:
        return self.broadcast(outgoing, self.hub.registry.connection_ids(), msg_type, body)

    def emit_error(
        self,
        outgoing: Outgoing,
        connection_id: str,
        text: str,
        *,
        msg_type: MessageType = MessageType.ERROR,
        room: str | None = None,
    ) -> None:
        self.hub.stats.inc("errors_sent")
        self.queue(outgoing, connection_id, msg_type, {"message": text}, room=room)

    def room_update(self, outgoing: Outgoing, room) -> None:
        self.broadcast_all(
            outgoing,
            MessageType.ROOM_UPDATE,
            {
                "roomId": room.id,
                "memberCount": len(room.members),
                "hasPassword": room.has_password,
            },
        )
