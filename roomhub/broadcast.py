from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .constants import DEFAULT_FILE_TYPE, KIND_FILE, KIND_TEXT, MessageType
from .errors import NotMember, NotRegistered, RoomNotFound, ValidationError
from .messages import Outgoing
from .models import Message

if TYPE_CHECKING:
    from .core import HubCore
    from .models import Room, User


class MessageBroadcaster:
    """
    Accepts chat messages and file attachments into a room's log and fans
    them out to every current member, the sender included.
    """

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.broadcast")

    def _check(self, connection_id: str, room_id: Any) -> tuple[User, Room]:
        user = self.hub.registry.get(connection_id)
        if user is None:
            raise NotRegistered()
        room = self.hub.store.resolve(room_id)
        if room is None:
            raise RoomNotFound(str(room_id))
        if connection_id not in room.members:
            raise NotMember(room.id)
        return user, room

    def send_message(self, connection_id: str, room_id: Any, text: Any) -> Message | None:
        with self.hub.transaction() as outgoing:
            user, room = self._check(connection_id, room_id)
            body = text.strip() if isinstance(text, str) else ""
            if not body:
                return None
            msg = self._accept(outgoing, user, room, KIND_TEXT, body)
            self.hub.stats.inc("msgs_accepted")
        return msg

    def send_file(
        self,
        connection_id: str,
        room_id: Any,
        file_name: Any,
        file_type: Any,
        blob: bytes | str,
    ) -> Message:
        """Accept an attachment. Size limits are enforced by the transport."""
        with self.hub.transaction() as outgoing:
            user, room = self._check(connection_id, room_id)
            name = file_name.strip() if isinstance(file_name, str) else ""
            if not name:
                raise ValidationError("File name is required")
            if not isinstance(blob, (bytes, str)):
                raise ValidationError("File content is required")
            ftype = file_type.strip() if isinstance(file_type, str) else ""

            payload = {
                "fileName": name,
                "fileType": ftype or DEFAULT_FILE_TYPE,
                "blob": blob,
            }
            msg = self._accept(outgoing, user, room, KIND_FILE, payload)
            self.hub.stats.inc("files_accepted")
        return msg

    def _accept(
        self, outgoing: Outgoing, user: User, room: Room, kind: str, payload: Any
    ) -> Message:
        mid, ts = room.next_message_id()
        msg = Message(
            id=mid,
            room_id=room.id,
            author_id=user.id,
            author_name=user.display_name,
            kind=kind,
            payload=payload,
            timestamp=ts,
        )
        evicted = self.hub.store.append_message(room, msg)
        if evicted:
            self.hub.stats.inc("evictions", evicted)

        self.hub.registry.touch(user.id)
        self.hub.messages.broadcast(
            outgoing,
            room.members,
            MessageType.RECEIVE_MESSAGE,
            msg.to_wire(),
            room=room.id,
        )
        self.hub.typing.clear(outgoing, user.id, room.id)

        self.log.debug(
            "Accepted %s id=%s room=%s conn=%s fanout=%s",
            kind,
            mid,
            room.id,
            user.id,
            len(room.members),
        )
        return msg
