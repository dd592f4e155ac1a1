from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import decode
from .constants import MessageType
from .envelope import now_ms, validate_envelope
from .errors import HubError
from .protocol import (
    Command,
    CreateRoom,
    FileUpload,
    GetRooms,
    JoinRoom,
    LeaveRoom,
    Ping,
    RegisterUser,
    SendMessage,
    Typing,
    parse_command,
)

if TYPE_CHECKING:
    from .core import HubCore


class MessageRouter:
    """
    Decodes client frames and dispatches them to the hub operations.

    This class is responsible for:
    - Decoding and validating incoming payloads
    - Parsing them into typed commands
    - Dispatching by command type
    - Turning operation failures into error events for the sender only
    """

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub
        self.log = logging.getLogger("roomhub.router")

    def route_payload(self, connection_id: str, data: bytes) -> None:
        self.hub.stats.inc("pkts_in")
        self.hub.stats.inc("bytes_in", len(data))

        try:
            env = decode(data)
            validate_envelope(env)
            cmd = parse_command(env)
        except Exception as e:
            self.hub.stats.inc("pkts_bad")
            self.log.debug(
                "Bad packet conn=%s bytes=%s err=%s", connection_id, len(data), e
            )
            with self.hub.transaction() as outgoing:
                self.hub.messages.emit_error(outgoing, connection_id, f"bad message: {e}")
            return

        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX conn=%s cmd=%s bytes=%s", connection_id, type(cmd).__name__, len(data)
            )

        self.dispatch(connection_id, cmd)

    def dispatch(self, connection_id: str, cmd: Command) -> None:
        try:
            self._dispatch(connection_id, cmd)
        except HubError as e:
            self._reply_error(connection_id, cmd, e)

    def _dispatch(self, connection_id: str, cmd: Command) -> None:
        hub = self.hub
        if isinstance(cmd, RegisterUser):
            hub.membership.register(connection_id, cmd.name)
        elif isinstance(cmd, CreateRoom):
            hub.membership.create_room(connection_id, cmd.room_id, cmd.room_name, cmd.password)
        elif isinstance(cmd, JoinRoom):
            # The username field is advisory; identity comes from register_user.
            hub.membership.join_room(connection_id, cmd.room_id, cmd.password)
        elif isinstance(cmd, LeaveRoom):
            hub.membership.leave_room(connection_id, cmd.room_id)
        elif isinstance(cmd, SendMessage):
            hub.broadcaster.send_message(connection_id, cmd.room_id, cmd.text)
        elif isinstance(cmd, FileUpload):
            hub.broadcaster.send_file(
                connection_id, cmd.room_id, cmd.file_name, cmd.file_type, cmd.blob
            )
        elif isinstance(cmd, Typing):
            hub.typing.set_typing(connection_id, cmd.room_id, cmd.is_typing)
        elif isinstance(cmd, GetRooms):
            self._handle_get_rooms(connection_id)
        elif isinstance(cmd, Ping):
            self._handle_ping(connection_id, cmd)

    def _handle_get_rooms(self, connection_id: str) -> None:
        with self.hub.transaction() as outgoing:
            self.hub.messages.queue(
                outgoing,
                connection_id,
                MessageType.ROOMS_LIST,
                {"rooms": self.hub.store.list_rooms()},
            )

    def _handle_ping(self, connection_id: str, cmd: Ping) -> None:
        server_time = now_ms()
        body = {"clientTime": cmd.client_time, "serverTime": server_time, "latency": None}
        if cmd.client_time is not None:
            body["latency"] = max(0, server_time - cmd.client_time)
        with self.hub.transaction() as outgoing:
            self.hub.registry.touch(connection_id)
            self.hub.messages.queue(outgoing, connection_id, MessageType.PONG, body)

    def _reply_error(self, connection_id: str, cmd: Command, err: HubError) -> None:
        if isinstance(cmd, JoinRoom):
            msg_type = MessageType.JOIN_ERROR
        elif isinstance(cmd, CreateRoom):
            msg_type = MessageType.CREATE_ERROR
        else:
            msg_type = MessageType.ERROR

        self.log.debug(
            "Rejected conn=%s cmd=%s err=%s", connection_id, type(cmd).__name__, err
        )
        with self.hub.transaction() as outgoing:
            self.hub.messages.emit_error(outgoing, connection_id, str(err), msg_type=msg_type)
