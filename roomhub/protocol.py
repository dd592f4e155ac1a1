"""Typed client commands.

Every client frame is parsed into exactly one of the frozen dataclasses below
before it reaches the hub state. `Command` is the closed union of them; the
router dispatches on the concrete class.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Union

from .constants import K_BODY, K_ROOM, MessageType
from .envelope import envelope_type, make_envelope
from .errors import ValidationError


def _opt_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value


def _req_str(body: dict, key: str) -> str:
    value = _opt_str(body, key)
    if value is None:
        raise ValidationError(f"{key} is required")
    return value


@dataclass(frozen=True)
class RegisterUser:
    TYPE: ClassVar[MessageType] = MessageType.REGISTER_USER
    name: str | None = None

    @classmethod
    def from_body(cls, body: dict) -> RegisterUser:
        return cls(name=_opt_str(body, "name"))

    def body(self) -> dict[str, Any]:
        return {"name": self.name}


@dataclass(frozen=True)
class CreateRoom:
    TYPE: ClassVar[MessageType] = MessageType.CREATE_ROOM
    room_id: str
    room_name: str | None = None
    password: str | None = None
    creator: str | None = None

    @classmethod
    def from_body(cls, body: dict) -> CreateRoom:
        return cls(
            room_id=_req_str(body, "roomId"),
            room_name=_opt_str(body, "roomName"),
            password=_opt_str(body, "password"),
            creator=_opt_str(body, "creator"),
        )

    def body(self) -> dict[str, Any]:
        out: dict[str, Any] = {"roomId": self.room_id, "roomName": self.room_name}
        if self.password:
            out["password"] = self.password
        if self.creator:
            out["creator"] = self.creator
        return out


@dataclass(frozen=True)
class JoinRoom:
    TYPE: ClassVar[MessageType] = MessageType.JOIN_ROOM
    room_id: str
    username: str | None = None
    password: str | None = None

    @classmethod
    def from_body(cls, body: dict) -> JoinRoom:
        return cls(
            room_id=_req_str(body, "roomId"),
            username=_opt_str(body, "username"),
            password=_opt_str(body, "password"),
        )

    def body(self) -> dict[str, Any]:
        out: dict[str, Any] = {"roomId": self.room_id}
        if self.username:
            out["username"] = self.username
        if self.password:
            out["password"] = self.password
        return out


@dataclass(frozen=True)
class LeaveRoom:
    TYPE: ClassVar[MessageType] = MessageType.LEAVE_ROOM
    room_id: str

    @classmethod
    def from_body(cls, body: dict) -> LeaveRoom:
        return cls(room_id=_req_str(body, "roomId"))

    def body(self) -> dict[str, Any]:
        return {"roomId": self.room_id}


@dataclass(frozen=True)
class SendMessage:
    TYPE: ClassVar[MessageType] = MessageType.SEND_MESSAGE
    room_id: str
    text: str

    @classmethod
    def from_body(cls, body: dict) -> SendMessage:
        return cls(room_id=_req_str(body, "roomId"), text=_opt_str(body, "text") or "")

    def body(self) -> dict[str, Any]:
        return {"roomId": self.room_id, "text": self.text}


@dataclass(frozen=True)
class FileUpload:
    TYPE: ClassVar[MessageType] = MessageType.FILE_UPLOAD
    room_id: str
    file_name: str
    file_type: str | None
    blob: bytes | str

    @classmethod
    def from_body(cls, body: dict) -> FileUpload:
        blob = body.get("blob")
        if isinstance(blob, bytearray):
            blob = bytes(blob)
        if not isinstance(blob, (bytes, str)):
            raise ValidationError("blob must be bytes or a string")
        return cls(
            room_id=_req_str(body, "roomId"),
            file_name=_req_str(body, "fileName"),
            file_type=_opt_str(body, "fileType"),
            blob=blob,
        )

    def body(self) -> dict[str, Any]:
        return {
            "roomId": self.room_id,
            "fileName": self.file_name,
            "fileType": self.file_type,
            "blob": self.blob,
        }


@dataclass(frozen=True)
class Typing:
    TYPE: ClassVar[MessageType] = MessageType.TYPING
    room_id: str
    is_typing: bool

    @classmethod
    def from_body(cls, body: dict) -> Typing:
        flag = body.get("isTyping")
        if not isinstance(flag, bool):
            raise ValidationError("isTyping must be a boolean")
        return cls(room_id=_req_str(body, "roomId"), is_typing=flag)

    def body(self) -> dict[str, Any]:
        return {"roomId": self.room_id, "isTyping": self.is_typing}


@dataclass(frozen=True)
class GetRooms:
    TYPE: ClassVar[MessageType] = MessageType.GET_ROOMS

    @classmethod
    def from_body(cls, body: dict) -> GetRooms:
        return cls()

    def body(self) -> dict[str, Any]:
        return {}


@dataclass(frozen=True)
class Ping:
    TYPE: ClassVar[MessageType] = MessageType.PING
    client_time: int | None = None

    @classmethod
    def from_body(cls, body: dict) -> Ping:
        ct = body.get("clientTime")
        if ct is not None and (isinstance(ct, bool) or not isinstance(ct, int)):
            raise ValidationError("clientTime must be an integer")
        return cls(client_time=ct)

    def body(self) -> dict[str, Any]:
        return {"clientTime": self.client_time}


Command = Union[
    RegisterUser,
    CreateRoom,
    JoinRoom,
    LeaveRoom,
    SendMessage,
    FileUpload,
    Typing,
    GetRooms,
    Ping,
]

_COMMANDS: dict[MessageType, Any] = {
    cls.TYPE: cls
    for cls in (
        RegisterUser,
        CreateRoom,
        JoinRoom,
        LeaveRoom,
        SendMessage,
        FileUpload,
        Typing,
        GetRooms,
        Ping,
    )
}


def parse_command(env: dict) -> Command:
    """Turn a validated envelope into a typed command.

    The envelope-level room key is accepted as a fallback for ``roomId``.
    """
    t = envelope_type(env)
    cls = _COMMANDS.get(t)
    if cls is None:
        raise ValidationError(f"{t.name} is not a client command")

    body = env.get(K_BODY) or {}
    if K_ROOM in env and "roomId" not in body:
        body = {**body, "roomId": env[K_ROOM]}
    return cls.from_body(body)


def command_envelope(cmd: Command) -> dict:
    return make_envelope(cmd.TYPE, body=cmd.body())
