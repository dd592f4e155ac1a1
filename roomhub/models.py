from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any

from .constants import KIND_FILE, KIND_SYSTEM, KIND_TEXT
from .envelope import now_ms


@dataclass
class User:
    id: str
    display_name: str
    member_rooms: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)


@dataclass
class Message:
    id: str
    room_id: str
    author_id: str
    author_name: str
    kind: str
    payload: Any
    timestamp: int

    def to_wire(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": self.id,
            "roomId": self.room_id,
            "author": self.author_name,
            "authorId": self.author_id,
            "kind": self.kind,
            "timestamp": self.timestamp,
        }
        if self.kind == KIND_FILE and isinstance(self.payload, dict):
            body["fileName"] = self.payload.get("fileName")
            body["fileType"] = self.payload.get("fileType")
            body["blob"] = self.payload.get("blob")
        else:
            body["text"] = self.payload
        return body

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "author_id": self.author_id,
            "author_name": self.author_name,
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_record(cls, rec: dict[str, Any]) -> Message:
        kind = rec.get("kind")
        if kind not in (KIND_TEXT, KIND_FILE, KIND_SYSTEM):
            raise ValueError(f"unknown message kind {kind!r}")
        mid = rec.get("id")
        if not isinstance(mid, str) or not mid:
            raise ValueError("message id must be a non-empty string")
        ts = rec.get("timestamp")
        if not isinstance(ts, int):
            raise ValueError("message timestamp must be an integer")
        return cls(
            id=mid,
            room_id=str(rec.get("room_id") or ""),
            author_id=str(rec.get("author_id") or ""),
            author_name=str(rec.get("author_name") or ""),
            kind=kind,
            payload=rec.get("payload"),
            timestamp=ts,
        )


@dataclass
class Room:
    id: str
    display_name: str
    creator_id: str | None = None
    password_hash: str | None = None
    created_at: float = field(default_factory=time.time)
    members: set[str] = field(default_factory=set)
    log: list[Message] = field(default_factory=list)

    # Message id state: ids are "{ms:013d}-{seq:06d}-{rand}" and sort in insertion order.
    _last_ms: int = field(default=0, repr=False)
    _seq: int = field(default=0, repr=False)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def next_message_id(self, ms: int | None = None) -> tuple[str, int]:
        """Return (id, timestamp_ms) for the next message in this room."""
        ms = now_ms() if ms is None else int(ms)
        # Never step backwards if the wall clock does.
        if ms < self._last_ms:
            ms = self._last_ms
        if ms == self._last_ms:
            self._seq += 1
        else:
            self._seq = 0
        self._last_ms = ms
        return f"{ms:013d}-{self._seq:06d}-{secrets.token_hex(3)}", ms

    def observe_message_id(self, mid: str) -> None:
        """Advance id state past a restored message so new ids sort after it."""
        try:
            ms_s, seq_s, _ = mid.split("-", 2)
            ms, seq = int(ms_s), int(seq_s)
        except ValueError:
            return
        if (ms, seq) > (self._last_ms, self._seq):
            self._last_ms, self._seq = ms, seq

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.display_name,
            "memberCount": len(self.members),
            "hasPassword": self.has_password,
            "messageCount": len(self.log),
        }

    def metadata(self) -> dict[str, Any]:
        return {
            "display_name": self.display_name,
            "password_hash": self.password_hash,
            "creator_id": self.creator_id,
            "created_at": self.created_at,
        }
