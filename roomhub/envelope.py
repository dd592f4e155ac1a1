"""Envelope construction and structural validation.

Every frame on the wire is a CBOR map with small unsigned integer keys.
Body contents are checked later by `protocol.parse_command`; this module
only checks the outer shape.
"""

from __future__ import annotations

import secrets
import time
from typing import Any

from .constants import K_BODY, K_ID, K_ROOM, K_T, K_TS, K_V, PROTOCOL_VERSION, MessageType

ENVELOPE_ID_BYTES = 8

# key -> (accepted types, field label)
_REQUIRED_FIELDS: dict[int, tuple[tuple[type, ...], str]] = {
    K_V: ((int,), "protocol version"),
    K_T: ((int,), "message type"),
    K_ID: ((bytes, bytearray), "envelope id"),
    K_TS: ((int,), "timestamp"),
}


def now_ms() -> int:
    return int(time.time() * 1000)


def new_envelope_id() -> bytes:
    return secrets.token_bytes(ENVELOPE_ID_BYTES)


def make_envelope(
    msg_type: int,
    *,
    room: str | None = None,
    body: dict[str, Any] | None = None,
) -> dict[int, Any]:
    env: dict[int, Any] = {
        K_V: PROTOCOL_VERSION,
        K_T: int(msg_type),
        K_ID: new_envelope_id(),
        K_TS: now_ms(),
    }
    if room is not None:
        env[K_ROOM] = room
    if body is not None:
        env[K_BODY] = body
    return env


def envelope_type(env: dict) -> MessageType:
    return MessageType(env[K_T])


def validate_envelope(env: Any) -> None:
    """Raise TypeError or ValueError if `env` is not a well-formed envelope.

    Unknown integer keys are tolerated so newer peers can add fields.
    """
    if not isinstance(env, dict):
        raise TypeError("envelope must be a CBOR map (dict)")

    if any(not isinstance(k, int) or isinstance(k, bool) for k in env):
        raise TypeError("envelope keys must be integers")
    if any(k < 0 for k in env):
        raise ValueError("envelope keys must be unsigned integers")

    for key, (types, label) in _REQUIRED_FIELDS.items():
        if key not in env:
            raise ValueError(f"missing {label} (key {key})")
        if not isinstance(env[key], types) or isinstance(env[key], bool):
            raise TypeError(f"{label} has the wrong type")

    if env[K_V] != PROTOCOL_VERSION:
        raise ValueError(f"unsupported version {env[K_V]}")
    try:
        MessageType(env[K_T])
    except ValueError:
        raise ValueError(f"unknown message type {env[K_T]}") from None
    if env[K_TS] < 0:
        raise ValueError("timestamp must be unsigned")

    if K_ROOM in env:
        room = env[K_ROOM]
        if not isinstance(room, str):
            raise TypeError("room id must be a string")
        if not room:
            raise ValueError("room id must not be empty")

    if K_BODY in env and not isinstance(env[K_BODY], dict):
        raise TypeError("body must be a map")
