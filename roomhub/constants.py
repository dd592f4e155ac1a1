# roomhub wire protocol constants (numeric keys and message types)

from __future__ import annotations

from enum import IntEnum

PROTOCOL_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_ROOM = 5
K_BODY = 6


class MessageType(IntEnum):
    # Client -> hub
    REGISTER_USER = 1
    CREATE_ROOM = 10
    JOIN_ROOM = 11
    LEAVE_ROOM = 12
    SEND_MESSAGE = 20
    FILE_UPLOAD = 21
    TYPING = 22
    GET_ROOMS = 30
    PING = 31

    # Hub -> client
    USER_REGISTERED = 2
    ROOMS_LIST = 40
    NEW_ROOM = 41
    AUTO_JOIN = 42
    ROOM_JOINED = 43
    ROOM_UPDATE = 44
    RECEIVE_MESSAGE = 50
    USER_JOINED = 51
    USER_LEFT = 52
    USER_TYPING = 53
    PONG = 60
    JOIN_ERROR = 70
    CREATE_ERROR = 71
    ERROR = 72


# Message kinds stored in a room log
KIND_TEXT = "text"
KIND_FILE = "file"
# Never created by the hub (join and leave go out as USER_JOINED/USER_LEFT);
# system entries found in stored history are restored and replayed as text.
KIND_SYSTEM = "system"

DEFAULT_FILE_TYPE = "application/octet-stream"

# Room log retention (hysteresis: trim to the soft cap once the hard cap is exceeded)
HISTORY_HARD_CAP = 1000
HISTORY_SOFT_CAP = 500
JOIN_HISTORY_LIMIT = 100
PERSIST_HISTORY_LIMIT = 100

TYPING_IDLE_S = 1.0
PERSIST_INTERVAL_S = 30.0

DISPLAY_NAME_MAX_CHARS = 32
ROOM_ID_MAX_CHARS = 64
ROOM_NAME_MAX_CHARS = 64
