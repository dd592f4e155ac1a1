from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace

from .constants import (
    DISPLAY_NAME_MAX_CHARS,
    HISTORY_HARD_CAP,
    HISTORY_SOFT_CAP,
    JOIN_HISTORY_LIMIT,
    PERSIST_HISTORY_LIMIT,
    PERSIST_INTERVAL_S,
    ROOM_ID_MAX_CHARS,
    ROOM_NAME_MAX_CHARS,
    TYPING_IDLE_S,
)
from .passwords import DEFAULT_ITERATIONS


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "roomhub.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "roomhub"

    rooms_path: str | None = None
    history_path: str | None = None
    persist_interval_s: float = PERSIST_INTERVAL_S
    persist_history_limit: int = PERSIST_HISTORY_LIMIT
    default_rooms: tuple[str, ...] = ("general", "random", "tech")

    history_hard_cap: int = HISTORY_HARD_CAP
    history_soft_cap: int = HISTORY_SOFT_CAP
    join_history_limit: int = JOIN_HISTORY_LIMIT
    typing_idle_s: float = TYPING_IDLE_S
    display_name_max_chars: int = DISPLAY_NAME_MAX_CHARS
    max_room_id_len: int = ROOM_ID_MAX_CHARS
    max_room_name_len: int = ROOM_NAME_MAX_CHARS
    password_hash_iterations: int = DEFAULT_ITERATIONS
    auto_create_rooms: bool = False
    single_room_membership: bool = False

    max_resource_bytes: int = 8 * 1024 * 1024  # 8 MiB, room for a 5 MB base64 attachment

    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


@dataclass(frozen=True)
class ClientConfig:
    hub_hash: str | None = None
    configdir: str | None = None
    app_name: str = "roomhub.hub"
    path_timeout_s: float = 15.0
    reconnect_delay_s: float = 1.0
    reconnect_delay_max_s: float = 5.0
    reconnect_backoff: float = 1.5
    max_reconnect_attempts: int = 10


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_STORAGE_KEYS = {
    "rooms_path": "rooms_path",
    "history_path": "history_path",
    "interval_s": "persist_interval_s",
    "history_limit": "persist_history_limit",
    "default_rooms": "default_rooms",
}


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto `base`.

    Top-level keys and the ``[hub]`` table map directly onto fields;
    ``[storage]`` and ``[logging]`` use short key names.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    for table_name, mapping in (("storage", _STORAGE_KEYS), ("logging", _LOGGING_KEYS)):
        table = data.get(table_name)
        if isinstance(table, dict):
            mapped = {field: table[key] for key, field in mapping.items() if key in table}
            data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config was loaded from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "default_rooms" in updates and isinstance(updates["default_rooms"], list):
        updates["default_rooms"] = tuple(str(x) for x in updates["default_rooms"])

    for optional in ("configdir", "log_file", "log_datefmt", "rooms_path", "history_path"):
        if optional in updates and updates[optional] == "":
            updates[optional] = None

    return replace(base, **updates) if updates else base
