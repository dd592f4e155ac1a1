from __future__ import annotations

import os
from pathlib import Path


def default_roomhub_dir() -> Path:
    override = os.environ.get("ROOMHUB_HOME")
    if override:
        return Path(override)
    return Path.home() / ".roomhub"


def default_config_path() -> Path:
    return default_roomhub_dir() / "roomhub.toml"


def default_identity_path() -> Path:
    return default_roomhub_dir() / "hub_identity"


def default_rooms_path() -> Path:
    return default_roomhub_dir() / "rooms.toml"


def default_history_path() -> Path:
    return default_roomhub_dir() / "history.cbor"


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        # Best-effort tightening; may fail on some filesystems.
        os.chmod(path, 0o700)
    except OSError:
        pass
