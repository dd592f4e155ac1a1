from __future__ import annotations

import os
import re
import threading

from .constants import DISPLAY_NAME_MAX_CHARS, ROOM_ID_MAX_CHARS, ROOM_NAME_MAX_CHARS
from .errors import ValidationError

_CTRL_RE = re.compile(r"[\x00-\x1f\x7f]")
_SLUG_RE = re.compile(r"[^a-z0-9-]")


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def split_dest_name(dest_name: str) -> list[str]:
    """Split "app.aspect.aspect" into RNS destination name parts."""
    parts = [p for p in str(dest_name).split(".") if p]
    if not parts:
        raise ValueError("destination name must not be empty")
    return parts


def fallback_name(connection_id: str) -> str:
    return f"User_{connection_id[:6]}"


def sanitize_display_name(
    value, connection_id: str, *, max_chars: int = DISPLAY_NAME_MAX_CHARS
) -> str:
    if not isinstance(value, str):
        return fallback_name(connection_id)

    # Control characters (newlines, NUL) break UI and log formatting.
    s = _CTRL_RE.sub("", value).strip()
    if max_chars > 0:
        s = s[:max_chars].strip()
    if not s:
        return fallback_name(connection_id)
    return s


def normalize_room_id(value, *, max_chars: int = ROOM_ID_MAX_CHARS) -> str:
    """Normalize a caller-supplied room id to a URL-safe slug."""
    if not isinstance(value, str):
        raise ValidationError("Valid room id is required")

    r = _SLUG_RE.sub("-", value.strip().lower()).strip("-")
    if not r:
        raise ValidationError("Valid room id is required")
    if len(r) > int(max_chars):
        raise ValidationError("Room id too long")
    return r


def normalize_room_name(value, room_id: str, *, max_chars: int = ROOM_NAME_MAX_CHARS) -> str:
    if not isinstance(value, str):
        return room_id
    s = _CTRL_RE.sub("", value).strip()
    if max_chars > 0:
        s = s[:max_chars].strip()
    return s or room_id


def default_room_name(room_id: str) -> str:
    return room_id.replace("-", " ").title()


def default_timer(interval: float, fn) -> threading.Timer:
    t = threading.Timer(interval, fn)
    t.daemon = True
    return t
