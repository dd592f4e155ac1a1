"""Statistics tracking and reporting for the hub."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .core import HubCore

# Report line label -> counters printed on that line, in order.
_COUNTER_GROUPS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("sessions", ("connections", "registrations")),
    (
        "rooms",
        ("joins", "join_failures", "parts", "rooms_created", "evictions"),
    ),
    ("traffic", ("msgs_accepted", "files_accepted", "errors_sent")),
    ("io", ("pkts_in", "pkts_bad", "bytes_in", "bytes_out")),
    ("resources", ("resources_sent", "resources_received", "resources_rejected")),
    ("persistence", ("persist_ok", "persist_failed")),
)


class StatsManager:
    """
    Lifetime counters plus consistent snapshots of hub state.

    Snapshots are taken under the hub state lock so external readers never
    observe a half-applied operation.
    """

    def __init__(self, hub: HubCore) -> None:
        self.hub = hub

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            key: 0 for _, keys in _COUNTER_GROUPS for key in keys
        }

    def set_start_time(self) -> None:
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        with self.hub.state_lock:
            self._counters[key] = self._counters.get(key, 0) + int(delta)

    def get(self, key: str) -> int:
        with self.hub.state_lock:
            return self._counters.get(key, 0)

    def snapshot(self) -> dict[str, Any]:
        started = self.started_monotonic
        uptime_s = (time.monotonic() - started) if started is not None else 0.0
        with self.hub.state_lock:
            return {
                "uptime_s": uptime_s,
                "sessions": self.hub.registry.get_stats(),
                "rooms": self.hub.store.get_stats(),
                "counters": dict(self._counters),
            }

    def format_stats(self) -> str:
        from . import __version__

        snap = self.snapshot()
        sessions = snap["sessions"]
        rooms = snap["rooms"]
        counters = snap["counters"]

        lines = [
            f"roomhub {__version__} up {snap['uptime_s']:.1f}s",
            f"now: connections={sessions['connections']} registered={sessions['registered']} "
            f"rooms={rooms['rooms_total']} memberships={rooms['memberships']} "
            f"messages={rooms['messages']}",
        ]
        if rooms["top_rooms"]:
            lines.append("busiest: " + ", ".join(f"{r}({n})" for r, n in rooms["top_rooms"]))
        for label, keys in _COUNTER_GROUPS:
            values = " ".join(f"{k}={counters.get(k, 0)}" for k in keys)
            lines.append(f"{label}: {values}")
        return "\n".join(lines)
