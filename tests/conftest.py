from __future__ import annotations

from collections.abc import Callable

import pytest

from roomhub.config import HubRuntimeConfig
from roomhub.constants import K_BODY, K_T, MessageType
from roomhub.core import HubCore


class FakeTimer:
    def __init__(self, interval: float, fn: Callable[[], None]) -> None:
        self.interval = interval
        self.fn = fn
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        # Mirrors threading.Timer: a cancelled timer never runs.
        if self.started and not self.cancelled and not self.fired:
            self.fired = True
            self.fn()


class FakeTimers:
    def __init__(self) -> None:
        self.created: list[FakeTimer] = []

    def __call__(self, interval: float, fn: Callable[[], None]) -> FakeTimer:
        t = FakeTimer(interval, fn)
        self.created.append(t)
        return t

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.created if t.started and not t.cancelled and not t.fired]

    def fire_pending(self) -> None:
        for t in list(self.pending):
            t.fire()


class RecordingSink:
    """Delivery sink that keeps every (connection id, envelope) pair in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def __call__(self, outgoing) -> None:
        self.events.extend(outgoing)

    def clear(self) -> None:
        self.events.clear()

    def types_for(self, conn: str) -> list[MessageType]:
        return [MessageType(env[K_T]) for c, env in self.events if c == conn]

    def bodies(self, conn: str, msg_type: MessageType) -> list[dict]:
        return [
            env.get(K_BODY) or {}
            for c, env in self.events
            if c == conn and env[K_T] == msg_type
        ]

    def recipients(self, msg_type: MessageType) -> list[str]:
        return [c for c, env in self.events if env[K_T] == msg_type]


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def hub_config(tmp_path) -> HubRuntimeConfig:
    return HubRuntimeConfig(
        password_hash_iterations=1_000,
        persist_interval_s=0.0,
        rooms_path=str(tmp_path / "rooms.toml"),
        history_path=str(tmp_path / "history.cbor"),
    )


@pytest.fixture
def hub(hub_config, sink, timers) -> HubCore:
    return HubCore(hub_config, deliver=sink, timer_factory=timers)


@pytest.fixture
def user(hub):
    """Connect and register a user; returns the connection id."""

    def _make(conn: str, name: str | None = None) -> str:
        hub.on_connect(conn)
        hub.membership.register(conn, name or conn)
        return conn

    return _make


@pytest.fixture
def member(hub, user):
    """Connect, register and join a room; returns the connection id."""

    def _make(conn: str, room: str = "general", name: str | None = None) -> str:
        user(conn, name)
        hub.membership.join_room(conn, room)
        return conn

    return _make
