"""Client side of the hub protocol.

`ReconnectionProtocol` only restores the transport: it knows nothing about
users or rooms. `ChatClient` sits on top and, each time the transport comes
back, explicitly registers again and re-joins every room it had joined. The
hub never resumes a session on its own.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import RNS

from .codec import decode, encode
from .config import ClientConfig
from .constants import K_BODY, MessageType
from .envelope import envelope_type, now_ms, validate_envelope
from .errors import ValidationError
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
    command_envelope,
)
from .resources import ResourceTransfer
from .util import default_timer, normalize_room_id, split_dest_name

EstablishedFn = Callable[[], None]
ClosedFn = Callable[[Any], None]
Connector = Callable[[EstablishedFn, ClosedFn], Any]
EventHandler = Callable[[MessageType, dict], None]
TimerFactory = Callable[[float, Callable[[], None]], Any]


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class ReconnectionProtocol:
    """
    Connection state machine with bounded exponential backoff.

    `connector(on_established, on_closed)` starts one connection attempt and
    returns a handle with a ``close()`` method. Either callback may fire from
    any thread, at most once per attempt; callbacks from an attempt that has
    since been superseded are ignored.
    """

    def __init__(
        self,
        connector: Connector,
        *,
        base_delay_s: float = 1.0,
        backoff_factor: float = 1.5,
        max_delay_s: float = 5.0,
        max_attempts: int = 10,
        timer_factory: TimerFactory | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_connected: Callable[[], None] | None = None,
    ) -> None:
        self.log = logging.getLogger("roomhub.client.reconnect")
        self._connector = connector
        self.base_delay_s = float(base_delay_s)
        self.backoff_factor = float(backoff_factor)
        self.max_delay_s = float(max_delay_s)
        self.max_attempts = int(max_attempts)
        self._timer_factory = timer_factory or default_timer
        self._on_state_change = on_state_change
        self._on_connected = on_connected

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._failures = 0
        self._generation = 0
        self._handle: Any = None
        self._timer: Any = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based)."""
        n = max(1, int(attempt))
        return min(self.base_delay_s * self.backoff_factor ** (n - 1), self.max_delay_s)

    def connect(self) -> None:
        with self._lock:
            if self._state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                return
            self._failures = 0
            gen = self._begin_attempt(ConnectionState.CONNECTING)
        self._notify_state(ConnectionState.CONNECTING)
        self._open(gen)

    def reconnect_now(self) -> None:
        """Drop the current transport and any pending retry and connect immediately."""
        with self._lock:
            self._cancel_timer()
            handle, self._handle = self._handle, None
            self._failures = 0
            gen = self._begin_attempt(ConnectionState.CONNECTING)
        self._close_handle(handle)
        self._notify_state(ConnectionState.CONNECTING)
        self._open(gen)

    def disconnect(self) -> None:
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            handle, self._handle = self._handle, None
            changed = self._state is not ConnectionState.DISCONNECTED
            self._state = ConnectionState.DISCONNECTED
        self._close_handle(handle)
        if changed:
            self._notify_state(ConnectionState.DISCONNECTED)

    # Internals

    def _begin_attempt(self, state: ConnectionState) -> int:
        self._generation += 1
        self._state = state
        return self._generation

    def _open(self, gen: int) -> None:
        try:
            handle = self._connector(
                lambda: self._established(gen),
                lambda reason=None: self._lost(gen, reason),
            )
        except Exception as e:
            self.log.warning("Connection attempt failed: %s", e)
            self._lost(gen, e)
            return

        stale = False
        with self._lock:
            if gen == self._generation:
                self._handle = handle
            else:
                stale = True
        if stale:
            self._close_handle(handle)

    def _established(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation:
                return
            self._cancel_timer()
            self._failures = 0
            self._state = ConnectionState.CONNECTED
        self.log.info("Connected")
        self._notify_state(ConnectionState.CONNECTED)
        if self._on_connected is not None:
            self._on_connected()

    def _lost(self, gen: int, reason: Any) -> None:
        with self._lock:
            if gen != self._generation or self._state is ConnectionState.DISCONNECTED:
                return
            self._handle = None
            self._failures += 1
            # Late callbacks from the lost attempt must not count twice.
            self._generation += 1
            retry_gen = self._generation
            if self._failures > self.max_attempts:
                self._state = ConnectionState.FAILED
                new_state = ConnectionState.FAILED
                delay = None
            else:
                delay = self.delay_for(self._failures)
                self._state = ConnectionState.RECONNECTING
                new_state = ConnectionState.RECONNECTING
                self._timer = self._timer_factory(delay, lambda: self._retry(retry_gen))
                self._timer.start()

        if delay is None:
            self.log.warning("Giving up after %s failed attempts (%s)", self._failures, reason)
        else:
            self.log.info(
                "Connection lost (%s); retry %s/%s in %.1fs",
                reason,
                self._failures,
                self.max_attempts,
                delay,
            )
        self._notify_state(new_state)

    def _retry(self, gen: int) -> None:
        with self._lock:
            if gen != self._generation or self._state is not ConnectionState.RECONNECTING:
                return
            self._timer = None
            new_gen = self._begin_attempt(ConnectionState.RECONNECTING)
        self._open(new_gen)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _close_handle(self, handle: Any) -> None:
        if handle is None:
            return
        try:
            handle.close()
        except Exception:
            self.log.debug("Closing transport failed", exc_info=True)

    def _notify_state(self, state: ConnectionState) -> None:
        if self._on_state_change is not None:
            self._on_state_change(state)


class _LinkHandle:
    def __init__(self) -> None:
        self.link: RNS.Link | None = None
        self.closed = False

    def close(self) -> None:
        self.closed = True
        link = self.link
        if link is not None:
            link.teardown()


class RNSLinkTransport:
    """Opens RNS Links to a hub destination, one per connection attempt."""

    def __init__(
        self,
        config: ClientConfig,
        *,
        on_payload: Callable[[bytes], None],
        max_resource_bytes: int = 8 * 1024 * 1024,
    ) -> None:
        if not config.hub_hash:
            raise ValueError("hub_hash is not set")
        self.config = config
        self.hub_hash = bytes.fromhex(config.hub_hash)
        self.log = logging.getLogger("roomhub.client.transport")
        self._on_payload = on_payload
        self._handle: _LinkHandle | None = None
        self.resources = ResourceTransfer(
            max_bytes=max_resource_bytes,
            on_payload=lambda link, payload: self._on_payload(payload),
            logger="roomhub.client.resources",
        )

    def open(self, on_established: EstablishedFn, on_closed: ClosedFn) -> _LinkHandle:
        handle = _LinkHandle()
        self._handle = handle
        # Path discovery blocks; keep it off the caller's thread.
        threading.Thread(
            target=self._establish,
            args=(handle, on_established, on_closed),
            name="roomhub-client-link",
            daemon=True,
        ).start()
        return handle

    def _establish(
        self, handle: _LinkHandle, on_established: EstablishedFn, on_closed: ClosedFn
    ) -> None:
        if not RNS.Transport.has_path(self.hub_hash):
            RNS.Transport.request_path(self.hub_hash)
            deadline = time.monotonic() + float(self.config.path_timeout_s)
            while not RNS.Transport.has_path(self.hub_hash):
                if handle.closed:
                    return
                if time.monotonic() > deadline:
                    on_closed("no path to hub")
                    return
                time.sleep(0.1)

        identity = RNS.Identity.recall(self.hub_hash)
        if identity is None:
            on_closed("hub identity unknown")
            return

        app_name, *aspects = split_dest_name(self.config.app_name)
        destination = RNS.Destination(
            identity, RNS.Destination.OUT, RNS.Destination.SINGLE, app_name, *aspects
        )

        def _established(link: RNS.Link) -> None:
            link.set_packet_callback(lambda data, pkt: self._on_payload(data))
            self.resources.configure_link(link)
            if handle.closed:
                link.teardown()
                return
            on_established()

        def _closed(link: RNS.Link) -> None:
            self.resources.forget_link(link)
            on_closed("link closed")

        handle.link = RNS.Link(
            destination,
            established_callback=_established,
            closed_callback=_closed,
        )

    def send(self, payload: bytes) -> bool:
        handle = self._handle
        if handle is None or handle.link is None or handle.closed:
            return False
        return self.resources.send_payload(handle.link, payload)


class ChatClient:
    """
    High-level client: remembers who we are and where we were.

    `transport` must provide ``open(on_established, on_closed)`` and
    ``send(payload) -> bool``; by default an RNSLinkTransport is built from
    `config`.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Any = None,
        timer_factory: TimerFactory | None = None,
        on_event: EventHandler | None = None,
        on_state_change: Callable[[ConnectionState], None] | None = None,
    ) -> None:
        self.config = config
        self.log = logging.getLogger("roomhub.client")
        self.transport = transport or RNSLinkTransport(config, on_payload=self.handle_payload)
        self._on_event = on_event

        self.protocol = ReconnectionProtocol(
            self.transport.open,
            base_delay_s=config.reconnect_delay_s,
            backoff_factor=config.reconnect_backoff,
            max_delay_s=config.reconnect_delay_max_s,
            max_attempts=config.max_reconnect_attempts,
            timer_factory=timer_factory,
            on_state_change=on_state_change,
            on_connected=self._resync,
        )

        self._lock = threading.Lock()
        self.username: str | None = None
        self.user_id: str | None = None
        # room id -> password used to join it
        self.rooms: dict[str, str | None] = {}
        self._pending_joins: dict[str, str | None] = {}

    @property
    def state(self) -> ConnectionState:
        return self.protocol.state

    def connect(self) -> None:
        self.protocol.connect()

    def reconnect_now(self) -> None:
        self.protocol.reconnect_now()

    def disconnect(self) -> None:
        self.protocol.disconnect()

    # Commands

    def register(self, name: str) -> bool:
        with self._lock:
            self.username = name
        return self._send(RegisterUser(name=name))

    @staticmethod
    def _room_key(room_id: str) -> str:
        # The hub answers with the slugged id; key local state the same way.
        try:
            return normalize_room_id(room_id, max_chars=len(room_id) or 1)
        except ValidationError:
            return room_id

    def create_room(
        self, room_id: str, room_name: str | None = None, password: str | None = None
    ) -> bool:
        rid = self._room_key(room_id)
        if password:
            with self._lock:
                self._pending_joins[rid] = password
        return self._send(
            CreateRoom(room_id=rid, room_name=room_name, password=password, creator=self.username)
        )

    def join(self, room_id: str, password: str | None = None) -> bool:
        rid = self._room_key(room_id)
        with self._lock:
            self._pending_joins[rid] = password
        return self._send(JoinRoom(room_id=rid, username=self.username, password=password))

    def leave(self, room_id: str) -> bool:
        rid = self._room_key(room_id)
        with self._lock:
            self.rooms.pop(rid, None)
            self._pending_joins.pop(rid, None)
        return self._send(LeaveRoom(room_id=rid))

    def send_message(self, room_id: str, text: str) -> bool:
        return self._send(SendMessage(room_id=room_id, text=text))

    def send_file(self, room_id: str, file_name: str, file_type: str | None, blob: bytes) -> bool:
        return self._send(
            FileUpload(room_id=room_id, file_name=file_name, file_type=file_type, blob=blob)
        )

    def set_typing(self, room_id: str, is_typing: bool) -> bool:
        return self._send(Typing(room_id=room_id, is_typing=is_typing))

    def get_rooms(self) -> bool:
        return self._send(GetRooms())

    def ping(self) -> bool:
        return self._send(Ping(client_time=now_ms()))

    def _send(self, cmd: Command) -> bool:
        if self.protocol.state is not ConnectionState.CONNECTED:
            self.log.debug("Not connected; dropping %s", type(cmd).__name__)
            return False
        return bool(self.transport.send(encode(command_envelope(cmd))))

    def _resync(self) -> None:
        with self._lock:
            name = self.username
            rooms = dict(self.rooms)
            rooms.update(self._pending_joins)
            self._pending_joins = dict(rooms)
        if name is None:
            return
        self.log.info("Re-registering as %r and re-joining %s room(s)", name, len(rooms))
        self._send(RegisterUser(name=name))
        for rid in sorted(rooms):
            self._send(JoinRoom(room_id=rid, username=name, password=rooms[rid]))

    # Events

    def handle_payload(self, data: bytes) -> None:
        try:
            env = decode(data)
            validate_envelope(env)
            t = envelope_type(env)
        except Exception as e:
            self.log.debug("Ignoring bad frame from hub: %s", e)
            return

        body = env.get(K_BODY) or {}
        if t == MessageType.USER_REGISTERED:
            with self._lock:
                self.user_id = body.get("userId")
                self.username = body.get("username", self.username)
        elif t == MessageType.ROOM_JOINED:
            rid = body.get("roomId")
            if isinstance(rid, str):
                with self._lock:
                    pw = self._pending_joins.pop(rid, self.rooms.get(rid))
                    self.rooms[rid] = pw
        elif t == MessageType.JOIN_ERROR:
            with self._lock:
                self._pending_joins.clear()
        elif t == MessageType.AUTO_JOIN:
            rid = body.get("roomId")
            if isinstance(rid, str):
                with self._lock:
                    pw = self._pending_joins.get(rid)
                self.join(rid, pw)

        if self._on_event is not None:
            self._on_event(t, body)
