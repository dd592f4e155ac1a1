from __future__ import annotations

import logging
import os
import queue
import signal
import threading
import time

import RNS

from . import __version__
from .codec import encode
from .config import HubRuntimeConfig
from .core import HubCore
from .messages import Outgoing
from .persistence import PersistenceScheduler
from .paths import default_history_path, default_rooms_path
from .resources import ResourceTransfer, fmt_link_id
from .util import expand_path, split_dest_name


class HubService:
    """
    Runs a HubCore behind an RNS destination.

    Every incoming Link is one connection; its hex link id is the
    connection id the core sees. Events produced by the core are queued in
    order and sent by a dedicated outbox thread so no RNS call is made while
    the state lock is held.
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("roomhub.hub")

        self._shutdown = threading.Event()
        self._outbox: queue.Queue[tuple[str, dict] | None] = queue.Queue()

        self.core = HubCore(config, deliver=self._enqueue)
        self.resources = ResourceTransfer(
            max_bytes=config.max_resource_bytes,
            on_payload=self._on_resource_payload,
            count=self.core.stats.inc,
        )
        self.persistence = PersistenceScheduler(
            self.core,
            rooms_path=config.rooms_path or str(default_rooms_path()),
            history_path=config.history_path or str(default_history_path()),
        )

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._links_lock = threading.Lock()
        self._links: dict[str, RNS.Link] = {}

        self._outbox_thread: threading.Thread | None = None
        self._announce_thread: threading.Thread | None = None

    def start(self) -> None:
        self.log.info("Starting roomhub %s", __version__)
        self.core.stats.set_start_time()

        self.persistence.load_or_initialize()

        self.log.info("Bringing up Reticulum configdir=%s", self.config.configdir or "-")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)
        self.identity = self._load_identity(self.config.identity_path)
        self.destination = self._open_destination(self.identity)

        self._outbox_thread = threading.Thread(
            target=self._outbox_loop, name="roomhub-outbox", daemon=True
        )
        self._outbox_thread.start()
        self.persistence.start()

        if self.config.announce_on_start:
            self._announce_once()
        if self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="roomhub-announce", daemon=True
            )
            self._announce_thread.start()

        self.log.info(
            "Hub listening on %s (%s)",
            self.config.dest_name,
            RNS.prettyhexrep(self.destination.hash),
        )
        self.log.info(
            "Policy auto_create_rooms=%s single_room_membership=%s history=%s/%s "
            "persist_interval_s=%s",
            self.config.auto_create_rooms,
            self.config.single_room_membership,
            self.config.history_soft_cap,
            self.config.history_hard_cap,
            self.config.persist_interval_s,
        )

    def _load_identity(self, path: str | None) -> RNS.Identity:
        if not path:
            raise RuntimeError("identity_path is not configured")
        full = expand_path(path)
        if not os.path.isfile(full):
            raise RuntimeError(f"No hub identity at {full}; run roomhub once to create it")
        ident = RNS.Identity.from_file(full)
        if ident is None:
            raise RuntimeError(f"Could not read hub identity from {full}")
        return ident

    def _open_destination(self, identity: RNS.Identity) -> RNS.Destination:
        app_name, *aspects = split_dest_name(self.config.dest_name)
        dest = RNS.Destination(
            identity, RNS.Destination.IN, RNS.Destination.SINGLE, app_name, *aspects
        )
        dest.set_link_established_callback(self._on_link)
        return dest

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        app_data = encode({"proto": "roomhub", "v": 1, "hub": self.config.hub_name})
        try:
            self.destination.announce(app_data=app_data)
        except Exception:
            self.log.exception("Announce failed")
        else:
            self.log.debug("Announced %s", RNS.prettyhexrep(self.destination.hash))

    def _announce_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.announce_period_s)):
            self._announce_once()

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self._shutdown.set())
        signal.signal(signal.SIGTERM, lambda *_: self._shutdown.set())

        while not self._shutdown.is_set():
            time.sleep(0.25)

        self.stop()

    def stop(self) -> None:
        self._shutdown.set()

        self.persistence.stop(flush=True)

        conns = self.core.shutdown()
        self.resources.clear_all()
        with self._links_lock:
            links = [self._links.pop(c) for c in conns if c in self._links]
            links.extend(self._links.values())
            self._links.clear()

        self._outbox.put(None)
        if self._outbox_thread is not None:
            self._outbox_thread.join(timeout=5.0)

        for link in links:
            try:
                link.teardown()
            except Exception:
                pass

        self.log.info("Hub stopped\n%s", self.core.stats.format_stats())

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        conn = fmt_link_id(link)
        # The core must know the connection before its first frame can arrive.
        self.core.on_connect(conn)
        with self._links_lock:
            self._links[conn] = link

        link.set_packet_callback(lambda data, pkt: self._on_payload(conn, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(conn, closed_link))
        self.resources.configure_link(link)

    def _on_close(self, conn: str, link: RNS.Link) -> None:
        # Unlink first so frames still in flight for this link are dropped.
        with self._links_lock:
            self._links.pop(conn, None)
        self.resources.forget_link(link)
        self.core.on_disconnect(conn)

    def _on_payload(self, conn: str, data: bytes) -> None:
        with self._links_lock:
            live = conn in self._links
        if not live:
            self.log.debug("Dropping frame for closed link_id=%s bytes=%s", conn, len(data))
            return
        self.core.handle_payload(conn, data)

    def _on_resource_payload(self, link: RNS.Link, payload: bytes) -> None:
        self._on_payload(fmt_link_id(link), payload)

    # Outgoing

    def _enqueue(self, outgoing: Outgoing) -> None:
        # Called with the state lock held; queue order is delivery order.
        for item in outgoing:
            self._outbox.put(item)

    def _outbox_loop(self) -> None:
        while True:
            item = self._outbox.get()
            if item is None:
                return
            conn, env = item
            with self._links_lock:
                link = self._links.get(conn)
            if link is None:
                continue

            payload = encode(env)
            self.core.stats.inc("bytes_out", len(payload))
            try:
                self.resources.send_payload(link, payload)
            except Exception:
                self.log.debug(
                    "Send failed link_id=%s bytes=%s",
                    fmt_link_id(link),
                    len(payload),
                    exc_info=True,
                )
