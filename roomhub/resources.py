"""Large payload transfer over RNS Resources.

Envelopes that do not fit the link MDU (file uploads, join snapshots with a
long history) travel as a single RNS Resource whose data is the encoded
envelope itself. The receiving side hands the reassembled bytes to the same
payload handler used for ordinary packets.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

import RNS

PayloadHandler = Callable[[RNS.Link, bytes], None]
CounterFn = Callable[[str, int], None]


def fmt_link_id(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


def packet_fits(link: RNS.Link, payload: bytes) -> bool:
    """Check if payload fits within the link MDU."""
    mdu = getattr(link, "MDU", None)
    if mdu is not None:
        return len(payload) <= mdu
    try:
        pkt = RNS.Packet(link, payload)
        pkt.pack()
        return True
    except Exception:
        return False


class ResourceTransfer:
    """Sends and receives whole envelopes as RNS Resources."""

    def __init__(
        self,
        *,
        max_bytes: int,
        on_payload: PayloadHandler,
        count: CounterFn | None = None,
        logger: str = "roomhub.resources",
    ) -> None:
        self.max_bytes = int(max_bytes)
        self._on_payload = on_payload
        self._count: CounterFn = count or (lambda key, delta: None)
        self.log = logging.getLogger(logger)

        self._lock = threading.Lock()
        self._active: dict[RNS.Link, set[RNS.Resource]] = {}

    def configure_link(self, link: RNS.Link) -> None:
        with self._lock:
            self._active.setdefault(link, set())
        try:
            link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            link.set_resource_callback(self._resource_advertised)
            link.set_resource_concluded_callback(self._resource_concluded)
        except Exception as e:
            self.log.warning(
                "Could not enable resources on link_id=%s: %s", fmt_link_id(link), e
            )

    def forget_link(self, link: RNS.Link) -> None:
        with self._lock:
            self._active.pop(link, None)

    def clear_all(self) -> None:
        with self._lock:
            self._active.clear()

    def send_payload(self, link: RNS.Link, payload: bytes) -> bool:
        """Send as a packet if it fits, otherwise as a Resource."""
        if packet_fits(link, payload):
            try:
                RNS.Packet(link, payload).send()
                return True
            except OSError as e:
                self.log.warning(
                    "Send failed link_id=%s bytes=%s err=%s",
                    fmt_link_id(link),
                    len(payload),
                    e,
                )
                return False
        return self.send_resource(link, payload)

    def send_resource(self, link: RNS.Link, payload: bytes) -> bool:
        size = len(payload)
        if size > self.max_bytes:
            self.log.warning(
                "Payload too large for resource transfer: %s > %s link_id=%s",
                size,
                self.max_bytes,
                fmt_link_id(link),
            )
            return False
        try:
            resource = RNS.Resource(payload, link, advertise=True, auto_compress=False)
        except Exception as e:
            self.log.error("Failed to create resource link_id=%s: %s", fmt_link_id(link), e)
            return False

        with self._lock:
            self._active.setdefault(link, set()).add(resource)
        self._count("resources_sent", 1)
        self.log.debug("Sent resource link_id=%s size=%s", fmt_link_id(link), size)
        return True

    def _resource_advertised(self, resource: RNS.Resource) -> bool:
        link = resource.link
        size = getattr(resource, "total_size", None) or resource.size
        if size > self.max_bytes:
            self.log.warning(
                "Refusing %s byte resource over limit %s link_id=%s",
                size,
                self.max_bytes,
                fmt_link_id(link),
            )
            self._count("resources_rejected", 1)
            return False

        with self._lock:
            if link not in self._active:
                self._count("resources_rejected", 1)
                return False
            self._active[link].add(resource)
        return True

    def _resource_concluded(self, resource: RNS.Resource) -> None:
        link = resource.link
        with self._lock:
            active = self._active.get(link)
            if active:
                active.discard(resource)

        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource did not complete link_id=%s status=%s",
                fmt_link_id(link),
                resource.status,
            )
            return

        # Outgoing resources conclude here too; only incoming ones carry data for us.
        if getattr(resource, "initiator", False):
            return

        try:
            data = resource.data
            payload = data.read() if hasattr(data, "read") else data
        except Exception as e:
            self.log.error("Failed to read resource data link_id=%s: %s", fmt_link_id(link), e)
            return
        if isinstance(payload, bytearray):
            payload = bytes(payload)

        self._count("resources_received", 1)
        self.log.debug("Resource received link_id=%s size=%s", fmt_link_id(link), len(payload))
        self._on_payload(link, payload)
