"""UDP tracker transport (BEP 15).

Implements connect, announce and scrape over an asyncio datagram endpoint.
Connection ids are random 64-bit values bound to the sender IP and expire
after ``connection_timeout`` seconds.
"""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import logging
import os
import struct
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from trackgate.logging_config import request_context
from trackgate.models import UdpTransportConfig
from trackgate.tracker.requests import (
    AnnounceResult,
    Peer,
    RequestType,
    ScrapeResult,
    TrackerFailure,
    TrackerRequest,
)
from trackgate.transports.base import HostBinding, TransportStrategy

if TYPE_CHECKING:  # pragma: no cover
    from trackgate.security.rate_limiter import RateLimitChain
    from trackgate.tracker.swarm import SwarmEngine

logger = logging.getLogger(__name__)

MAGIC_CONNECTION_ID = 0x41727101980  # initial magic

ACTION_CONNECT = 0
ACTION_ANNOUNCE = 1
ACTION_SCRAPE = 2
ACTION_ERROR = 3

_ACTION_ROUTES = {
    ACTION_CONNECT: "connect",
    ACTION_ANNOUNCE: "announce",
    ACTION_SCRAPE: "scrape",
}

# event codes: 0:none, 1:completed, 2:started, 3:stopped
_EVENTS = {0: "", 1: "completed", 2: "started", 3: "stopped"}

ANNOUNCE_LENGTH = 98
HEADER_LENGTH = 16
MAX_SCRAPE_HASHES = 74


def error_packet(transaction_id: int, message: str) -> bytes:
    """Build an action 3 response."""
    return struct.pack("!II", ACTION_ERROR, transaction_id) + message.encode("utf-8")


def parse_announce(data: bytes, client_address: str) -> TrackerRequest:
    """Decode an announce datagram into a canonical request."""
    if len(data) < ANNOUNCE_LENGTH:
        return TrackerRequest(
            type=RequestType.ANNOUNCE,
            client_address=client_address,
            transport="udp",
            malformed="Bad announce length",
        )

    # request: connection_id(8) action(4) transaction_id(4) info_hash(20) peer_id(20)
    # downloaded(8) left(8) uploaded(8) event(4) IP(4) key(4) num_want(4) port(2)
    info_hash = data[16:36]
    peer_id = data[36:56]
    downloaded, left, uploaded = struct.unpack("!QQQ", data[56:80])
    event, _ip, _key, num_want = struct.unpack("!IIIi", data[80:96])
    port = struct.unpack("!H", data[96:98])[0]

    params: dict[str, Any] = {
        "peer_id": peer_id,
        "port": port,
        "downloaded": downloaded,
        "left": left,
        "uploaded": uploaded,
        "event": _EVENTS.get(event, ""),
    }
    if num_want >= 0:
        params["numwant"] = num_want

    return TrackerRequest(
        type=RequestType.ANNOUNCE,
        client_address=client_address,
        info_hashes=[info_hash],
        params=params,
        transport="udp",
        malformed=None if event in _EVENTS else "invalid event",
    )


def parse_scrape(data: bytes, client_address: str) -> TrackerRequest:
    """Decode a scrape datagram into a canonical request."""
    body = data[HEADER_LENGTH:]
    malformed = None
    if not body or len(body) % 20:
        malformed = "Bad scrape length"
    elif len(body) // 20 > MAX_SCRAPE_HASHES:
        malformed = "Too many info hashes"

    hashes = [] if malformed else [body[i : i + 20] for i in range(0, len(body), 20)]
    return TrackerRequest(
        type=RequestType.SCRAPE,
        client_address=client_address,
        info_hashes=hashes,
        transport="udp",
        malformed=malformed,
    )


def _compact_ipv4(peers: list[Peer]) -> bytes:
    compact = bytearray()
    for peer in peers:
        try:
            ip = ipaddress.ip_address(peer.ip)
        except ValueError:
            continue
        if isinstance(ip, ipaddress.IPv6Address):
            if ip.ipv4_mapped is None:
                continue
            ip = ip.ipv4_mapped
        compact.extend(ip.packed)
        compact.extend(peer.port.to_bytes(2, "big"))
    return bytes(compact)


class _UdpTrackerProtocol(asyncio.DatagramProtocol):
    """Datagram protocol feeding the UDP transport."""

    def __init__(self, tracker: UdpTransport):
        self.tracker = tracker

    def datagram_received(self, data: bytes, addr: tuple[Any, ...]) -> None:
        self.tracker.spawn(data, addr)

    def error_received(self, exc: Exception) -> None:
        logger.debug("UDP tracker socket error: %s", exc)


class UdpTransport(TransportStrategy):
    """BEP 15 tracker endpoint."""

    name = "udp"

    def __init__(
        self,
        engine: SwarmEngine,
        rate_limiter: RateLimitChain | None = None,
        config: UdpTransportConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize UDP transport."""
        self.config = config or UdpTransportConfig()
        super().__init__(
            engine,
            rate_limiter,
            HostBinding(self.config.host, self.config.port),
        )
        self.clock = clock
        self.transport: asyncio.DatagramTransport | None = None
        # connection_id -> (client ip, expiry)
        self._connections: dict[int, tuple[str, float]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None

    def spawn(self, data: bytes, addr: tuple[Any, ...]) -> None:
        """Answer a datagram in the background."""
        task = asyncio.create_task(self._respond(data, addr))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _respond(self, data: bytes, addr: tuple[Any, ...]) -> None:
        response = await self.handle_datagram(data, addr)
        if response is not None and self.transport is not None:
            self.transport.sendto(response, addr)

    def issue_connection_id(self, client_ip: str) -> int:
        """Create a connection id valid for this client only."""
        connection_id = struct.unpack("!Q", os.urandom(8))[0]
        self._connections[connection_id] = (
            client_ip,
            self.clock() + self.config.connection_timeout,
        )
        return connection_id

    def validate_connection_id(self, connection_id: int, client_ip: str) -> bool:
        """Return True if the id was issued to this client and is still valid."""
        entry = self._connections.get(connection_id)
        if entry is None:
            return False
        owner, expires = entry
        if expires <= self.clock():
            del self._connections[connection_id]
            return False
        return owner == client_ip

    def sweep_connections(self) -> int:
        """Drop expired connection ids; return how many were dropped."""
        now = self.clock()
        expired = [cid for cid, (_, expires) in self._connections.items() if expires <= now]
        for cid in expired:
            del self._connections[cid]
        return len(expired)

    async def handle_datagram(self, data: bytes, addr: tuple[Any, ...]) -> bytes | None:
        """Process one datagram and return the response to send, if any."""
        with request_context(self.name, addr[0]):
            return await self._handle_datagram(data, addr)

    async def _handle_datagram(self, data: bytes, addr: tuple[Any, ...]) -> bytes | None:
        if len(data) < HEADER_LENGTH:
            # No transaction id to answer with
            return None

        client_ip = addr[0]
        connection_id, action, transaction_id = struct.unpack("!QII", data[:HEADER_LENGTH])
        route = _ACTION_ROUTES.get(action)
        if route is None:
            return error_packet(transaction_id, "Unsupported action")

        failure = await self._apply_rate_limits(client_ip, route)
        if failure is not None:
            return error_packet(transaction_id, failure.reason)

        if action == ACTION_CONNECT:
            if connection_id != MAGIC_CONNECTION_ID:
                return error_packet(transaction_id, "Invalid protocol id")
            new_id = self.issue_connection_id(client_ip)
            return struct.pack("!IIQ", ACTION_CONNECT, transaction_id, new_id)

        if not self.validate_connection_id(connection_id, client_ip):
            return error_packet(transaction_id, "Invalid or expired connection id")

        if action == ACTION_ANNOUNCE:
            request = parse_announce(data, client_ip)
        else:
            request = parse_scrape(data, client_ip)

        response = await self._dispatch(request)
        if isinstance(response, TrackerFailure):
            return error_packet(transaction_id, response.reason)
        if isinstance(response, AnnounceResult):
            header = struct.pack(
                "!IIIII",
                ACTION_ANNOUNCE,
                transaction_id,
                response.interval,
                response.incomplete,
                response.complete,
            )
            return header + _compact_ipv4(response.peers)
        return self._encode_scrape(transaction_id, request.info_hashes, response)

    @staticmethod
    def _encode_scrape(
        transaction_id: int,
        hashes: list[bytes],
        result: ScrapeResult,
    ) -> bytes:
        out = bytearray(struct.pack("!II", ACTION_SCRAPE, transaction_id))
        for info_hash in hashes:
            stats = result.files[info_hash]
            out += struct.pack("!III", stats.complete, stats.downloaded, stats.incomplete)
        return bytes(out)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            expired = self.sweep_connections()
            if expired:
                logger.debug("Swept %d expired UDP connection ids", expired)

    async def _bind(self, binding: HostBinding) -> HostBinding:
        loop = asyncio.get_running_loop()
        self.transport, _ = await loop.create_datagram_endpoint(
            lambda: _UdpTrackerProtocol(self),
            local_addr=(binding.host, binding.port),
        )
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        sockname = self.transport.get_extra_info("sockname")
        return HostBinding(binding.host, sockname[1])

    async def _release(self) -> None:
        tasks = list(self._tasks)
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._sweep_task = None
        self._tasks.clear()

        transport, self.transport = self.transport, None
        if transport is not None:
            transport.close()
        self._connections.clear()
