"""Tests for trackgate.transports.udp."""

from __future__ import annotations

import asyncio
import socket
import struct

import pytest

from trackgate.logging_config import current_request
from trackgate.models import BanRange, TrackerConfig, UdpTransportConfig
from trackgate.security.admission import AdmissionFilter
from trackgate.security.ban_index import BanRangeIndex
from trackgate.security.rate_limiter import FixedWindowPolicy, RateLimitChain
from trackgate.tracker.swarm import InMemorySwarmEngine
from trackgate.transports.base import TransportState
from trackgate.transports.udp import (
    ACTION_ANNOUNCE,
    ACTION_CONNECT,
    ACTION_ERROR,
    ACTION_SCRAPE,
    MAGIC_CONNECTION_ID,
    UdpTransport,
    parse_announce,
    parse_scrape,
)

pytestmark = [pytest.mark.unit, pytest.mark.transports]

INFO_HASH = bytes(range(20))
CLIENT = ("10.0.0.1", 40000)


def connect_packet(transaction_id: int = 1, connection_id: int = MAGIC_CONNECTION_ID) -> bytes:
    return struct.pack("!QII", connection_id, ACTION_CONNECT, transaction_id)


def announce_packet(
    connection_id: int,
    transaction_id: int = 2,
    peer_id: bytes = b"-TG0001-aaaaaaaaaaaa",
    left: int = 100,
    event: int = 0,
    num_want: int = -1,
    port: int = 6881,
) -> bytes:
    return (
        struct.pack("!QII", connection_id, ACTION_ANNOUNCE, transaction_id)
        + INFO_HASH
        + peer_id
        + struct.pack("!QQQ", 0, left, 0)
        + struct.pack("!IIIi", event, 0, 0, num_want)
        + struct.pack("!H", port)
    )


def scrape_packet(connection_id: int, *hashes: bytes, transaction_id: int = 3) -> bytes:
    return struct.pack("!QII", connection_id, ACTION_SCRAPE, transaction_id) + b"".join(hashes)


def error_message(response: bytes, transaction_id: int) -> str:
    action, tid = struct.unpack("!II", response[:8])
    assert action == ACTION_ERROR
    assert tid == transaction_id
    return response[8:].decode("utf-8")


@pytest.fixture
def index():
    return BanRangeIndex()


@pytest.fixture
def transport(index, clock):
    engine = InMemorySwarmEngine(AdmissionFilter(index), TrackerConfig(), clock=clock)
    config = UdpTransportConfig(host="127.0.0.1", port=0, connection_timeout=120)
    return UdpTransport(engine, None, config, clock=clock)


async def connect(transport, addr=CLIENT) -> int:
    response = await transport.handle_datagram(connect_packet(), addr)
    action, _tid, connection_id = struct.unpack("!IIQ", response)
    assert action == ACTION_CONNECT
    return connection_id


def test_parse_announce_short_packet_is_malformed():
    request = parse_announce(b"\x00" * 50, "10.0.0.1")
    assert request.malformed == "Bad announce length"


def test_parse_announce_fields():
    request = parse_announce(announce_packet(1, event=2, num_want=5, port=7000), "10.0.0.1")
    assert request.malformed is None
    assert request.info_hash == INFO_HASH
    assert request.params["event"] == "started"
    assert request.params["numwant"] == 5
    assert request.params["port"] == 7000


def test_parse_announce_default_numwant_is_omitted():
    request = parse_announce(announce_packet(1), "10.0.0.1")
    assert "numwant" not in request.params


def test_parse_scrape_limits():
    assert parse_scrape(scrape_packet(1, b"\x01" * 19), "10.0.0.1").malformed == (
        "Bad scrape length"
    )
    too_many = scrape_packet(1, *([b"\x01" * 20] * 75))
    assert parse_scrape(too_many, "10.0.0.1").malformed == "Too many info hashes"


@pytest.mark.asyncio
async def test_short_datagram_is_dropped(transport):
    assert await transport.handle_datagram(b"\x00" * 8, CLIENT) is None


@pytest.mark.asyncio
async def test_connect_requires_magic(transport):
    response = await transport.handle_datagram(connect_packet(7, connection_id=1234), CLIENT)
    assert error_message(response, 7) == "Invalid protocol id"


@pytest.mark.asyncio
async def test_unsupported_action(transport):
    packet = struct.pack("!QII", MAGIC_CONNECTION_ID, 9, 5)
    assert error_message(await transport.handle_datagram(packet, CLIENT), 5) == (
        "Unsupported action"
    )


@pytest.mark.asyncio
async def test_announce_round_trip(transport):
    other = ("10.0.0.2", 40001)
    other_id = await connect(transport, other)
    await transport.handle_datagram(
        announce_packet(other_id, peer_id=b"-TG0001-bbbbbbbbbbbb", left=0, port=7000), other
    )

    connection_id = await connect(transport)
    response = await transport.handle_datagram(announce_packet(connection_id), CLIENT)

    action, tid, interval, leechers, seeders = struct.unpack("!IIIII", response[:20])
    assert (action, tid, interval) == (ACTION_ANNOUNCE, 2, 300)
    assert (leechers, seeders) == (1, 1)
    assert response[20:] == socket.inet_aton("10.0.0.2") + struct.pack("!H", 7000)


@pytest.mark.asyncio
async def test_scrape_round_trip(transport):
    connection_id = await connect(transport)
    await transport.handle_datagram(announce_packet(connection_id, left=0), CLIENT)

    unknown = b"\xee" * 20
    response = await transport.handle_datagram(
        scrape_packet(connection_id, INFO_HASH, unknown), CLIENT
    )

    action, tid = struct.unpack("!II", response[:8])
    assert (action, tid) == (ACTION_SCRAPE, 3)
    assert struct.unpack("!III", response[8:20]) == (1, 0, 0)
    assert struct.unpack("!III", response[20:32]) == (0, 0, 0)


@pytest.mark.asyncio
async def test_unknown_connection_id_is_rejected(transport):
    response = await transport.handle_datagram(announce_packet(42), CLIENT)
    assert error_message(response, 2) == "Invalid or expired connection id"


@pytest.mark.asyncio
async def test_connection_id_is_bound_to_client(transport):
    connection_id = await connect(transport)
    response = await transport.handle_datagram(
        announce_packet(connection_id), ("10.9.9.9", 40000)
    )
    assert error_message(response, 2) == "Invalid or expired connection id"


@pytest.mark.asyncio
async def test_connection_id_expires(transport, clock):
    connection_id = await connect(transport)
    clock.advance(121)
    response = await transport.handle_datagram(announce_packet(connection_id), CLIENT)
    assert error_message(response, 2) == "Invalid or expired connection id"


@pytest.mark.asyncio
async def test_sweep_drops_expired_ids(transport, clock):
    await connect(transport)
    clock.advance(60)
    await connect(transport, ("10.0.0.2", 1))
    clock.advance(61)

    assert transport.sweep_connections() == 1
    assert len(transport._connections) == 1


@pytest.mark.asyncio
async def test_banned_announce_gets_error(transport, index):
    index.rebuild([BanRange(from_ip=167772161, to_ip=167772161)])
    connection_id = await connect(transport)

    response = await transport.handle_datagram(announce_packet(connection_id), CLIENT)

    assert error_message(response, 2) == "IP address is banned"


@pytest.mark.asyncio
async def test_short_announce_gets_error(transport):
    connection_id = await connect(transport)
    packet = announce_packet(connection_id)[:60]
    assert error_message(await transport.handle_datagram(packet, CLIENT), 2) == (
        "Bad announce length"
    )


@pytest.mark.asyncio
async def test_rate_limit_applies_to_connect(index, clock):
    chain = RateLimitChain(
        [FixedWindowPolicy("route_quota", window=60, limit=2, routes=["connect"], clock=clock)]
    )
    engine = InMemorySwarmEngine(AdmissionFilter(index), clock=clock)
    transport = UdpTransport(engine, chain, UdpTransportConfig(), clock=clock)

    await connect(transport)
    await connect(transport)
    response = await transport.handle_datagram(connect_packet(9), CLIENT)

    assert error_message(response, 9)


class _ClientProtocol(asyncio.DatagramProtocol):
    def __init__(self):
        self.received: asyncio.Queue[bytes] = asyncio.Queue()

    def datagram_received(self, data, addr):
        self.received.put_nowait(data)


@pytest.mark.asyncio
async def test_real_socket_connect(transport):
    await transport.start()
    try:
        assert transport.state is TransportState.RUNNING
        loop = asyncio.get_running_loop()
        client, protocol = await loop.create_datagram_endpoint(
            _ClientProtocol,
            remote_addr=("127.0.0.1", transport.bound_address.port),
        )
        try:
            client.sendto(connect_packet(77))
            response = await asyncio.wait_for(protocol.received.get(), timeout=5)
        finally:
            client.close()
        action, tid, _cid = struct.unpack("!IIQ", response)
        assert (action, tid) == (ACTION_CONNECT, 77)
    finally:
        await transport.stop()

    assert transport.state is TransportState.STOPPED
    assert transport.transport is None


@pytest.mark.asyncio
async def test_each_datagram_gets_its_own_log_context(index, clock):
    seen = []
    admission = AdmissionFilter(index)

    def hook(info_hash, params, client_address):
        seen.append(current_request())
        return admission(info_hash, params, client_address)

    engine = InMemorySwarmEngine(hook, TrackerConfig(), clock=clock)
    transport = UdpTransport(engine, None, UdpTransportConfig(), clock=clock)

    connection_id = await connect(transport)
    await transport.handle_datagram(announce_packet(connection_id), CLIENT)
    await transport.handle_datagram(scrape_packet(connection_id, INFO_HASH), CLIENT)

    assert [(c.transport, c.client) for c in seen] == [("udp", "10.0.0.1")] * 2
    assert seen[0].correlation_id != seen[1].correlation_id
    assert current_request() is None
