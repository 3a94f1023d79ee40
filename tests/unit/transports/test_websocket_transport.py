"""Tests for trackgate.transports.websocket."""

from __future__ import annotations

import asyncio

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import WSCloseCode
from aiohttp.test_utils import TestClient, TestServer

from trackgate.logging_config import current_request
from trackgate.models import BanRange, TrackerConfig, WebSocketTransportConfig
from trackgate.security.admission import AdmissionFilter
from trackgate.security.ban_index import BanRangeIndex
from trackgate.tracker.requests import RequestType, TrackerRequest
from trackgate.tracker.swarm import InMemorySwarmEngine
from trackgate.transports.base import TransportState
from trackgate.transports.websocket import (
    WebSocketTransport,
    decode_binary_id,
    encode_binary_id,
)

pytestmark = [pytest.mark.unit, pytest.mark.transports]

INFO_HASH = bytes(range(20))
PEER_A = b"-WW0001-aaaaaaaaaaaa"
PEER_B = b"-WW0001-bbbbbbbbbbbb"


def announce(peer_id: bytes, **extra):
    return {
        "action": "announce",
        "info_hash": INFO_HASH.hex(),
        "peer_id": peer_id.hex(),
        "left": 100,
        **extra,
    }


async def wait_for_sessions(transport, count: int) -> None:
    for _ in range(100):
        if transport.connection_count == count:
            return
        await asyncio.sleep(0.01)
    assert transport.connection_count == count


@pytest.fixture
def index():
    return BanRangeIndex()


@pytest.fixture
def engine(index, clock):
    return InMemorySwarmEngine(AdmissionFilter(index), TrackerConfig(), clock=clock)


@pytest.fixture
def transport(engine):
    config = WebSocketTransportConfig(host="127.0.0.1", port=0, handshake_timeout=0.2)
    return WebSocketTransport(engine, None, config)


@pytest_asyncio.fixture
async def client(transport):
    async with TestClient(TestServer(transport.app)) as test_client:
        yield test_client


def test_binary_id_forms():
    assert decode_binary_id(INFO_HASH.hex()) == INFO_HASH
    assert decode_binary_id(encode_binary_id(INFO_HASH)) == INFO_HASH
    assert decode_binary_id("short") is None
    assert decode_binary_id("zz" * 20) is None
    assert decode_binary_id(12) is None


@pytest.mark.asyncio
async def test_announce_reply(client):
    ws = await client.ws_connect("/")
    await ws.send_json(announce(PEER_A))

    reply = await ws.receive_json(timeout=5)

    assert reply == {
        "action": "announce",
        "interval": 300,
        "info_hash": encode_binary_id(INFO_HASH),
        "complete": 0,
        "incomplete": 1,
    }
    await ws.close()


@pytest.mark.asyncio
async def test_scrape_reply(client):
    ws = await client.ws_connect("/")
    await ws.send_json(announce(PEER_A, left=0))
    await ws.receive_json(timeout=5)

    await ws.send_json({"action": "scrape", "info_hash": [INFO_HASH.hex()]})
    reply = await ws.receive_json(timeout=5)

    assert reply["action"] == "scrape"
    assert reply["files"][encode_binary_id(INFO_HASH)] == {
        "complete": 1,
        "incomplete": 0,
        "downloaded": 0,
    }
    await ws.close()


@pytest.mark.asyncio
async def test_invalid_messages_keep_socket_open(client):
    ws = await client.ws_connect("/")

    await ws.send_str("{not json")
    assert (await ws.receive_json(timeout=5))["failure reason"] == "Invalid JSON"

    await ws.send_json({"action": "dance"})
    assert (await ws.receive_json(timeout=5))["failure reason"] == "Invalid action"

    await ws.send_json(announce(PEER_A, info_hash="nope"))
    reply = await ws.receive_json(timeout=5)
    assert reply == {
        "action": "announce",
        "failure reason": "invalid info_hash",
        "info_hash": "nope",
    }

    assert not ws.closed
    await ws.close()


@pytest.mark.asyncio
async def test_banned_client_is_closed_with_policy_violation(client, index):
    index.rebuild([BanRange(from_ip=2130706432, to_ip=2147483647)])
    ws = await client.ws_connect("/")
    await ws.send_json(announce(PEER_A))

    reply = await ws.receive_json(timeout=5)
    assert reply["failure reason"] == "IP address is banned"

    msg = await ws.receive(timeout=5)
    assert msg.type == aiohttp.WSMsgType.CLOSE
    assert msg.data == WSCloseCode.POLICY_VIOLATION


@pytest.mark.asyncio
async def test_silent_socket_is_closed_after_handshake_timeout(client, transport):
    ws = await client.ws_connect("/")

    msg = await ws.receive(timeout=5)

    assert msg.type == aiohttp.WSMsgType.CLOSE
    assert msg.data == WSCloseCode.GOING_AWAY
    assert msg.extra == "Handshake timeout"
    await wait_for_sessions(transport, 0)


@pytest.mark.asyncio
async def test_offer_and_answer_are_relayed(client):
    ws_a = await client.ws_connect("/")
    await ws_a.send_json(announce(PEER_A))
    await ws_a.receive_json(timeout=5)

    ws_b = await client.ws_connect("/")
    offer = {"type": "offer", "sdp": "v=0"}
    await ws_b.send_json(announce(PEER_B, offers=[{"offer": offer, "offer_id": "o1"}]))
    assert (await ws_b.receive_json(timeout=5))["incomplete"] == 2

    relayed = await ws_a.receive_json(timeout=5)
    assert relayed["offer"] == offer
    assert relayed["offer_id"] == "o1"
    assert decode_binary_id(relayed["peer_id"]) == PEER_B

    answer = {"type": "answer", "sdp": "v=0"}
    await ws_a.send_json(
        announce(PEER_A, answer=answer, offer_id="o1", to_peer_id=PEER_B.hex())
    )
    await ws_a.receive_json(timeout=5)

    forwarded = await ws_b.receive_json(timeout=5)
    assert forwarded["answer"] == answer
    assert forwarded["offer_id"] == "o1"
    assert decode_binary_id(forwarded["peer_id"]) == PEER_A

    await ws_a.close()
    await ws_b.close()


@pytest.mark.asyncio
async def test_closing_socket_removes_its_peers(client, transport, engine):
    ws = await client.ws_connect("/")
    await ws.send_json(announce(PEER_A))
    await ws.receive_json(timeout=5)
    assert INFO_HASH in engine.swarms

    await ws.close()
    await wait_for_sessions(transport, 0)

    assert INFO_HASH not in engine.swarms


@pytest.mark.asyncio
async def test_stop_closes_open_sessions(transport):
    await transport.start()
    port = transport.bound_address.port
    try:
        async with aiohttp.ClientSession() as session:
            ws = await session.ws_connect(f"http://127.0.0.1:{port}/")
            await ws.send_json(announce(PEER_A))
            await ws.receive_json(timeout=5)

            stopping = asyncio.create_task(transport.stop())
            msg = await ws.receive(timeout=5)
            await stopping

            assert msg.type == aiohttp.WSMsgType.CLOSE
    finally:
        await transport.stop()

    assert transport.state is TransportState.STOPPED
    assert transport.connection_count == 0


@pytest.mark.asyncio
async def test_offers_only_reach_webrtc_peers(client, engine):
    tcp_announce = TrackerRequest(
        type=RequestType.ANNOUNCE,
        client_address="10.0.0.9",
        info_hashes=[INFO_HASH],
        params={"peer_id": b"-TG0001-tttttttttttt", "port": 6881, "left": 100},
        transport="http",
    )
    await engine.handle(tcp_announce)

    ws_a = await client.ws_connect("/")
    await ws_a.send_json(announce(PEER_A))
    await ws_a.receive_json(timeout=5)

    ws_b = await client.ws_connect("/")
    await ws_b.send_json(announce(PEER_B, offers=[{"offer": {"sdp": "v=0"}, "offer_id": "o1"}]))
    assert (await ws_b.receive_json(timeout=5))["incomplete"] == 3

    relayed = await ws_a.receive_json(timeout=5)
    assert relayed["offer_id"] == "o1"

    await ws_a.close()
    await ws_b.close()


@pytest.mark.asyncio
async def test_old_socket_closing_keeps_reconnected_peer(client, transport, engine):
    old = await client.ws_connect("/")
    await old.send_json(announce(PEER_A))
    await old.receive_json(timeout=5)

    new = await client.ws_connect("/")
    await new.send_json(announce(PEER_A))
    await new.receive_json(timeout=5)

    await old.close()
    await wait_for_sessions(transport, 1)

    assert PEER_A in engine.swarms[INFO_HASH].peers

    await new.close()
    await wait_for_sessions(transport, 0)
    assert INFO_HASH not in engine.swarms


@pytest.mark.asyncio
async def test_malformed_announces_do_not_complete_handshake(client):
    ws = await client.ws_connect("/")
    for _ in range(3):
        await ws.send_json(announce(PEER_A, info_hash="nope"))

    replies = []
    while True:
        msg = await ws.receive(timeout=5)
        if msg.type != aiohttp.WSMsgType.TEXT:
            break
        replies.append(msg.json())

    assert msg.type == aiohttp.WSMsgType.CLOSE
    assert msg.extra == "Handshake timeout"
    assert all(reply["failure reason"] == "invalid info_hash" for reply in replies)


@pytest.mark.asyncio
async def test_valid_announce_completes_handshake(client):
    ws = await client.ws_connect("/")
    await ws.send_json(announce(PEER_A))
    await ws.receive_json(timeout=5)

    await asyncio.sleep(0.4)
    await ws.send_json({"action": "scrape", "info_hash": INFO_HASH.hex()})

    assert (await ws.receive_json(timeout=5))["action"] == "scrape"
    await ws.close()


@pytest.mark.asyncio
async def test_session_runs_in_request_context(index, clock):
    seen = []
    admission = AdmissionFilter(index)

    def hook(info_hash, params, client_address):
        seen.append(current_request())
        return admission(info_hash, params, client_address)

    engine = InMemorySwarmEngine(hook, TrackerConfig(), clock=clock)
    transport = WebSocketTransport(engine, None, WebSocketTransportConfig())

    async with TestClient(TestServer(transport.app)) as test_client:
        first = await test_client.ws_connect("/")
        await first.send_json(announce(PEER_A))
        await first.receive_json(timeout=5)
        await first.send_json({"action": "scrape", "info_hash": INFO_HASH.hex()})
        await first.receive_json(timeout=5)

        second = await test_client.ws_connect("/")
        await second.send_json(announce(PEER_B))
        await second.receive_json(timeout=5)

        await first.close()
        await second.close()

    assert [(c.transport, c.client) for c in seen] == [("websocket", "127.0.0.1")] * 3
    # one id per socket
    assert seen[0].correlation_id == seen[1].correlation_id
    assert seen[0].correlation_id != seen[2].correlation_id
