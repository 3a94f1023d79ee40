"""WebSocket tracker transport (WebTorrent signalling).

Clients send JSON ``announce`` and ``scrape`` messages over one long-lived
socket. Info hashes and peer ids travel as 20-character binary strings
(latin-1) or as 40 hex characters. Announces carrying WebRTC ``offers`` are
relayed to other peers of the swarm connected here, and ``answer`` messages
are forwarded to the peer named in ``to_peer_id``.

Every message is rate limited and admitted on its own. A ban closes the
socket with code 1008; other failures are reported and the socket stays
open.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import WSCloseCode, web

from trackgate.logging_config import request_context
from trackgate.models import WebSocketTransportConfig
from trackgate.tracker.requests import (
    AnnounceEvent,
    AnnounceResult,
    FailureKind,
    RequestType,
    ScrapeResult,
    TrackerFailure,
    TrackerRequest,
    TrackerResponse,
)
from trackgate.transports.base import HostBinding, TransportStrategy

if TYPE_CHECKING:  # pragma: no cover
    from aiohttp.web_request import Request

    from trackgate.security.rate_limiter import RateLimitChain
    from trackgate.tracker.swarm import SwarmEngine

logger = logging.getLogger(__name__)

MAX_OFFERS = 10


def decode_binary_id(value: Any) -> bytes | None:
    """Decode a 20-byte id sent as a binary string or as hex."""
    if not isinstance(value, str):
        return None
    if len(value) == 40:
        try:
            return bytes.fromhex(value)
        except ValueError:
            return None
    try:
        raw = value.encode("latin-1")
    except UnicodeEncodeError:
        return None
    return raw if len(raw) == 20 else None


def encode_binary_id(value: bytes) -> str:
    """Binary string form used on the wire."""
    return value.decode("latin-1")


@dataclass(eq=False)
class _Session:
    """Per-socket state."""

    ws: web.WebSocketResponse
    client_address: str
    handshaken: bool = False
    # (info_hash, peer_id) announced over this socket
    peers: set[tuple[bytes, bytes]] = field(default_factory=set)


class WebSocketTransport(TransportStrategy):
    """aiohttp WebSocket signalling tracker."""

    name = "websocket"

    def __init__(
        self,
        engine: SwarmEngine,
        rate_limiter: RateLimitChain | None = None,
        config: WebSocketTransportConfig | None = None,
    ):
        """Initialize WebSocket transport."""
        self.config = config or WebSocketTransportConfig()
        super().__init__(
            engine,
            rate_limiter,
            HostBinding(self.config.host, self.config.port),
        )
        self.app = web.Application()
        self.app.router.add_get(self.config.path, self._handle_websocket)
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None
        self._sessions: set[_Session] = set()
        # (info_hash, peer_id) -> session that announced it
        self._peer_sockets: dict[tuple[bytes, bytes], _Session] = {}

    @property
    def connection_count(self) -> int:
        """Number of open sockets."""
        return len(self._sessions)

    async def _handle_websocket(self, request: Request) -> web.WebSocketResponse:
        """Serve one WebSocket connection."""
        ws = web.WebSocketResponse(
            heartbeat=self.config.heartbeat,
            max_msg_size=self.config.max_message_size,
        )
        await ws.prepare(request)

        session = _Session(ws=ws, client_address=request.remote or "")
        self._sessions.add(session)
        with request_context(self.name, session.client_address):
            await self._serve(session)
        return ws

    async def _serve(self, session: _Session) -> None:
        ws = session.ws
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.handshake_timeout

        try:
            while not ws.closed:
                timeout = None if session.handshaken else deadline - loop.time()
                try:
                    if timeout is not None and timeout <= 0:
                        raise asyncio.TimeoutError
                    msg = await ws.receive(timeout=timeout)
                except asyncio.TimeoutError:
                    logger.debug(
                        "Closing WebSocket from %s: no valid message within %.1fs",
                        session.client_address,
                        self.config.handshake_timeout,
                    )
                    await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Handshake timeout")
                    break

                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._on_message(session, msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    await ws.send_json({"failure reason": "Binary messages are not supported"})
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("WebSocket error: %s", ws.exception())
                    break
                else:
                    # close, closing or closed
                    break
        finally:
            self._teardown(session)

    def _teardown(self, session: _Session) -> None:
        """Remove the peers this socket still owns.

        A peer that re-announced over a newer socket belongs to that socket
        and stays in the swarm.
        """
        for key in session.peers:
            if self._peer_sockets.get(key) is not session:
                continue
            del self._peer_sockets[key]
            self.engine.remove_peer(*key)
        session.peers.clear()
        self._sessions.discard(session)

    @staticmethod
    def _note_handshake(session: _Session, response: TrackerResponse) -> None:
        """Any well-formed request completes the handshake."""
        if isinstance(response, TrackerFailure) and response.kind is FailureKind.MALFORMED:
            return
        session.handshaken = True

    async def _on_message(self, session: _Session, text: str) -> None:
        try:
            data = json.loads(text)
        except ValueError:
            await session.ws.send_json({"failure reason": "Invalid JSON"})
            return

        action = data.get("action") if isinstance(data, dict) else None
        if action not in (RequestType.ANNOUNCE.value, RequestType.SCRAPE.value):
            await session.ws.send_json({"failure reason": "Invalid action"})
            return

        if action == RequestType.ANNOUNCE.value:
            await self._on_announce(session, data)
        else:
            await self._on_scrape(session, data)

    def _parse_announce(self, session: _Session, data: dict[str, Any]) -> TrackerRequest:
        malformed = None
        info_hash = decode_binary_id(data.get("info_hash"))
        peer_id = decode_binary_id(data.get("peer_id"))
        if info_hash is None:
            malformed = "invalid info_hash"
        elif peer_id is None:
            malformed = "invalid peer_id"

        offers = data.get("offers") or []
        if not isinstance(offers, list):
            malformed = malformed or "invalid offers"
            offers = []

        params: dict[str, Any] = {
            "port": 0,
            "numwant": min(len(offers), MAX_OFFERS),
            "event": data.get("event") or "",
        }
        if peer_id is not None:
            params["peer_id"] = peer_id
        for name in ("uploaded", "downloaded", "left"):
            value = data.get(name)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool):
                malformed = malformed or f"invalid {name}"
                continue
            params[name] = value

        return TrackerRequest(
            type=RequestType.ANNOUNCE,
            client_address=session.client_address,
            info_hashes=[info_hash] if info_hash is not None else [],
            params=params,
            transport=self.name,
            malformed=malformed,
        )

    async def _send_failure(
        self,
        session: _Session,
        action: str,
        failure: TrackerFailure,
        info_hash: Any = None,
    ) -> None:
        message: dict[str, Any] = {"action": action, "failure reason": failure.reason}
        if isinstance(info_hash, str):
            message["info_hash"] = info_hash
        await session.ws.send_json(message)
        if failure.banned:
            logger.debug("Closing WebSocket from banned %s", session.client_address)
            await session.ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"Banned")

    async def _on_announce(self, session: _Session, data: dict[str, Any]) -> None:
        request = self._parse_announce(session, data)
        response = await self.process(request)
        self._note_handshake(session, response)
        if isinstance(response, TrackerFailure):
            await self._send_failure(session, "announce", response, data.get("info_hash"))
            return
        if not isinstance(response, AnnounceResult):
            return

        info_hash = request.info_hash
        peer_id = request.params["peer_id"]
        key = (info_hash, peer_id)
        if request.params["event"] == AnnounceEvent.STOPPED.value:
            session.peers.discard(key)
            if self._peer_sockets.get(key) is session:
                del self._peer_sockets[key]
        else:
            session.peers.add(key)
            self._peer_sockets[key] = session

        await session.ws.send_json(
            {
                "action": "announce",
                "interval": response.interval,
                "info_hash": encode_binary_id(info_hash),
                "complete": response.complete,
                "incomplete": response.incomplete,
            }
        )

        offers = data.get("offers") or []
        for offer, peer in zip(offers, response.peers):
            target = self._peer_sockets.get((info_hash, peer.peer_id))
            if target is None or not isinstance(offer, dict):
                continue
            await self._relay(
                target,
                {
                    "action": "announce",
                    "offer": offer.get("offer"),
                    "offer_id": offer.get("offer_id"),
                    "peer_id": encode_binary_id(peer_id),
                    "info_hash": encode_binary_id(info_hash),
                },
            )

        if "answer" in data:
            to_peer_id = decode_binary_id(data.get("to_peer_id"))
            target = self._peer_sockets.get((info_hash, to_peer_id)) if to_peer_id else None
            if target is None:
                logger.debug("No socket for answer recipient in swarm %s", info_hash.hex())
                return
            await self._relay(
                target,
                {
                    "action": "announce",
                    "answer": data["answer"],
                    "offer_id": data.get("offer_id"),
                    "peer_id": encode_binary_id(peer_id),
                    "info_hash": encode_binary_id(info_hash),
                },
            )

    async def _relay(self, target: _Session, message: dict[str, Any]) -> None:
        if target.ws.closed:
            return
        try:
            await target.ws.send_json(message)
        except (ConnectionResetError, RuntimeError) as e:
            logger.debug("Failed to relay to %s: %s", target.client_address, e)

    async def _on_scrape(self, session: _Session, data: dict[str, Any]) -> None:
        raw = data.get("info_hash")
        raw_hashes = raw if isinstance(raw, list) else ([raw] if raw is not None else [])
        hashes = [decode_binary_id(value) for value in raw_hashes]
        request = TrackerRequest(
            type=RequestType.SCRAPE,
            client_address=session.client_address,
            info_hashes=[h for h in hashes if h is not None],
            transport=self.name,
            malformed="invalid info_hash" if None in hashes else None,
        )

        response = await self.process(request)
        self._note_handshake(session, response)
        if isinstance(response, TrackerFailure):
            await self._send_failure(session, "scrape", response)
            return
        if not isinstance(response, ScrapeResult):
            return

        await session.ws.send_json(
            {
                "action": "scrape",
                "files": {
                    encode_binary_id(info_hash): {
                        "complete": stats.complete,
                        "incomplete": stats.incomplete,
                        "downloaded": stats.downloaded,
                    }
                    for info_hash, stats in response.files.items()
                },
            }
        )

    async def _bind(self, binding: HostBinding) -> HostBinding:
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, binding.host, binding.port)
        try:
            await self.site.start()
        except Exception:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            raise

        address = self.runner.addresses[0]
        return HostBinding(binding.host, address[1])

    async def _release(self) -> None:
        for session in list(self._sessions):
            with contextlib.suppress(ConnectionResetError):
                await session.ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")
            self._teardown(session)

        runner, self.runner, self.site = self.runner, None, None
        if runner is not None:
            await runner.cleanup()
