"""HTTP announce/scrape transport (BEP 3, BEP 23, BEP 48).

Serves ``GET /announce`` and ``GET /scrape`` from an aiohttp application.
The rate limit chain runs as middleware so any routes mounted on
:attr:`HttpTransport.app` by an embedding application share the same
budget.
"""

from __future__ import annotations

import ipaddress
import logging
import math
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, unquote_to_bytes

from aiohttp import web

from trackgate.bencode import encode
from trackgate.logging_config import request_context
from trackgate.models import HttpTransportConfig
from trackgate.tracker.requests import (
    AnnounceResult,
    FailureKind,
    Peer,
    RequestType,
    ScrapeResult,
    TrackerFailure,
    TrackerRequest,
    TrackerResponse,
)
from trackgate.transports.base import HostBinding, TransportStrategy

if TYPE_CHECKING:  # pragma: no cover
    from aiohttp.web_request import Request
    from aiohttp.web_response import StreamResponse

    from trackgate.security.rate_limiter import RateLimitChain
    from trackgate.tracker.swarm import SwarmEngine

logger = logging.getLogger(__name__)

ROUTE_ANNOUNCE = "announce"
ROUTE_SCRAPE = "scrape"
ROUTE_AUTH = "auth"
ROUTE_API = "api"

_STATUS_BY_KIND = {
    FailureKind.MALFORMED: 400,
    FailureKind.DENIED: 403,
    FailureKind.RATE_LIMITED: 429,
    FailureKind.ERROR: 500,
}

_INT_PARAMS = ("port", "uploaded", "downloaded", "left", "numwant")


def parse_query(raw_query: str) -> dict[str, list[bytes]]:
    """Split a raw query string keeping values as percent-decoded bytes.

    info_hash and peer_id are arbitrary binary, so the usual str decoding
    would corrupt them.
    """
    result: dict[str, list[bytes]] = {}
    for pair in raw_query.split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        name = unquote(key.replace("+", " "))
        result.setdefault(name, []).append(unquote_to_bytes(value.replace("+", " ")))
    return result


def parse_announce(
    query: dict[str, list[bytes]],
    client_address: str,
) -> TrackerRequest:
    """Build a canonical announce from query parameters."""
    params: dict[str, Any] = {}
    malformed: str | None = None

    info_hash = query.get("info_hash", [b""])[0]
    if "peer_id" in query:
        params["peer_id"] = query["peer_id"][0]

    for name in _INT_PARAMS:
        if name not in query:
            continue
        try:
            params[name] = int(query[name][0])
        except ValueError:
            malformed = malformed or f"invalid {name}"

    if "event" in query:
        params["event"] = query["event"][0].decode("ascii", "replace")
    params["compact"] = query.get("compact", [b"1"])[0] != b"0"
    params["no_peer_id"] = query.get("no_peer_id", [b"0"])[0] == b"1"

    return TrackerRequest(
        type=RequestType.ANNOUNCE,
        client_address=client_address,
        info_hashes=[info_hash] if info_hash else [],
        params=params,
        route=ROUTE_ANNOUNCE,
        transport="http",
        malformed=malformed,
    )


def parse_scrape(
    query: dict[str, list[bytes]],
    client_address: str,
) -> TrackerRequest:
    """Build a canonical scrape from query parameters."""
    return TrackerRequest(
        type=RequestType.SCRAPE,
        client_address=client_address,
        info_hashes=list(query.get("info_hash", [])),
        route=ROUTE_SCRAPE,
        transport="http",
    )


def _compact_peers(peers: list[Peer]) -> tuple[bytes, bytes]:
    """Pack peers into BEP 23 (IPv4) and BEP 7 (IPv6) compact strings."""
    v4 = bytearray()
    v6 = bytearray()
    for peer in peers:
        try:
            ip = ipaddress.ip_address(peer.ip)
        except ValueError:
            continue
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        target = v4 if isinstance(ip, ipaddress.IPv4Address) else v6
        target.extend(ip.packed)
        target.extend(peer.port.to_bytes(2, "big"))
    return bytes(v4), bytes(v6)


def encode_announce(result: AnnounceResult, params: dict[str, Any]) -> bytes:
    """Bencode an announce result."""
    body: dict[str, Any] = {
        "interval": result.interval,
        "min interval": result.min_interval,
        "complete": result.complete,
        "incomplete": result.incomplete,
    }
    if params.get("compact", True):
        v4, v6 = _compact_peers(result.peers)
        body["peers"] = v4
        if v6:
            body["peers6"] = v6
    else:
        peers = []
        for peer in result.peers:
            entry: dict[str, Any] = {"ip": peer.ip, "port": peer.port}
            if not params.get("no_peer_id"):
                entry["peer id"] = peer.peer_id
            peers.append(entry)
        body["peers"] = peers
    return encode(body)


def encode_scrape(result: ScrapeResult) -> bytes:
    """Bencode a scrape result."""
    return encode(
        {
            "files": {
                info_hash: {
                    "complete": stats.complete,
                    "incomplete": stats.incomplete,
                    "downloaded": stats.downloaded,
                }
                for info_hash, stats in result.files.items()
            }
        }
    )


def failure_response(failure: TrackerFailure) -> web.Response:
    """Bencoded failure with the status matching its kind."""
    headers = {}
    if failure.kind is FailureKind.RATE_LIMITED:
        headers["Retry-After"] = str(max(1, math.ceil(failure.retry_after)))
    return web.Response(
        body=encode({"failure reason": failure.reason}),
        status=_STATUS_BY_KIND[failure.kind],
        content_type="text/plain",
        headers=headers,
    )


class HttpTransport(TransportStrategy):
    """aiohttp announce/scrape server."""

    name = "http"

    def __init__(
        self,
        engine: SwarmEngine,
        rate_limiter: RateLimitChain | None = None,
        config: HttpTransportConfig | None = None,
    ):
        """Initialize HTTP transport."""
        self.config = config or HttpTransportConfig()
        super().__init__(
            engine,
            rate_limiter,
            HostBinding(self.config.host, self.config.port),
        )
        self.app = web.Application()
        self.runner: web.AppRunner | None = None
        self.site: web.TCPSite | None = None

        self._setup_middleware()
        self._setup_routes()

    def classify_route(self, path: str) -> str:
        """Route class used by the rate limit chain."""
        if path == "/announce":
            return ROUTE_ANNOUNCE
        if path == "/scrape":
            return ROUTE_SCRAPE
        if any(path.startswith(prefix) for prefix in self.config.auth_paths):
            return ROUTE_AUTH
        return ROUTE_API

    def client_address(self, request: Request) -> str:
        """Client IP, honouring X-Forwarded-For when proxies are trusted."""
        if self.config.trust_proxy:
            forwarded = request.headers.get("X-Forwarded-For", "")
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
        return request.remote or ""

    def _setup_middleware(self) -> None:
        """Install the request context and rate limit middleware."""

        @web.middleware
        async def request_context_middleware(
            request: Request, handler: Any
        ) -> StreamResponse:
            with request_context(self.name, self.client_address(request)):
                return await handler(request)

        @web.middleware
        async def rate_limit_middleware(request: Request, handler: Any) -> StreamResponse:
            route = self.classify_route(request.path)
            failure = await self._apply_rate_limits(self.client_address(request), route)
            if failure is None:
                return await handler(request)
            if route in (ROUTE_ANNOUNCE, ROUTE_SCRAPE):
                return failure_response(failure)
            return web.json_response(
                {"error": failure.reason},
                status=429,
                headers={"Retry-After": str(max(1, math.ceil(failure.retry_after)))},
            )

        self.app.middlewares.append(request_context_middleware)
        self.app.middlewares.append(rate_limit_middleware)

    def _setup_routes(self) -> None:
        self.app.router.add_get("/announce", self._handle_announce)
        self.app.router.add_get("/scrape", self._handle_scrape)

    async def _handle_announce(self, request: Request) -> web.Response:
        query = parse_query(request.rel_url.raw_query_string)
        canonical = parse_announce(query, self.client_address(request))
        return self._respond(await self._dispatch(canonical), canonical.params)

    async def _handle_scrape(self, request: Request) -> web.Response:
        query = parse_query(request.rel_url.raw_query_string)
        canonical = parse_scrape(query, self.client_address(request))
        return self._respond(await self._dispatch(canonical), canonical.params)

    def _respond(self, response: TrackerResponse, params: dict[str, Any]) -> web.Response:
        if isinstance(response, TrackerFailure):
            return failure_response(response)
        if isinstance(response, ScrapeResult):
            body = encode_scrape(response)
        else:
            body = encode_announce(response, params)
        return web.Response(body=body, content_type="text/plain")

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

        # Resolve port 0 to the port actually bound
        address = self.runner.addresses[0]
        return HostBinding(binding.host, address[1])

    async def _release(self) -> None:
        runner, self.runner, self.site = self.runner, None, None
        if runner is not None:
            await runner.cleanup()
