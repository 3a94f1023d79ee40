"""Transport-neutral tracker requests and responses.

Every transport parses its wire framing into a :class:`TrackerRequest` and
encodes whichever :data:`TrackerResponse` the engine returns.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


WEBRTC_TRANSPORTS = frozenset({"websocket"})


class RequestType(str, Enum):
    """Tracker actions."""

    ANNOUNCE = "announce"
    SCRAPE = "scrape"


class AnnounceEvent(str, Enum):
    """Announce events (an empty string is a regular update)."""

    NONE = ""
    STARTED = "started"
    STOPPED = "stopped"
    COMPLETED = "completed"


class FailureKind(str, Enum):
    """Why a request produced no tracker data."""

    DENIED = "denied"
    MALFORMED = "malformed"
    RATE_LIMITED = "rate_limited"
    ERROR = "error"


@dataclass
class TrackerRequest:
    """Canonical announce or scrape request.

    ``params`` holds the announce fields (peer_id, port, uploaded,
    downloaded, left, event, numwant, ...) as parsed by the transport.
    ``malformed`` is set by parsers that could not make sense of the
    framing; the admission filter then denies the request.
    """

    type: RequestType
    client_address: str
    info_hashes: list[bytes] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)
    route: str = ""
    transport: str = ""
    malformed: str | None = None

    def __post_init__(self) -> None:
        """Default the route class to the request type."""
        if not self.route:
            self.route = self.type.value

    @property
    def webrtc(self) -> bool:
        """True for peers that connect over WebRTC rather than TCP."""
        return self.transport in WEBRTC_TRANSPORTS

    @property
    def info_hash(self) -> bytes:
        """First info hash, or empty bytes for a full scrape."""
        return self.info_hashes[0] if self.info_hashes else b""

    def filter_params(self) -> dict[str, Any]:
        """Parameters handed to the admission filter."""
        params = dict(self.params)
        params["type"] = self.type.value
        params["transport"] = self.transport
        if self.malformed:
            params["malformed"] = self.malformed
        return params


@dataclass(frozen=True)
class Peer:
    """A peer returned in announce results."""

    peer_id: bytes
    ip: str
    port: int


@dataclass
class AnnounceResult:
    """Successful announce."""

    interval: int
    min_interval: int
    complete: int
    incomplete: int
    peers: list[Peer] = field(default_factory=list)


@dataclass
class ScrapeStats:
    """Per-torrent scrape counters."""

    complete: int = 0
    incomplete: int = 0
    downloaded: int = 0


@dataclass
class ScrapeResult:
    """Successful scrape keyed by raw info hash."""

    files: dict[bytes, ScrapeStats] = field(default_factory=dict)


@dataclass
class TrackerFailure:
    """Rejected or failed request."""

    reason: str
    kind: FailureKind = FailureKind.DENIED
    retry_after: float = 0.0
    # ban denials close WebSocket sessions
    banned: bool = False


TrackerResponse = Union[AnnounceResult, ScrapeResult, TrackerFailure]
