"""Swarm engine contract and the bundled in-memory engine.

An engine is built with a filter hook. It must call the hook for every info
hash in a request before it changes any swarm state, and turn a denial into
a :class:`~trackgate.tracker.requests.TrackerFailure`.

WebRTC peers (announced over WebSocket) and TCP peers share swarm counters
but are never handed to each other: neither can connect to the other.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from trackgate.models import TrackerConfig
from trackgate.security.admission import (
    KIND_BANNED,
    KIND_MALFORMED,
    AdmissionDecision,
)
from trackgate.tracker.requests import (
    AnnounceEvent,
    AnnounceResult,
    FailureKind,
    Peer,
    RequestType,
    ScrapeResult,
    ScrapeStats,
    TrackerFailure,
    TrackerRequest,
    TrackerResponse,
)

logger = logging.getLogger(__name__)

FilterHook = Callable[[bytes, Mapping[str, Any], str], AdmissionDecision]


def failure_from_decision(decision: AdmissionDecision) -> TrackerFailure:
    """Map an admission denial to a tracker failure."""
    kind = FailureKind.MALFORMED if decision.kind == KIND_MALFORMED else FailureKind.DENIED
    return TrackerFailure(
        reason=decision.reason or "Request denied",
        kind=kind,
        banned=decision.kind == KIND_BANNED,
    )


class SwarmEngine(ABC):
    """Announce/scrape processing behind the admission filter."""

    def __init__(self, filter_hook: FilterHook):
        """Initialize the engine with the admission hook."""
        self.filter_hook = filter_hook

    def admit(self, request: TrackerRequest) -> TrackerFailure | None:
        """Run the filter hook for every info hash in the request."""
        params = request.filter_params()
        hashes = request.info_hashes or [b""]
        for info_hash in hashes:
            decision = self.filter_hook(info_hash, params, request.client_address)
            if not decision.allowed:
                return failure_from_decision(decision)
        return None

    @abstractmethod
    async def handle(self, request: TrackerRequest) -> TrackerResponse:
        """Process an announce or scrape."""

    @abstractmethod
    def remove_peer(self, info_hash: bytes, peer_id: bytes) -> bool:
        """Drop a peer from a swarm; return True if it was present."""

    async def close(self) -> None:  # noqa: B027
        """Release engine resources."""


@dataclass
class _PeerEntry:
    peer: Peer
    left: int
    last_seen: float
    # reachable only through WebSocket signalling
    webrtc: bool = False


@dataclass
class _Swarm:
    peers: dict[bytes, _PeerEntry] = field(default_factory=dict)
    downloaded: int = 0

    def stats(self) -> ScrapeStats:
        complete = sum(1 for entry in self.peers.values() if entry.left == 0)
        return ScrapeStats(
            complete=complete,
            incomplete=len(self.peers) - complete,
            downloaded=self.downloaded,
        )


class InMemorySwarmEngine(SwarmEngine):
    """Dictionary-backed swarms with lazy peer expiry."""

    def __init__(
        self,
        filter_hook: FilterHook,
        config: TrackerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the engine.

        Args:
            filter_hook: Admission hook called before any state change
            config: Announce intervals, peer timeout and numwant bounds
            clock: Time source for peer expiry

        """
        super().__init__(filter_hook)
        self.config = config or TrackerConfig()
        self.clock = clock
        # info_hash -> swarm
        self.swarms: dict[bytes, _Swarm] = {}

    async def handle(self, request: TrackerRequest) -> TrackerResponse:
        """Process an announce or scrape."""
        failure = self.admit(request)
        if failure is not None:
            return failure

        if request.type is RequestType.SCRAPE:
            return self._scrape(request)
        return self._announce(request)

    def _expire(self, swarm: _Swarm, now: float) -> None:
        cutoff = now - self.config.peer_timeout
        stale = [pid for pid, entry in swarm.peers.items() if entry.last_seen < cutoff]
        for pid in stale:
            del swarm.peers[pid]

    def _numwant(self, params: Mapping[str, Any]) -> int:
        numwant = params.get("numwant")
        if not isinstance(numwant, int) or numwant < 0:
            numwant = self.config.default_numwant
        return min(numwant, self.config.max_numwant)

    def _announce(self, request: TrackerRequest) -> AnnounceResult:
        params = request.params
        info_hash = request.info_hash
        peer_id = bytes(params["peer_id"])
        try:
            event = AnnounceEvent(params.get("event") or "")
        except ValueError:
            event = AnnounceEvent.NONE
        left = int(params.get("left") or 0)
        now = self.clock()

        swarm = self.swarms.setdefault(info_hash, _Swarm())
        self._expire(swarm, now)

        previous = swarm.peers.get(peer_id)
        if event is AnnounceEvent.STOPPED:
            swarm.peers.pop(peer_id, None)
        else:
            if event is AnnounceEvent.COMPLETED and (previous is None or previous.left > 0):
                swarm.downloaded += 1
            swarm.peers[peer_id] = _PeerEntry(
                peer=Peer(
                    peer_id=peer_id,
                    ip=params.get("ip") or request.client_address,
                    port=int(params["port"]),
                ),
                left=left,
                last_seen=now,
                webrtc=request.webrtc,
            )

        others = [
            entry.peer
            for pid, entry in swarm.peers.items()
            if pid != peer_id and entry.webrtc == request.webrtc
        ]
        numwant = self._numwant(params)
        if len(others) > numwant:
            others = random.sample(others, numwant)  # nosec B311 - peer shuffling

        stats = swarm.stats()
        if not swarm.peers and not swarm.downloaded:
            del self.swarms[info_hash]
        return AnnounceResult(
            interval=self.config.announce_interval,
            min_interval=self.config.min_interval,
            complete=stats.complete,
            incomplete=stats.incomplete,
            peers=others,
        )

    def _scrape(self, request: TrackerRequest) -> ScrapeResult:
        now = self.clock()
        hashes = request.info_hashes or list(self.swarms)
        files: dict[bytes, ScrapeStats] = {}
        for info_hash in hashes:
            swarm = self.swarms.get(info_hash)
            if swarm is None:
                files[info_hash] = ScrapeStats()
                continue
            self._expire(swarm, now)
            files[info_hash] = swarm.stats()
        return ScrapeResult(files=files)

    def remove_peer(self, info_hash: bytes, peer_id: bytes) -> bool:
        """Drop a peer from a swarm."""
        swarm = self.swarms.get(info_hash)
        if swarm is None or swarm.peers.pop(peer_id, None) is None:
            return False
        if not swarm.peers and not swarm.downloaded:
            del self.swarms[info_hash]
        return True

    async def close(self) -> None:
        """Forget all swarms."""
        logger.debug("Closing swarm engine with %d swarms", len(self.swarms))
        self.swarms.clear()
