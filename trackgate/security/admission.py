"""Admission filter for announce and scrape requests.

The filter is a pure predicate evaluated by the swarm engine before it
touches any swarm state. Checks run in a fixed order and stop at the first
denial:

1. malformed requests
2. client address inside a banned range
3. registered extension predicates, in registration order
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from trackgate.exceptions import AdmissionDenied
from trackgate.security.ban_index import BanRangeIndex
from trackgate.utils.ip import address_to_int

logger = logging.getLogger(__name__)

INFO_HASH_LENGTH = 20

KIND_DENIED = "denied"
KIND_BANNED = "banned"
KIND_MALFORMED = "malformed"

AdmissionPredicate = Callable[[bytes, Mapping[str, Any], str], bool]


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of evaluating one request."""

    allowed: bool
    reason: str | None = None
    kind: str | None = None

    @classmethod
    def deny(cls, reason: str, kind: str = KIND_DENIED) -> AdmissionDecision:
        """Build a denial."""
        return cls(allowed=False, reason=reason, kind=kind)

    def to_error(self) -> AdmissionDenied:
        """Exception form of a denial."""
        return AdmissionDenied(self.reason or "Request denied", kind=self.kind or KIND_DENIED)

    def __bool__(self) -> bool:
        """Truthiness follows ``allowed``."""
        return self.allowed


ALLOW = AdmissionDecision(allowed=True)


def _check_malformed(info_hash: bytes, params: Mapping[str, Any]) -> str | None:
    """Return a reason if the request lacks what the engine needs."""
    reason = params.get("malformed")
    if reason:
        return str(reason)

    if params.get("type", "announce") == "scrape":
        # empty hash is a full scrape
        if info_hash and len(info_hash) != INFO_HASH_LENGTH:
            return "invalid info_hash"
        return None

    if not isinstance(info_hash, bytes) or len(info_hash) != INFO_HASH_LENGTH:
        return "invalid info_hash"
    if not params.get("peer_id"):
        return "missing peer_id"
    port = params.get("port")
    if port is None:
        return "missing port"
    if not isinstance(port, int) or not 0 <= port <= 65535:
        return "invalid port"
    return None


class AdmissionFilter:
    """Malformed, ban and extension checks in front of the swarm engine."""

    def __init__(self, index: BanRangeIndex):
        """Initialize the filter.

        Args:
            index: Ban index shared with the ban store

        """
        self.index = index
        self._predicates: dict[str, AdmissionPredicate] = {}

    def register(self, name: str, predicate: AdmissionPredicate) -> None:
        """Append an extension predicate.

        Raises:
            ValueError: If a predicate with this name is already registered

        """
        if name in self._predicates:
            msg = f"Admission predicate already registered: {name}"
            raise ValueError(msg)
        self._predicates[name] = predicate

    def unregister(self, name: str) -> None:
        """Remove an extension predicate; unknown names are ignored."""
        self._predicates.pop(name, None)

    @property
    def predicates(self) -> list[str]:
        """Names of the extension predicates in evaluation order."""
        return list(self._predicates)

    def evaluate(
        self,
        info_hash: bytes,
        params: Mapping[str, Any],
        client_address: str | int,
    ) -> AdmissionDecision:
        """Decide whether the request may reach the swarm."""
        reason = _check_malformed(info_hash, params)
        if reason is not None:
            logger.debug("Malformed request from %s: %s", client_address, reason)
            return AdmissionDecision.deny(reason, KIND_MALFORMED)

        try:
            address = address_to_int(client_address)
        except ValueError:
            logger.debug("Unparseable client address %r", client_address)
            return AdmissionDecision.deny("invalid client address", KIND_MALFORMED)

        if address is not None and self.index.query(address):
            logger.debug("Denied banned address %s", client_address)
            return AdmissionDecision.deny("IP address is banned", KIND_BANNED)

        for name, predicate in self._predicates.items():
            if not predicate(info_hash, params, str(client_address)):
                logger.debug("Request from %s rejected by %s", client_address, name)
                return AdmissionDecision.deny(f"Request rejected by {name}")

        return ALLOW

    __call__ = evaluate


def info_hash_allowlist(hashes: Iterable[str | bytes]) -> AdmissionPredicate:
    """Predicate admitting only the given torrents.

    Args:
        hashes: Info hashes as 20 raw bytes or 40 hex characters

    """
    allowed = frozenset(
        h if isinstance(h, bytes) else bytes.fromhex(h) for h in hashes
    )

    def _allowed(info_hash: bytes, params: Mapping[str, Any], client_address: str) -> bool:
        # full scrapes carry no hash
        return not info_hash or info_hash in allowed

    return _allowed
