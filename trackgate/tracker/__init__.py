"""Tracker request model and swarm engine."""

from trackgate.tracker.requests import (
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
from trackgate.tracker.swarm import InMemorySwarmEngine, SwarmEngine

__all__ = [
    "AnnounceResult",
    "FailureKind",
    "InMemorySwarmEngine",
    "Peer",
    "RequestType",
    "ScrapeResult",
    "ScrapeStats",
    "SwarmEngine",
    "TrackerFailure",
    "TrackerRequest",
    "TrackerResponse",
]
