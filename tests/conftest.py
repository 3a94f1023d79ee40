"""Pytest configuration and shared fixtures for trackgate tests."""

from __future__ import annotations

import logging
import os
import random

import pytest

from trackgate.security.ban_index import BanRangeIndex
from trackgate.security.ban_store import BanRangeStore, MemoryBanRangeBackend


def pytest_configure(config):
    """Register all project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("asyncio", "marks tests as async (deselect with '-m \"not asyncio\"')"),
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests as integration tests"),
        ("security", "marks tests as admission control tests"),
        ("tracker", "marks tests as tracker engine tests"),
        ("transports", "marks tests as transport tests"),
        ("config", "marks tests as configuration tests"),
        ("cli", "marks tests as CLI tests"),
        ("property", "marks tests as property-based tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Clean up logging handlers after each test to prevent closed file errors."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)


@pytest.fixture(autouse=True)
def seed_rng() -> None:
    """Deterministically seed RNGs to make tests reproducible."""
    seed = int(os.environ.get("TRACKGATE_TEST_SEED", "123456"))
    random.seed(seed)


@pytest.fixture
def ban_store() -> BanRangeStore:
    """Memory-backed ban store with a fresh index."""
    store = BanRangeStore(MemoryBanRangeBackend(), BanRangeIndex())
    store.load()
    return store


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock for windows and expiry."""
    return FakeClock()


INFO_HASH = bytes(range(20))
PEER_ID = b"-TG0001-abcdefghijkl"


@pytest.fixture
def info_hash() -> bytes:
    """A valid 20-byte info hash."""
    return INFO_HASH


@pytest.fixture
def peer_id() -> bytes:
    """A valid 20-byte peer id."""
    return PEER_ID
