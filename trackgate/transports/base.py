"""Base transport abstraction for trackgate.

A transport owns one listener and translates between its wire framing and
canonical tracker requests. The lifecycle is one-way::

    NOT_STARTED -> RUNNING -> STOPPED
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from trackgate.exceptions import (
    TransportShutdownError,
    TransportStartupError,
    TransportStateError,
)
from trackgate.security.rate_limiter import RateLimitContext
from trackgate.tracker.requests import (
    FailureKind,
    TrackerFailure,
    TrackerRequest,
    TrackerResponse,
)

if TYPE_CHECKING:  # pragma: no cover
    from trackgate.security.rate_limiter import RateLimitChain
    from trackgate.tracker.swarm import SwarmEngine

logger = logging.getLogger(__name__)


class TransportState(Enum):
    """Transport lifecycle states."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class HostBinding:
    """Address a transport listens on."""

    host: str
    port: int

    def __str__(self) -> str:
        """Return host:port."""
        return f"{self.host}:{self.port}"


class TransportStrategy(ABC):
    """Base transport interface."""

    name = "transport"

    def __init__(
        self,
        engine: SwarmEngine,
        rate_limiter: RateLimitChain | None = None,
        binding: HostBinding | None = None,
    ):
        """Initialize transport.

        Args:
            engine: Swarm engine requests are submitted to
            rate_limiter: Chain shared by all transports (None disables limits)
            binding: Default listen address used when ``start`` gets none

        """
        self.engine = engine
        self.rate_limiter = rate_limiter
        self.binding = binding
        self.state = TransportState.NOT_STARTED
        self._bound: HostBinding | None = None

    @property
    def bound_address(self) -> HostBinding | None:
        """Actual listen address while running (port 0 resolved)."""
        return self._bound

    async def start(self, binding: HostBinding | None = None) -> None:
        """Bind the listener.

        Raises:
            TransportStateError: If the transport was already started
            TransportStartupError: If the listener cannot be bound

        """
        if self.state is not TransportState.NOT_STARTED:
            msg = f"{self.name} transport cannot start from state {self.state.value}"
            raise TransportStateError(msg)

        binding = binding or self.binding
        if binding is None:
            msg = f"{self.name} transport has no address to bind"
            raise TransportStartupError(msg)

        try:
            self._bound = await self._bind(binding)
        except Exception as e:
            msg = f"{self.name} transport failed to bind {binding}: {e}"
            raise TransportStartupError(msg, {"transport": self.name}) from e

        self.state = TransportState.RUNNING
        logger.info("%s transport listening on %s", self.name, self._bound)

    async def stop(self) -> None:
        """Release the listener; calling it again is a no-op.

        Raises:
            TransportShutdownError: If the release failed (the transport is
                STOPPED regardless)

        """
        if self.state is not TransportState.RUNNING:
            return

        try:
            await self._release()
        except Exception as e:
            msg = f"{self.name} transport failed to shut down cleanly: {e}"
            raise TransportShutdownError(msg, {"transport": self.name}) from e
        finally:
            self.state = TransportState.STOPPED
            self._bound = None
        logger.info("%s transport stopped", self.name)

    @abstractmethod
    async def _bind(self, binding: HostBinding) -> HostBinding:
        """Open the listener and return the address actually bound."""

    @abstractmethod
    async def _release(self) -> None:
        """Close the listener and per-connection state."""

    async def _apply_rate_limits(self, ip: str, route: str) -> TrackerFailure | None:
        """Run the rate limit chain, sleeping for any slow-down delay."""
        if self.rate_limiter is None:
            return None

        decision = self.rate_limiter.check(RateLimitContext(ip=ip, route=route))
        if not decision.allowed:
            return TrackerFailure(
                reason="Too many requests, please try again later",
                kind=FailureKind.RATE_LIMITED,
                retry_after=decision.retry_after,
            )
        if decision.delay > 0:
            await asyncio.sleep(decision.delay)
        return None

    async def _dispatch(self, request: TrackerRequest) -> TrackerResponse:
        """Hand a request to the engine; engine crashes become failures."""
        try:
            return await self.engine.handle(request)
        except Exception:
            logger.exception(
                "Engine failed on %s from %s", request.type.value, request.client_address
            )
            return TrackerFailure(reason="Internal tracker error", kind=FailureKind.ERROR)

    async def process(self, request: TrackerRequest) -> TrackerResponse:
        """Rate-limit then dispatch one canonical request."""
        failure = await self._apply_rate_limits(request.client_address, request.route)
        if failure is not None:
            return failure
        return await self._dispatch(request)
