"""Gateway wiring admission control, the swarm engine and the transports.

The gateway owns the ban store, the admission filter, the shared rate limit
chain and the transports, and starts and stops them as one unit. Transports
stop in reverse start order; shutdown errors are collected instead of
aborting the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Callable, Sequence
from typing import Any

from trackgate.exceptions import TransportShutdownError
from trackgate.logging_config import log_exception, log_operation
from trackgate.models import BanBackend, BanStoreConfig, Config
from trackgate.security.admission import AdmissionFilter, info_hash_allowlist
from trackgate.security.ban_store import (
    BanRangeBackend,
    BanRangeStore,
    MemoryBanRangeBackend,
    SQLiteBanRangeBackend,
)
from trackgate.security.rate_limiter import RateLimitChain
from trackgate.tracker.swarm import FilterHook, InMemorySwarmEngine, SwarmEngine
from trackgate.transports.base import TransportStrategy
from trackgate.transports.http import HttpTransport
from trackgate.transports.udp import UdpTransport
from trackgate.transports.websocket import WebSocketTransport

logger = logging.getLogger(__name__)

EngineFactory = Callable[[FilterHook], SwarmEngine]


def create_backend(config: BanStoreConfig) -> BanRangeBackend:
    """Build the configured ban range backend."""
    if config.backend is BanBackend.MEMORY:
        return MemoryBanRangeBackend()
    return SQLiteBanRangeBackend(config.database_path)


def build_transports(
    config: Config,
    engine: SwarmEngine,
    rate_limiter: RateLimitChain | None,
) -> list[TransportStrategy]:
    """Transports enabled by configuration, in start order."""
    transports: list[TransportStrategy] = [
        HttpTransport(engine, rate_limiter, config.http),
    ]
    if config.udp.enabled:
        transports.append(UdpTransport(engine, rate_limiter, config.udp))
    if config.websocket.enabled:
        transports.append(WebSocketTransport(engine, rate_limiter, config.websocket))
    return transports


class Gateway:
    """Starts and stops the tracker as one unit."""

    def __init__(
        self,
        config: Config | None = None,
        store: BanRangeStore | None = None,
        engine_factory: EngineFactory | None = None,
        transports: Sequence[TransportStrategy] | None = None,
        rate_limiter: RateLimitChain | None = None,
    ):
        """Initialize the gateway.

        Args:
            config: Configuration (defaults apply when omitted)
            store: Ban store (built from ``config.bans`` when omitted)
            engine_factory: Builds the engine from the admission hook
            transports: Transports to run (built from config when omitted)
            rate_limiter: Chain shared by the transports

        """
        self.config = config or Config()
        self.store = store or BanRangeStore(create_backend(self.config.bans))

        self.admission = AdmissionFilter(self.store.index)
        allowlist = self.config.tracker.info_hash_allowlist
        if allowlist:
            self.admission.register("info_hash_allowlist", info_hash_allowlist(allowlist))

        self.rate_limiter = rate_limiter or RateLimitChain.from_config(
            self.config.rate_limits
        )

        if engine_factory is None:
            self.engine: SwarmEngine = InMemorySwarmEngine(
                self.admission, self.config.tracker
            )
        else:
            self.engine = engine_factory(self.admission)

        if transports is None:
            transports = build_transports(self.config, self.engine, self.rate_limiter)
        self.transports = list(transports)

        self.running = False
        self._started: list[TransportStrategy] = []
        self._eviction_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Load bans and start every transport.

        A failed start stops the transports already running, in reverse
        order, and re-raises.

        Raises:
            TransportStartupError: If a transport cannot bind

        """
        if self.running:
            return

        with log_operation(logger, "gateway start"):
            self.store.load()
            for transport in self.transports:
                try:
                    await transport.start()
                except Exception:
                    logger.exception("Failed to start %s transport", transport.name)
                    await self._stop_transports()
                    raise
                self._started.append(transport)

            if self.rate_limiter.policies:
                self._eviction_task = asyncio.create_task(self._evict_loop())
            self.running = True

    async def _stop_transports(self) -> list[TransportShutdownError]:
        errors: list[TransportShutdownError] = []
        while self._started:
            transport = self._started.pop()
            try:
                await transport.stop()
            except TransportShutdownError as e:
                log_exception(logger, e, f"Error stopping {transport.name} transport")
                errors.append(e)
        return errors

    async def stop(self) -> list[TransportShutdownError]:
        """Stop transports in reverse order, then background work and the engine.

        Returns:
            Shutdown errors raised by transports (empty on a clean stop)

        """
        with log_operation(logger, "gateway stop"):
            errors = await self._stop_transports()

            task, self._eviction_task = self._eviction_task, None
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            if self.running:
                await self.engine.close()
            self.running = False

        if errors:
            logger.error("Gateway stopped with %d transport error(s)", len(errors))
        return errors

    async def _evict_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.rate_limits.eviction_interval)
            self.rate_limiter.evict_expired()

    async def run_forever(self) -> None:
        """Run until SIGINT or SIGTERM."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        def _request_stop(signum: int) -> None:
            logger.info("Received signal %d, initiating shutdown", signum)
            stop_event.set()

        signals = [signal.SIGINT]
        if sys.platform != "win32":
            signals.append(signal.SIGTERM)
        for signum in signals:
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signum, _request_stop, signum)

        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
            for signum in signals:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signum)

    async def __aenter__(self) -> Gateway:
        """Start on entry."""
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        """Stop on exit."""
        await self.stop()
