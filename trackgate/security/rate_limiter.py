"""Rate limit chain shared by all transports.

The chain evaluates an ordered list of independent policies:

- a global slow-down that delays, but never rejects, chatty clients
- a per-route quota for announce and scrape
- a stricter quota for authentication routes

Every policy owns its window state. Windows are fixed windows that expire
lazily when a key is next seen, and :meth:`RateLimitChain.evict_expired`
drops idle windows so the maps do not grow without bound.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from trackgate.exceptions import RateLimitExceeded
from trackgate.models import RateLimitScope, RateLimitsConfig

logger = logging.getLogger(__name__)

LOCK_STRIPES = 16

Clock = Callable[[], float]


@dataclass(frozen=True)
class RateLimitContext:
    """What a policy needs to know about a request."""

    ip: str
    route: str


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of running the chain for one request."""

    allowed: bool
    delay: float = 0.0
    policy: str | None = None
    retry_after: float = 0.0

    def to_error(self) -> RateLimitExceeded:
        """Exception form of a rejection."""
        return RateLimitExceeded(
            "Too many requests, please try again later",
            policy=self.policy or "",
            retry_after=self.retry_after,
        )


@dataclass
class RateLimitState:
    """Counter for one key inside one fixed window."""

    key: str
    window_start: float
    count: int
    limit: int
    window_duration: float

    def expired(self, now: float) -> bool:
        """Return True once the window has elapsed."""
        return now - self.window_start >= self.window_duration


def key_by_ip(context: RateLimitContext) -> str:
    """Key requests by client address."""
    return context.ip


def key_by_ip_route(context: RateLimitContext) -> str:
    """Key requests by client address and route class."""
    return f"{context.ip}|{context.route}"


_KEY_FUNCS: dict[RateLimitScope, Callable[[RateLimitContext], str]] = {
    RateLimitScope.IP: key_by_ip,
    RateLimitScope.IP_ROUTE: key_by_ip_route,
}


class RateLimitPolicy(ABC):
    """Windowed counter keyed per client."""

    def __init__(
        self,
        name: str,
        window: float,
        limit: int,
        routes: Iterable[str] | None = None,
        key_func: Callable[[RateLimitContext], str] = key_by_ip,
        clock: Clock = time.monotonic,
    ):
        """Initialize the policy.

        Args:
            name: Policy name reported in decisions
            window: Window duration in seconds
            limit: Requests counted before the policy acts
            routes: Route classes the policy applies to (None or empty = all)
            key_func: Maps a request to its state key
            clock: Monotonic time source

        """
        self.name = name
        self.window = window
        self.limit = limit
        self.routes = frozenset(routes or ())
        self.key_func = key_func
        self.clock = clock
        self._states: dict[str, RateLimitState] = {}
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

    def applies_to(self, context: RateLimitContext) -> bool:
        """Return True if the route is covered by this policy."""
        return not self.routes or context.route in self.routes

    def _lock_for(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % LOCK_STRIPES]

    def _state_for(self, key: str, now: float) -> RateLimitState:
        state = self._states.get(key)
        if state is None or state.expired(now):
            state = RateLimitState(
                key=key,
                window_start=now,
                count=0,
                limit=self.limit,
                window_duration=self.window,
            )
            self._states[key] = state
        return state

    def check(self, context: RateLimitContext) -> RateLimitDecision:
        """Count the request and decide."""
        key = self.key_func(context)
        with self._lock_for(key):
            now = self.clock()
            return self._decide(self._state_for(key, now), now)

    @abstractmethod
    def _decide(self, state: RateLimitState, now: float) -> RateLimitDecision:
        """Update the state for one request and decide."""

    def evict_expired(self) -> int:
        """Drop windows that have elapsed; return how many were dropped."""
        now = self.clock()
        evicted = 0
        for key in list(self._states):
            with self._lock_for(key):
                state = self._states.get(key)
                if state is not None and state.expired(now):
                    del self._states[key]
                    evicted += 1
        return evicted

    def __len__(self) -> int:
        """Number of tracked keys."""
        return len(self._states)


class SlowDownPolicy(RateLimitPolicy):
    """Delay requests past ``delay_after`` in a window; never rejects."""

    def __init__(
        self,
        name: str = "slow_down",
        window: float = 900.0,
        delay_after: int = 100,
        delay: float = 0.5,
        max_delay: float = 20.0,
        routes: Iterable[str] | None = None,
        key_func: Callable[[RateLimitContext], str] = key_by_ip,
        clock: Clock = time.monotonic,
    ):
        """Initialize the slow-down policy."""
        super().__init__(name, window, delay_after, routes, key_func, clock)
        self.delay = delay
        self.max_delay = max_delay

    def _decide(self, state: RateLimitState, now: float) -> RateLimitDecision:
        if state.count < state.limit:
            state.count += 1
            return RateLimitDecision(allowed=True)
        # count saturates at the limit; the delay is fixed per request
        return RateLimitDecision(
            allowed=True,
            delay=min(self.delay, self.max_delay),
            policy=self.name,
        )


class FixedWindowPolicy(RateLimitPolicy):
    """Reject requests past ``limit`` until the window ends."""

    def _decide(self, state: RateLimitState, now: float) -> RateLimitDecision:
        if state.count < state.limit:
            state.count += 1
            return RateLimitDecision(allowed=True)
        retry_after = max(0.0, state.window_start + state.window_duration - now)
        return RateLimitDecision(
            allowed=False,
            policy=self.name,
            retry_after=retry_after,
        )


class RateLimitChain:
    """Ordered policies; the first rejection short-circuits."""

    def __init__(self, policies: Iterable[RateLimitPolicy] = ()):
        """Initialize the chain with policies in evaluation order."""
        self.policies = list(policies)

    @classmethod
    def from_config(
        cls,
        config: RateLimitsConfig,
        clock: Clock = time.monotonic,
    ) -> RateLimitChain:
        """Build slow-down -> route quota -> auth quota from configuration."""
        if not config.enabled:
            return cls()

        slow = config.slow_down
        route = config.route_quota
        auth = config.auth_quota
        return cls(
            [
                SlowDownPolicy(
                    window=slow.window,
                    delay_after=slow.delay_after,
                    delay=slow.delay,
                    max_delay=slow.max_delay,
                    clock=clock,
                ),
                FixedWindowPolicy(
                    "route_quota",
                    window=route.window,
                    limit=route.limit,
                    routes=route.routes,
                    key_func=_KEY_FUNCS[route.scope],
                    clock=clock,
                ),
                FixedWindowPolicy(
                    "auth_quota",
                    window=auth.window,
                    limit=auth.limit,
                    routes=auth.routes,
                    key_func=_KEY_FUNCS[auth.scope],
                    clock=clock,
                ),
            ]
        )

    def check(self, context: RateLimitContext) -> RateLimitDecision:
        """Run the policies in order, accumulating delays."""
        delay = 0.0
        for policy in self.policies:
            if not policy.applies_to(context):
                continue
            decision = policy.check(context)
            if not decision.allowed:
                logger.warning(
                    "Rate limit exceeded for IP %s on %s (%s)",
                    context.ip,
                    context.route,
                    policy.name,
                )
                return RateLimitDecision(
                    allowed=False,
                    delay=delay,
                    policy=decision.policy,
                    retry_after=decision.retry_after,
                )
            delay += decision.delay
        return RateLimitDecision(allowed=True, delay=delay)

    def enforce(self, context: RateLimitContext) -> float:
        """Like :meth:`check` but raise on rejection.

        Returns:
            Delay in seconds the caller should apply

        Raises:
            RateLimitExceeded: If a policy rejects the request

        """
        decision = self.check(context)
        if not decision.allowed:
            raise decision.to_error()
        return decision.delay

    def evict_expired(self) -> int:
        """Sweep expired windows in every policy."""
        evicted = sum(policy.evict_expired() for policy in self.policies)
        if evicted:
            logger.debug("Evicted %d expired rate limit windows", evicted)
        return evicted
