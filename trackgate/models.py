"""Data models for trackgate.

Pydantic models for persisted ban ranges and for the configuration tree.
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_IPV4 = 0xFFFFFFFF


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class BanBackend(str, Enum):
    """Ban range persistence backends."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class RateLimitScope(str, Enum):
    """How a rate limit policy derives its key from a request."""

    IP = "ip"
    IP_ROUTE = "ip_route"


class BanRange(BaseModel):
    """Inclusive range of banned IPv4 addresses in integer form."""

    id: int | None = Field(None, description="Store-assigned identifier")
    from_ip: int = Field(..., ge=0, le=MAX_IPV4, description="First banned address")
    to_ip: int = Field(..., ge=0, le=MAX_IPV4, description="Last banned address")
    reason: str | None = Field(None, max_length=255, description="Ban reason")
    created: float = Field(
        default_factory=time.time,
        description="Creation timestamp",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> BanRange:
        if self.from_ip > self.to_ip:
            msg = f"from_ip ({self.from_ip}) must be <= to_ip ({self.to_ip})"
            raise ValueError(msg)
        return self

    def contains(self, address: int) -> bool:
        """Return True if address falls inside this range."""
        return self.from_ip <= address <= self.to_ip

    @property
    def key(self) -> tuple[int, int]:
        """Duplicate-detection key."""
        return (self.from_ip, self.to_ip)


class Pagination(BaseModel):
    """Page metadata for listings."""

    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    pages: int = Field(..., ge=0)


class BanRangePage(BaseModel):
    """One page of ban ranges, newest first."""

    items: list[BanRange] = Field(default_factory=list)
    pagination: Pagination


class TrackerConfig(BaseModel):
    """Swarm engine configuration."""

    announce_interval: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Announce interval handed to peers in seconds",
    )
    min_interval: int = Field(
        default=60,
        ge=0,
        le=86400,
        description="Minimum announce interval in seconds",
    )
    peer_timeout: float = Field(
        default=3600.0,
        ge=10.0,
        description="Seconds without an announce before a peer is dropped",
    )
    default_numwant: int = Field(
        default=50,
        ge=0,
        le=1000,
        description="Peers returned when the client does not ask for a count",
    )
    max_numwant: int = Field(
        default=200,
        ge=1,
        le=1000,
        description="Upper bound on peers returned per announce",
    )
    info_hash_allowlist: list[str] = Field(
        default_factory=list,
        description="Hex info hashes allowed on this tracker (empty disables the check)",
    )

    @field_validator("info_hash_allowlist")
    @classmethod
    def _check_hex_hashes(cls, v: list[str]) -> list[str]:
        for item in v:
            if len(item) != 40:
                msg = f"Info hash must be 40 hex characters: {item!r}"
                raise ValueError(msg)
            bytes.fromhex(item)
        return [item.lower() for item in v]


class HttpTransportConfig(BaseModel):
    """HTTP announce/scrape transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104
    port: int = Field(default=3000, ge=0, le=65535, description="Bind port")
    trust_proxy: bool = Field(
        default=False,
        description="Use the first X-Forwarded-For hop as the client address",
    )
    auth_paths: list[str] = Field(
        default_factory=lambda: ["/api/auth"],
        description="Path prefixes classified as authentication routes",
    )


class UdpTransportConfig(BaseModel):
    """UDP (BEP 15) transport configuration."""

    enabled: bool = Field(default=False, description="Enable the UDP tracker")
    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104
    port: int = Field(default=6969, ge=0, le=65535, description="Bind port")
    connection_timeout: float = Field(
        default=120.0,
        ge=1.0,
        le=3600.0,
        description="Lifetime of a connection id in seconds",
    )
    sweep_interval: float = Field(
        default=30.0,
        ge=0.1,
        le=3600.0,
        description="Seconds between expired connection id sweeps",
    )


class WebSocketTransportConfig(BaseModel):
    """WebSocket signalling transport configuration."""

    enabled: bool = Field(default=False, description="Enable the WebSocket tracker")
    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104
    port: int = Field(default=3001, ge=0, le=65535, description="Bind port")
    path: str = Field(default="/", description="WebSocket endpoint path")
    handshake_timeout: float = Field(
        default=10.0,
        ge=0.1,
        le=600.0,
        description="Seconds a socket may stay open without a valid message",
    )
    heartbeat: float = Field(
        default=30.0,
        ge=1.0,
        le=600.0,
        description="WebSocket ping interval in seconds",
    )
    max_message_size: int = Field(
        default=64 * 1024,
        ge=1024,
        description="Largest accepted message in bytes",
    )


class SlowDownPolicyConfig(BaseModel):
    """Global slow-down policy."""

    window: float = Field(default=900.0, gt=0, description="Window in seconds")
    delay_after: int = Field(
        default=100,
        ge=0,
        description="Requests per window served without delay",
    )
    delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Delay in seconds added to each request past the threshold",
    )
    max_delay: float = Field(
        default=20.0,
        ge=0.0,
        description="Cap on the injected delay in seconds",
    )


class QuotaPolicyConfig(BaseModel):
    """Fixed-window quota policy."""

    window: float = Field(default=60.0, gt=0, description="Window in seconds")
    limit: int = Field(default=100, ge=1, description="Requests allowed per window")
    routes: list[str] = Field(
        default_factory=lambda: ["announce", "scrape"],
        description="Route classes the policy applies to (empty = all)",
    )
    scope: RateLimitScope = Field(
        default=RateLimitScope.IP,
        description="Key derivation for the policy",
    )


class RateLimitsConfig(BaseModel):
    """Rate limit chain configuration."""

    enabled: bool = Field(default=True, description="Enable rate limiting")
    slow_down: SlowDownPolicyConfig = Field(default_factory=SlowDownPolicyConfig)
    route_quota: QuotaPolicyConfig = Field(default_factory=QuotaPolicyConfig)
    auth_quota: QuotaPolicyConfig = Field(
        default_factory=lambda: QuotaPolicyConfig(
            window=900.0,
            limit=5,
            routes=["auth"],
        )
    )
    eviction_interval: float = Field(
        default=60.0,
        ge=0.1,
        description="Seconds between sweeps of expired rate limit windows",
    )


class BanStoreConfig(BaseModel):
    """Ban range persistence configuration."""

    backend: BanBackend = Field(default=BanBackend.SQLITE, description="Backend")
    database_path: str = Field(
        default="~/.trackgate/bans.db",
        description="SQLite database path",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Emit JSON log lines",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration model."""

    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    http: HttpTransportConfig = Field(default_factory=HttpTransportConfig)
    udp: UdpTransportConfig = Field(default_factory=UdpTransportConfig)
    websocket: WebSocketTransportConfig = Field(
        default_factory=WebSocketTransportConfig
    )
    rate_limits: RateLimitsConfig = Field(default_factory=RateLimitsConfig)
    bans: BanStoreConfig = Field(default_factory=BanStoreConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
