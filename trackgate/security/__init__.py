"""Admission control for trackgate.

Provides:
- Ban range index and its persistent store
- Admission filter (malformed, ban and extension checks)
- Rate limit chain shared by all transports
"""

from trackgate.security.admission import (
    ALLOW,
    AdmissionDecision,
    AdmissionFilter,
    info_hash_allowlist,
)
from trackgate.security.ban_index import BanRangeIndex
from trackgate.security.ban_store import (
    BanRangeBackend,
    BanRangeStore,
    MemoryBanRangeBackend,
    SQLiteBanRangeBackend,
)
from trackgate.security.rate_limiter import (
    FixedWindowPolicy,
    RateLimitChain,
    RateLimitContext,
    RateLimitDecision,
    SlowDownPolicy,
)

__all__ = [
    "ALLOW",
    "AdmissionDecision",
    "AdmissionFilter",
    "BanRangeBackend",
    "BanRangeIndex",
    "BanRangeStore",
    "FixedWindowPolicy",
    "MemoryBanRangeBackend",
    "RateLimitChain",
    "RateLimitContext",
    "RateLimitDecision",
    "SQLiteBanRangeBackend",
    "SlowDownPolicy",
    "info_hash_allowlist",
]
