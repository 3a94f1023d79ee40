"""Wire transports for trackgate.

Provides:
- HTTP announce/scrape (aiohttp)
- UDP tracker protocol (BEP 15)
- WebSocket signalling (WebTorrent)
"""

from __future__ import annotations

from trackgate.transports.base import HostBinding, TransportState, TransportStrategy
from trackgate.transports.http import HttpTransport
from trackgate.transports.udp import UdpTransport
from trackgate.transports.websocket import WebSocketTransport

__all__ = [
    "HostBinding",
    "HttpTransport",
    "TransportState",
    "TransportStrategy",
    "UdpTransport",
    "WebSocketTransport",
]
