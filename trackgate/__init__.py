"""trackgate - admission-controlled BitTorrent tracker gateway."""

from __future__ import annotations

__version__ = "0.1.0"
