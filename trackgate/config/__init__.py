"""Configuration loading for trackgate."""

from __future__ import annotations

from trackgate.config.config import ConfigManager

__all__ = ["ConfigManager"]
