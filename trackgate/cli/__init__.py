"""Command line interface for trackgate."""

from trackgate.cli.main import cli, main

__all__ = ["cli", "main"]
