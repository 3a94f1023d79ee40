"""Tests for trackgate.cli.main."""

from __future__ import annotations

import importlib
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from trackgate import __version__
from trackgate.exceptions import TransportStartupError

cli_main = importlib.import_module("trackgate.cli.main")

pytestmark = [pytest.mark.unit, pytest.mark.cli]


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "trackgate.toml"
    path.write_text("[bans]\nbackend = 'memory'\n", encoding="utf-8")
    return path


@pytest.fixture
def fake_gateway(monkeypatch):
    instances = []

    def factory(config):
        gateway = MagicMock()
        gateway.config = config
        gateway.run_forever = AsyncMock()
        instances.append(gateway)
        return gateway

    monkeypatch.setattr(cli_main, "Gateway", factory)
    return instances


def test_version():
    result = CliRunner().invoke(cli_main.cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_serve_applies_overrides(config_path, fake_gateway):
    result = CliRunner().invoke(
        cli_main.cli,
        ["--config", str(config_path), "serve", "--port", "8123", "--udp", "--no-ws"],
        obj={},
    )

    assert result.exit_code == 0, result.output
    (gateway,) = fake_gateway
    assert gateway.config.http.port == 8123
    assert gateway.config.udp.enabled is True
    assert gateway.config.websocket.enabled is False
    gateway.run_forever.assert_awaited_once()
    gateway.store.close.assert_called_once()
    assert "http:8123" in result.output


def test_serve_reports_startup_failure(config_path, fake_gateway, monkeypatch):
    def failing(config):
        gateway = MagicMock()
        gateway.run_forever = AsyncMock(side_effect=TransportStartupError("port in use"))
        fake_gateway.append(gateway)
        return gateway

    monkeypatch.setattr(cli_main, "Gateway", failing)

    result = CliRunner().invoke(
        cli_main.cli, ["--config", str(config_path), "serve"], obj={}
    )

    assert result.exit_code == 1
    assert "port in use" in result.output
    fake_gateway[0].store.close.assert_called_once()


def test_serve_with_invalid_config(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("[http]\nport = 'many'\n", encoding="utf-8")

    result = CliRunner().invoke(cli_main.cli, ["--config", str(path), "serve"], obj={})

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
