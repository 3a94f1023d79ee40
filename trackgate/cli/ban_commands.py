"""CLI commands for ban range management."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator
from datetime import datetime

import click
from rich.console import Console
from rich.table import Table

from trackgate.config.config import ConfigManager
from trackgate.exceptions import TrackgateError
from trackgate.gateway import create_backend
from trackgate.security.ban_list import load_ban_list
from trackgate.security.ban_store import BanRangeStore
from trackgate.utils.ip import address_to_int, int_to_address, parse_ip_range


@contextlib.contextmanager
def _open_store(ctx: click.Context) -> Iterator[BanRangeStore]:
    """Store built from the configured backend, with its index loaded."""
    config = ConfigManager(ctx.obj["config"]).config
    store = BanRangeStore(create_backend(config.bans))
    try:
        store.load()
        yield store
    finally:
        store.close()


@contextlib.contextmanager
def _domain_errors(console: Console) -> Iterator[None]:
    """Turn trackgate errors into click errors."""
    try:
        yield
    except TrackgateError as e:
        console.print(f"[red]Error: {e.message}[/red]")
        raise click.ClickException(e.message) from e


def _format_range(from_ip: int, to_ip: int) -> str:
    if from_ip == to_ip:
        return int_to_address(from_ip)
    return f"{int_to_address(from_ip)} - {int_to_address(to_ip)}"


@click.group("bans")
def bans_group() -> None:
    """Manage banned IP ranges."""


@bans_group.command("list")
@click.option("--page", type=int, default=1, show_default=True, help="Page number")
@click.option("--limit", type=int, default=20, show_default=True, help="Ranges per page")
@click.pass_context
def bans_list(ctx: click.Context, page: int, limit: int) -> None:
    """List banned ranges, newest first."""
    console = Console()
    with _domain_errors(console), _open_store(ctx) as store:
        result = store.list(page=page, limit=limit)

    if not result.items:
        console.print("[yellow]No ban ranges configured.[/yellow]")
        return

    table = Table(title="Banned IP Ranges")
    table.add_column("ID", style="blue")
    table.add_column("IP Range", style="cyan")
    table.add_column("Reason", style="magenta")
    table.add_column("Created", style="yellow")

    for ban in result.items:
        table.add_row(
            str(ban.id),
            _format_range(ban.from_ip, ban.to_ip),
            ban.reason or "",
            datetime.fromtimestamp(ban.created).strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)
    meta = result.pagination
    console.print(
        f"\n[bold]Page {meta.page}/{max(meta.pages, 1)} - Total: {meta.total} ranges[/bold]"
    )


@bans_group.command("add")
@click.argument("ip_range")
@click.option("--reason", default=None, help="Why the range is banned")
@click.pass_context
def bans_add(ctx: click.Context, ip_range: str, reason: str | None) -> None:
    """Ban an IP range.

    Examples:
        trackgate bans add 192.168.0.0/24
        trackgate bans add 10.0.0.0-10.0.255.255 --reason abuse
        trackgate bans add 192.168.1.1

    """
    console = Console()
    with _domain_errors(console):
        from_ip, to_ip = parse_ip_range(ip_range)
        with _open_store(ctx) as store:
            ban = store.create({"from_ip": from_ip, "to_ip": to_ip, "reason": reason})
    console.print(
        f"[green]✓[/green] Banned {_format_range(ban.from_ip, ban.to_ip)} (id {ban.id})"
    )


@bans_group.command("import")
@click.argument("file_path", type=click.Path(exists=True))
@click.option("--reason", default=None, help="Reason for lines without a description")
@click.pass_context
def bans_import(ctx: click.Context, file_path: str, reason: str | None) -> None:
    """Import a PeerGuardian, DAT or CIDR ban list (optionally compressed)."""
    console = Console()
    console.print(f"[cyan]Loading ban list from: {file_path}[/cyan]")
    with _domain_errors(console):
        records, errors = asyncio.run(load_ban_list(file_path, reason=reason))
        with _open_store(ctx) as store:
            inserted = store.bulk_create(records)

    console.print(f"[green]✓[/green] Imported {inserted} ranges from {file_path}")
    skipped = len(records) - inserted
    if skipped:
        console.print(f"[yellow]{skipped} duplicate ranges skipped[/yellow]")
    if errors:
        console.print(f"[yellow]⚠[/yellow] {errors} invalid lines ignored")


@bans_group.command("update")
@click.argument("ban_id", type=int)
@click.option("--range", "ip_range", default=None, help="New IP range")
@click.option("--reason", default=None, help="New reason")
@click.pass_context
def bans_update(
    ctx: click.Context,
    ban_id: int,
    ip_range: str | None,
    reason: str | None,
) -> None:
    """Change a banned range or its reason."""
    console = Console()
    if ip_range is None and reason is None:
        msg = "Nothing to update: pass --range and/or --reason"
        raise click.UsageError(msg)

    patch: dict[str, object] = {}
    with _domain_errors(console):
        if ip_range is not None:
            patch["from_ip"], patch["to_ip"] = parse_ip_range(ip_range)
        if reason is not None:
            patch["reason"] = reason
        with _open_store(ctx) as store:
            ban = store.update(ban_id, patch)
    console.print(
        f"[green]✓[/green] Updated ban {ban.id}: {_format_range(ban.from_ip, ban.to_ip)}"
    )


@bans_group.command("remove")
@click.argument("ban_id", type=int)
@click.pass_context
def bans_remove(ctx: click.Context, ban_id: int) -> None:
    """Remove a banned range."""
    console = Console()
    with _domain_errors(console), _open_store(ctx) as store:
        ban = store.delete(ban_id)
    console.print(
        f"[green]✓[/green] Removed ban {ban.id}: {_format_range(ban.from_ip, ban.to_ip)}"
    )


@bans_group.command("check")
@click.argument("address")
@click.pass_context
def bans_check(ctx: click.Context, address: str) -> None:
    """Report whether an address is banned."""
    console = Console()
    try:
        value = address_to_int(address)
    except ValueError as e:
        msg = f"Invalid IP address: {address}"
        raise click.ClickException(msg) from e

    with _domain_errors(console), _open_store(ctx) as store:
        banned = value is not None and store.index.query(value)

    if banned:
        console.print(f"[red]{address} is banned[/red]")
    else:
        console.print(f"[green]{address} is not banned[/green]")
