"""
AutoPay relayer command line.

Usage:
    autopay-relayer [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .chain.charger import ChargeOutcomeKind
from .config import ChainSettings, RelayerSettings, load_settings
from .exceptions import RelayerException
from .executor import ChargeExecutor
from .indexer import Indexer
from .logging_config import setup_logging
from .retry import format_retry_config
from .service import RelayerService, build_chargers, close_chain_clients, connect_chain_clients
from .status import collect_status
from .stores import create_store
from .utils import is_policy_id

console = Console()


def _settings(ctx: click.Context) -> RelayerSettings:
    return ctx.obj["settings"]


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _select_chains(settings: RelayerSettings, chain_id: Optional[int]) -> list[ChainSettings]:
    chains = settings.enabled_chains()
    if chain_id is not None:
        chains = [c for c in chains if c.chain_id == chain_id]
        if not chains:
            _fail(f"Chain {chain_id} is not configured or has no policy manager address")
    return chains


def _open_store(settings: RelayerSettings):
    if not settings.database_url:
        _fail("Missing required environment variable: DATABASE_URL")
    try:
        return create_store(settings.database_url)
    except ValueError as e:
        _fail(str(e))


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except RelayerException as e:
        _fail(e.message)


@click.group()
@click.version_option(__version__, message="%(prog)s %(version)s")
@click.option("--log-level", envvar="LOG_LEVEL", default=None, help="Log level (debug, info, warn, error)")
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """AutoPay relayer - indexes subscription policies and executes charges."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings()
    except RelayerException as e:
        _fail(e.message)

    setup_logging(level=log_level or settings.log_level, json_format=settings.log_json)
    ctx.obj["settings"] = settings


@cli.command()
@click.pass_context
def start(ctx):
    """Run indexers, executor and the health server until interrupted."""
    service = RelayerService(_settings(ctx))
    _run(service.run())


@cli.command()
@click.pass_context
def migrate(ctx):
    """Create or upgrade the database schema."""
    settings = _settings(ctx)

    async def _migrate():
        store = _open_store(settings)
        try:
            await store.migrate()
        finally:
            await store.close()

    _run(_migrate())
    console.print("[green]✓ Migrations applied[/green]")


@cli.command()
@click.option("--chain-id", type=int, default=None, help="Only index this chain")
@click.option("--from-block", type=int, default=None, help="Start here instead of the checkpoint")
@click.pass_context
def index(ctx, chain_id: Optional[int], from_block: Optional[int]):
    """Run one indexing pass up to the safe head."""
    settings = _settings(ctx)
    chains = _select_chains(settings, chain_id)
    if from_block is not None and len(chains) != 1:
        _fail("--from-block needs --chain-id when more than one chain is enabled")

    async def _index():
        store = _open_store(settings)
        clients = await connect_chain_clients(settings)
        try:
            indexer = Indexer(store, clients, settings)
            for chain in chains:
                result = await indexer.run_once(chain, from_block=from_block)
                if result.caught_up:
                    console.print(f"{chain.name}: [green]caught up[/green]")
                else:
                    console.print(
                        f"{chain.name}: indexed blocks {result.from_block}-{result.to_block}, "
                        f"{result.events_applied} events applied"
                    )
        finally:
            await close_chain_clients(clients)
            await store.close()

    _run(_index())


@cli.command()
@click.option("--chain-id", type=int, required=True, help="Chain to backfill")
@click.option("--from-block", type=int, required=True, help="First block to re-read")
@click.pass_context
def backfill(ctx, chain_id: int, from_block: int):
    """Rewind the checkpoint and re-index from FROM_BLOCK."""
    settings = _settings(ctx)
    (chain,) = _select_chains(settings, chain_id)

    if from_block < 0:
        _fail("--from-block must be >= 0")

    async def _backfill():
        store = _open_store(settings)
        clients = await connect_chain_clients(settings)
        try:
            result = await Indexer(store, clients, settings).backfill(chain, from_block)
            console.print(
                f"{chain.name}: backfilled to block {result.to_block if result.to_block is not None else from_block - 1}, "
                f"{result.events_applied} events applied"
            )
        finally:
            await close_chain_clients(clients)
            await store.close()

    _run(_backfill())


@cli.command()
@click.argument("policy_id")
@click.option("--chain-id", type=int, default=None, help="Chain the policy lives on")
@click.pass_context
def charge(ctx, policy_id: str, chain_id: Optional[int]):
    """Charge POLICY_ID now, regardless of its schedule."""
    settings = _settings(ctx)
    if not is_policy_id(policy_id):
        _fail("POLICY_ID must be a 0x-prefixed 32-byte hex string")
    _select_chains(settings, chain_id)

    async def _charge():
        settings.require_runtime()
        store = _open_store(settings)
        clients = await connect_chain_clients(settings)
        try:
            executor = ChargeExecutor(store, build_chargers(settings, clients), settings)
            outcome = await executor.charge_by_id(policy_id.lower(), chain_id=chain_id)
        finally:
            await close_chain_clients(clients)
            await store.close()

        if outcome.kind == ChargeOutcomeKind.SUCCESS:
            console.print(f"[green]✓ Charged[/green] tx {outcome.tx_hash} amount {outcome.amount}")
        elif outcome.kind == ChargeOutcomeKind.SOFT_FAIL:
            console.print(f"[yellow]Soft-fail:[/yellow] {outcome.reason}")
        else:
            console.print(f"[red]Hard-fail:[/red] {outcome.reason}")

    _run(_charge())


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def status(ctx, as_json: bool):
    """Show indexing progress, active policies and webhook backlog."""
    settings = _settings(ctx)

    async def _status():
        store = _open_store(settings)
        try:
            return await collect_status(store, settings)
        finally:
            await store.close()

    try:
        result = asyncio.run(_status())
    except RelayerException as e:
        _fail(e.message)

    if as_json:
        click.echo(json.dumps(result, indent=2))
        return

    style = "green" if result["status"] == "ok" else "yellow"
    console.print(f"\nRelayer status: [{style}]{result['status']}[/{style}]\n")

    table = Table(title="Chains")
    table.add_column("Chain", style="cyan")
    table.add_column("Chain ID", justify="right")
    table.add_column("Last Block", justify="right")
    table.add_column("Active Policies", justify="right")
    table.add_column("Pending Charges", justify="right")
    for row in result["chains"]:
        last_block = row["lastIndexedBlock"]
        table.add_row(
            row["name"],
            str(row["chainId"]),
            str(last_block) if last_block is not None else "[yellow]never[/yellow]",
            str(row["activePolicies"]),
            str(row["pendingCharges"]),
        )
    console.print(table)

    webhooks = result["webhooks"]
    console.print(f"Webhooks pending: {webhooks['pending']}  failed: {webhooks['failed']}")
    console.print(f"Retry: {result['retry']}\n")


@cli.command()
@click.pass_context
def chains(ctx):
    """List configured chains."""
    settings = _settings(ctx)

    table = Table(title="Configured Chains")
    table.add_column("Chain", style="cyan")
    table.add_column("Chain ID", justify="right")
    table.add_column("Policy Manager")
    table.add_column("Confirmations", justify="right")
    table.add_column("Status")

    for chain in settings.chains:
        state = "[green]Enabled[/green]" if chain.is_usable else "[red]Disabled[/red]"
        table.add_row(
            chain.name,
            str(chain.chain_id),
            chain.policy_manager_address or "-",
            str(settings.confirmations_for(chain)),
            state,
        )

    console.print(table)


@cli.command("config-retry")
@click.pass_context
def config_retry(ctx):
    """Show the effective retry configuration."""
    try:
        console.print(format_retry_config(_settings(ctx).retry))
    except RelayerException as e:
        _fail(e.message)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
