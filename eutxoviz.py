"""eutxoviz - Cardano smart contract state analyzer.

Fetches (or loads) the transactions touching a script address, decodes
their datums and redeemers, builds the contract's state-transition graph
and reports its structural pattern.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console

from eutxo import AnalysisResult, ContractSchema, LinkStrategy, StateGraph
from eutxo.blockfrost import NETWORKS, fetch_script_transactions
from eutxo.errors import EutxoError
from eutxo.loader import load_transactions
from eutxo.output import render_dot, render_json, render_table, render_terminal
from eutxo.pipeline import run_analysis
from eutxo.rate_limiter import blockfrost_limiter
from eutxo.schema import load_schema, validate_schema

console = Console(force_terminal=True)

OUTPUT_FORMATS = ("terminal", "json", "table", "dot")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(15.0, connect=5.0),
        limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
        headers={"User-Agent": "eutxoviz/0.1 (Cardano state analyzer)"},
        follow_redirects=True,
    )


def _fail(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
    sys.exit(1)


@click.group()
@click.option("--debug", is_flag=True, hidden=True, help="Enable debug logging.")
def main(debug: bool) -> None:
    """Analyze Cardano smart contract state transitions."""
    if debug:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")


# ── analyze ───────────────────────────────────────────────────────────────────


@main.command()
@click.argument("address", required=False)
@click.option(
    "--source",
    type=click.Choice(["blockfrost", "file"], case_sensitive=False),
    default="blockfrost",
    help="Where transactions come from (default: blockfrost).",
)
@click.option(
    "--tx-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Transaction JSON document (with --source file).",
)
@click.option(
    "--schema", "schema_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Contract schema (TOML).",
)
@click.option(
    "--output", "-o", "output_format",
    type=click.Choice(OUTPUT_FORMATS, case_sensitive=False),
    default="terminal",
    help="Output format (default: terminal).",
)
@click.option("--verbose", "-v", is_flag=True, help="List every state and transition.")
@click.option(
    "--max-transactions", "-n",
    default=100,
    type=click.IntRange(1, 10000),
    help="Max transactions to fetch (default: 100).",
)
@click.option(
    "--project-id",
    default=None,
    envvar="BLOCKFROST_PROJECT_ID",
    help="Blockfrost project id.",
)
@click.option(
    "--network",
    type=click.Choice(NETWORKS, case_sensitive=False),
    default="mainnet",
    help="Cardano network (default: mainnet).",
)
@click.option(
    "--link",
    type=click.Choice([s.value for s in LinkStrategy], case_sensitive=False),
    default=LinkStrategy.PAIRWISE.value,
    help="Edges for multi-input transactions (default: pairwise).",
)
def analyze(
    address: Optional[str],
    source: str,
    tx_file: Optional[Path],
    schema_path: Optional[Path],
    output_format: str,
    verbose: bool,
    max_transactions: int,
    project_id: Optional[str],
    network: str,
    link: str,
) -> None:
    """Analyze the state graph of a script address.

    ADDRESS is the script address. It defaults to the schema's address and
    may be omitted with --source file to keep every output.
    """
    try:
        schema = load_schema(schema_path) if schema_path else None
        if address is None and schema is not None:
            address = schema.script_address

        if source == "file":
            if tx_file is None:
                _fail("--tx-file is required with --source file")
            transactions = load_transactions(tx_file)
        else:
            if address is None:
                _fail("ADDRESS (or a schema with script_address) is required")
            if output_format == "terminal":
                console.print()
                console.print("[dim]Fetching transactions from Blockfrost...[/dim]")
            transactions = asyncio.run(
                _fetch(address, project_id, network, max_transactions, known=())
            )

        result = run_analysis(
            transactions,
            schema=schema,
            script_address=address,
            link=LinkStrategy(link),
        )
    except EutxoError as exc:
        _fail(str(exc))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)

    _emit(result, output_format, verbose)


# ── watch ─────────────────────────────────────────────────────────────────────


@main.command()
@click.argument("address", required=False)
@click.option(
    "--schema", "schema_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Contract schema (TOML).",
)
@click.option(
    "--interval", "-i",
    default=30,
    type=click.IntRange(1, 3600),
    help="Seconds between polls (default: 30).",
)
@click.option(
    "--max-transactions", "-n",
    default=100,
    type=click.IntRange(1, 10000),
    help="Max transactions to fetch per poll (default: 100).",
)
@click.option(
    "--project-id",
    default=None,
    envvar="BLOCKFROST_PROJECT_ID",
    help="Blockfrost project id.",
)
@click.option(
    "--network",
    type=click.Choice(NETWORKS, case_sensitive=False),
    default="mainnet",
    help="Cardano network (default: mainnet).",
)
@click.option("--verbose", "-v", is_flag=True, help="List every state and transition.")
@click.option("--polls", default=0, type=click.IntRange(0), hidden=True)
def watch(
    address: Optional[str],
    schema_path: Optional[Path],
    interval: int,
    max_transactions: int,
    project_id: Optional[str],
    network: str,
    verbose: bool,
    polls: int,
) -> None:
    """Poll a script address and re-render as new transactions land."""
    try:
        schema = load_schema(schema_path) if schema_path else None
        if address is None and schema is not None:
            address = schema.script_address
        if address is None:
            _fail("ADDRESS (or a schema with script_address) is required")
        asyncio.run(
            _watch(address, schema, project_id, network, interval, max_transactions, verbose, polls)
        )
    except EutxoError as exc:
        _fail(str(exc))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        sys.exit(130)


async def _watch(
    address: str,
    schema: Optional[ContractSchema],
    project_id: Optional[str],
    network: str,
    interval: int,
    max_transactions: int,
    verbose: bool,
    polls: int,
) -> None:
    """Poll loop: fetch unseen transactions, extend the previous graph."""
    graph: Optional[StateGraph] = None
    limiter = blockfrost_limiter()
    done = 0
    async with _client() as client:
        while True:
            known = graph.transactions.keys() if graph is not None else ()
            fresh = await fetch_script_transactions(
                client,
                address,
                project_id or "",
                network=network,
                known=known,
                max_transactions=max_transactions,
                limiter=limiter,
            )
            if fresh or graph is None:
                result = run_analysis(fresh, schema=schema, script_address=address, previous=graph)
                graph = result.graph
                console.clear()
                render_terminal(console, result, verbose=verbose)
            console.print(
                f"[dim]{len(fresh)} new transactions. "
                f"Next poll in {interval}s (Ctrl-C to quit).[/dim]"
            )
            done += 1
            if polls and done >= polls:
                return
            await asyncio.sleep(interval)


# ── schema-validate ───────────────────────────────────────────────────────────


@main.command("schema-validate")
@click.argument("schema_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def schema_validate(schema_file: Path) -> None:
    """Check a contract schema file for errors."""
    try:
        schema = load_schema(schema_file)
    except EutxoError as exc:
        _fail(str(exc))

    errors, warnings = validate_schema(schema)
    console.print(f"[bold]{schema.name}[/bold]  [dim]{schema.script_address}[/dim]")
    console.print(
        f"  {len(schema.fields)} datum fields, {len(schema.redeemers)} redeemers, "
        f"{len(schema.rules)} state rules"
    )
    for warning in warnings:
        console.print(f"  [yellow]⚠ {warning}[/yellow]")
    for error in errors:
        console.print(f"  [red]✗ {error}[/red]")
    if errors:
        sys.exit(1)
    console.print("  [green]✓ Schema is valid[/green]")


# ── Helpers ───────────────────────────────────────────────────────────────────


async def _fetch(
    address: str,
    project_id: Optional[str],
    network: str,
    max_transactions: int,
    known,
) -> list:
    async with _client() as client:
        return await fetch_script_transactions(
            client,
            address,
            project_id or "",
            network=network,
            known=known,
            max_transactions=max_transactions,
        )


def _emit(result: AnalysisResult, output_format: str, verbose: bool) -> None:
    if output_format == "json":
        render_json(result)
    elif output_format == "table":
        click.echo(render_table(result))
    elif output_format == "dot":
        click.echo(render_dot(result), nl=False)
    else:
        render_terminal(console, result, verbose=verbose)


if __name__ == "__main__":
    main()
