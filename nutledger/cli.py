"""Nuts Ledger CLI - inspect and reconcile a Cashu wallet ledger."""

import asyncio
from datetime import datetime
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import Settings, configure_logging
from .storage import JsonFileStorage
from .types import MintStatus, SyncResult, WalletError
from .wallet import Wallet

app = typer.Typer(
    name="nuts-ledger",
    help="Nuts Ledger - Cashu wallet proof ledger CLI",
    rich_markup_mode="markdown",
)
console = Console()


def handle_wallet_error(e: Exception) -> None:
    """Print a wallet error and exit with a failure code."""
    if "insufficient balance" in str(e).lower():
        console.print(f"[red]💰 {e}[/red]")
    else:
        console.print(f"[red]❌ {e}[/red]")
    raise typer.Exit(code=1)


async def open_wallet(*, refresh_keysets: bool = False) -> Wallet:
    """Open the wallet stored at ``NUTLEDGER_DATA``."""
    settings = Settings.from_env()
    return await Wallet.create(
        settings.seed,
        storage=JsonFileStorage(settings.data_path),
        settings=settings,
        refresh_keysets=refresh_keysets,
    )


def _print_sync_result(result: SyncResult) -> None:
    partition = "pending" if result.is_pending else "spendable"
    if result.error is not None:
        console.print(f"[red]❌ {result.mint_url} ({partition}): {result.error}[/red]")
        return
    console.print(
        f"[green]✅ {result.mint_url} ({partition}):[/green] "
        f"{result.spent_count} spent ({result.spent_amount}), "
        f"{result.pending_count} pending ({result.pending_amount}), "
        f"{result.reverted_count} reverted ({result.reverted_amount})"
    )
    for update in result.transaction_state_updates:
        console.print(f"   • tx {update.id} → {update.status.value}: {update.message}")


@app.command()
def balance(
    unit: Annotated[
        Optional[str],
        typer.Option("--unit", "-u", help="Filter by currency unit (sat, usd, eur, etc.)"),
    ] = None,
) -> None:
    """Show spendable and pending balances per mint."""

    async def _balance() -> None:
        try:
            async with await open_wallet() as wallet:
                balances = wallet.get_balances()
                rows = []
                mint_urls = dict.fromkeys(
                    [*balances.mint_balances, *balances.mint_pending_balances]
                )
                for mint_url in mint_urls:
                    units = dict.fromkeys(
                        [
                            *balances.mint_balances.get(mint_url, {}),
                            *balances.mint_pending_balances.get(mint_url, {}),
                        ]
                    )
                    for mint_unit in units:
                        if unit and mint_unit != unit:
                            continue
                        rows.append(
                            (
                                mint_url,
                                mint_unit,
                                balances.for_mint(mint_url, mint_unit),
                                balances.for_mint(mint_url, mint_unit, pending=True),
                            )
                        )

                if not rows:
                    console.print("[yellow]No balance found[/yellow]")
                    return

                table = Table(title="Balances")
                table.add_column("Mint", style="cyan")
                table.add_column("Unit")
                table.add_column("Spendable", justify="right", style="green")
                table.add_column("Pending", justify="right", style="yellow")
                for mint_url, mint_unit, spendable, pending in rows:
                    table.add_row(mint_url, mint_unit, str(spendable), str(pending))
                console.print(table)
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_balance())


@app.command()
def transactions(
    limit: Annotated[
        int, typer.Option("--limit", "-l", help="Maximum number of entries to show")
    ] = 20,
    status: Annotated[
        Optional[str], typer.Option("--status", "-s", help="Only show this status")
    ] = None,
) -> None:
    """Show wallet transactions, newest first."""

    async def _transactions() -> None:
        try:
            async with await open_wallet() as wallet:
                entries = list(reversed(wallet.transactions.all()))
                if status:
                    entries = [tx for tx in entries if tx.status.value == status.upper()]
                if not entries:
                    console.print("[yellow]ℹ️ No transactions found[/yellow]")
                    return

                table = Table(show_header=True, header_style="bold cyan")
                table.add_column("ID", justify="right")
                table.add_column("Date", style="dim")
                table.add_column("Type")
                table.add_column("Status")
                table.add_column("Amount", justify="right", style="green")
                table.add_column("Mint", style="dim")
                for tx in entries[:limit]:
                    table.add_row(
                        str(tx.id),
                        datetime.fromtimestamp(tx.created_at).strftime("%Y-%m-%d %H:%M"),
                        tx.type.value,
                        tx.status.value,
                        f"{tx.amount} {tx.unit}",
                        tx.mint_url,
                    )
                console.print(table)

                if len(entries) > limit:
                    console.print(
                        f"\n[dim]Showing {limit} of {len(entries)} entries. Use --limit to show more.[/dim]"
                    )
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_transactions())


@app.command()
def counters() -> None:
    """Show derivation counters and in-flight reservations."""

    async def _counters() -> None:
        try:
            async with await open_wallet() as wallet:
                if not wallet.counters.counters:
                    console.print("[yellow]No counters yet[/yellow]")
                    return

                table = Table(title="Counters")
                table.add_column("Mint", style="cyan")
                table.add_column("Keyset")
                table.add_column("Counter", justify="right")
                table.add_column("In flight", style="yellow")
                for counter in wallet.counters.counters:
                    in_flight = (
                        f"[{counter.in_flight_from}, {counter.in_flight_to}) "
                        f"tx {counter.in_flight_tid}"
                        if counter.is_in_flight
                        else "-"
                    )
                    table.add_row(
                        counter.mint_url,
                        counter.keyset_id,
                        str(counter.counter),
                        in_flight,
                    )
                console.print(table)
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_counters())


@app.command()
def keysets(
    mint_url: Annotated[str, typer.Argument(help="Mint URL")],
) -> None:
    """Fetch and show a mint's keysets."""

    async def _keysets() -> None:
        try:
            async with await open_wallet() as wallet:
                found = await wallet.add_mint(mint_url)
                table = Table(title=f"Keysets of {mint_url}")
                table.add_column("ID", style="cyan")
                table.add_column("Unit")
                table.add_column("Active")
                table.add_column("Fee (ppk)", justify="right")
                table.add_column("Denominations", style="dim")
                for keyset in found:
                    table.add_row(
                        keyset.id,
                        keyset.unit,
                        "✅" if keyset.active else "-",
                        str(keyset.input_fee_ppk),
                        str(len(keyset.denominations)),
                    )
                console.print(table)
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_keysets())


@app.command()
def sync(
    pending_only: Annotated[
        bool, typer.Option("--pending-only", help="Only sync pending proofs")
    ] = False,
) -> None:
    """Reconcile proofs with their mints."""

    async def _sync() -> None:
        try:
            async with await open_wallet() as wallet:
                results = await wallet.check_pending()
                if not pending_only:
                    results += await wallet.check_spent()
                if not results:
                    console.print("[yellow]Nothing to sync[/yellow]")
                    return
                for result in results:
                    _print_sync_result(result)
                offline = [
                    url
                    for url, mint_status in wallet.mint_statuses.items()
                    if mint_status == MintStatus.OFFLINE
                ]
                if offline:
                    console.print(f"[red]Offline mints: {', '.join(offline)}[/red]")
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_sync())


@app.command()
def recover() -> None:
    """Restore proofs for mint calls interrupted mid-flight."""

    async def _recover() -> None:
        try:
            async with await open_wallet() as wallet:
                results = await wallet.check_in_flight()
                if not results:
                    console.print("[green]✅ No in-flight operations[/green]")
                    return
                for result in results:
                    label = (
                        f"{result.mint_url} [{result.in_flight_from}, "
                        f"{result.in_flight_to}) tx {result.transaction_id}"
                    )
                    if result.error is not None:
                        console.print(f"[red]❌ {label}: {result.error}[/red]")
                    else:
                        console.print(
                            f"[green]✅ {label}: recovered {result.recovered_count} "
                            f"proofs ({result.recovered_amount}), "
                            f"{result.spent_count} already spent[/green]"
                        )
        except WalletError as e:
            handle_wallet_error(e)

    asyncio.run(_recover())


def version_callback(value: bool) -> None:
    """Handle version flag."""
    if value:
        console.print(f"Nuts Ledger v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, help="Show version"),
    ] = None,
    log_level: Annotated[
        Optional[str],
        typer.Option("--log-level", help="Log level (defaults to NUTLEDGER_LOG_LEVEL)"),
    ] = None,
) -> None:
    """Nuts Ledger - Cashu wallet proof ledger CLI.

    📝 CONFIGURATION (environment or cwd/.env file):
    • CASHU_MINTS="https://mint1.com,https://mint2.com"
    • NUTLEDGER_SEED="<hex seed>" (needed for minting and recovery)
    • NUTLEDGER_DATA="nutledger.json"
    • MINT_DEBUG=true logs every mint request
    """
    try:
        configure_logging(log_level or Settings.from_env().log_level)
    except WalletError as e:
        handle_wallet_error(e)


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
