"""
CLI interface for reading credits.

Provides command-line access to balances, debits and admin adjustments.
"""

import logging
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from reading_credits.config.loader import CreditsConfig, LedgerConfig, default_config, load_config
from reading_credits.core.admin import UNSET
from reading_credits.core.errors import CreditError
from reading_credits.core.service import CreditService

app = typer.Typer()
console = Console()

# Exit codes - a denied debit is an expected outcome but scripts need to see it
EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_DENIED = 2

_state = {"config_path": None, "database": None}


def build_service(config: CreditsConfig) -> CreditService:
    """Create the service used by a command."""
    return CreditService(config)


def _load_service() -> CreditService:
    config_path = _state["config_path"]
    config = load_config(config_path) if config_path else default_config()
    if _state["database"]:
        ledger = config.ledger
        config = CreditsConfig(
            features=config.features,
            ledger=LedgerConfig(
                database=_state["database"],
                fallback=ledger.fallback,
                retries=ledger.retries,
                busy_timeout=ledger.busy_timeout
            ),
            legacy=config.legacy
        )
    return build_service(config)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        help="Override the ledger database path"
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        help="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
):
    """Reading credits CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True
    )
    _state["config_path"] = config
    _state["database"] = db
    if ctx.invoked_subcommand is None:
        console.print("Reading credits - Use --help to see available commands")


@app.command()
def init():
    """Initialize the ledger database."""
    try:
        _load_service().initialize()
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def costs():
    """Show the feature cost table."""
    try:
        service = _load_service()
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    table = Table(title="Feature costs")
    table.add_column("Feature")
    table.add_column("Cost", justify="right")
    for feature, cost in sorted(service.cost_table().items()):
        table.add_row(feature, str(cost))
    console.print(table)


@app.command()
def balance(account: str = typer.Argument(..., help="Account (user) id")):
    """Show the usable balance of an account."""
    try:
        result = _load_service().get_balance(account)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Balance for {account}: [bold]{result.amount}[/] (source: {result.source})")


@app.command()
def debit(
    account: str = typer.Argument(..., help="Account (user) id"),
    feature: str = typer.Argument(..., help="Feature key, e.g. classic10")
):
    """Charge one use of a feature."""
    try:
        result = _load_service().debit(account, feature)
    except CreditError as e:
        console.print(f"[red]{e.code}:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    if not result.granted:
        console.print(
            f"[yellow]INSUFFICIENT_FUNDS:[/] {feature} costs {result.cost}, "
            f"balance is {result.new_balance}"
        )
        sys.exit(EXIT_CODE_DENIED)
    
    console.print(
        f"[green]✓[/] Charged {result.cost} for {feature}. New balance: {result.new_balance}"
    )
    if result.consistency.value != "atomic":
        console.print("[yellow]Applied via best-effort fallback[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def topup(
    account: str = typer.Argument(..., help="Account (user) id"),
    amount: int = typer.Argument(..., help="Signed amount; negative deducts"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Reason for the adjustment")
):
    """Add or deduct credits (admin)."""
    try:
        new_balance = _load_service().top_up(account, amount, note)
    except CreditError as e:
        console.print(f"[red]{e.code}:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] New balance for {account}: {new_balance}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(
    account: str = typer.Argument(..., help="Account (user) id"),
    daily: Optional[int] = typer.Option(None, "--daily", "-d", help="Daily quota"),
    monthly: Optional[int] = typer.Option(None, "--monthly", "-m", help="Monthly quota"),
    clear_daily: bool = typer.Option(False, "--clear-daily", help="Remove the daily quota"),
    clear_monthly: bool = typer.Option(False, "--clear-monthly", help="Remove the monthly quota")
):
    """Edit the quotas of an account (admin)."""
    if (clear_daily and daily is not None) or (clear_monthly and monthly is not None):
        console.print("[red]Error:[/] a quota cannot be set and cleared in the same call")
        sys.exit(EXIT_CODE_FAIL)
    daily_quota = None if clear_daily else (daily if daily is not None else UNSET)
    monthly_quota = None if clear_monthly else (monthly if monthly is not None else UNSET)
    try:
        account_row = _load_service().set_quota(account, daily_quota, monthly_quota)
    except CreditError as e:
        console.print(f"[red]{e.code}:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    console.print(f"[green]✓[/] Updated {account}")
    console.print(f"Daily quota: {_format_quota(account_row.daily_quota)}")
    console.print(f"Monthly quota: {_format_quota(account_row.monthly_quota)}")
    console.print(f"Next reset: {account_row.next_reset_at or '-'}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def account(account_id: str = typer.Argument(..., metavar="ACCOUNT", help="Account (user) id")):
    """Show balance, quotas, plan and next reset of an account."""
    try:
        service = _load_service()
        row = service.get_account(account_id)
        result = service.get_balance(account_id)
    except (OSError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    console.print(f"Balance for {account_id}: [bold]{result.amount}[/] (source: {result.source})")
    if row is None:
        console.print(f"[dim]No credit account for {account_id}.[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"Plan: {row.plan}")
    console.print(f"Daily quota: {_format_quota(row.daily_quota)}")
    console.print(f"Monthly quota: {_format_quota(row.monthly_quota)}")
    console.print(f"Next reset: {row.next_reset_at or '-'}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def accounts(limit: int = typer.Option(100, "--limit", "-l", help="Number of accounts to show")):
    """List the balance of every credit account."""
    try:
        balances = _load_service().list_balances(limit=limit)
    except (OSError, ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    if not balances:
        console.print("\n[dim]No credit accounts.[/]")
        return
    
    table = Table(title="Credit accounts")
    table.add_column("Account")
    table.add_column("Balance", justify="right")
    table.add_column("Plan")
    for item in balances:
        table.add_row(item.account_id, str(item.amount), item.plan or "")
    console.print(table)


@app.command()
def history(
    account: str = typer.Argument(..., help="Account (user) id"),
    limit: int = typer.Option(20, "--limit", "-l", help="Number of entries to show")
):
    """Show recent ledger entries for an account."""
    try:
        entries = _load_service().history(account, limit=limit)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    
    if not entries:
        console.print(f"\n[dim]No ledger entries for {account}.[/]")
        return
    
    table = Table(title=f"Ledger for {account}")
    table.add_column("Time")
    table.add_column("Kind")
    table.add_column("Delta", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Feature")
    table.add_column("Note")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.kind.value,
            _format_delta(entry.delta),
            str(entry.resulting_balance),
            entry.feature_key or "",
            entry.note or ""
        )
    console.print(table)


def _format_quota(value: Optional[int]) -> str:
    return "none" if value is None else str(value)


def _format_delta(delta: int) -> str:
    """Format a balance change with its sign."""
    return f"{'+' if delta >= 0 else ''}{delta}"


if __name__ == "__main__":
    app()
