"""
CLI interface for token_meter.

Provides command-line access to quota status, subscriptions and the
rewrite flow.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from token_meter.config.loader import Settings, load_settings
from token_meter.core.errors import ConfigurationError, TokenMeterError
from token_meter.core.orchestrator import (
    AccountingOrchestrator,
    RewriteRequest,
    build_orchestrator,
    format_duration,
)
from token_meter.core.plans import calculate_monthly_tokens, calculate_star_price
from token_meter.storage.repository import (
    fetch_recent_usage_logs,
    get_user_stats,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_config_path: Optional[str] = None


def _settings() -> Settings:
    try:
        return load_settings(_config_path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


def _orchestrator(settings: Settings) -> AccountingOrchestrator:
    try:
        return build_orchestrator(settings)
    except TokenMeterError as e:
        console.print(f"[red]Startup failed:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML settings file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging"
    )
):
    """token_meter CLI."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if ctx.invoked_subcommand is None:
        console.print("token_meter - Use --help to see available commands")


@app.command()
def init():
    """Initialize the token_meter database."""
    settings = _settings()
    try:
        initialize_schema(settings.database_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status():
    """Check that Redis and the database are reachable."""
    _orchestrator(_settings())
    console.print("[green]✓[/] Redis and database are reachable")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def rewrite(
    user_id: int = typer.Argument(..., help="External user id"),
    text: str = typer.Argument(..., help="Message to rewrite"),
    username: str = typer.Option("", "--username", "-u", help="Username to record")
):
    """Run one message through quota accounting and the rewrite call."""
    orchestrator = _orchestrator(_settings())
    outcome = orchestrator.handle(RewriteRequest(user_id=user_id, text=text, username=username))

    console.print(outcome.reply)
    console.print(
        f"\n[dim]funded by: {outcome.funded_by.value} | "
        f"state: {outcome.state.value} | tokens: {outcome.tokens_used}[/]"
    )
    sys.exit(EXIT_CODE_PASS if outcome.allowed else EXIT_CODE_FAIL)


@app.command()
def stats(user_id: int = typer.Argument(..., help="External user id")):
    """Show today's usage and subscription status for a user."""
    settings = _settings()
    orchestrator = _orchestrator(settings)
    try:
        usage = orchestrator.usage_status(user_id)
        totals = get_user_stats(user_id, settings.database_path)
    except TokenMeterError as e:
        console.print(f"[red]Sorry, couldn't retrieve stats:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("\n[bold]Usage Statistics[/bold]")
    console.print("-" * 40)
    console.print(f"Requests today: {usage.daily.requests}")
    console.print(f"Tokens used: {usage.daily.tokens_used} / {usage.daily_limit}")
    console.print(f"Remaining: {usage.daily.remaining} tokens")
    console.print(f"Reset in: {format_duration(usage.time_until_reset)}")
    console.print(f"Lifetime: {totals['total_requests']} requests, {totals['total_tokens']} tokens\n")

    if usage.subscription:
        console.print(
            f"Subscription active until {usage.subscription.expires_at:%Y-%m-%d}. "
            f"Tokens left: {usage.subscription.remaining_tokens}"
        )
    else:
        console.print("No active subscription.")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def subscribe(
    user_id: int = typer.Argument(..., help="External user id"),
    username: str = typer.Option("", "--username", "-u", help="Username to record")
):
    """Record a subscription purchase, replacing any current period."""
    orchestrator = _orchestrator(_settings())
    try:
        subscription = orchestrator.record_purchase(user_id, username=username)
    except TokenMeterError as e:
        console.print(f"[red]Failed to activate the subscription:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    console.print("[green]✓[/] Subscription activated!")
    console.print(f"Tokens: {subscription.remaining_tokens} remaining")
    console.print(f"Expires: {subscription.expires_at:%Y-%m-%d}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def plan():
    """Show the monthly plan's token grant and price."""
    settings = _settings()
    tokens = calculate_monthly_tokens(settings.plan)
    stars = calculate_star_price(settings.plan, settings.stars_per_usd)

    console.print("\n[bold]Monthly Plan[/bold]")
    console.print("-" * 40)
    console.print(f"Tokens: {tokens:,}")
    console.print(f"Duration: {settings.plan.duration_days} days")
    console.print(f"Price: {stars} Stars (~${settings.plan.price_usd:.2f})")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def logs(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of entries to show")
):
    """Show the most recent usage log entries."""
    settings = _settings()
    try:
        entries = fetch_recent_usage_logs(limit=limit, db_path=settings.database_path)
    except Exception as e:
        console.print(f"[red]Error reading usage logs:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("\n[bold yellow]No usage recorded yet[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Recent Usage")
    table.add_column("Time")
    table.add_column("User")
    table.add_column("Pool")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("OK")
    for entry in entries:
        table.add_row(
            f"{entry.timestamp:%Y-%m-%d %H:%M:%S}",
            str(entry.user_id),
            entry.funding_source,
            str(entry.input_tokens),
            str(entry.output_tokens),
            str(entry.total_tokens),
            "[green]✓[/]" if entry.success else "[red]✗[/]"
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
