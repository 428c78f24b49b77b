"""
CLI interface for the subscription lifecycle processor.

Provides command-line access to price recommendations, webhook replay and
the plan change ledger.
"""

import logging
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from subscription_lifecycle.config.loader import AppConfig, load_config
from subscription_lifecycle.core.errors import LifecycleError, ValidationError
from subscription_lifecycle.services import build_gateway, build_payment_services
from subscription_lifecycle.storage.models import (
    DateRange,
    PlanChangeLogEntry,
    RecommendationSource,
)
from subscription_lifecycle.storage.repository import (
    fetch_recent_recommendations,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


class WebhookProvider(str, Enum):
    TOSS = "toss"
    STRIPE = "stripe"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """Subscription lifecycle CLI."""
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/] {e}")
        raise typer.Exit(EXIT_CODE_FAIL)

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)]
    )
    ctx.obj = config
    if ctx.invoked_subcommand is None:
        console.print("Subscription lifecycle - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the ledger database."""
    config: AppConfig = ctx.obj
    try:
        initialize_schema(config.storage.database_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def recommend(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Customer and product description"),
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Requesting user email")
):
    """Recommend a price for a prompt."""
    config: AppConfig = ctx.obj
    gateway = build_gateway(config)
    try:
        result = gateway.recommend(prompt, email)
    except ValidationError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        gateway.close()

    console.print(f"[bold]Suggested price:[/bold] {result.suggested_price:,}")
    console.print(f"[bold]Reason:[/bold] {result.reason}")
    console.print(f"[dim]Source: {result.source.value}[/]")


@app.command()
def webhook(
    ctx: typer.Context,
    body_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON webhook body"),
    signature: Optional[str] = typer.Option(None, "--signature", "-s", help="Webhook signature"),
    provider: WebhookProvider = typer.Option(WebhookProvider.TOSS, "--provider", "-p", help="Payment provider")
):
    """Replay a webhook body through the payment processor."""
    config: AppConfig = ctx.obj
    services = build_payment_services(config)
    ingress = services.stripe_ingress if provider == WebhookProvider.STRIPE else services.ingress
    response = ingress.handle(body_file.read_bytes(), signature=signature)

    color = "green" if response.status_code == 200 else "red"
    console.print(f"[{color}]{response.status_code}[/] {response.body}")
    sys.exit(EXIT_CODE_PASS if response.status_code == 200 else EXIT_CODE_FAIL)


@app.command()
def history(
    ctx: typer.Context,
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Filter by user email"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Earliest creation time"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Latest creation time"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum entries to show")
):
    """Show plan change ledger entries, newest first."""
    config: AppConfig = ctx.obj
    services = build_payment_services(config)
    try:
        entries = services.ledger.query(user_email=email, date_range=_date_range(start, end), limit=limit)
    except LifecycleError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[dim]No plan changes recorded.[/]")
        return
    _display_entries(entries)


@app.command("current-plan")
def current_plan(
    ctx: typer.Context,
    user_id: str = typer.Argument(..., help="User id (defaults to email for webhook users)")
):
    """Show the plan currently in effect for a user."""
    config: AppConfig = ctx.obj
    services = build_payment_services(config)
    summary = services.ledger.current_plan_summary(user_id)

    console.print(f"[bold]Plan:[/bold] {summary.plan.value}")
    features = summary.features
    console.print(f"Monthly queries: {_format_limit(features.monthly_queries)}")
    console.print(f"File uploads: {_format_limit(features.file_uploads)}")
    console.print(f"API access: {'yes' if features.api_access else 'no'}")


@app.command()
def export(
    ctx: typer.Context,
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Filter by user email"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Earliest creation time"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Latest creation time")
):
    """Show completed plan changes as export rows."""
    config: AppConfig = ctx.obj
    services = build_payment_services(config)
    rows = services.ledger.export_rows(user_email=email, date_range=_date_range(start, end))

    table = Table(title="Plan changes")
    for column in ("email", "previous plan", "new plan", "changed at"):
        table.add_column(column)
    for row in rows:
        table.add_row(row.email, row.previous_plan, row.new_plan, row.changed_at.isoformat())
    console.print(table)


@app.command()
def recommendations(
    ctx: typer.Context,
    email: Optional[str] = typer.Option(None, "--email", "-e", help="Filter by user email"),
    source: Optional[RecommendationSource] = typer.Option(None, "--source", help="Filter by source"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum records to show")
):
    """Show recent price recommendation requests."""
    config: AppConfig = ctx.obj
    initialize_schema(config.storage.database_path)
    records = fetch_recent_recommendations(
        email=email,
        source=source,
        limit=limit,
        db_path=config.storage.database_path
    )

    table = Table(title="Recommendation requests")
    for column in ("time", "email", "source", "price", "reason"):
        table.add_column(column)
    for record in records:
        table.add_row(
            record.timestamp.isoformat(),
            record.email,
            record.source.value,
            f"{record.suggested_price:,}",
            record.reason
        )
    console.print(table)


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    return DateRange(start=start, end=end)


def _format_limit(value: int) -> str:
    return "unlimited" if value < 0 else f"{value:,}"


def _display_entries(entries: List[PlanChangeLogEntry]) -> None:
    table = Table(title="Plan change log")
    for column in ("created", "email", "from", "to", "change", "status", "payment", "reason"):
        table.add_column(column)
    for entry in entries:
        table.add_row(
            entry.created_at.isoformat(),
            entry.user_email,
            entry.from_plan.value,
            entry.to_plan.value,
            entry.change_type.value,
            entry.status.value,
            entry.payment_id or "-",
            entry.reason
        )
    console.print(table)


if __name__ == "__main__":
    app()
