"""
CLI interface for Tokenwise.

Provides a cost dashboard over the local SQLite usage log.
"""

import sqlite3
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from tokenwise.config.loader import DEFAULT_SQLITE_FILENAME, DEFAULT_TABLE_NAME
from tokenwise.storage.models import LogStatus
from tokenwise.storage.repository import LogRepository

app = typer.Typer(help="Analyze and monitor your LLM API costs.")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

NO_DATABASE_MESSAGE = (
    "Could not find the usage log. Make sure you have run your monitored "
    "application to generate logs."
)


def _get_repository(db: str, table: str) -> LogRepository:
    return LogRepository(db, table)


def _format_cost(cost: Optional[float]) -> str:
    """Format a cost with enough precision for per-request amounts."""
    if cost is None:
        return "N/A"
    return f"${cost:,.6f}"


def _format_timestamp(timestamp: str) -> str:
    try:
        return datetime.fromisoformat(timestamp.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return timestamp


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Tokenwise CLI."""
    if ctx.invoked_subcommand is None:
        console.print("Tokenwise - Use --help to see available commands")


@app.command()
def dashboard(
    group_by: Optional[str] = typer.Option(
        None,
        "--group-by",
        "-g",
        help="Group the results by a metadata key"
    ),
    db: str = typer.Option(
        DEFAULT_SQLITE_FILENAME,
        "--db",
        help="Path to the SQLite usage log"
    ),
    table: str = typer.Option(
        DEFAULT_TABLE_NAME,
        "--table",
        help="Usage log table name"
    )
):
    """Display a dashboard with a summary of your LLM costs."""
    try:
        repository = _get_repository(db, table)
        if not repository.exists():
            console.print(f"[bold yellow]{NO_DATABASE_MESSAGE}[/]")
            sys.exit(EXIT_CODE_PASS)

        if group_by:
            _display_grouped(repository, group_by)
        else:
            _display_logs(repository)
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def summary(
    group_by: Optional[str] = typer.Option(
        None,
        "--group-by",
        "-g",
        help="Sum cost per value of this metadata key"
    ),
    db: str = typer.Option(DEFAULT_SQLITE_FILENAME, "--db", help="Path to the SQLite usage log"),
    table: str = typer.Option(DEFAULT_TABLE_NAME, "--table", help="Usage log table name")
):
    """Print total cost, optionally grouped by a metadata key."""
    try:
        repository = _get_repository(db, table)
        costs = repository.get_cost_summary(group_by)
        if group_by:
            if not costs:
                console.print("No logs found with that metadata key.")
            for value, cost in costs.items():
                console.print(f"{value}: {_format_cost(cost)}")
        else:
            console.print(f"Total Cost: {_format_cost(costs.get('total_cost') or 0.0)}")
        sys.exit(EXIT_CODE_PASS)
    except (ValueError, sqlite3.Error) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _display_logs(repository: LogRepository):
    """Display every stored request with a running total."""
    logs = repository.get_logs()
    if not logs:
        console.print("No logs found.")
        return

    table = Table(title="LLM Cost Dashboard")
    table.add_column("timestamp", justify="left")
    table.add_column("model", justify="left")
    table.add_column("provider", justify="left")
    table.add_column("cost", justify="right")
    table.add_column("latency_ms", justify="right")
    table.add_column("status", justify="left")

    total_cost = 0.0
    for log in logs:
        style = "red" if log.status is LogStatus.ERROR else "green"
        table.add_row(
            _format_timestamp(log.timestamp),
            log.model,
            log.provider,
            _format_cost(log.cost),
            str(log.latency_ms),
            log.status.value,
            style=style
        )
        total_cost += log.cost or 0.0

    console.print(table)
    console.print(f"\nTotal Cost: {_format_cost(total_cost)}")


def _display_grouped(repository: LogRepository, group_by: str):
    """Display calls, cost and latency per metadata value."""
    groups = repository.get_group_summaries(group_by)
    if not groups:
        console.print("No logs found with that metadata key.")
        return

    table = Table(title=f"Cost Dashboard Grouped by {group_by}")
    table.add_column("grouped_by", justify="left")
    table.add_column("total_calls", justify="right")
    table.add_column("total_cost", justify="right")
    table.add_column("avg_latency", justify="right")

    for group in groups:
        table.add_row(
            str(group.grouped_by),
            str(group.total_calls),
            _format_cost(group.total_cost),
            f"{group.avg_latency:.0f}ms"
        )
    console.print(table)


if __name__ == "__main__":
    app()
