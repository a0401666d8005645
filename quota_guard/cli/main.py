"""
CLI interface for Quota Guard.

Provides command-line access to the usage ledger and rate limiter.
"""

import sys
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from quota_guard.config.loader import Tier
from quota_guard.config.log_setup import configure_logging
from quota_guard.config.settings import QuotaGuardSettings
from quota_guard.core.factory import build_limiter, load_rules
from quota_guard.core.limiter import RateLimitStatus
from quota_guard.storage.repository import UsageRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1
EXIT_CODE_REJECTED = 2


def get_settings() -> QuotaGuardSettings:
    return QuotaGuardSettings()


def _parse_metadata(pairs: List[str]) -> Optional[Dict[str, str]]:
    """Turn ``key=value`` options into a metadata dict."""
    if not pairs:
        return None
    metadata = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Metadata must be given as key=value, got '{pair}'")
        metadata[key] = value
    return metadata


def _print_status(subject: str, operation: str, tier: Tier, status: RateLimitStatus) -> None:
    console.print(f"\n[bold]Subject:[/bold] {subject}")
    console.print(f"[bold]Operation:[/bold] {operation} ({tier.value})")
    if status.unlimited:
        console.print("No rate limit configured for this operation")
        return
    console.print(f"Limit: {status.limit} per {int(status.rule.window_seconds)}s")
    console.print(f"Used in window: {status.count}")
    console.print(f"Remaining: {int(status.remaining)}")
    console.print(f"Resets at: {status.reset_at.isoformat()}")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """Quota Guard CLI."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.structured_logging)
    if ctx.invoked_subcommand is None:
        console.print("Quota Guard - Use --help to see available commands")


@app.command()
def init():
    """Initialize the usage ledger database."""
    try:
        initialize_schema(get_settings().db_path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def rules():
    """Show the active rate limit rules."""
    try:
        table_config = load_rules(get_settings())
    except Exception as e:
        console.print(f"[red]Error loading rules:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Rate Limit Rules")
    table.add_column("Operation")
    table.add_column("Tier")
    table.add_column("Max requests", justify="right")
    table.add_column("Window (s)", justify="right")
    for operation in table_config.operations:
        for rule in table_config.rules_for(operation):
            table.add_row(
                operation,
                rule.tier.value,
                str(rule.max_requests),
                f"{rule.window_seconds:g}"
            )
    console.print(table)


@app.command()
def check(
    subject: str = typer.Argument(..., help="Subject the quota is charged against"),
    operation: str = typer.Argument(..., help="Operation name"),
    tier: str = typer.Option("BASE", "--tier", "-t", help="Subject tier")
):
    """
    Check a subject's remaining quota without recording anything.

    Exits with code 2 when the subject is currently rate limited.
    """
    try:
        parsed_tier = Tier.parse(tier)
        limiter = build_limiter(get_settings())
        status = limiter.check(subject, operation, parsed_tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _print_status(subject, operation, parsed_tier, status)
    if status.admitted:
        console.print("\n[bold]Verdict:[/bold] [green]ADMIT[/]")
        sys.exit(EXIT_CODE_PASS)
    console.print("\n[bold]Verdict:[/bold] [red]REJECT[/]")
    sys.exit(EXIT_CODE_REJECTED)


@app.command()
def record(
    subject: str = typer.Argument(..., help="Subject the usage is charged against"),
    operation: str = typer.Argument(..., help="Operation name"),
    tier: str = typer.Option("BASE", "--tier", "-t", help="Subject tier"),
    cost: Optional[float] = typer.Option(None, "--cost", "-c", help="Cost of the operation"),
    meta: List[str] = typer.Option([], "--meta", "-m", help="Metadata entry as key=value"),
    enforced: bool = typer.Option(
        False,
        "--enforced",
        "-e",
        help="Refuse to record when the subject is rate limited"
    )
):
    """Record one usage event."""
    try:
        parsed_tier = Tier.parse(tier)
        metadata = _parse_metadata(meta)
        limiter = build_limiter(get_settings())

        if enforced:
            admission = limiter.admit_or_reject(subject, operation, parsed_tier)
            if not admission.admitted:
                rejection = admission.rejection
                console.print(
                    f"[red]Rate limit exceeded[/] for {operation} ({parsed_tier.value}), "
                    f"retry after {rejection.retry_after}s"
                )
                sys.exit(EXIT_CODE_REJECTED)

        event = limiter.record(subject, operation, cost=cost, metadata=metadata)
        status = limiter.check(subject, operation, parsed_tier)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Recorded event {event.id}")
    _print_status(subject, operation, parsed_tier, status)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    subject: str = typer.Argument(..., help="Subject to summarise"),
    operation: Optional[str] = typer.Option(None, "--operation", "-o", help="Filter to one operation"),
    days: int = typer.Option(30, "--days", "-d", help="Days to look back")
):
    """Summarise a subject's recorded usage."""
    try:
        settings = get_settings()
        initialize_schema(settings.db_path)
        repository = UsageRepository(settings.db_path)
        summary = repository.get_usage_stats(subject=subject, operation=operation, days=days)
        counts = repository.get_operation_counts(subject, days=days)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if operation:
        counts = {name: count for name, count in counts.items() if name == operation}

    if not summary["total_requests"]:
        console.print(f"\n[bold yellow]No usage recorded for {subject} in the last {days} days[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Usage for {subject} (last {days} days)")
    table.add_column("Operation")
    table.add_column("Events", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)
    console.print(f"Total requests: {summary['total_requests']}")
    console.print(f"Total cost: ${summary['total_cost']:,.2f}")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
