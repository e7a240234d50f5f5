"""Shared console, option and rendering helpers for the CLI."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from dbtransfer.config import ConfigError
from dbtransfer.exceptions import TransferCancelled, TransferError
from dbtransfer.models.transfer import (
    ErrorEvent,
    ProgressEvent,
    StatusEvent,
    TransferEvent,
    TransferOptions,
    TransferStats,
    WarningEvent,
)
from dbtransfer.utils.cancellation import CancellationToken
from dbtransfer.utils.logger import setup_console_logging

console = Console()


def validate_batch_size(value: int) -> int:
    """Validate batch size is positive."""
    if value <= 0:
        raise typer.BadParameter("--batch-size must be greater than 0")
    return value


def validate_jobs(value: int) -> int:
    """Validate job count is positive."""
    if value <= 0:
        raise typer.BadParameter("--jobs must be greater than 0")
    return value


def get_batch_size_option(default: int = 1000) -> typer.Option:
    return typer.Option(
        default,
        "--batch-size",
        callback=validate_batch_size,
        help=f"Rows per INSERT / statements per transaction (default: {default})",
    )


def get_continue_option() -> typer.Option:
    return typer.Option(
        False, "--continue", help="Skip statements the server rejects instead of stopping"
    )


def get_verbose_option() -> typer.Option:
    return typer.Option(False, "--verbose", "-v", help="Show debug logging")


def parse_assignments(values: Optional[List[str]], option: str) -> Dict[str, str]:
    """Parse repeated ``NAME=VALUE`` options."""
    result: Dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"{option} expects NAME=VALUE, got {item!r}")
        result[name.strip()] = value.strip()
    return result


class ProgressSink:
    """Renders transfer events with a rich progress display."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._tasks: Dict[Tuple[Optional[str], str], TaskID] = {}

    def _task(self, event: ProgressEvent) -> TaskID:
        key = (event.table, event.unit)
        if key not in self._tasks:
            label = event.table or event.unit
            self._tasks[key] = self.progress.add_task(
                label, total=event.total if event.total >= 0 else None
            )
        return self._tasks[key]

    def __call__(self, event: TransferEvent) -> None:
        if isinstance(event, ProgressEvent):
            task = self._task(event)
            total = event.total if event.total >= 0 else None
            self.progress.update(task, completed=event.current, total=total)
        elif isinstance(event, WarningEvent):
            self.progress.console.print(f"[yellow]Warning:[/yellow] {event.message}")
        elif isinstance(event, ErrorEvent):
            self.progress.console.print(f"[red]Skipped:[/red] {event.message}")
            if event.statement:
                self.progress.console.print(f"  [dim]{event.statement[:200]}[/dim]")
        elif isinstance(event, StatusEvent):
            self.progress.console.print(f"[dim]{event.line}[/dim]")


def print_stats(title: str, stats: TransferStats) -> None:
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="yellow", justify="right")
    table.add_row("Tables", f"{stats.tables_transferred:,}")
    table.add_row("Rows", f"{stats.rows_transferred:,}")
    table.add_row("Statements", f"{stats.statements_executed:,}")
    if stats.bytes_read:
        table.add_row("Bytes read", f"{stats.bytes_read:,}")
    if stats.bytes_written:
        table.add_row("Bytes written", f"{stats.bytes_written:,}")
    table.add_row("Errors skipped", f"{stats.errors_skipped:,}")
    table.add_row("Warnings", f"{len(stats.warnings):,}")
    table.add_row("Duration", f"{stats.duration:.2f}s")
    console.print(table)


def run_operation(
    title: str,
    operation: Callable[[TransferOptions], Awaitable[TransferStats]],
    options: TransferOptions,
    verbose: bool = False,
) -> TransferStats:
    """
    Run one transfer coroutine with a progress display and print its stats.

    Exits with status 1 on a transfer error and 130 on interruption.
    """
    setup_console_logging(logging.DEBUG if verbose else logging.WARNING)
    token = options.cancel_token or CancellationToken()

    with Progress(
        TextColumn("[cyan]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        options = replace(options, progress=ProgressSink(progress), cancel_token=token)
        console.rule(f"[bold cyan]{title}[/bold cyan]")
        try:
            stats = asyncio.run(operation(options))
        except KeyboardInterrupt:
            token.cancel()
            console.print("[yellow]Interrupted.[/yellow]")
            raise typer.Exit(130)
        except TransferCancelled:
            console.print("[yellow]Cancelled.[/yellow]")
            raise typer.Exit(130)
        except TransferError as e:
            console.print(f"[bold red]{title} failed:[/bold red] {e}")
            statement = getattr(e, "statement", None)
            if statement:
                console.print(f"[dim]{statement[:500]}[/dim]")
            if e.stats is not None:
                print_stats(f"{title} (partial)", e.stats)
            raise typer.Exit(1)

    print_stats(title, stats)
    if stats.errors_skipped:
        console.print(
            f"[bold yellow]Completed with {stats.errors_skipped} skipped error(s)[/bold yellow]"
        )
    else:
        console.print(f"[bold green]{title} completed[/bold green]")
    return stats


def config_or_exit(factory: Callable[[], object]):
    """Build configuration, turning ConfigError into a clean exit."""
    try:
        return factory()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)
