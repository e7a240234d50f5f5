"""Live transfer commands: clone, copy and merge."""

from typing import List, Optional

import typer

from dbtransfer.cli.common import (
    config_or_exit,
    get_batch_size_option,
    get_continue_option,
    get_verbose_option,
    parse_assignments,
    run_operation,
)
from dbtransfer.config import source_config, target_config
from dbtransfer.models.transfer import (
    ConflictAction,
    DatabaseLocator,
    ErrorPolicy,
    TransferOptions,
)
from dbtransfer.services.conflict_resolver import decision_table
from dbtransfer.services.transfer_service import TransferService

CONFLICT_CHOICES = ", ".join(a.value for a in ConflictAction)


def _conflict_action(value: str) -> ConflictAction:
    try:
        return ConflictAction(value.lower())
    except ValueError:
        raise typer.BadParameter(f"{value!r} is not one of: {CONFLICT_CHOICES}")


def register_live_commands(app: typer.Typer) -> None:
    """Register clone/copy/merge commands."""

    @app.command("clone")
    def clone_command(
        source_db: str = typer.Argument(..., help="Source database (SOURCE_* server)"),
        target_db: str = typer.Argument(..., help="Destination database (TARGET_* server)"),
        tables: Optional[List[str]] = typer.Option(None, "--table", "-t", help="Clone only this table (repeatable)"),
        no_data: bool = typer.Option(False, "--no-data", help="Clone structure only"),
        drop: bool = typer.Option(False, "--drop", help="Drop existing destination tables first"),
        create_db: bool = typer.Option(False, "--create-db", help="Create the destination database if missing"),
        continue_on_error: bool = get_continue_option(),
        batch_size: int = get_batch_size_option(),
        verbose: bool = get_verbose_option(),
    ):
        """Clone a database between live connections."""
        source = config_or_exit(lambda: source_config(source_db))
        target = config_or_exit(lambda: target_config(target_db))
        options = TransferOptions(
            source=DatabaseLocator(source, source_db),
            destination=DatabaseLocator(target, target_db),
            tables=tuple(tables or ()),
            include_data=not no_data,
            drop_if_exists=drop,
            create_db=create_db,
            error_policy=ErrorPolicy.CONTINUE if continue_on_error else ErrorPolicy.STOP,
            batch_size=batch_size,
        )
        run_operation("Clone", TransferService().clone, options, verbose)

    @app.command("copy")
    def copy_command(
        source_db: str = typer.Argument(..., help="Source database (SOURCE_* server)"),
        table: str = typer.Argument(..., help="Table to copy"),
        target_db: Optional[str] = typer.Argument(None, help="Destination database (default: source database)"),
        target_table: Optional[str] = typer.Option(None, "--as", help="Destination table name"),
        where: Optional[str] = typer.Option(None, "--where", help="Row filter, e.g. \"created_at > '2024-01-01'\""),
        drop: bool = typer.Option(False, "--drop", help="Replace an existing destination table"),
        no_create: bool = typer.Option(False, "--no-create", help="Append rows to an existing table"),
        no_data: bool = typer.Option(False, "--no-data", help="Copy structure only"),
        create_db: bool = typer.Option(False, "--create-db", help="Create the destination database if missing"),
        continue_on_error: bool = get_continue_option(),
        batch_size: int = get_batch_size_option(),
        verbose: bool = get_verbose_option(),
    ):
        """Copy one table, optionally filtered, to another table or database."""
        source = config_or_exit(lambda: source_config(source_db))
        target = config_or_exit(lambda: target_config(target_db or source_db))
        options = TransferOptions(
            source=DatabaseLocator(source, source_db, table),
            destination=DatabaseLocator(target, target_db or source_db, target_table),
            where=where,
            include_data=not no_data,
            include_schema=not no_create,
            drop_if_exists=drop,
            create_db=create_db,
            error_policy=ErrorPolicy.CONTINUE if continue_on_error else ErrorPolicy.STOP,
            batch_size=batch_size,
        )
        run_operation("Copy", TransferService().copy_table, options, verbose)

    @app.command("merge")
    def merge_command(
        target_db: str = typer.Argument(..., help="Destination database (TARGET_* server)"),
        sources: List[str] = typer.Argument(..., help="Source databases, merged in order (SOURCE_* server)"),
        on_conflict: str = typer.Option("skip", "--on-conflict", help=f"Default action for existing tables: {CONFLICT_CHOICES}"),
        conflicts: Optional[List[str]] = typer.Option(
            None, "--conflict", help="Per-table action TABLE=ACTION or SOURCE.TABLE=ACTION (repeatable)"
        ),
        tables: Optional[List[str]] = typer.Option(None, "--table", "-t", help="Merge only this table (repeatable)"),
        no_data: bool = typer.Option(False, "--no-data", help="Merge structure only"),
        create_db: bool = typer.Option(False, "--create-db", help="Create the destination database if missing"),
        continue_on_error: bool = get_continue_option(),
        batch_size: int = get_batch_size_option(),
        verbose: bool = get_verbose_option(),
    ):
        """Merge several databases into one."""
        default = _conflict_action(on_conflict)
        mapping = {
            key: _conflict_action(value)
            for key, value in parse_assignments(conflicts, "--conflict").items()
        }
        source = config_or_exit(lambda: source_config(sources[0]))
        target = config_or_exit(lambda: target_config(target_db))
        options = TransferOptions(
            source=DatabaseLocator(source, sources[0]),
            destination=DatabaseLocator(target, target_db),
            merge_sources=tuple(sources),
            conflict_decision=decision_table(mapping, default),
            tables=tuple(tables or ()),
            include_data=not no_data,
            create_db=create_db,
            error_policy=ErrorPolicy.CONTINUE if continue_on_error else ErrorPolicy.STOP,
            batch_size=batch_size,
        )
        run_operation("Merge", TransferService().merge, options, verbose)
