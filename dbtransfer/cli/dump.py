"""Dump file commands: export, import and restore."""

from pathlib import Path
from typing import List, Optional

import typer

from dbtransfer.cli.common import (
    config_or_exit,
    get_batch_size_option,
    get_continue_option,
    get_verbose_option,
    parse_assignments,
    run_operation,
    validate_jobs,
)
from dbtransfer.config import get_bool, source_config, target_config
from dbtransfer.models.transfer import DatabaseLocator, ErrorPolicy, TransferOptions
from dbtransfer.services.transfer_service import TransferService


def register_dump_commands(app: typer.Typer) -> None:
    """Register export/import/restore commands."""

    @app.command("export")
    def export_command(
        database: str = typer.Argument(..., help="Database to export (SOURCE_* server)"),
        output: Path = typer.Argument(..., help="Dump file; .gz/.xz/.zst compress, .dump/.tar use pg_dump"),
        tables: Optional[List[str]] = typer.Option(None, "--table", "-t", help="Export only this table (repeatable)"),
        no_data: bool = typer.Option(False, "--no-data", help="Export structure only"),
        no_create: bool = typer.Option(False, "--no-create", help="Export data only"),
        drop: bool = typer.Option(False, "--drop", help="Add DROP TABLE IF EXISTS before each CREATE"),
        where: Optional[str] = typer.Option(None, "--where", help="Row filter applied to every table"),
        compress: Optional[str] = typer.Option(None, "--compress", help="none, gzip, xz or zstd (default: from suffix)"),
        include_vars: bool = typer.Option(False, "--include-vars", help="Write current session variables as SET statements"),
        variables: Optional[List[str]] = typer.Option(
            None, "--var", help="Write only this session variable (repeatable; implies --include-vars)"
        ),
        native: bool = typer.Option(False, "--native", help="Use pg_dump (PostgreSQL only)"),
        batch_size: int = get_batch_size_option(),
        verbose: bool = get_verbose_option(),
    ):
        """Export a database to a SQL dump file."""
        config = config_or_exit(lambda: source_config(database))
        options = TransferOptions(
            source=DatabaseLocator(config, database),
            destination=output,
            tables=tuple(tables or ()),
            include_data=not no_data,
            include_schema=not no_create,
            drop_if_exists=drop,
            where=where,
            compression=compress,
            include_vars=include_vars,
            include_vars_list=tuple(variables or ()),
            use_native_tool=native,
            batch_size=batch_size,
        )
        run_operation("Export", TransferService().export, options, verbose)

    @app.command("import")
    def import_command(
        dump_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Dump file to import"),
        database: Optional[str] = typer.Option(None, "--database", "-d", help="Destination database (default: TARGET_DB)"),
        create_db: bool = typer.Option(False, "--create-db", help="Create the destination database if missing"),
        rename_db: Optional[str] = typer.Option(None, "--rename-db", help="Import into this database, ignoring database switches in the dump"),
        drop: bool = typer.Option(False, "--drop", help="Drop each table before the dump creates it"),
        resume_from: int = typer.Option(
            0, "--resume-from-byte", min=0, help="Start at this byte of an uncompressed dump"
        ),
        continue_on_error: bool = get_continue_option(),
        compress: Optional[str] = typer.Option(None, "--compress", help="none, gzip, xz or zstd (default: from suffix)"),
        keep_foreign_keys: bool = typer.Option(False, "--keep-foreign-key-checks", help="Leave foreign key checks enabled"),
        disable_unique: bool = typer.Option(False, "--disable-unique-checks", help="Disable unique checks during import"),
        variables: Optional[List[str]] = typer.Option(None, "--set", help="Session variable NAME=VALUE (repeatable)"),
        native: bool = typer.Option(False, "--native", help="Use psql/pg_restore (PostgreSQL only)"),
        jobs: int = typer.Option(1, "--jobs", "-j", callback=validate_jobs, help="Parallel pg_restore jobs"),
        batch_size: int = get_batch_size_option(),
        verbose: bool = get_verbose_option(),
    ):
        """Import a SQL dump (or PostgreSQL archive) into a database."""
        config = config_or_exit(lambda: target_config(database))
        disable_foreign_keys = not keep_foreign_keys and config_or_exit(
            lambda: get_bool("TRANSFER_DISABLE_FOREIGN_KEYS", True)
        )
        options = TransferOptions(
            source=dump_file,
            destination=DatabaseLocator(config, database or config.database),
            create_db=create_db,
            rename_db=rename_db,
            drop_if_exists=drop,
            resume_from_byte=resume_from,
            error_policy=ErrorPolicy.CONTINUE if continue_on_error else ErrorPolicy.STOP,
            compression=compress,
            disable_foreign_keys=disable_foreign_keys,
            disable_unique_checks=disable_unique,
            session_variables=tuple(parse_assignments(variables, "--set").items()),
            use_native_tool=native,
            jobs=jobs,
            batch_size=batch_size,
        )
        run_operation("Import", TransferService().import_dump, options, verbose)

    @app.command("restore")
    def restore_command(
        dump_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="pg_dump custom or tar archive"),
        database: Optional[str] = typer.Option(None, "--database", "-d", help="Destination database (default: TARGET_DB)"),
        create_db: bool = typer.Option(False, "--create-db", help="Create the destination database if missing"),
        clean: bool = typer.Option(False, "--clean", help="Drop objects before recreating them"),
        jobs: int = typer.Option(1, "--jobs", "-j", callback=validate_jobs, help="Parallel pg_restore jobs"),
        verbose: bool = get_verbose_option(),
    ):
        """Restore a PostgreSQL archive with pg_restore."""
        config = config_or_exit(lambda: target_config(database))
        options = TransferOptions(
            source=dump_file,
            destination=DatabaseLocator(config, database or config.database),
            create_db=create_db,
            drop_if_exists=clean,
            jobs=jobs,
        )
        run_operation("Restore", TransferService().restore_native, options, verbose)
