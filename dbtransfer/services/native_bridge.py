"""Bridge to the PostgreSQL client tools for native dump formats."""

from __future__ import annotations

import asyncio
import os
from collections import deque
from pathlib import Path
from typing import Deque, Dict, List, Optional, Sequence, Union

from dbtransfer.exceptions import ExternalToolError, TransferCancelled, TransferIOError
from dbtransfer.models.connection import ConnectionConfig, DialectName
from dbtransfer.models.transfer import TransferStats
from dbtransfer.utils.cancellation import CancellationToken
from dbtransfer.utils.logger import StructuredLogger
from dbtransfer.utils.progress_tracker import ProgressReporter, StatsCollector

PathLike = Union[str, Path]

PGDUMP_MAGIC = b"PGDMP"
NATIVE_SUFFIXES = {".dump": "custom", ".pgdump": "custom", ".tar": "tar"}
FORMAT_FLAGS = {"custom": "-Fc", "tar": "-Ft", "plain": "-Fp"}

# Lines of tool output kept for the error message
OUTPUT_TAIL_LINES = 50
CANCEL_POLL_SECONDS = 0.2


def native_format(path: PathLike) -> Optional[str]:
    """
    Archive format of a PostgreSQL native dump.

    Args:
        path: Dump file path

    Returns:
        "custom" or "tar", or None for anything else
    """
    path = Path(path)
    fmt = NATIVE_SUFFIXES.get(path.suffix.lower())
    if fmt is not None:
        return fmt
    try:
        with open(path, "rb") as f:
            if f.read(len(PGDUMP_MAGIC)) == PGDUMP_MAGIC:
                return "custom"
    except FileNotFoundError:
        return None
    except OSError as e:
        raise TransferIOError(f"Cannot read {path}: {e}") from e
    return None


def is_native_dump(path: PathLike) -> bool:
    return native_format(path) is not None


class NativeToolBridge:
    """Supervises pg_restore / pg_dump / psql subprocesses.

    Parallelism (``--jobs``) is left to the tool itself. Status lines the
    tool writes to stderr are forwarded unparsed as StatusEvents; a
    non-zero exit raises ExternalToolError and nothing is rolled back.
    """

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger or StructuredLogger(__name__)

    @staticmethod
    def _connection_args(config: ConnectionConfig, database: Optional[str]) -> List[str]:
        if DialectName.parse(config.dialect) is not DialectName.POSTGRES:
            raise ExternalToolError("Native dump tools are only supported for PostgreSQL")
        args = [
            f"--host={config.socket or config.host}",
            f"--port={config.effective_port}",
        ]
        if config.user:
            args.append(f"--username={config.user}")
        database = database or config.database
        if database:
            args.append(f"--dbname={database}")
        return args

    @staticmethod
    def _environment(config: ConnectionConfig) -> Dict[str, str]:
        env = os.environ.copy()
        if config.password:
            env["PGPASSWORD"] = config.password
        return env

    async def restore(
        self,
        dump_path: PathLike,
        destination: ConnectionConfig,
        database: Optional[str] = None,
        jobs: int = 1,
        clean: bool = False,
        disable_triggers: bool = False,
        reporter: Optional[ProgressReporter] = None,
        stats: Optional[StatsCollector] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TransferStats:
        """
        Restore a custom or tar archive with pg_restore.

        Args:
            dump_path: Archive path
            destination: Destination connection parameters
            database: Database to restore into; defaults to the config's
            jobs: Parallel restore jobs handled by pg_restore
            clean: Drop objects before recreating them
            disable_triggers: Disable triggers (and so FK checks) during data load
            reporter: Receives status lines
            stats: Statistics collector shared with the operation
            cancel_token: Terminates the tool when cancelled

        Returns:
            Statistics with bytes read and duration

        Raises:
            ExternalToolError: If pg_restore is missing or exits non-zero
        """
        dump_path = Path(dump_path)
        if not dump_path.exists():
            raise TransferIOError(f"Dump file not found: {dump_path}")
        reporter = reporter or ProgressReporter()
        stats = stats or StatsCollector()

        cmd = ["pg_restore", *self._connection_args(destination, database), "--verbose"]
        if jobs > 1:
            if native_format(dump_path) == "tar":
                message = "pg_restore cannot restore tar archives in parallel; using one job"
                self.logger.warning(message)
                stats.add_warning(message)
                reporter.warning(message)
            else:
                cmd.append(f"--jobs={jobs}")
        if clean:
            cmd.extend(["--clean", "--if-exists"])
        if disable_triggers:
            cmd.append("--disable-triggers")
        cmd.append(str(dump_path))

        self.logger.info(f"Restoring native dump: {dump_path}", jobs=jobs, database=database)
        await self._run(cmd, destination, reporter, cancel_token)

        stats.set_bytes_read(dump_path.stat().st_size)
        self.logger.info("Native restore completed", file=str(dump_path))
        return stats.snapshot()

    async def dump(
        self,
        source: ConnectionConfig,
        output_path: PathLike,
        database: Optional[str] = None,
        fmt: str = "custom",
        schema_only: bool = False,
        data_only: bool = False,
        clean: bool = False,
        tables: Sequence[str] = (),
        reporter: Optional[ProgressReporter] = None,
        stats: Optional[StatsCollector] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TransferStats:
        """
        Export a database with pg_dump.

        Args:
            source: Source connection parameters
            output_path: Output file
            database: Database to dump; defaults to the config's
            fmt: "custom", "tar" or "plain"
            schema_only: Omit data
            data_only: Omit schema
            clean: Include DROP statements
            tables: Restrict the dump to these tables
            reporter: Receives status lines
            stats: Statistics collector shared with the operation
            cancel_token: Terminates the tool when cancelled

        Returns:
            Statistics with bytes written and duration
        """
        if fmt not in FORMAT_FLAGS:
            raise ValueError(f"Unsupported pg_dump format: {fmt}")
        output_path = Path(output_path)
        reporter = reporter or ProgressReporter()
        stats = stats or StatsCollector()

        cmd = ["pg_dump", *self._connection_args(source, database), FORMAT_FLAGS[fmt], "--verbose"]
        if schema_only:
            cmd.append("--schema-only")
        if data_only:
            cmd.append("--data-only")
        if clean:
            cmd.extend(["--clean", "--if-exists"])
        for table in tables:
            cmd.extend(["--table", table])
        cmd.append(f"--file={output_path}")

        self.logger.info(f"Creating native dump: {output_path}", format=fmt)
        await self._run(cmd, source, reporter, cancel_token)

        stats.set_bytes_written(output_path.stat().st_size)
        self.logger.info("Native dump completed", file=str(output_path))
        return stats.snapshot()

    async def run_script(
        self,
        script_path: PathLike,
        destination: ConnectionConfig,
        database: Optional[str] = None,
        reporter: Optional[ProgressReporter] = None,
        stats: Optional[StatsCollector] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> TransferStats:
        """Execute a plain SQL dump with psql, stopping at the first error."""
        script_path = Path(script_path)
        if not script_path.exists():
            raise TransferIOError(f"Dump file not found: {script_path}")
        reporter = reporter or ProgressReporter()
        stats = stats or StatsCollector()

        cmd = [
            "psql",
            *self._connection_args(destination, database),
            "--no-psqlrc",
            "--quiet",
            "--set=ON_ERROR_STOP=1",
            f"--file={script_path}",
        ]
        self.logger.info(f"Running SQL script with psql: {script_path}")
        await self._run(cmd, destination, reporter, cancel_token)

        stats.set_bytes_read(script_path.stat().st_size)
        return stats.snapshot()

    async def _run(
        self,
        cmd: List[str],
        config: ConnectionConfig,
        reporter: ProgressReporter,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        tool = cmd[0]
        self.logger.debug(f"Running {tool}", args=cmd[1:])
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                env=self._environment(config),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExternalToolError(
                f"{tool} not found; install the PostgreSQL client tools"
            ) from e

        tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
        watcher = None
        if cancel_token is not None:
            watcher = asyncio.create_task(self._watch_cancel(process, cancel_token))

        try:
            assert process.stderr is not None
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if not line:
                    continue
                tail.append(line)
                reporter.status(line)
            returncode = await process.wait()
        except BaseException:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        finally:
            if watcher is not None:
                watcher.cancel()

        if cancel_token is not None and cancel_token.cancelled:
            raise TransferCancelled(f"{tool} terminated by cancellation")
        if returncode != 0:
            output = "\n".join(tail)
            self.logger.error(f"{tool} failed", returncode=returncode)
            raise ExternalToolError(
                f"{tool} exited with status {returncode}: {tail[-1] if tail else 'no output'}",
                returncode=returncode,
                output=output,
            )

    @staticmethod
    async def _watch_cancel(
        process: asyncio.subprocess.Process, cancel_token: CancellationToken
    ) -> None:
        while process.returncode is None:
            if cancel_token.cancelled:
                process.terminate()
                return
            await asyncio.sleep(CANCEL_POLL_SECONDS)
