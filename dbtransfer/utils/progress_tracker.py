"""Progress reporting, event streams and statistics accumulation."""

from __future__ import annotations

import queue
import threading
import time
from typing import Callable, Iterator, List, Optional, Type

from dbtransfer.models.transfer import (
    ErrorEvent,
    EventSink,
    ProgressEvent,
    SkippedUnit,
    StatusEvent,
    TransferEvent,
    TransferStats,
    WarningEvent,
)


class ProgressReporter:
    """Rate-limited progress emitter.

    Progress events are delivered at most once per ``min_interval_seconds``
    unless forced; warnings, errors and status lines are always delivered.
    Events are emitted synchronously on the caller's thread.
    """

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        min_interval_seconds: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize progress reporter.

        Args:
            sink: Callable receiving events (may be None to discard)
            min_interval_seconds: Minimum time between progress events
            clock: Monotonic clock, injectable for tests
        """
        self.sink = sink
        self.min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last_emit: Optional[float] = None

    def should_update(self) -> bool:
        """
        Determine if a progress event may be emitted now.

        Returns:
            True if enough time has passed since the last progress event
        """
        now = self._clock()
        if self._last_emit is None or now - self._last_emit >= self.min_interval_seconds:
            self._last_emit = now
            return True
        return False

    def reset(self) -> None:
        """Allow the next progress event through immediately."""
        self._last_emit = None

    def progress(
        self,
        unit: str,
        current: int,
        total: int = -1,
        table: Optional[str] = None,
        force: bool = False,
    ) -> None:
        if self.sink is None:
            return
        if force:
            self._last_emit = self._clock()
        elif not self.should_update():
            return
        self.sink(ProgressEvent(unit=unit, current=current, total=total, table=table))

    def warning(
        self,
        message: str,
        table: Optional[str] = None,
        category: Type[Warning] = UserWarning,
    ) -> None:
        if self.sink is not None:
            self.sink(WarningEvent(message=message, table=table, category=category))

    def error(
        self, message: str, statement: Optional[str] = None, table: Optional[str] = None
    ) -> None:
        if self.sink is not None:
            self.sink(ErrorEvent(message=message, statement=statement, table=table))

    def status(self, line: str) -> None:
        if self.sink is not None:
            self.sink(StatusEvent(line=line))


class EventStream:
    """Thread-safe event sink a UI thread can iterate.

    Pass an instance as ``TransferOptions.progress``; call ``close()`` once the
    operation returns so iteration terminates.
    """

    _CLOSED = object()

    def __init__(self) -> None:
        self._queue: "queue.Queue[object]" = queue.Queue()

    def __call__(self, event: TransferEvent) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(self._CLOSED)

    def get(self, timeout: Optional[float] = None) -> Optional[TransferEvent]:
        """Next event, or None once the stream is closed or the timeout passes."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            self._queue.put_nowait(self._CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[TransferEvent]:
        while True:
            item = self._queue.get()
            if item is self._CLOSED:
                self._queue.put_nowait(self._CLOSED)
                return
            yield item  # type: ignore[misc]


class StatsCollector:
    """Monotonic counters for one operation.

    Only the pipeline mutates the counters; ``snapshot()`` may be called from
    any thread.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._started = clock()
        self._lock = threading.Lock()
        self.tables_transferred = 0
        self.rows_transferred = 0
        self.bytes_written = 0
        self.bytes_read = 0
        self.statements_executed = 0
        self.errors_skipped = 0
        self.warnings: List[str] = []
        self.skipped: List[SkippedUnit] = []

    def add_tables(self, count: int = 1) -> None:
        with self._lock:
            self.tables_transferred += count

    def add_rows(self, count: int) -> None:
        with self._lock:
            self.rows_transferred += count

    def add_statements(self, count: int) -> None:
        with self._lock:
            self.statements_executed += count

    def set_bytes_written(self, count: int) -> None:
        with self._lock:
            self.bytes_written = count

    def set_bytes_read(self, count: int) -> None:
        with self._lock:
            self.bytes_read = count

    def add_warning(self, message: str) -> None:
        with self._lock:
            self.warnings.append(message)

    def add_skipped(self, unit: SkippedUnit) -> None:
        with self._lock:
            self.errors_skipped += 1
            self.skipped.append(unit)

    def snapshot(self) -> TransferStats:
        """Atomic, immutable copy of the current counters."""
        with self._lock:
            return TransferStats(
                tables_transferred=self.tables_transferred,
                rows_transferred=self.rows_transferred,
                bytes_written=self.bytes_written,
                bytes_read=self.bytes_read,
                statements_executed=self.statements_executed,
                errors_skipped=self.errors_skipped,
                duration=self._clock() - self._started,
                warnings=tuple(self.warnings),
                skipped=tuple(self.skipped),
            )
