"""Cooperative cancellation."""

from __future__ import annotations

import threading

from dbtransfer.exceptions import TransferCancelled


class CancellationToken:
    """Thread-safe cancellation flag checked at batch boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TransferCancelled("Operation cancelled")
