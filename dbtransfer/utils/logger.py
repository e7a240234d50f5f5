"""Structured logging utilities."""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_console_logging(level: int = logging.INFO, stream=None) -> None:
    """Attach the console handler to the ``dbtransfer`` logger tree.

    Only front ends call this; engine modules never install handlers.
    """
    root = logging.getLogger("dbtransfer")
    root.setLevel(level)

    # Remove existing handlers to avoid duplicates
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    root.addHandler(handler)


class StructuredLogger:
    """Structured logger for transfer events."""

    def __init__(self, name: str, level: Optional[int] = None):
        self.logger = logging.getLogger(name)
        if level is not None:
            self.logger.setLevel(level)

    def log_transfer_event(
        self,
        event: str,
        table: str,
        rows_transferred: int = 0,
        duration: float = 0.0,
        **kwargs: Any,
    ) -> None:
        """Log a transfer event with structured data."""
        log_data = {
            "event": event,
            "table": table,
            "rows_transferred": rows_transferred,
            "duration_seconds": round(duration, 2),
            **kwargs,
        }
        self.logger.info(json.dumps(log_data, default=str))

    def _format(self, message: str, kwargs: Dict[str, Any]) -> str:
        if kwargs:
            return f"{message} {json.dumps(kwargs, default=str)}"
        return message

    def info(self, message: str, **kwargs: Any) -> None:
        """Log info message."""
        self.logger.info(self._format(message, kwargs))

    def warning(self, message: str, **kwargs: Any) -> None:
        """Log warning message."""
        self.logger.warning(self._format(message, kwargs))

    def error(self, message: str, **kwargs: Any) -> None:
        """Log error message."""
        self.logger.error(self._format(message, kwargs))

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message."""
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.debug(self._format(message, kwargs))


class SafeLogger:
    """Logger that automatically sanitizes sensitive information."""

    SENSITIVE_KEYS = {"password", "pwd", "secret", "token", "api_key", "apikey"}

    @staticmethod
    def sanitize(data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Sanitize sensitive information from log data.

        Args:
            data: Dictionary to sanitize

        Returns:
            Sanitized dictionary with sensitive values redacted
        """
        sanitized: Dict[str, Any] = {}
        for key, value in data.items():
            if any(sensitive in key.lower() for sensitive in SafeLogger.SENSITIVE_KEYS):
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, dict):
                sanitized[key] = SafeLogger.sanitize(value)
            else:
                sanitized[key] = value
        return sanitized
