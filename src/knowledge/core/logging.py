"""
Logging utilities for the knowledge module.

Provides structured logging with correlation context so that an ingestion
run or a retrieval call can be traced across chunker, embedder and store
log lines (board → run → batch).
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


CONTEXT_FIELDS = ["board", "run_id", "query_id", "correlation_id", "batch", "strategy"]

_current_context: "contextvars.ContextVar[Dict[str, Any]]" = contextvars.ContextVar(
    "knowledge_correlation_context", default={}
)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (board, run_id, query_id, ...)
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.

    Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [board=X run_id=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            fmt = "%(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with correlation context."""
        base = super().format(record)

        context_parts = []
        for field in ["board", "run_id", "query_id"]:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


def configure_logging(
    level: int = logging.INFO,
    structured: bool = False,
    include_timestamp: bool = True,
    stream=None,
) -> logging.Logger:
    """
    Configure logging for the knowledge package.

    Attaches a single stream handler to the ``knowledge`` logger. Calling it
    again only updates the level and formatter of that handler.

    Args:
        level: Logging level (default: INFO)
        structured: If True, output JSON-structured logs; if False, human-readable
        include_timestamp: Whether to include timestamp in log messages
        stream: Output stream (default: stderr)

    Returns:
        The configured package logger
    """
    package_logger = logging.getLogger("knowledge")
    package_logger.setLevel(level)

    if structured:
        formatter = StructuredFormatter(include_timestamp=include_timestamp)
    else:
        formatter = HumanReadableFormatter(include_timestamp=include_timestamp)

    if not package_logger.handlers:
        handler = logging.StreamHandler(stream or sys.stderr)
        package_logger.addHandler(handler)

    for handler in package_logger.handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    return package_logger


class CorrelationContext:
    """
    Context manager for adding correlation fields to log records.

    The active fields live in a ``ContextVar``, so each thread (and each
    asyncio task) sees only the contexts it entered itself.

    Example:
        >>> with CorrelationContext(board="bazi", run_id="abc"):
        ...     log_with_context(logger, logging.INFO, "Embedding batch")
    """

    def __init__(
        self,
        board: Optional[str] = None,
        run_id: Optional[str] = None,
        query_id: Optional[str] = None,
        **extra: Any,
    ):
        self.context = {
            "board": board,
            "run_id": run_id,
            "query_id": query_id,
            **extra,
        }
        self.context = {k: v for k, v in self.context.items() if v is not None}
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "CorrelationContext":
        self._token = _current_context.set(self.context)
        return self

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _current_context.reset(self._token)
            self._token = None

    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current correlation context."""
        return dict(_current_context.get())


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """
    Log a message with correlation context.

    Merges the current CorrelationContext with any extra fields provided.
    """
    context = CorrelationContext.get_current()
    context.update(extra)
    logger.log(level, message, extra=context)
