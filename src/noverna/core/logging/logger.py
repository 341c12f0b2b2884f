"""
Noverna Logging Subsystem

Purpose
-------
Non-blocking, structured logging for the persistence core. Storage calls,
migration runs and boot stages all log here, so an operator can follow one
player (by license) or one migration through the console or the daily
JSON file.

Responsibilities
----------------
- Route every record through a bounded in-memory queue to a background
  listener, so file I/O never runs on the event loop
- Stamp records with the active player/storage context:
  license, character_id, storage, component, operation, correlation_id
- Render JSON (production, files) or aligned console text (development,
  coloured on a TTY)
- Keep one day of JSON logs under LOGS_DIR for local inspection
- Count enqueued, dropped and failed records for health reporting

Public API
----------
- setup_logging() / shutdown_logging()
- get_logger(name)
- LogContext (sync and async context manager)
- set_log_context() / get_log_context() / clear_log_context()
- get_logging_health()

Configuration
-------------
- ENVIRONMENT, LOG_LEVEL, LOG_JSON, LOGS_DIR (see noverna.core.config)

Notes
-----
Values passed with ``extra={...}`` take precedence over the ambient
context. Context fields that are unset render as ``"N/A"`` on the console
and are omitted from JSON.
"""

from __future__ import annotations

import json
import logging
import queue
import sys
import uuid
from contextvars import ContextVar, Token
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import Logger
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from noverna.core.config.config import Config

UNSET = "N/A"

CONTEXT_FIELDS = (
    "license",
    "character_id",
    "storage",
    "component",
    "operation",
    "correlation_id",
)

_log_context: ContextVar[Dict[str, Any]] = ContextVar("noverna_log_context", default={})

# Attributes every LogRecord carries; anything else on a record came from extra=.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


# ============================================================================
# Settings
# ============================================================================


@dataclass(frozen=True)
class LoggingSettings:
    """Snapshot of the logging-related configuration taken at setup time."""

    level: int
    json_console: bool
    colours: bool
    logs_dir: Path
    environment: str
    console_format: str = "%(asctime)s | %(levelname)-8s | %(name)-32s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    daily_file: str = "noverna_daily.json.log"
    daily_backups: int = 1
    queue_size: int = 10_000

    @classmethod
    def from_config(cls) -> LoggingSettings:
        environment = str(Config.ENVIRONMENT).lower()
        production = environment == "production"
        json_console = production if Config.LOG_JSON is None else bool(Config.LOG_JSON)
        level = logging.getLevelName(str(Config.LOG_LEVEL).upper())

        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            json_console=json_console,
            colours=not json_console and sys.stdout.isatty(),
            logs_dir=Path(Config.LOGS_DIR).resolve(),
            environment=environment,
        )


@dataclass
class _LoggingState:
    settings: Optional[LoggingSettings] = None
    queue: Optional["queue.Queue[logging.LogRecord]"] = None
    listener: Optional[QueueListener] = None
    enqueued: int = 0
    dropped: int = 0
    listener_errors: int = 0
    handlers: List[logging.Handler] = field(default_factory=list)

    @property
    def active(self) -> bool:
        return self.listener is not None


_state = _LoggingState()


@dataclass(frozen=True)
class LoggingHealth:
    initialized: bool
    queue_size: int
    queue_max_size: int
    records_enqueued: int
    records_dropped: int
    listener_errors: int


# ============================================================================
# Record Enrichment & Rendering
# ============================================================================


class ContextFilter(logging.Filter):
    """Copy the active LogContext onto each record without overriding extras."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        context = _log_context.get()
        for name in CONTEXT_FIELDS:
            if name in record.__dict__:
                continue
            value = context.get(name)
            if name == "component" and not value:
                # "noverna.storage.user" -> "storage.user"
                value = record.name.partition(".")[2] or record.name
            setattr(record, name, value if value is not None else UNSET)
        return True


class ConsoleFormatter(logging.Formatter):
    """Plain console lines; the level name is coloured when ``colours`` is on."""

    PALETTE = {
        logging.DEBUG: "\033[90m",
        logging.INFO: "\033[94m",
        logging.WARNING: "\033[93m",
        logging.ERROR: "\033[91m",
        logging.CRITICAL: "\033[1;91m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: str, datefmt: str, colours: bool = False) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.colours = colours

    def formatMessage(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        if not self.colours or record.levelno not in self.PALETTE:
            return super().formatMessage(record)

        plain = record.levelname
        record.levelname = f"{self.PALETTE[record.levelno]}{plain}{self.RESET}"
        try:
            return super().formatMessage(record)
        finally:
            record.levelname = plain


class JSONFormatter(logging.Formatter):
    """One JSON object per record: core fields, set context fields, then ``extra``."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        document: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in CONTEXT_FIELDS:
            value = record.__dict__.get(name)
            if value is not None and value != UNSET:
                document[name] = value

        if record.exc_info:
            document["exception"] = self.formatException(record.exc_info)
        elif record.exc_text:
            # QueueHandler.prepare() pre-renders the traceback and clears exc_info
            document["exception"] = record.exc_text

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRS and key not in CONTEXT_FIELDS and not key.startswith("_")
        }
        if extra:
            document["extra"] = extra

        return json.dumps(document, ensure_ascii=False, default=str)


# ============================================================================
# Queue Plumbing
# ============================================================================


class _BoundedQueueHandler(QueueHandler):
    """Drops (and counts) records instead of blocking when the queue is full."""

    def enqueue(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            _state.dropped += 1
            sys.stderr.write("noverna: log queue full, record dropped\n")
        else:
            _state.enqueued += 1


class _CountingQueueListener(QueueListener):
    def handleError(self, record: logging.LogRecord) -> None:  # type: ignore[override]
        _state.listener_errors += 1
        sys.stderr.write("noverna: log handler failed while writing a record\n")


def _console_handler(settings: LoggingSettings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(settings.level)
    if settings.json_console:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ConsoleFormatter(settings.console_format, settings.date_format, colours=settings.colours)
        )
    return handler


def _daily_file_handler(settings: LoggingSettings) -> logging.Handler:
    settings.logs_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(settings.logs_dir / settings.daily_file),
        when="midnight",
        backupCount=settings.daily_backups,
        encoding="utf-8",
        utc=True,
    )
    handler.setLevel(settings.level)
    handler.setFormatter(JSONFormatter())
    return handler


# ============================================================================
# Setup / Shutdown
# ============================================================================


def setup_logging() -> None:
    """Install the queue handler on the root logger. Idempotent."""
    if _state.active:
        return

    settings = LoggingSettings.from_config()
    sinks = [_console_handler(settings), _daily_file_handler(settings)]
    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(settings.queue_size)

    entry = _BoundedQueueHandler(log_queue)
    entry.setLevel(settings.level)
    # Enrich before the record crosses to the listener thread, where the
    # ContextVar of the emitting task is no longer visible.
    entry.addFilter(ContextFilter())

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(settings.level)
    root.addHandler(entry)

    for noisy in ("asyncio", "sqlalchemy.engine", "testcontainers"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    listener = _CountingQueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()

    _state.settings = settings
    _state.queue = log_queue
    _state.listener = listener
    _state.handlers = [entry, *sinks]
    _state.enqueued = _state.dropped = _state.listener_errors = 0

    logging.getLogger(__name__).info(
        "Logging initialized",
        extra={
            "environment": settings.environment,
            "log_level": logging.getLevelName(settings.level),
            "json": settings.json_console,
            "logs_dir": str(settings.logs_dir),
        },
    )


def shutdown_logging() -> None:
    """Flush the queue, stop the listener and close all sinks."""
    if not _state.active:
        return

    logging.getLogger(__name__).info("Logging shutting down")
    listener, _state.listener = _state.listener, None
    try:
        listener.stop()
    except Exception as exc:
        sys.stderr.write(f"noverna: failed to stop log listener: {exc}\n")

    root = logging.getLogger()
    for handler in _state.handlers:
        root.removeHandler(handler)
        try:
            handler.close()
        except Exception as exc:
            sys.stderr.write(f"noverna: failed to close log handler: {exc}\n")

    _state.handlers = []
    _state.queue = None


def get_logging_health() -> LoggingHealth:
    log_queue = _state.queue
    return LoggingHealth(
        initialized=_state.active,
        queue_size=log_queue.qsize() if log_queue is not None else 0,
        queue_max_size=log_queue.maxsize if log_queue is not None else 0,
        records_enqueued=_state.enqueued,
        records_dropped=_state.dropped,
        listener_errors=_state.listener_errors,
    )


def get_logger(name: str) -> Logger:
    return logging.getLogger(name)


# ============================================================================
# Context Helpers
# ============================================================================


def _normalise_context(
    license: Optional[str],
    character_id: Optional[int],
    storage: Optional[str],
    component: Optional[str],
    operation: Optional[str],
    correlation_id: Optional[str],
) -> Dict[str, Any]:
    values = {
        "license": license,
        "character_id": str(character_id) if character_id is not None else None,
        "storage": storage,
        "component": component,
        "operation": operation,
        "correlation_id": correlation_id,
    }
    return {key: value for key, value in values.items() if value}


class LogContext:
    """
    Scope log enrichment to a block; a fresh correlation id is minted
    unless one is passed.

    >>> async with LogContext(license="abc", operation="admission"):
    ...     await admission.admit(...)
    """

    def __init__(
        self,
        license: Optional[str] = None,
        character_id: Optional[int] = None,
        storage: Optional[str] = None,
        component: Optional[str] = None,
        operation: Optional[str] = None,
        correlation_id: Optional[str] = None,
        **extra: Any,
    ) -> None:
        self.context: Dict[str, Any] = _normalise_context(
            license,
            character_id,
            storage,
            component,
            operation,
            correlation_id or uuid.uuid4().hex[:8],
        )
        self.context.update(extra)
        self._token: Optional[Token[Dict[str, Any]]] = None

    def __enter__(self) -> LogContext:
        self._token = _log_context.set(self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._token is not None:
            _log_context.reset(self._token)
            self._token = None

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def set_log_context(
    license: Optional[str] = None,
    character_id: Optional[int] = None,
    storage: Optional[str] = None,
    component: Optional[str] = None,
    operation: Optional[str] = None,
    correlation_id: Optional[str] = None,
    **extra: Any,
) -> None:
    """Merge fields into the current context (no scope; see LogContext)."""
    merged = dict(_log_context.get())
    merged.update(
        _normalise_context(license, character_id, storage, component, operation, correlation_id)
    )
    merged.update(extra)
    _log_context.set(merged)


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def clear_log_context() -> None:
    _log_context.set({})


setup_logging()
