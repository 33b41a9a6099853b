"""Logging for the query pipeline.

Records from every ``cardquery.*`` logger go through a queue to a rich
console handler and, when ``CARDQUERY_LOG_DIR`` is set, to one log file per
day. A context filter prefixes each line with the ``user_id`` / ``query_id``
bound for the current query.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import SimpleQueue
from threading import RLock
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.traceback import install as install_rich_traceback

from .context import ContextFilter, log_context
from .timing import timeit

__all__ = [
    "LoggingConfig",
    "init_logging",
    "get_logger",
    "set_level",
    "shutdown_logging",
    "log_context",
    "timeit",
]

ROOT_LOGGER = "cardquery"

FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(context)s%(message)s"
CONSOLE_FORMAT = "%(context)s%(message)s"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO.
NOISY_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "sqlalchemy.engine")


def _env_path(name: str) -> Optional[Path]:
    raw = os.getenv(name, "").strip()
    return Path(raw) if raw else None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off", ""}


@dataclass
class LoggingConfig:
    """Logging options; defaults come from ``CARDQUERY_LOG_*`` variables."""

    level: str | int = field(default_factory=lambda: os.getenv("CARDQUERY_LOG_LEVEL", "INFO"))
    log_dir: Optional[Path] = field(default_factory=lambda: _env_path("CARDQUERY_LOG_DIR"))
    console: bool = field(default_factory=lambda: _env_bool("CARDQUERY_LOG_CONSOLE", True))
    queue: bool = True
    rich_tracebacks: bool = False
    library_level: str | int = "WARNING"


_lock = RLock()
_active: Optional[LoggingConfig] = None
_listener: Optional[QueueListener] = None
_context_filter = ContextFilter()


def _level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    return getattr(logging, str(value).upper(), logging.INFO)


class DailyFileHandler(logging.FileHandler):
    """Append to ``cardquery-YYYY-MM-DD.log``, opening a new file when the day changes."""

    def __init__(self, directory: Path, encoding: str = "utf-8") -> None:
        directory.mkdir(parents=True, exist_ok=True)
        self.directory = directory
        self.day = date.today()
        super().__init__(self.path_for(self.day), mode="a", encoding=encoding)

    def path_for(self, day: date) -> Path:
        return self.directory / f"{ROOT_LOGGER}-{day.isoformat()}.log"

    def emit(self, record: logging.LogRecord) -> None:
        day = datetime.fromtimestamp(record.created).date()
        if day != self.day:
            self.day = day
            self.close()
            self.baseFilename = os.fspath(self.path_for(day))
        super().emit(record)


def _handlers(cfg: LoggingConfig) -> list[logging.Handler]:
    level = _level(cfg.level)
    handlers: list[logging.Handler] = []

    if cfg.console:
        console = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=cfg.rich_tracebacks,
            show_path=False,
            markup=False,
            log_time_format=TIME_FORMAT,
        )
        console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handlers.append(console)

    if cfg.log_dir is not None:
        to_file = DailyFileHandler(Path(cfg.log_dir))
        to_file.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=TIME_FORMAT))
        handlers.append(to_file)

    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(_context_filter)
    return handlers


def init_logging(**overrides: object) -> None:
    """Configure the ``cardquery`` logger tree.

    Calling it again with the same options is a no-op; different options
    tear the previous handlers down first.
    """

    global _active, _listener

    cfg = LoggingConfig()
    for key, value in overrides.items():
        if not hasattr(cfg, key):
            raise TypeError(f"Unknown logging option: {key}")
        setattr(cfg, key, value)

    with _lock:
        if _active is not None:
            if _active == cfg:
                return
            _teardown()

        if cfg.rich_tracebacks:
            install_rich_traceback(show_locals=False)
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(_level(cfg.library_level))

        app_logger = logging.getLogger(ROOT_LOGGER)
        app_logger.setLevel(_level(cfg.level))
        handlers = _handlers(cfg)
        if cfg.queue and handlers:
            queue: SimpleQueue = SimpleQueue()
            entry = QueueHandler(queue)
            entry.setLevel(_level(cfg.level))
            entry.addFilter(_context_filter)
            app_logger.addHandler(entry)
            _listener = QueueListener(queue, *handlers, respect_handler_level=True)
            _listener.start()
        else:
            for handler in handlers:
                app_logger.addHandler(handler)
        _active = cfg


def _teardown() -> None:
    global _active, _listener
    if _listener is not None:
        _listener.stop()
        for handler in _listener.handlers:
            handler.close()
    _listener = None
    _active = None
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


def shutdown_logging() -> None:
    """Flush and detach all handlers."""

    with _lock:
        _teardown()


def get_logger(name: Optional[str] = None) -> logging.Logger:
    with _lock:
        if _active is None:
            init_logging()
    return logging.getLogger(name or ROOT_LOGGER)


def set_level(level: str | int) -> None:
    new_level = _level(level)
    with _lock:
        logging.getLogger(ROOT_LOGGER).setLevel(new_level)
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.setLevel(new_level)
        if _listener is not None:
            for handler in _listener.handlers:
                handler.setLevel(new_level)
