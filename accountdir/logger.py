"""
Structured JSON Logging.

Every component logs through a child of the ``accountdir`` logger
(``accountdir.ingestion``, ``accountdir.directory`` ...).  Handlers live on
that parent only, so the console and the rotating file receive each line
exactly once regardless of how many components ask for a logger.

Lines are single JSON objects::

    {"ts": "...", "level": "WARNING", "component": "accountdir.ingestion",
     "msg": "Dropping malformed event ...", "fields": {"message_id": "m-1"}}

Extra structured values passed through ``extra=`` end up under ``fields``.
Never pass passwords or tokens there.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

ROOT_LOGGER_NAME = "accountdir"

_configure_lock = threading.Lock()
_configured = False


class JSONFormatter(logging.Formatter):
    """Render a ``LogRecord`` as one JSON line."""

    _RESERVED: frozenset[str] = frozenset(
        vars(logging.makeLogRecord({})).keys()
    ) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        fields = {k: v for k, v in vars(record).items() if k not in self._RESERVED}
        if fields:
            line["fields"] = fields
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """Attach the console and rotating-file handlers to the root component logger.

    Safe to call more than once; only the first call installs handlers.
    When the log file cannot be opened the process keeps logging to the
    console.
    """
    global _configured
    root = logging.getLogger(ROOT_LOGGER_NAME)
    with _configure_lock:
        if _configured:
            return root
        root.setLevel(level)
        root.propagate = False
        formatter = JSONFormatter()

        console = logging.StreamHandler(stream or sys.stdout)
        console.setFormatter(formatter)
        root.addHandler(console)

        if log_file:
            try:
                path = Path(log_file)
                path.parent.mkdir(parents=True, exist_ok=True)
                rotating = RotatingFileHandler(
                    path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
                )
            except OSError as exc:
                root.warning("Log file %s unavailable (%s); console only.", log_file, exc)
            else:
                rotating.setFormatter(formatter)
                root.addHandler(rotating)
        _configured = True
    return root


def _configure_from_settings() -> None:
    # Imported here: config logs through the stdlib while it validates.
    from accountdir.config import get_config

    cfg = get_config()
    configure_logging(
        level=logging.getLevelName(cfg.LOG_LEVEL.upper()),
        log_file=cfg.LOG_FILE,
        max_bytes=cfg.LOG_MAX_BYTES,
        backup_count=cfg.LOG_BACKUP_COUNT,
    )


class StructuredLogger:
    """Injectable per-component logger.

    Components receive one of these through their constructor and call
    the usual level methods on it; tests substitute a ``MagicMock``.

    Usage::

        log = StructuredLogger(name="ingestion")
        log.warning("Dropping event %s", message_id, extra={"topic": topic})
    """

    def __init__(self, name: str = ROOT_LOGGER_NAME) -> None:
        if not _configured:
            _configure_from_settings()
        if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
            name = f"{ROOT_LOGGER_NAME}.{name}"
        self._logger = logging.getLogger(name)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    @property
    def name(self) -> str:
        return self._logger.name

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Shorthand for ``StructuredLogger(name=name)``."""
    return StructuredLogger(name=name)
