"""Application logging helpers."""

from __future__ import annotations

import logging as py_logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TextIO

LOG_LEVELS = {
    "DEBUG": py_logging.DEBUG,
    "INFO": py_logging.INFO,
    "WARN": py_logging.WARNING,
    "WARNING": py_logging.WARNING,
    "ERROR": py_logging.ERROR,
}
DEFAULT_LOG_PATH = Path("~/.local/state/serverdeck/serverdeck.log")
_FALLBACK_LOG_PATH = Path(".serverdeck/serverdeck.log")
_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"
LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3


def _absolute(path: Path) -> Path:
    try:
        expanded = path.expanduser()
    except RuntimeError:
        expanded = path
    return expanded if expanded.is_absolute() else expanded.resolve()


def default_log_path() -> Path:
    try:
        return DEFAULT_LOG_PATH.expanduser().resolve()
    except RuntimeError:
        return (Path.cwd() / _FALLBACK_LOG_PATH).resolve()


def normalize_level(level: str) -> str:
    normalized = level.strip().upper()
    if normalized == "WARNING":
        normalized = "WARN"
    return normalized


def _file_handler(log_file: str | Path, formatter: py_logging.Formatter) -> py_logging.Handler | None:
    log_path = _absolute(Path(log_file))
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUPS,
            encoding="utf-8",
        )
    except OSError:
        return None
    handler.setLevel(py_logging.DEBUG)
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str = "INFO",
    stream: TextIO | None = None,
    *,
    log_file: str | Path | None = None,
) -> py_logging.Logger:
    """Route the ``serverdeck`` logger tree to ``stream`` and an optional rotating file.

    Failing to open the log file is not an error; the console handler is kept.
    Calling this again replaces the previous handlers.
    """
    resolved = LOG_LEVELS.get(normalize_level(level), py_logging.INFO)

    logger = py_logging.getLogger("serverdeck")
    logger.setLevel(resolved)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    formatter = py_logging.Formatter(_FORMAT)

    console = py_logging.StreamHandler(stream or sys.stderr)
    console.setLevel(resolved)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if log_file:
        file_handler = _file_handler(log_file, formatter)
        if file_handler is not None:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger
