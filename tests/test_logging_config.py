from __future__ import annotations

import io
import logging as py_logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import serverdeck.logging as sd_logging


def test_default_log_path_is_expanded() -> None:
    path = sd_logging.default_log_path()

    assert path.is_absolute()
    assert path.name == "serverdeck.log"


def test_warning_alias_maps_to_warning_level() -> None:
    logger = sd_logging.configure_logging("warning")

    assert logger.level == sd_logging.LOG_LEVELS["WARN"]


def test_unknown_log_level_falls_back_to_info() -> None:
    logger = sd_logging.configure_logging("not-a-level")

    assert logger.level == py_logging.INFO


def test_configure_logging_resets_existing_handlers() -> None:
    logger = sd_logging.configure_logging("INFO")
    first_handler_count = len(logger.handlers)
    assert first_handler_count == 1

    logger = sd_logging.configure_logging("INFO")
    second_handler_count = len(logger.handlers)

    assert second_handler_count == 1


def test_configure_logging_adds_debug_file_handler(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "serverdeck.log"

    logger = sd_logging.configure_logging("ERROR", log_file=log_file)
    file_handlers = [
        handler for handler in logger.handlers if isinstance(handler, py_logging.FileHandler)
    ]

    assert len(file_handlers) == 1
    assert file_handlers[0].level == py_logging.DEBUG
    assert log_file.exists()


def test_configure_logging_ignores_file_handler_oserror(monkeypatch, tmp_path: Path) -> None:
    def raise_os_error(*args: object, **kwargs: object) -> py_logging.Handler:
        raise OSError("disk full")

    monkeypatch.setattr(sd_logging, "RotatingFileHandler", raise_os_error)

    logger = sd_logging.configure_logging("INFO", log_file=tmp_path / "nope" / "serverdeck.log")

    assert len(logger.handlers) == 1
    assert type(logger.handlers[0]) is py_logging.StreamHandler


def test_configure_logging_does_not_propagate_to_root() -> None:
    logger = sd_logging.configure_logging("DEBUG")

    assert logger.name == "serverdeck"
    assert logger.propagate is False


def test_normalize_level_accepts_mixed_case() -> None:
    assert sd_logging.normalize_level(" Warning ") == "WARN"
    assert sd_logging.normalize_level("debug") == "DEBUG"


def test_file_handler_rotates(tmp_path: Path) -> None:
    logger = sd_logging.configure_logging("INFO", log_file=tmp_path / "serverdeck.log")
    (rotating,) = [handler for handler in logger.handlers if isinstance(handler, RotatingFileHandler)]

    assert rotating.maxBytes == sd_logging.LOG_FILE_MAX_BYTES
    assert rotating.backupCount == sd_logging.LOG_FILE_BACKUPS


def test_records_include_thread_name(tmp_path: Path) -> None:
    stream = io.StringIO()
    logger = sd_logging.configure_logging("INFO", stream=stream)

    py_logging.getLogger("serverdeck.process.supervisor").info("Process launched instance=abc pid=1")

    assert "[MainThread] serverdeck.process.supervisor: Process launched instance=abc pid=1" in stream.getvalue()
    assert logger.handlers[0].level == py_logging.INFO
