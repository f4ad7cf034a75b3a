"""Deterministic error model and exit code contract."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    ALREADY_RUNNING = "already_running"
    ALREADY_STOPPED = "already_stopped"
    UNSUPPORTED_VERSION = "unsupported_version"
    DOWNLOAD_FAILED = "download_failed"
    CLAIM_TIMED_OUT = "claim_timed_out"
    PROCESS_SPAWN_FAILED = "process_spawn_failed"
    CANCELLED = "cancelled"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


class ExitCode(IntEnum):
    SUCCESS = 0
    INVALID_ARGS = 2
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4
    NOT_FOUND = 5
    INVALID_STATE = 6
    VALIDATION_ERROR = 7
    DOWNLOAD_ERROR = 8
    PROCESS_ERROR = 9
    TUNNEL_ERROR = 10


_EXIT_CODES = {
    ErrorKind.NOT_FOUND: ExitCode.NOT_FOUND,
    ErrorKind.ALREADY_RUNNING: ExitCode.INVALID_STATE,
    ErrorKind.ALREADY_STOPPED: ExitCode.INVALID_STATE,
    ErrorKind.UNSUPPORTED_VERSION: ExitCode.VALIDATION_ERROR,
    ErrorKind.DOWNLOAD_FAILED: ExitCode.DOWNLOAD_ERROR,
    ErrorKind.CLAIM_TIMED_OUT: ExitCode.TUNNEL_ERROR,
    ErrorKind.PROCESS_SPAWN_FAILED: ExitCode.PROCESS_ERROR,
    ErrorKind.CANCELLED: ExitCode.RUNTIME_ERROR,
    ErrorKind.INVALID_REQUEST: ExitCode.VALIDATION_ERROR,
    ErrorKind.UNKNOWN: ExitCode.RUNTIME_ERROR,
}


@dataclass
class ServerDeckError(Exception):
    message: str
    kind: ErrorKind = ErrorKind.UNKNOWN
    hint: str = ""

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message} Hint: {self.hint}"
        return self.message

    @property
    def exit_code(self) -> ExitCode:
        return exit_code_for(self.kind)


def exit_code_for(kind: ErrorKind) -> ExitCode:
    return _EXIT_CODES.get(kind, ExitCode.RUNTIME_ERROR)


def user_facing_error(message: str, *, hint: str = "") -> str:
    if hint:
        return f"Error: {message}. Next step: {hint}"
    return f"Error: {message}."
