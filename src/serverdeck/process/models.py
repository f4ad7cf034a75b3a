"""Process supervision models."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from serverdeck.errors import ErrorKind, ServerDeckError


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"

    @property
    def alive(self) -> bool:
        return self in {ProcessState.STARTING, ProcessState.RUNNING, ProcessState.STOPPING}


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True)
class MemoryBounds:
    min_mb: int = 1024
    max_mb: int = 4096

    def __post_init__(self) -> None:
        if self.min_mb <= 0 or self.max_mb <= 0:
            raise ServerDeckError(
                f"Memory bounds must be positive: {self.min_mb}/{self.max_mb}",
                kind=ErrorKind.INVALID_REQUEST,
            )
        if self.min_mb > self.max_mb:
            raise ServerDeckError(
                f"Minimum memory {self.min_mb}M exceeds maximum {self.max_mb}M.",
                kind=ErrorKind.INVALID_REQUEST,
                hint="Lower ram_min or raise ram_max.",
            )


@dataclass
class ProcessHandle:
    instance_id: str
    pid: int
    command: tuple[str, ...]
    process: subprocess.Popen[bytes] = field(repr=False, compare=False)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    exit_code: int | None = None

    @property
    def stdin(self):
        return self.process.stdin

    @property
    def stdout(self):
        return self.process.stdout

    @property
    def stderr(self):
        return self.process.stderr
