"""Download domain models."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class CoreType(str, Enum):
    VANILLA = "vanilla"
    PAPER = "paper"
    FABRIC = "fabric"
    FORGE = "forge"


@dataclass(frozen=True)
class Checksum:
    algorithm: str
    hexdigest: str


@dataclass(frozen=True)
class ArtifactSource:
    url: str
    filename: str
    size: int | None = None
    checksum: Checksum | None = None
    requires_install: bool = False


@dataclass(frozen=True)
class ProgressSnapshot:
    downloaded: int
    total: int | None
    done: bool = False

    @property
    def percentage(self) -> float | None:
        if not self.total:
            return 100.0 if self.done else None
        return min(self.downloaded * 100.0 / self.total, 100.0)


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class DownloadTask:
    core_type: CoreType | None
    version: str
    destination: Path
    build: str | None = None
    downloaded: int = 0
    total: int | None = None
    token: CancellationToken = field(default_factory=CancellationToken)

    @property
    def part_path(self) -> Path:
        return self.destination.with_name(self.destination.name + ".part")

    def advance(self, downloaded: int) -> None:
        if downloaded > self.downloaded:
            self.downloaded = downloaded
