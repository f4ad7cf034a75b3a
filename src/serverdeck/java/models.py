"""Java runtime models."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class JavaInstallation:
    version: str
    major: int
    path: str
    vendor: str = ""
    arch: str = ""
    managed: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "major": self.major,
            "path": self.path,
            "vendor": self.vendor,
            "arch": self.arch,
            "managed": self.managed,
        }
