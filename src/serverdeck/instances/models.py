"""Instance configuration and runtime models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import TypedDict

from serverdeck.download.models import CoreType
from serverdeck.process.models import MemoryBounds, ProcessState

_FORBIDDEN_NAME_CHARS = set('/\\:*?"<>|')


class LogEntry(TypedDict):
    instance_id: str
    timestamp: str
    stream: str
    line: str
    level: str


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_name(value: str) -> str:
    name = value.strip()
    if not name:
        raise ValueError("Instance name cannot be empty")
    if name in {".", ".."} or any(char in _FORBIDDEN_NAME_CHARS for char in name):
        raise ValueError(f"Instance name contains forbidden characters: {value!r}")
    return name


class CreateInstanceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    version: str
    core_type: CoreType = CoreType.VANILLA
    port: int | None = Field(default=None, ge=1, le=65535)
    ram_min: int | None = Field(default=None, ge=256)
    ram_max: int | None = Field(default=None, ge=256)
    jvm_args: list[str] = Field(default_factory=list)
    auto_restart: bool = False
    build: str | None = None
    java_path: str | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        return _clean_name(value)

    @field_validator("version")
    @classmethod
    def _validate_version(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Minecraft version is required")
        return value.strip()

    @model_validator(mode="after")
    def _validate_memory(self) -> CreateInstanceRequest:
        if self.ram_min is not None and self.ram_max is not None and self.ram_min > self.ram_max:
            raise ValueError("ram_min must not exceed ram_max")
        return self


class UpdateInstanceRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    ram_min: int | None = Field(default=None, ge=256)
    ram_max: int | None = Field(default=None, ge=256)
    jvm_args: list[str] | None = None
    auto_restart: bool | None = None
    java_path: str | None = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str | None) -> str | None:
        return None if value is None else _clean_name(value)


@dataclass
class Instance:
    id: str
    name: str
    version: str
    core_type: CoreType
    root: Path
    port: int = 25565
    ram_min: int = 1024
    ram_max: int = 4096
    jvm_args: list[str] = field(default_factory=list)
    auto_restart: bool = False
    build: str | None = None
    java_path_override: str | None = None
    status: ProcessState = ProcessState.STOPPED
    is_ready: bool = False
    java_path: str | None = None
    artifact: str | None = None
    args_file: str | None = None
    created_at: str = field(default_factory=utc_now)
    last_started_at: str | None = None
    last_stopped_at: str | None = None

    @property
    def memory(self) -> MemoryBounds:
        return MemoryBounds(self.ram_min, self.ram_max)

    @property
    def artifact_path(self) -> Path | None:
        return self.root / self.artifact if self.artifact else None

    @property
    def args_file_path(self) -> Path | None:
        return self.root / self.args_file if self.args_file else None

    def to_metadata(self) -> dict[str, Any]:
        """Fields persisted in ``instance.json``; status is never stored."""
        return {
            "id": self.id,
            "name": self.name,
            "version": self.version,
            "core_type": self.core_type.value,
            "port": self.port,
            "ram_min": self.ram_min,
            "ram_max": self.ram_max,
            "jvm_args": list(self.jvm_args),
            "auto_restart": self.auto_restart,
            "build": self.build,
            "java_path_override": self.java_path_override,
            "is_ready": self.is_ready,
            "java_path": self.java_path,
            "artifact": self.artifact,
            "args_file": self.args_file,
            "created_at": self.created_at,
            "last_started_at": self.last_started_at,
            "last_stopped_at": self.last_stopped_at,
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.to_metadata()
        payload["status"] = self.status.value
        payload["root"] = str(self.root)
        return payload

    @classmethod
    def from_metadata(cls, payload: dict[str, Any], root: Path) -> Instance:
        return cls(
            id=str(payload["id"]),
            name=str(payload["name"]),
            version=str(payload["version"]),
            core_type=CoreType(payload.get("core_type", CoreType.VANILLA.value)),
            root=root,
            port=int(payload.get("port", 25565)),
            ram_min=int(payload.get("ram_min", 1024)),
            ram_max=int(payload.get("ram_max", 4096)),
            jvm_args=[str(item) for item in payload.get("jvm_args") or []],
            auto_restart=bool(payload.get("auto_restart", False)),
            build=payload.get("build"),
            java_path_override=payload.get("java_path_override"),
            is_ready=bool(payload.get("is_ready", False)),
            java_path=payload.get("java_path"),
            artifact=payload.get("artifact"),
            args_file=payload.get("args_file"),
            created_at=str(payload.get("created_at") or utc_now()),
            last_started_at=payload.get("last_started_at"),
            last_stopped_at=payload.get("last_stopped_at"),
        )
