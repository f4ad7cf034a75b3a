"""XDG config loading/saving."""

from __future__ import annotations

import logging as py_logging
import os
import sys
from contextlib import suppress
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

if sys.version_info >= (3, 11):
    import tomllib
else:  # pragma: no cover
    import tomli as tomllib

from serverdeck.logging import LOG_LEVELS, normalize_level

logger = py_logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/serverdeck/config.toml").expanduser()
DEFAULT_DATA_DIR = "~/.local/share/serverdeck"
DEFAULT_RELAY_API_URL = "https://api.playit.gg"
PLAYIT_SECRET_ENV = "SERVERDECK_PLAYIT_SECRET"


class AppConfig(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    data_dir: str = DEFAULT_DATA_DIR
    instances_dir: str = ""
    java_dir: str = ""
    tunnel_dir: str = ""
    default_ram_min: int = Field(default=1024, ge=256)
    default_ram_max: int = Field(default=4096, ge=256)
    default_port: int = Field(default=25565, ge=1, le=65535)
    stop_timeout_seconds: float = Field(default=30.0, gt=0)
    log_history_limit: int = Field(default=1000, ge=0)
    download_max_attempts: int = Field(default=3, ge=1, le=10)
    download_backoff_seconds: float = Field(default=2.0, ge=0)
    claim_poll_interval_seconds: float = Field(default=2.0, gt=0)
    claim_max_wait_seconds: float = Field(default=300.0, gt=0)
    relay_api_url: str = DEFAULT_RELAY_API_URL
    auto_restart_limit: int = Field(default=3, ge=0)
    log_level: str = "INFO"
    playit_secret: str = ""

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized = normalize_level(value)
        if normalized not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {value}")
        return normalized

    @field_validator("relay_api_url")
    @classmethod
    def _validate_relay_url(cls, value: str) -> str:
        if not value.startswith("https://"):
            raise ValueError(f"Relay API must use https: {value}")
        return value.rstrip("/")

    def _subdir(self, override: str, name: str) -> Path:
        if override.strip():
            return Path(override).expanduser()
        return Path(self.data_dir).expanduser() / name

    @property
    def instances_path(self) -> Path:
        return self._subdir(self.instances_dir, "instances")

    @property
    def java_path(self) -> Path:
        return self._subdir(self.java_dir, "java")

    @property
    def tunnel_path(self) -> Path:
        return self._subdir(self.tunnel_dir, "tunnel")


# Only these keys are written back; playit_secret lives in the tunnel dir.
_PERSISTED_FIELDS = (
    "data_dir",
    "instances_dir",
    "java_dir",
    "tunnel_dir",
    "default_ram_min",
    "default_ram_max",
    "default_port",
    "stop_timeout_seconds",
    "log_history_limit",
    "download_max_attempts",
    "download_backoff_seconds",
    "claim_poll_interval_seconds",
    "claim_max_wait_seconds",
    "relay_api_url",
    "auto_restart_limit",
    "log_level",
)


def get_config_path(path: str | Path | None = None) -> Path:
    if path is None:
        return DEFAULT_CONFIG_PATH
    return Path(path).expanduser()


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _toml_scalar(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return f'"{_escape(value)}"'
    if isinstance(value, list):
        return "[" + ", ".join(_toml_scalar(item) for item in value) + "]"
    raise TypeError(f"Unsupported TOML scalar type: {type(value)!r}")


def _sanitize(raw: dict[str, object]) -> AppConfig:
    cfg = AppConfig()
    for name in _PERSISTED_FIELDS:
        if name not in raw:
            continue
        value = raw[name]
        if isinstance(value, bool):
            # TOML booleans must not pass as 0/1 integers.
            logger.warning("Ignoring boolean config value key=%s", name)
            continue
        try:
            setattr(cfg, name, value)
        except ValidationError:
            logger.warning("Ignoring invalid config value key=%s value=%r", name, value)

    if cfg.default_ram_min > cfg.default_ram_max:
        logger.warning("default_ram_min exceeds default_ram_max; restoring defaults")
        cfg.default_ram_min = AppConfig.model_fields["default_ram_min"].default
        cfg.default_ram_max = AppConfig.model_fields["default_ram_max"].default

    env_secret = os.getenv(PLAYIT_SECRET_ENV, "").strip()
    if env_secret:
        cfg.playit_secret = env_secret
    return cfg


def load_config(path: str | Path | None = None) -> AppConfig:
    resolved = get_config_path(path)
    if not resolved.exists():
        return _sanitize({})
    try:
        with resolved.open("rb") as handle:
            raw = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError):
        logger.warning("Config file unreadable, using defaults path=%s", resolved)
        return _sanitize({})
    if not isinstance(raw, dict):
        return _sanitize({})
    return _sanitize(raw)


def save_config(config: AppConfig, path: str | Path | None = None) -> Path:
    resolved = get_config_path(path)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    lines = [f"{name} = {_toml_scalar(getattr(config, name))}" for name in _PERSISTED_FIELDS]
    resolved.write_text("\n".join(lines) + "\n", encoding="utf-8")
    with suppress(OSError):
        resolved.chmod(0o600)
    return resolved
