"""playit agent binary provisioning and output parsing."""

from __future__ import annotations

import json
import logging as py_logging
import os
import platform
import re
import subprocess
from pathlib import Path
from typing import Any

from serverdeck.download.downloader import Downloader
from serverdeck.download.http import JsonClient
from serverdeck.download.models import ArtifactSource
from serverdeck.errors import ErrorKind, ServerDeckError

logger = py_logging.getLogger(__name__)

AGENT_RELEASE_URL = "https://api.github.com/repos/playit-cloud/playit-agent/releases/latest"

_ANSI = re.compile(r"\x1B\[[0-9;?]*[a-zA-Z]")
_ADDRESS_PATTERNS = (
    re.compile(r"tcp://([^:\s/]+):(\d+)", re.IGNORECASE),
    re.compile(r"connected\s+to\s+([a-z0-9-]+\.(?:playit|ply)\.gg):(\d+)", re.IGNORECASE),
    re.compile(r"public\s+address[:\s]+([a-z0-9.-]+):(\d+)", re.IGNORECASE),
    re.compile(r"([a-z0-9-]+(?:\.[a-z0-9-]+)*\.playit\.gg):(\d+)", re.IGNORECASE),
    re.compile(r"([a-z0-9-]+(?:\.[a-z0-9-]+)*\.(?:playit|ply)\.gg):(\d{4,5})", re.IGNORECASE),
)


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text).replace("\r\n", "\n").replace("\r", "\n")


def _address_from_json(payload: Any) -> tuple[str, int] | None:
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        return None
    host = payload.get("shared_ip") or payload.get("shared_host") or payload.get("host")
    port = payload.get("port") or payload.get("external_port")
    if not host or not port:
        return None
    try:
        return str(host), int(str(port))
    except ValueError:
        return None

def parse_public_address(output: str) -> tuple[str, int] | None:
    """Public ``(host, port)`` announced in agent output, if any."""
    clean = strip_ansi(output)
    start = clean.find("{")
    if start == -1:
        start = clean.find("[")
    if start != -1:
        try:
            found = _address_from_json(json.JSONDecoder().raw_decode(clean, start)[0])
        except json.JSONDecodeError:
            found = None
        if found is not None:
            return found
    for pattern in _ADDRESS_PATTERNS:
        match = pattern.search(clean)
        if match:
            return match.group(1), int(match.group(2))
    return None

def agent_binary_name() -> str:
    return "playit.exe" if os.name == "nt" else "playit"

def _platform_tokens(system: str, machine: str) -> tuple[tuple[str, ...], tuple[str, ...]]:
    system_name = system.lower()
    machine_name = machine.lower()
    if system_name.startswith("win"):
        os_tokens: tuple[str, ...] = ("windows",)
    elif system_name == "linux":
        os_tokens = ("linux",)
    elif system_name == "darwin":
        os_tokens = ("darwin", "macos", "apple")
    else:
        os_tokens = (system_name,)
    if machine_name in {"x86_64", "amd64", "x64"}:
        arch_tokens: tuple[str, ...] = ("x86_64", "amd64", "x64")
    elif machine_name in {"aarch64", "arm64"}:
        arch_tokens = ("aarch64", "arm64")
    elif machine_name.startswith("armv7"):
        arch_tokens = ("armv7",)
    else:
        arch_tokens = (machine_name,)
    return os_tokens, arch_tokens

def select_agent_asset(
    assets: list[dict[str, Any]],
    *,
    system: str | None = None,
    machine: str | None = None,
) -> dict[str, Any]:
    os_tokens, arch_tokens = _platform_tokens(system or platform.system(), machine or platform.machine())
    candidates = []
    for asset in assets:
        name = str(asset.get("name", "")).lower()
        if not isinstance(asset.get("browser_download_url"), str):
            continue
        if name.endswith((".sha256", ".sig", ".deb", ".rpm", ".msi", ".txt")):
            continue
        if any(token in name for token in os_tokens) and any(token in name for token in arch_tokens):
            candidates.append(asset)
    if not candidates:
        raise ServerDeckError(
            "No playit agent build is published for this platform.",
            kind=ErrorKind.NOT_FOUND,
            hint="Install playit manually and place it in the tunnel directory.",
        )
    # Prefer signed builds where both exist.
    candidates.sort(key=lambda item: "signed" not in str(item["name"]).lower())
    return candidates[0]

def ensure_agent(
    agent_dir: Path,
    *,
    client: JsonClient | None = None,
    downloader: Downloader | None = None,
    system: str | None = None,
    machine: str | None = None,
) -> Path:
    """Path to the agent binary, downloading the latest release when absent."""
    target = agent_dir / agent_binary_name()
    if target.is_file():
        return target
    release = (client or JsonClient()).get(AGENT_RELEASE_URL)
    assets = release.get("assets") if isinstance(release, dict) else None
    if not isinstance(assets, list):
        raise ServerDeckError("Unexpected playit release payload.", kind=ErrorKind.DOWNLOAD_FAILED)
    asset = select_agent_asset(assets, system=system, machine=machine)
    logger.info("Downloading playit agent release=%s asset=%s", release.get("tag_name"), asset["name"])
    (downloader or Downloader()).download(
        ArtifactSource(url=asset["browser_download_url"], filename=target.name),
        target,
    )
    if os.name != "nt":
        target.chmod(target.stat().st_mode | 0o755)
    return target

def agent_command(agent_path: Path, secret_path: Path) -> list[str]:
    return [str(agent_path), "--secret_path", str(secret_path), "start"]

def write_agent_config(config_dir: Path, instance_id: str, local_port: int) -> Path:
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / "playit.toml"
    config_path.write_text(
        "\n".join(
            [
                f'agent_name = "serverdeck-{instance_id}"',
                "",
                "[[tunnels]]",
                f'name = "minecraft-{instance_id}"',
                'proto = "tcp"',
                "port_count = 1",
                f"local = {local_port}",
                "special_lan = true",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return config_path

def popen_agent(command: list[str], cwd: Path) -> subprocess.Popen[bytes]:
    return subprocess.Popen(  # nosec B603
        command,
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=0,
    )
