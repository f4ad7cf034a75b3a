"""Eclipse Adoptium runtime download and extraction."""

from __future__ import annotations

import logging as py_logging
import os
import platform
import shutil
import tarfile
import zipfile
from pathlib import Path

from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.java.detector import java_executable_name

logger = py_logging.getLogger(__name__)

ADOPTIUM_API_URL = "https://api.adoptium.net"

_ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}


def host_platform(system: str | None = None, machine: str | None = None) -> tuple[str, str]:
    """Adoptium ``(os, arch)`` names for the running host."""
    system_name = (system or platform.system()).lower()
    if system_name.startswith("win"):
        os_name = "windows"
    elif system_name == "darwin":
        os_name = "mac"
    elif system_name == "linux":
        os_name = "linux"
    else:
        raise ServerDeckError(
            f"No managed Java builds for platform {system_name}.",
            kind=ErrorKind.UNSUPPORTED_VERSION,
            hint="Install a Java runtime manually and run `serverdeck java detect`.",
        )
    arch = _ARCH_ALIASES.get((machine or platform.machine()).lower())
    if arch is None:
        raise ServerDeckError(
            f"No managed Java builds for architecture {machine or platform.machine()}.",
            kind=ErrorKind.UNSUPPORTED_VERSION,
            hint="Install a Java runtime manually and run `serverdeck java detect`.",
        )
    return os_name, arch


def adoptium_binary_url(major: int, os_name: str, arch: str, *, api_url: str = ADOPTIUM_API_URL) -> str:
    return (
        f"{api_url.rstrip('/')}/v3/binary/latest/{major}/ga/{os_name}/{arch}"
        "/jre/hotspot/normal/eclipse?project=jdk"
    )


def _ensure_within(root: Path, member: str) -> None:
    target = (root / member).resolve()
    if target != root and root not in target.parents:
        raise ServerDeckError(
            f"Archive entry escapes the extraction directory: {member}",
            kind=ErrorKind.DOWNLOAD_FAILED,
        )


def extract_archive(archive: Path, target: Path) -> None:
    logger.debug("Extracting runtime archive=%s target=%s", archive, target)
    target.mkdir(parents=True, exist_ok=True)
    try:
        _extract(archive, target.resolve())
    except (tarfile.TarError, zipfile.BadZipFile, EOFError) as exc:
        raise ServerDeckError(
            f"Corrupt runtime archive {archive.name}: {exc}",
            kind=ErrorKind.DOWNLOAD_FAILED,
            hint="The download may be corrupted; retry the installation.",
        ) from exc


def _extract(archive: Path, root: Path) -> None:
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as bundle:
            for name in bundle.namelist():
                _ensure_within(root, name)
            bundle.extractall(root)
        return
    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as bundle:
            members = bundle.getmembers()
            for member in members:
                _ensure_within(root, member.name)
                if member.issym() or member.islnk():
                    _ensure_within(root, str(Path(member.name).parent / member.linkname))
            if hasattr(tarfile, "data_filter"):
                bundle.extractall(root, members=members, filter="data")
            else:  # pragma: no cover
                bundle.extractall(root, members=members)
        return
    raise ServerDeckError(
        f"Unrecognized runtime archive: {archive.name}",
        kind=ErrorKind.DOWNLOAD_FAILED,
        hint="The download may be corrupted; retry the installation.",
    )


def find_java_executable(root: Path) -> Path | None:
    name = java_executable_name()
    for relative in (Path("bin") / name, Path("Contents") / "Home" / "bin" / name):
        candidate = root / relative
        if candidate.is_file():
            return candidate
    return None


def promote_extracted(staging: Path, destination: Path) -> Path:
    """Move the runtime out of ``staging`` so ``destination/bin/java`` exists."""
    entries = [entry for entry in staging.iterdir() if not entry.name.startswith(".")]
    source = entries[0] if len(entries) == 1 and entries[0].is_dir() else staging
    if destination.exists():
        shutil.rmtree(destination)
    shutil.move(str(source), str(destination))
    executable = find_java_executable(destination)
    if executable is None:
        raise ServerDeckError(
            "Runtime archive did not contain a java executable.",
            kind=ErrorKind.DOWNLOAD_FAILED,
        )
    if os.name != "nt":
        executable.chmod(executable.stat().st_mode | 0o111)
    return executable
