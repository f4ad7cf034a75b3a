"""Headless Forge installer execution."""

from __future__ import annotations

import logging as py_logging
import os
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from serverdeck.download.backends import SERVER_JAR
from serverdeck.errors import ErrorKind, ServerDeckError

logger = py_logging.getLogger(__name__)

INSTALL_TIMEOUT_SECONDS = 900.0


@dataclass(frozen=True)
class ForgeLaunch:
    """Either a plain ``server.jar`` (legacy) or an argument file (modern)."""

    artifact: Path | None = None
    args_file: Path | None = None


def _args_file_name() -> str:
    return "win_args.txt" if os.name == "nt" else "unix_args.txt"


def _find_args_file(working_dir: Path) -> Path | None:
    libraries = working_dir / "libraries"
    if not libraries.is_dir():
        return None
    matches = sorted(libraries.rglob(_args_file_name()))
    return matches[0] if matches else None


def _find_legacy_jar(working_dir: Path) -> Path | None:
    for candidate in sorted(working_dir.glob("forge-*.jar")):
        name = candidate.name.lower()
        if "installer" in name or "shim" in name:
            continue
        return candidate
    return None


def _cleanup(installer: Path, working_dir: Path) -> None:
    for path in (installer, working_dir / f"{installer.name}.log", working_dir / "installer.log"):
        try:
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError:
            logger.warning("Could not remove installer leftover path=%s", path)


def install_forge_server(
    java_path: str | Path,
    installer: Path,
    working_dir: Path,
    *,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
    timeout_seconds: float = INSTALL_TIMEOUT_SECONDS,
) -> ForgeLaunch:
    cmd = [str(java_path), "-jar", str(installer), "--installServer"]
    logger.info("Running Forge installer cwd=%s", working_dir)
    try:
        result = runner(
            cmd,
            cwd=str(working_dir),
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ServerDeckError(
            f"Java executable not found: {java_path}",
            kind=ErrorKind.PROCESS_SPAWN_FAILED,
            hint="Run `serverdeck java detect` or install a runtime.",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise ServerDeckError(
            "Forge installer timed out.",
            kind=ErrorKind.UNKNOWN,
            hint="Retry the installation; the mirror may be slow.",
        ) from exc

    if result.returncode != 0:
        tail = (result.stderr or result.stdout or "").strip().splitlines()[-5:]
        logger.error("Forge installer failed returncode=%s", result.returncode)
        raise ServerDeckError(
            f"Forge installer exited with code {result.returncode}: {' '.join(tail)}",
            kind=ErrorKind.UNKNOWN,
        )

    args_file = _find_args_file(working_dir)
    if args_file is not None:
        _cleanup(installer, working_dir)
        logger.debug("Forge modern install args_file=%s", args_file)
        return ForgeLaunch(args_file=args_file)

    legacy = _find_legacy_jar(working_dir)
    if legacy is not None:
        target = working_dir / SERVER_JAR
        os.replace(legacy, target)
        _cleanup(installer, working_dir)
        logger.debug("Forge legacy install artifact=%s", target)
        return ForgeLaunch(artifact=target)

    raise ServerDeckError(
        "Forge installer finished but produced no launchable server.",
        kind=ErrorKind.UNKNOWN,
        hint="Inspect the installer log in the instance directory.",
    )
