"""Discovery and validation of installed Java runtimes."""

from __future__ import annotations

import logging as py_logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

from serverdeck.errors import ServerDeckError
from serverdeck.java.compat import parse_major_version
from serverdeck.java.models import JavaInstallation

logger = py_logging.getLogger(__name__)

_PROPERTY_LINE = re.compile(r"^\s*([A-Za-z0-9_.]+)\s*=\s*(.*?)\s*$")
_BANNER_VERSION = re.compile(r'version\s+"([^"]+)"')
PROBE_TIMEOUT_SECONDS = 15.0

UNIX_JAVA_ROOTS = (
    "/usr/lib/jvm",
    "/usr/java",
    "/opt/java",
    "/Library/Java/JavaVirtualMachines",
    "~/.sdkman/candidates/java",
)
WINDOWS_VENDOR_DIRS = ("Java", "Eclipse Adoptium", "Temurin", "Microsoft", "Zulu")

Runner = Callable[..., subprocess.CompletedProcess[str]]


def java_executable_name() -> str:
    return "java.exe" if os.name == "nt" else "java"


def parse_probe_output(output: str) -> dict[str, str]:
    """Extract ``java.version``, ``java.vendor`` and ``os.arch`` from probe output."""
    properties: dict[str, str] = {}
    for line in output.splitlines():
        match = _PROPERTY_LINE.match(line)
        if match and match.group(1) in {"java.version", "java.vendor", "os.arch"}:
            properties.setdefault(match.group(1), match.group(2))
    if "java.version" not in properties:
        banner = _BANNER_VERSION.search(output)
        if banner:
            properties["java.version"] = banner.group(1)
    return properties


def probe_java(
    java_path: str | Path,
    *,
    runner: Runner = subprocess.run,
    managed: bool = False,
) -> JavaInstallation | None:
    cmd = [str(java_path), "-XshowSettings:properties", "-version"]
    try:
        result = runner(cmd, capture_output=True, text=True, timeout=PROBE_TIMEOUT_SECONDS, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Java probe failed path=%s error=%s", java_path, exc)
        return None
    if result.returncode != 0:
        logger.debug("Java probe non-zero exit path=%s returncode=%s", java_path, result.returncode)
        return None
    # The JVM prints settings and the banner on stderr.
    properties = parse_probe_output(f"{result.stderr or ''}\n{result.stdout or ''}")
    version = properties.get("java.version")
    if not version:
        return None
    try:
        major = parse_major_version(version)
    except ServerDeckError:
        return None
    return JavaInstallation(
        version=version,
        major=major,
        path=str(java_path),
        vendor=properties.get("java.vendor", ""),
        arch=properties.get("os.arch", ""),
        managed=managed,
    )


def _runtime_executables(root: Path) -> Iterable[Path]:
    name = java_executable_name()
    if not root.is_dir():
        return
    try:
        children = sorted(root.iterdir())
    except OSError:
        return
    for child in children:
        for candidate in (child / "bin" / name, child / "Contents" / "Home" / "bin" / name):
            if candidate.is_file():
                yield candidate


class JavaDetector:
    def __init__(
        self,
        *,
        managed_dir: Path | None = None,
        runner: Runner = subprocess.run,
        environ: Mapping[str, str] | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.managed_dir = managed_dir
        self._runner = runner
        self._environ = environ if environ is not None else os.environ
        self._which = which

    def search_roots(self) -> list[Path]:
        roots: list[Path] = []
        if self.managed_dir is not None:
            roots.append(self.managed_dir)
        if os.name == "nt":
            for variable in ("ProgramFiles", "ProgramFiles(x86)"):
                base = self._environ.get(variable, "").strip()
                if base:
                    roots.extend(Path(base) / vendor for vendor in WINDOWS_VENDOR_DIRS)
        else:
            roots.extend(Path(item).expanduser() for item in UNIX_JAVA_ROOTS)
        return roots

    def candidates(self) -> list[Path]:
        seen: set[str] = set()
        ordered: list[Path] = []

        def add(path: Path) -> None:
            try:
                key = str(path.resolve())
            except OSError:
                key = str(path)
            if key not in seen:
                seen.add(key)
                ordered.append(path)

        java_home = self._environ.get("JAVA_HOME", "").strip()
        if java_home:
            candidate = Path(java_home) / "bin" / java_executable_name()
            if candidate.is_file():
                add(candidate)
        for root in self.search_roots():
            for candidate in _runtime_executables(root):
                add(candidate)
        on_path = self._which("java")
        if on_path:
            add(Path(on_path))
        return ordered

    def _is_managed(self, path: Path) -> bool:
        if self.managed_dir is None:
            return False
        try:
            path.resolve().relative_to(self.managed_dir.resolve())
        except (ValueError, OSError):
            return False
        return True

    def detect(self) -> list[JavaInstallation]:
        found: list[JavaInstallation] = []
        for candidate in self.candidates():
            installation = probe_java(candidate, runner=self._runner, managed=self._is_managed(candidate))
            if installation is None:
                logger.debug("Skipping invalid Java candidate path=%s", candidate)
                continue
            found.append(installation)
        logger.info("Detected %s Java runtime(s)", len(found))
        return found
