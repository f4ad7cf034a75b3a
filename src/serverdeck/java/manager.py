"""Java runtime registry: detection, selection, managed installs."""

from __future__ import annotations

import logging as py_logging
import shutil
import subprocess
import threading
from pathlib import Path

from serverdeck.download.downloader import Downloader
from serverdeck.download.models import ArtifactSource, CancellationToken
from serverdeck.download.progress import ProgressCallback
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.java.compat import is_compatible, parse_major_version, required_major_version
from serverdeck.java.detector import JavaDetector, Runner, probe_java
from serverdeck.java.installer import (
    ADOPTIUM_API_URL,
    adoptium_binary_url,
    extract_archive,
    find_java_executable,
    host_platform,
    promote_extracted,
)
from serverdeck.java.models import JavaInstallation
from serverdeck.locking import KeyedLock

logger = py_logging.getLogger(__name__)


class JavaEnvironmentManager:
    """Owns the path -> installation registry.

    Reads return copies; ``detect`` replaces the registry wholesale, ``install``
    and ``uninstall`` edit single entries.
    """

    def __init__(
        self,
        java_dir: Path,
        *,
        detector: JavaDetector | None = None,
        downloader: Downloader | None = None,
        runner: Runner = subprocess.run,
        platform_name: tuple[str, str] | None = None,
        api_url: str = ADOPTIUM_API_URL,
    ) -> None:
        self.java_dir = Path(java_dir)
        self._runner = runner
        self._detector = detector or JavaDetector(managed_dir=self.java_dir, runner=runner)
        self._downloader = downloader or Downloader()
        self._platform_name = platform_name
        self._api_url = api_url
        self._registry: dict[str, JavaInstallation] = {}
        self._registry_lock = threading.Lock()
        self._install_locks = KeyedLock()
        self._detected = False

    def installations(self) -> list[JavaInstallation]:
        with self._registry_lock:
            items = list(self._registry.values())
        return sorted(items, key=lambda item: (item.major, item.version, item.path))

    def detect(self) -> list[JavaInstallation]:
        found = self._detector.detect()
        with self._registry_lock:
            self._registry = {item.path: item for item in found}
            self._detected = True
        return self.installations()

    def required_major_version(self, target: str) -> int:
        return required_major_version(target)

    def is_compatible(self, installed_version: str, target: str) -> bool:
        return is_compatible(installed_version, target)

    def select_best(self, target: str) -> JavaInstallation:
        required = required_major_version(target)
        candidates = [item for item in self.installations() if item.major >= required]
        if not candidates:
            raise ServerDeckError(
                f"No installed Java runtime satisfies Minecraft {target} (needs Java {required}+).",
                kind=ErrorKind.NOT_FOUND,
                hint=f"Run `serverdeck java install {required}`.",
            )
        lowest = min(item.major for item in candidates)
        same_major = [item for item in candidates if item.major == lowest]
        return max(same_major, key=lambda item: _version_key(item.version))

    def _register(self, installation: JavaInstallation) -> JavaInstallation:
        with self._registry_lock:
            self._registry[installation.path] = installation
        return installation

    def install(
        self,
        major: int,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> JavaInstallation:
        if major < 8:
            raise ServerDeckError(f"Unsupported Java major version: {major}", kind=ErrorKind.INVALID_REQUEST)
        with self._install_locks.hold(str(major)):
            target = self.java_dir / str(major)
            existing = self._validate_managed(target, major)
            if existing is not None:
                logger.info("Reusing managed Java runtime major=%s path=%s", major, existing.path)
                return self._register(existing)
            if target.exists():
                logger.warning("Replacing broken managed Java runtime path=%s", target)
                shutil.rmtree(target, ignore_errors=True)

            os_name, arch = self._platform_name or host_platform()
            url = adoptium_binary_url(major, os_name, arch, api_url=self._api_url)
            suffix = "zip" if os_name == "windows" else "tar.gz"
            archive = self.java_dir / f".jre-{major}.{suffix}"
            staging = self.java_dir / f".jre-{major}.staging"
            logger.info("Installing Java runtime major=%s os=%s arch=%s", major, os_name, arch)
            try:
                self.java_dir.mkdir(parents=True, exist_ok=True)
                # Parts never carry over between installs.
                archive.with_name(archive.name + ".part").unlink(missing_ok=True)
                self._downloader.download(
                    ArtifactSource(url=url, filename=archive.name),
                    archive,
                    on_progress=on_progress,
                    cancel=cancel,
                )
                if staging.exists():
                    shutil.rmtree(staging)
                extract_archive(archive, staging)
                promote_extracted(staging, target)
            except ServerDeckError:
                shutil.rmtree(target, ignore_errors=True)
                raise
            except OSError as exc:
                shutil.rmtree(target, ignore_errors=True)
                raise ServerDeckError(
                    f"Could not install Java {major}: {exc}",
                    kind=ErrorKind.DOWNLOAD_FAILED,
                ) from exc
            finally:
                archive.unlink(missing_ok=True)
                shutil.rmtree(staging, ignore_errors=True)

            installation = self._validate_managed(target, major)
            if installation is None:
                shutil.rmtree(target, ignore_errors=True)
                raise ServerDeckError(
                    f"Installed Java {major} runtime failed validation.",
                    kind=ErrorKind.DOWNLOAD_FAILED,
                    hint="Retry the installation or install Java manually.",
                )
            return self._register(installation)

    def _validate_managed(self, root: Path, major: int) -> JavaInstallation | None:
        executable = find_java_executable(root)
        if executable is None:
            return None
        installation = probe_java(executable, runner=self._runner, managed=True)
        if installation is None or installation.major != major:
            return None
        return installation

    def uninstall(self, path: str | Path) -> JavaInstallation:
        key = str(path)
        with self._registry_lock:
            installation = self._registry.pop(key, None)
        if installation is None:
            raise ServerDeckError(f"Java runtime not registered: {key}", kind=ErrorKind.NOT_FOUND)
        managed_root = self._managed_root(Path(key))
        if managed_root is not None:
            shutil.rmtree(managed_root, ignore_errors=True)
            logger.info("Removed managed Java runtime path=%s", managed_root)
        return installation

    def _managed_root(self, executable: Path) -> Path | None:
        try:
            relative = executable.resolve().relative_to(self.java_dir.resolve())
        except (ValueError, OSError):
            return None
        if not relative.parts:
            return None
        return self.java_dir / relative.parts[0]

    def ensure(
        self,
        target: str,
        *,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> JavaInstallation:
        required = required_major_version(target)
        if not self._detected:
            self.detect()
        try:
            return self.select_best(target)
        except ServerDeckError as exc:
            if exc.kind != ErrorKind.NOT_FOUND:
                raise
        logger.info("No compatible Java for target=%s; installing major=%s", target, required)
        return self.install(required, on_progress=on_progress, cancel=cancel)

    def validate_path(self, path: str | Path, target: str | None = None) -> JavaInstallation:
        """Probe a user-supplied executable, optionally checking it against ``target``."""
        installation = probe_java(path, runner=self._runner)
        if installation is None:
            raise ServerDeckError(
                f"Not a usable Java executable: {path}",
                kind=ErrorKind.NOT_FOUND,
                hint="Point to the java binary inside a JRE/JDK bin directory.",
            )
        if target is not None and not is_compatible(installation.version, target):
            raise ServerDeckError(
                f"Java {installation.version} cannot run Minecraft {target}.",
                kind=ErrorKind.UNSUPPORTED_VERSION,
                hint=f"Use Java {required_major_version(target)} or newer.",
            )
        return self._register(installation)


def _version_key(version: str) -> tuple[int, ...]:
    numbers: list[int] = [parse_major_version(version)]
    for chunk in version.replace("_", ".").replace("+", ".").split(".")[1:]:
        digits = "".join(ch for ch in chunk if ch.isdigit())
        numbers.append(int(digits) if digits else 0)
    return tuple(numbers)
