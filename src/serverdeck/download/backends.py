"""Upstream distribution backends and the artifact resolver."""

from __future__ import annotations

import logging as py_logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from serverdeck.download.downloader import Downloader
from serverdeck.download.http import JsonClient
from serverdeck.download.models import ArtifactSource, CancellationToken, Checksum, CoreType, DownloadTask
from serverdeck.download.progress import ProgressCallback
from serverdeck.errors import ErrorKind, ServerDeckError

logger = py_logging.getLogger(__name__)

MOJANG_MANIFEST_URL = "https://piston-meta.mojang.com/mc/game/version_manifest_v2.json"
PAPER_API_URL = "https://api.papermc.io/v2/projects/paper"
FABRIC_META_URL = "https://meta.fabricmc.net/v2"
BMCLAPI_URL = "https://bmclapi2.bangbang93.com"

SERVER_JAR = "server.jar"
FORGE_INSTALLER_JAR = "forge-installer.jar"


class ArtifactBackend(Protocol):
    core_type: CoreType

    def list_versions(self) -> list[str]: ...

    def resolve(self, version: str, build: str | None = None) -> ArtifactSource: ...


@runtime_checkable
class BuildListing(Protocol):
    def list_builds(self, version: str) -> list[str]: ...


def _malformed(source: str) -> ServerDeckError:
    return ServerDeckError(
        f"Unexpected response from {source}.",
        kind=ErrorKind.DOWNLOAD_FAILED,
        hint="The upstream API may have changed; retry later.",
    )


def _require_list(value: Any, source: str) -> list[Any]:
    if not isinstance(value, list):
        raise _malformed(source)
    return value


def _require_dict(value: Any, source: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise _malformed(source)
    return value


def _version_not_found(core: CoreType, version: str, build: str | None = None) -> ServerDeckError:
    subject = f"{core.value} {version}" + (f" build {build}" if build else "")
    return ServerDeckError(
        f"No artifact available for {subject}.",
        kind=ErrorKind.NOT_FOUND,
        hint=f"Run `serverdeck versions {core.value}` to see what is published.",
    )


class VanillaBackend:
    core_type = CoreType.VANILLA

    def __init__(self, client: JsonClient, *, manifest_url: str = MOJANG_MANIFEST_URL) -> None:
        self._client = client
        self._manifest_url = manifest_url

    def _releases(self) -> list[dict[str, Any]]:
        manifest = _require_dict(self._client.get(self._manifest_url), "Mojang")
        entries = _require_list(manifest.get("versions"), "Mojang")
        return [entry for entry in entries if isinstance(entry, dict) and entry.get("type") == "release"]

    def list_versions(self) -> list[str]:
        return [str(entry["id"]) for entry in self._releases() if "id" in entry]

    def resolve(self, version: str, build: str | None = None) -> ArtifactSource:
        entry = next((item for item in self._releases() if item.get("id") == version), None)
        if entry is None or not isinstance(entry.get("url"), str):
            raise _version_not_found(self.core_type, version)
        detail = _require_dict(self._client.get(entry["url"]), "Mojang")
        server = (detail.get("downloads") or {}).get("server")
        if not isinstance(server, dict) or not isinstance(server.get("url"), str):
            raise ServerDeckError(
                f"Minecraft {version} has no dedicated server download.",
                kind=ErrorKind.UNSUPPORTED_VERSION,
            )
        sha1 = server.get("sha1")
        return ArtifactSource(
            url=server["url"],
            filename=SERVER_JAR,
            size=server.get("size") if isinstance(server.get("size"), int) else None,
            checksum=Checksum("sha1", sha1) if isinstance(sha1, str) else None,
        )


class PaperBackend:
    core_type = CoreType.PAPER

    def __init__(self, client: JsonClient, *, api_url: str = PAPER_API_URL) -> None:
        self._client = client
        self._api_url = api_url.rstrip("/")

    def list_versions(self) -> list[str]:
        project = _require_dict(self._client.get(self._api_url), "PaperMC")
        versions = _require_list(project.get("versions"), "PaperMC")
        return [str(item) for item in reversed(versions)]

    def _builds(self, version: str) -> list[dict[str, Any]]:
        payload = _require_dict(self._client.get(f"{self._api_url}/versions/{version}/builds"), "PaperMC")
        builds = _require_list(payload.get("builds"), "PaperMC")
        return [item for item in builds if isinstance(item, dict) and "build" in item]

    def list_builds(self, version: str) -> list[str]:
        return [str(item["build"]) for item in reversed(self._builds(version))]

    def resolve(self, version: str, build: str | None = None) -> ArtifactSource:
        builds = self._builds(version)
        if not builds:
            raise _version_not_found(self.core_type, version)
        if build is None:
            chosen = builds[-1]
        else:
            chosen = next((item for item in builds if str(item["build"]) == str(build)), None)
            if chosen is None:
                raise _version_not_found(self.core_type, version, build)
        application = ((chosen.get("downloads") or {}).get("application")) or {}
        name = application.get("name")
        if not isinstance(name, str):
            raise _malformed("PaperMC")
        sha256 = application.get("sha256")
        return ArtifactSource(
            url=f"{self._api_url}/versions/{version}/builds/{chosen['build']}/downloads/{name}",
            filename=SERVER_JAR,
            checksum=Checksum("sha256", sha256) if isinstance(sha256, str) else None,
        )


def _stable_versions(entries: Iterable[Any]) -> list[str]:
    return [
        str(entry["version"])
        for entry in entries
        if isinstance(entry, dict) and entry.get("stable") and "version" in entry
    ]


class FabricBackend:
    core_type = CoreType.FABRIC

    def __init__(self, client: JsonClient, *, meta_url: str = FABRIC_META_URL) -> None:
        self._client = client
        self._meta_url = meta_url.rstrip("/")

    def _stable(self, kind: str) -> list[str]:
        return _stable_versions(_require_list(self._client.get(f"{self._meta_url}/versions/{kind}"), "Fabric"))

    def list_versions(self) -> list[str]:
        return self._stable("game")

    def list_builds(self, version: str) -> list[str]:
        """Stable loader versions; any of them can be paired with ``version``."""
        if version not in self.list_versions():
            raise _version_not_found(self.core_type, version)
        return self._stable("loader")

    def resolve(self, version: str, build: str | None = None) -> ArtifactSource:
        loaders = self.list_builds(version)
        loader = build or (loaders[0] if loaders else None)
        if loader is None or (build is not None and build not in loaders):
            raise _version_not_found(self.core_type, version, build)
        installers = self._stable("installer")
        if not installers:
            raise _malformed("Fabric")
        return ArtifactSource(
            url=f"{self._meta_url}/versions/loader/{version}/{loader}/{installers[0]}/server/jar",
            filename=SERVER_JAR,
        )


class ForgeBackend:
    """Forge installers mirrored by BMCLAPI; the result must be installed headless."""

    core_type = CoreType.FORGE

    def __init__(self, client: JsonClient, *, api_url: str = BMCLAPI_URL) -> None:
        self._client = client
        self._api_url = api_url.rstrip("/")

    def list_versions(self) -> list[str]:
        versions = _require_list(self._client.get(f"{self._api_url}/forge/minecraft"), "BMCLAPI")
        return [str(item) for item in reversed(versions)]

    def _entries(self, version: str) -> list[dict[str, Any]]:
        payload = _require_list(self._client.get(f"{self._api_url}/forge/minecraft/{version}"), "BMCLAPI")
        entries = [item for item in payload if isinstance(item, dict) and "build" in item and "version" in item]
        return sorted(entries, key=lambda item: int(item["build"]), reverse=True)

    def list_builds(self, version: str) -> list[str]:
        return [str(item["version"]) for item in self._entries(version)]

    def resolve(self, version: str, build: str | None = None) -> ArtifactSource:
        entries = self._entries(version)
        if build is not None:
            entries = [item for item in entries if str(item["version"]) == build]
        if not entries:
            raise _version_not_found(self.core_type, version, build)
        return ArtifactSource(
            url=f"{self._api_url}/forge/download/{entries[0]['build']}",
            filename=FORGE_INSTALLER_JAR,
            requires_install=True,
        )


def default_backends(client: JsonClient) -> dict[CoreType, ArtifactBackend]:
    return {
        CoreType.VANILLA: VanillaBackend(client),
        CoreType.PAPER: PaperBackend(client),
        CoreType.FABRIC: FabricBackend(client),
        CoreType.FORGE: ForgeBackend(client),
    }


def parse_core_type(value: str | CoreType) -> CoreType:
    if isinstance(value, CoreType):
        return value
    try:
        return CoreType(value.strip().lower())
    except ValueError as exc:
        raise ServerDeckError(
            f"Unknown core type: {value}",
            kind=ErrorKind.INVALID_REQUEST,
            hint="Use one of: " + ", ".join(item.value for item in CoreType),
        ) from exc


class ArtifactResolver:
    def __init__(
        self,
        *,
        downloader: Downloader | None = None,
        client: JsonClient | None = None,
        backends: Mapping[CoreType, ArtifactBackend] | None = None,
    ) -> None:
        self.downloader = downloader or Downloader()
        self._backends = dict(backends) if backends is not None else default_backends(client or JsonClient())

    def backend(self, core: str | CoreType) -> ArtifactBackend:
        core_type = parse_core_type(core)
        backend = self._backends.get(core_type)
        if backend is None:
            raise ServerDeckError(f"No backend registered for {core_type.value}.", kind=ErrorKind.NOT_FOUND)
        return backend

    def list_versions(self, core: str | CoreType) -> list[str]:
        return self.backend(core).list_versions()

    def list_builds(self, core: str | CoreType, version: str) -> list[str]:
        backend = self.backend(core)
        if not isinstance(backend, BuildListing):
            raise ServerDeckError(
                f"{parse_core_type(core).value} has no independent builds.",
                kind=ErrorKind.NOT_FOUND,
                hint="Omit the build; the version alone selects the artifact.",
            )
        return backend.list_builds(version)

    def resolve(self, core: str | CoreType, version: str, build: str | None = None) -> ArtifactSource:
        source = self.backend(core).resolve(version, build)
        logger.debug("Resolved artifact core=%s version=%s build=%s url=%s", core, version, build, source.url)
        return source

    def download(
        self,
        core: str | CoreType,
        version: str,
        build: str | None,
        destination: Path,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        core_type = parse_core_type(core)
        source = self.resolve(core_type, version, build)
        task = DownloadTask(core_type=core_type, version=version, destination=Path(destination), build=build)
        return self.downloader.download(source, Path(destination), task=task, on_progress=on_progress, cancel=cancel)
