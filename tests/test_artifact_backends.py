from __future__ import annotations

import json
from pathlib import Path

import pytest

from serverdeck.download.backends import (
    BMCLAPI_URL,
    FABRIC_META_URL,
    MOJANG_MANIFEST_URL,
    PAPER_API_URL,
    ArtifactResolver,
    BuildListing,
    FabricBackend,
    ForgeBackend,
    PaperBackend,
    VanillaBackend,
    default_backends,
    parse_core_type,
)
from serverdeck.download.downloader import Downloader
from serverdeck.download.http import JsonClient
from serverdeck.download.models import CoreType
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.retry import RetryPolicy

VANILLA_DETAIL_URL = "https://piston-meta.mojang.com/v1/packages/abc/1.20.4.json"


class FakeRequester:
    def __init__(self, routes: dict[str, object]) -> None:
        self.routes = routes
        self.calls: list[str] = []

    def __call__(self, url: str, headers: dict[str, str]) -> tuple[int, str, dict[str, str]]:
        self.calls.append(url)
        payload = self.routes.get(url)
        if payload is None:
            return 404, "", {}
        if isinstance(payload, int):
            return payload, "", {}
        return 200, json.dumps(payload), {"content-type": "application/json"}


def _client(routes: dict[str, object]) -> tuple[JsonClient, FakeRequester]:
    requester = FakeRequester(routes)
    return JsonClient(requester=requester, policy=RetryPolicy(max_attempts=2), sleep=lambda _: None), requester


MANIFEST = {
    "versions": [
        {"id": "24w14a", "type": "snapshot", "url": "https://example.invalid/snap.json"},
        {"id": "1.20.4", "type": "release", "url": VANILLA_DETAIL_URL},
        {"id": "1.20.3", "type": "release", "url": "https://example.invalid/1.20.3.json"},
    ]
}


def test_vanilla_lists_releases_only() -> None:
    client, _ = _client({MOJANG_MANIFEST_URL: MANIFEST})
    assert VanillaBackend(client).list_versions() == ["1.20.4", "1.20.3"]


def test_vanilla_resolves_server_download_with_sha1() -> None:
    detail = {"downloads": {"server": {"url": "https://example.invalid/server.jar", "sha1": "ab" * 20, "size": 42}}}
    client, _ = _client({MOJANG_MANIFEST_URL: MANIFEST, VANILLA_DETAIL_URL: detail})

    source = VanillaBackend(client).resolve("1.20.4")

    assert source.url == "https://example.invalid/server.jar"
    assert source.filename == "server.jar"
    assert source.size == 42
    assert source.checksum is not None and source.checksum.algorithm == "sha1"
    assert source.requires_install is False


def test_vanilla_unknown_version_is_not_found() -> None:
    client, _ = _client({MOJANG_MANIFEST_URL: MANIFEST})
    with pytest.raises(ServerDeckError) as excinfo:
        VanillaBackend(client).resolve("9.9.9")
    assert excinfo.value.kind == ErrorKind.NOT_FOUND


def test_vanilla_without_server_jar_is_unsupported() -> None:
    client, _ = _client({MOJANG_MANIFEST_URL: MANIFEST, VANILLA_DETAIL_URL: {"downloads": {"client": {}}}})
    with pytest.raises(ServerDeckError) as excinfo:
        VanillaBackend(client).resolve("1.20.4")
    assert excinfo.value.kind == ErrorKind.UNSUPPORTED_VERSION


def test_paper_versions_newest_first_and_latest_build_resolution() -> None:
    builds_url = f"{PAPER_API_URL}/versions/1.20.4/builds"
    builds = {
        "builds": [
            {"build": 496, "downloads": {"application": {"name": "paper-1.20.4-496.jar", "sha256": "aa" * 32}}},
            {"build": 497, "downloads": {"application": {"name": "paper-1.20.4-497.jar", "sha256": "bb" * 32}}},
        ]
    }
    client, _ = _client({PAPER_API_URL: {"versions": ["1.20.2", "1.20.4"]}, builds_url: builds})
    backend = PaperBackend(client)

    assert backend.list_versions() == ["1.20.4", "1.20.2"]
    assert backend.list_builds("1.20.4") == ["497", "496"]
    latest = backend.resolve("1.20.4")
    assert latest.url.endswith("/builds/497/downloads/paper-1.20.4-497.jar")
    assert latest.checksum is not None and latest.checksum.algorithm == "sha256"
    pinned = backend.resolve("1.20.4", "496")
    assert pinned.url.endswith("/builds/496/downloads/paper-1.20.4-496.jar")
    with pytest.raises(ServerDeckError) as excinfo:
        backend.resolve("1.20.4", "1")
    assert excinfo.value.kind == ErrorKind.NOT_FOUND


def test_fabric_uses_stable_loader_and_installer() -> None:
    client, _ = _client(
        {
            f"{FABRIC_META_URL}/versions/game": [
                {"version": "1.20.5-rc1", "stable": False},
                {"version": "1.20.4", "stable": True},
            ],
            f"{FABRIC_META_URL}/versions/loader": [
                {"version": "0.16.0-beta", "stable": False},
                {"version": "0.15.11", "stable": True},
            ],
            f"{FABRIC_META_URL}/versions/installer": [{"version": "1.0.1", "stable": True}],
        }
    )
    backend = FabricBackend(client)

    assert backend.list_versions() == ["1.20.4"]
    assert backend.list_builds("1.20.4") == ["0.15.11"]
    source = backend.resolve("1.20.4")
    assert source.url == f"{FABRIC_META_URL}/versions/loader/1.20.4/0.15.11/1.0.1/server/jar"
    with pytest.raises(ServerDeckError):
        backend.list_builds("1.20.5-rc1")


def test_forge_resolves_installer_that_requires_install() -> None:
    client, _ = _client(
        {
            f"{BMCLAPI_URL}/forge/minecraft": ["1.19.2", "1.20.1"],
            f"{BMCLAPI_URL}/forge/minecraft/1.20.1": [
                {"build": 101, "version": "47.1.0"},
                {"build": 120, "version": "47.2.0"},
            ],
        }
    )
    backend = ForgeBackend(client)

    assert backend.list_versions() == ["1.20.1", "1.19.2"]
    assert backend.list_builds("1.20.1") == ["47.2.0", "47.1.0"]
    source = backend.resolve("1.20.1")
    assert source.url == f"{BMCLAPI_URL}/forge/download/120"
    assert source.requires_install is True
    assert backend.resolve("1.20.1", "47.1.0").url.endswith("/101")


def test_resolver_reports_missing_build_listing_as_not_found() -> None:
    client, _ = _client({})
    resolver = ArtifactResolver(client=client)

    assert not isinstance(resolver.backend("vanilla"), BuildListing)
    assert isinstance(resolver.backend("paper"), BuildListing)
    with pytest.raises(ServerDeckError) as excinfo:
        resolver.list_builds("vanilla", "1.20.4")
    assert excinfo.value.kind == ErrorKind.NOT_FOUND


def test_parse_core_type_rejects_unknown_values() -> None:
    assert parse_core_type(" Paper ") is CoreType.PAPER
    with pytest.raises(ServerDeckError) as excinfo:
        parse_core_type("spigot")
    assert excinfo.value.kind == ErrorKind.INVALID_REQUEST


def test_default_backends_cover_every_core_type() -> None:
    client, _ = _client({})
    assert set(default_backends(client)) == set(CoreType)


def test_json_client_retries_server_errors_then_fails() -> None:
    client, requester = _client({MOJANG_MANIFEST_URL: 503})
    with pytest.raises(ServerDeckError) as excinfo:
        client.get(MOJANG_MANIFEST_URL)
    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED
    assert len(requester.calls) == 2


def test_json_client_does_not_retry_client_errors() -> None:
    client, requester = _client({MOJANG_MANIFEST_URL: 403})
    with pytest.raises(ServerDeckError) as excinfo:
        client.get(MOJANG_MANIFEST_URL)
    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED
    assert len(requester.calls) == 1


def test_malformed_manifest_is_reported() -> None:
    client, _ = _client({MOJANG_MANIFEST_URL: {"latest": {}}})
    with pytest.raises(ServerDeckError) as excinfo:
        VanillaBackend(client).list_versions()
    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED


def test_resolver_download_streams_to_destination(tmp_path: Path) -> None:
    class Response:
        status = 200
        headers = {"Content-Length": "4"}

        def __init__(self) -> None:
            self._chunks = [b"jar!", b""]

        def read(self, size: int = -1) -> bytes:
            return self._chunks.pop(0)

        def close(self) -> None:
            return None

    detail = {"downloads": {"server": {"url": "https://example.invalid/server.jar", "size": 4}}}
    client, _ = _client({MOJANG_MANIFEST_URL: MANIFEST, VANILLA_DETAIL_URL: detail})
    resolver = ArtifactResolver(client=client, downloader=Downloader(opener=lambda url, headers: Response()))

    path = resolver.download("vanilla", "1.20.4", None, tmp_path / "server.jar")

    assert path.read_bytes() == b"jar!"
