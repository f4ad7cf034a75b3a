from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from serverdeck.download.downloader import Downloader
from serverdeck.download.models import ArtifactSource, CancellationToken, Checksum, ProgressSnapshot
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.retry import RetryPolicy

PAYLOAD = b"0123456789abcdef"


class FakeResponse:
    def __init__(
        self,
        status: int,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
        *,
        fail_after: int | None = None,
        on_read=None,
    ) -> None:
        self.status = status
        self.headers = headers or {}
        self._body = body
        self._pos = 0
        self._fail_after = fail_after
        self._on_read = on_read
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if self._on_read is not None:
            self._on_read(self._pos)
        if self._fail_after is not None and self._pos >= self._fail_after:
            raise ConnectionResetError("connection reset by peer")
        end = len(self._body) if size < 0 else min(self._pos + size, len(self._body))
        if self._fail_after is not None:
            end = min(end, self._fail_after)
        chunk = self._body[self._pos : end]
        self._pos = end
        return chunk

    def close(self) -> None:
        self.closed = True


class ScriptedOpener:
    def __init__(self, *responses: FakeResponse) -> None:
        self._responses = list(responses)
        self.requests: list[dict[str, str]] = []

    def __call__(self, url: str, headers: dict[str, str]) -> FakeResponse:
        self.requests.append(dict(headers))
        if len(self._responses) > 1:
            return self._responses.pop(0)
        return self._responses[0]


def _downloader(opener: ScriptedOpener, attempts: int = 3) -> Downloader:
    return Downloader(
        opener=opener,
        policy=RetryPolicy(max_attempts=attempts, initial_backoff_seconds=0.0),
        chunk_size=4,
        progress_interval=0.0,
    )


def _source(**overrides) -> ArtifactSource:
    values = {
        "url": "https://example.invalid/server.jar",
        "filename": "server.jar",
        "size": len(PAYLOAD),
        "checksum": Checksum("sha1", hashlib.sha1(PAYLOAD).hexdigest()),
    }
    values.update(overrides)
    return ArtifactSource(**values)


def test_download_writes_verified_file_and_reports_progress(tmp_path: Path) -> None:
    opener = ScriptedOpener(FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}))
    snapshots: list[ProgressSnapshot] = []
    destination = tmp_path / "server.jar"

    result = _downloader(opener).download(_source(), destination, on_progress=snapshots.append)

    assert result == destination
    assert destination.read_bytes() == PAYLOAD
    assert not (tmp_path / "server.jar.part").exists()
    assert snapshots[-1].done is True
    assert snapshots[-1].downloaded == len(PAYLOAD)
    downloaded = [item.downloaded for item in snapshots]
    assert downloaded == sorted(downloaded)


def test_interrupted_transfer_resumes_with_range_request(tmp_path: Path) -> None:
    opener = ScriptedOpener(
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}, fail_after=8),
        FakeResponse(
            206,
            PAYLOAD[8:],
            {"Content-Range": f"bytes 8-{len(PAYLOAD) - 1}/{len(PAYLOAD)}", "Content-Length": "8"},
        ),
    )
    destination = tmp_path / "server.jar"

    _downloader(opener).download(_source(), destination)

    assert destination.read_bytes() == PAYLOAD
    assert "Range" not in opener.requests[0]
    assert opener.requests[1]["Range"] == "bytes=8-"


def test_ignored_range_request_restarts_from_zero(tmp_path: Path) -> None:
    opener = ScriptedOpener(
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}, fail_after=4),
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}),
    )
    destination = tmp_path / "server.jar"

    _downloader(opener).download(_source(), destination)

    assert destination.read_bytes() == PAYLOAD
    assert opener.requests[1]["Range"] == "bytes=4-"


def test_short_body_is_retried(tmp_path: Path) -> None:
    opener = ScriptedOpener(
        FakeResponse(200, PAYLOAD[:10], {"Content-Length": str(len(PAYLOAD))}),
        FakeResponse(206, PAYLOAD[10:], {"Content-Range": f"bytes 10-15/{len(PAYLOAD)}"}),
    )
    destination = tmp_path / "server.jar"

    _downloader(opener).download(_source(), destination)

    assert destination.read_bytes() == PAYLOAD
    assert len(opener.requests) == 2


def test_client_error_fails_immediately_without_part_file(tmp_path: Path) -> None:
    opener = ScriptedOpener(FakeResponse(404))
    destination = tmp_path / "server.jar"

    with pytest.raises(ServerDeckError) as excinfo:
        _downloader(opener).download(_source(), destination)

    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED
    assert len(opener.requests) == 1
    assert not destination.exists()
    assert not (tmp_path / "server.jar.part").exists()


def test_exhausted_retries_delete_part_file(tmp_path: Path) -> None:
    opener = ScriptedOpener(
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}, fail_after=4),
        FakeResponse(503),
    )
    destination = tmp_path / "server.jar"

    with pytest.raises(ServerDeckError) as excinfo:
        _downloader(opener, attempts=3).download(_source(), destination)

    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED
    assert len(opener.requests) == 3
    assert not destination.exists()
    assert not (tmp_path / "server.jar.part").exists()


def test_checksum_mismatch_is_not_promoted(tmp_path: Path) -> None:
    opener = ScriptedOpener(
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}),
        FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}),
    )
    destination = tmp_path / "server.jar"

    with pytest.raises(ServerDeckError) as excinfo:
        _downloader(opener, attempts=2).download(_source(checksum=Checksum("sha1", "0" * 40)), destination)

    assert excinfo.value.kind == ErrorKind.DOWNLOAD_FAILED
    assert len(opener.requests) == 2
    assert not destination.exists()
    assert not (tmp_path / "server.jar.part").exists()


def test_cancelled_download_leaves_no_files(tmp_path: Path) -> None:
    token = CancellationToken()

    def cancel_midway(position: int) -> None:
        if position >= 8:
            token.cancel()

    opener = ScriptedOpener(FakeResponse(200, PAYLOAD, {"Content-Length": str(len(PAYLOAD))}, on_read=cancel_midway))
    destination = tmp_path / "server.jar"

    with pytest.raises(ServerDeckError) as excinfo:
        _downloader(opener).download(_source(), destination, cancel=token)

    assert excinfo.value.kind == ErrorKind.CANCELLED
    assert len(opener.requests) == 1
    assert not destination.exists()
    assert not (tmp_path / "server.jar.part").exists()


def test_unknown_length_download_without_checksum(tmp_path: Path) -> None:
    opener = ScriptedOpener(FakeResponse(200, PAYLOAD))
    destination = tmp_path / "out.bin"
    snapshots: list[ProgressSnapshot] = []

    _downloader(opener).download(
        _source(size=None, checksum=None),
        destination,
        on_progress=snapshots.append,
    )

    assert destination.read_bytes() == PAYLOAD
    assert snapshots[-1] == ProgressSnapshot(downloaded=len(PAYLOAD), total=len(PAYLOAD), done=True)
