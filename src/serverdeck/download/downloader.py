"""Resumable streaming downloads with checksum verification."""

from __future__ import annotations

import hashlib
import http.client
import logging as py_logging
import os
import re
from collections.abc import Mapping
from pathlib import Path

from serverdeck.download.http import (
    USER_AGENT,
    RejectedRequestError,
    StreamOpener,
    StreamResponse,
    TransientNetworkError,
    error_for_status,
    urllib_opener,
)
from serverdeck.download.models import ArtifactSource, CancellationToken, Checksum, DownloadTask
from serverdeck.download.progress import ProgressCallback, ProgressReporter
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.retry import FatalError, RetryPolicy, run_with_retry

logger = py_logging.getLogger(__name__)

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")
DEFAULT_CHUNK_SIZE = 64 * 1024


class DownloadCancelled(FatalError):
    """Raised inside the transfer loop once the cancellation token fires."""


def _header(headers: Mapping[str, str], name: str) -> str:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return ""


def _announced_total(headers: Mapping[str, str], status: int, offset: int) -> int | None:
    if status == 206:
        match = _CONTENT_RANGE.match(_header(headers, "content-range"))
        if match and match.group(3) != "*":
            return int(match.group(3))
    length = _header(headers, "content-length")
    if length.isdigit():
        return int(length) + (offset if status == 206 else 0)
    return None


def file_digest(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with path.open("rb") as handle:
        for block in iter(lambda: handle.read(DEFAULT_CHUNK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def _remove_part(task: DownloadTask) -> None:
    try:
        task.part_path.unlink()
    except FileNotFoundError:
        pass


class Downloader:
    """Streams an :class:`ArtifactSource` to disk through ``<destination>.part``.

    Transient failures are retried according to ``policy`` and resume the part
    file with a ``Range`` request. The part file is promoted only after the
    announced size and checksum match. Cancellation and exhausted retries both
    remove the part file.
    """

    def __init__(
        self,
        *,
        opener: StreamOpener | None = None,
        policy: RetryPolicy | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress_interval: float = 0.1,
    ) -> None:
        self._opener = opener or urllib_opener
        self.policy = policy or RetryPolicy()
        self._chunk_size = chunk_size
        self._progress_interval = progress_interval

    def download(
        self,
        source: ArtifactSource,
        destination: Path,
        *,
        task: DownloadTask | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
    ) -> Path:
        destination = Path(destination)
        if task is None:
            task = DownloadTask(core_type=None, version="", destination=destination)
        if cancel is not None:
            task.token = cancel
        destination.parent.mkdir(parents=True, exist_ok=True)
        logger.debug("Download start url=%s destination=%s", source.url, destination)

        def sleep(seconds: float) -> None:
            task.token.wait(seconds)

        with ProgressReporter(on_progress, min_interval=self._progress_interval) as reporter:
            try:
                run_with_retry(
                    lambda: self._attempt(source, task, reporter),
                    policy=self.policy,
                    sleep=sleep,
                    label=f"download {source.filename}",
                )
            except DownloadCancelled as exc:
                _remove_part(task)
                logger.info("Download cancelled url=%s", source.url)
                raise ServerDeckError(f"Download cancelled: {source.url}", kind=ErrorKind.CANCELLED) from exc
            except RejectedRequestError as exc:
                _remove_part(task)
                logger.error("Download rejected url=%s status=%s", source.url, exc.status)
                raise ServerDeckError(
                    f"Download rejected (HTTP {exc.status}): {source.url}",
                    kind=ErrorKind.DOWNLOAD_FAILED,
                    hint="The upstream source refused the request; check the version and build.",
                ) from exc
            except TransientNetworkError as exc:
                _remove_part(task)
                logger.error("Download failed after %s attempts url=%s error=%s", self.policy.max_attempts, source.url, exc)
                raise ServerDeckError(
                    f"Download failed after {self.policy.max_attempts} attempts: {exc}",
                    kind=ErrorKind.DOWNLOAD_FAILED,
                    hint="Check your network connection and retry.",
                ) from exc
            except OSError as exc:
                _remove_part(task)
                raise ServerDeckError(
                    f"Could not write download to {destination}: {exc}",
                    kind=ErrorKind.DOWNLOAD_FAILED,
                ) from exc
            reporter.finish(task.total)

        os.replace(task.part_path, destination)
        logger.info("Download complete destination=%s bytes=%s", destination, task.downloaded)
        return destination

    def _attempt(self, source: ArtifactSource, task: DownloadTask, reporter: ProgressReporter) -> None:
        if task.token.cancelled:
            raise DownloadCancelled(source.url)
        part = task.part_path
        offset = part.stat().st_size if part.exists() else 0
        headers = {"User-Agent": USER_AGENT}
        if offset:
            headers["Range"] = f"bytes={offset}-"

        response = self._opener(source.url, headers)
        try:
            status = int(response.status)
            if status == 416 and offset:
                # Nothing left to fetch; verification decides whether the part is whole.
                self._verify(source, task, offset)
                return
            if status not in (200, 206):
                raise error_for_status(status, source.url)
            if status == 200 and offset:
                logger.debug("Server ignored range request; restarting url=%s", source.url)
                offset = 0
            total = _announced_total(response.headers, status, offset) or source.size
            task.total = total
            written = self._stream(response, part, offset, task, reporter)
        finally:
            response.close()

        if total is not None and written < total:
            raise TransientNetworkError(f"Short read {written}/{total} bytes from {source.url}")
        self._verify(source, task, written)

    def _stream(
        self,
        response: StreamResponse,
        part: Path,
        offset: int,
        task: DownloadTask,
        reporter: ProgressReporter,
    ) -> int:
        written = offset
        with part.open("ab" if offset else "wb") as handle:
            while True:
                if task.token.cancelled:
                    raise DownloadCancelled(str(task.destination))
                try:
                    chunk = response.read(self._chunk_size)
                except (http.client.HTTPException, ConnectionError, TimeoutError) as exc:
                    raise TransientNetworkError(f"Transfer interrupted: {exc}") from exc
                if not chunk:
                    return written
                handle.write(chunk)
                written += len(chunk)
                task.advance(written)
                reporter.offer(written, task.total)

    def _verify(self, source: ArtifactSource, task: DownloadTask, written: int) -> None:
        part = task.part_path
        if source.size is not None and written != source.size:
            _remove_part(task)
            raise TransientNetworkError(f"Size mismatch {written}/{source.size} for {source.url}")
        if source.checksum is not None:
            self._verify_checksum(source.checksum, task, source.url)
        task.total = task.total or written
        logger.debug("Verified download part=%s bytes=%s", part, written)

    @staticmethod
    def _verify_checksum(checksum: Checksum, task: DownloadTask, url: str) -> None:
        actual = file_digest(task.part_path, checksum.algorithm)
        if actual.lower() != checksum.hexdigest.lower():
            _remove_part(task)
            logger.warning("Checksum mismatch url=%s algorithm=%s", url, checksum.algorithm)
            raise TransientNetworkError(f"{checksum.algorithm} mismatch for {url}")
