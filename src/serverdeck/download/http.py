"""Thin urllib transport shared by the artifact backends and the downloader."""

from __future__ import annotations

import json
import logging as py_logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.retry import FatalError, RecoverableError, RetryPolicy, run_with_retry

logger = py_logging.getLogger(__name__)

USER_AGENT = "serverdeck/0.1 (+https://github.com/serverdeck/serverdeck)"
REQUEST_TIMEOUT_SECONDS = 30

HttpResponse = tuple[int, str, dict[str, str]]


class TransientNetworkError(RecoverableError):
    """Connection reset, timeout, 5xx/429 or a truncated body."""


class RejectedRequestError(FatalError):
    def __init__(self, status: int, url: str) -> None:
        super().__init__(f"HTTP {status} for {url}")
        self.status = status
        self.url = url


class HttpRequester(Protocol):
    def __call__(self, url: str, headers: dict[str, str]) -> HttpResponse: ...


class StreamResponse(Protocol):
    status: int
    headers: Mapping[str, str]

    def read(self, size: int = -1) -> bytes: ...

    def close(self) -> None: ...


class StreamOpener(Protocol):
    def __call__(self, url: str, headers: dict[str, str]) -> StreamResponse: ...


def is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def error_for_status(status: int, url: str) -> Exception:
    if is_transient_status(status):
        return TransientNetworkError(f"HTTP {status} for {url}")
    return RejectedRequestError(status, url)


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in {"https", "http"} or not parsed.netloc:
        raise ServerDeckError(
            f"Unsupported download URL: {url}",
            kind=ErrorKind.INVALID_REQUEST,
            hint="Only http(s) sources are supported.",
        )


def urllib_requester(url: str, headers: dict[str, str]) -> HttpResponse:
    _validate_url(url)
    request = Request(url, headers=headers, method="GET")
    try:
        with urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS) as response:  # nosec B310
            status = int(getattr(response, "status", response.getcode()))
            body = response.read().decode("utf-8")
            response_headers = {key.lower(): value for key, value in response.headers.items()}
            return status, body, response_headers
    except HTTPError as exc:
        payload = ""
        if exc.fp is not None:
            payload = exc.read().decode("utf-8", errors="replace")
        response_headers = {key.lower(): value for key, value in (exc.headers.items() if exc.headers else [])}
        return exc.code, payload, response_headers
    except (URLError, TimeoutError, ConnectionError) as exc:
        raise TransientNetworkError(f"Request failed url={url} reason={getattr(exc, 'reason', exc)}") from exc


def urllib_opener(url: str, headers: dict[str, str]) -> StreamResponse:
    _validate_url(url)
    request = Request(url, headers=headers, method="GET")
    try:
        return urlopen(request, timeout=REQUEST_TIMEOUT_SECONDS)  # nosec B310
    except HTTPError as exc:
        exc.close()
        raise error_for_status(exc.code, url) from exc
    except (URLError, TimeoutError, ConnectionError) as exc:
        raise TransientNetworkError(f"Connection failed url={url} reason={getattr(exc, 'reason', exc)}") from exc


class JsonClient:
    """GET-and-decode helper with retry for upstream metadata APIs."""

    def __init__(
        self,
        *,
        requester: HttpRequester | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._requester = requester or urllib_requester
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    def get(self, url: str) -> Any:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}

        def attempt() -> Any:
            status, body, _headers = self._requester(url, headers)
            if status != 200:
                raise error_for_status(status, url)
            try:
                return json.loads(body)
            except json.JSONDecodeError as exc:
                raise TransientNetworkError(f"Malformed JSON from {url}") from exc

        try:
            return run_with_retry(attempt, policy=self._policy, sleep=self._sleep, label=f"GET {url}")
        except RejectedRequestError as exc:
            logger.error("Upstream rejected request url=%s status=%s", url, exc.status)
            if exc.status == 404:
                raise ServerDeckError(
                    f"Upstream resource not found: {url}",
                    kind=ErrorKind.NOT_FOUND,
                    hint="Check the version or build identifier.",
                ) from exc
            raise ServerDeckError(
                f"Upstream rejected request (HTTP {exc.status}): {url}",
                kind=ErrorKind.DOWNLOAD_FAILED,
            ) from exc
        except TransientNetworkError as exc:
            logger.error("Upstream unreachable url=%s error=%s", url, exc)
            raise ServerDeckError(
                f"Could not reach upstream API: {url}",
                kind=ErrorKind.DOWNLOAD_FAILED,
                hint="Check your network connection and retry.",
            ) from exc
