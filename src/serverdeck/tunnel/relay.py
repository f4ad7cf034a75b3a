"""playit.gg claim API client."""

from __future__ import annotations

import json
import logging as py_logging
import secrets
from typing import Any, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from serverdeck.download.http import USER_AGENT, TransientNetworkError
from serverdeck.errors import ErrorKind, ServerDeckError

logger = py_logging.getLogger(__name__)

CLAIM_URL_TEMPLATE = "https://playit.gg/claim/{code}"
AGENT_TYPE = "self-managed"
AGENT_VERSION = "0.15.26"

HttpResponse = tuple[int, str, dict[str, str]]

# Values of the setup endpoint's ``data`` field.
CLAIM_WAITING_FOR_VISIT = "WaitingForUserVisit"
CLAIM_WAITING_FOR_USER = "WaitingForUser"
CLAIM_ACCEPTED = "UserAccepted"
CLAIM_REJECTED = "UserRejected"


class RelayRequester(Protocol):
    def __call__(self, url: str, headers: dict[str, str], body: bytes) -> HttpResponse: ...


def _validate_relay_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        raise ServerDeckError(
            f"Invalid relay API address: {url}",
            kind=ErrorKind.INVALID_REQUEST,
            hint="Only https relay endpoints are supported.",
        )


def _default_requester(url: str, headers: dict[str, str], body: bytes) -> HttpResponse:
    _validate_relay_url(url)
    request = Request(url, data=body, headers=headers, method="POST")
    try:
        with urlopen(request, timeout=20) as response:  # nosec B310
            status = int(getattr(response, "status", response.getcode()))
            payload = response.read().decode("utf-8")
            response_headers = {key.lower(): value for key, value in response.headers.items()}
            return status, payload, response_headers
    except HTTPError as exc:
        payload = ""
        if exc.fp is not None:
            payload = exc.read().decode("utf-8", errors="replace")
        response_headers = {key.lower(): value for key, value in (exc.headers.items() if exc.headers else [])}
        return exc.code, payload, response_headers
    except (URLError, TimeoutError, ConnectionError) as exc:
        raise TransientNetworkError(f"Relay unreachable url={url} reason={getattr(exc, 'reason', exc)}") from exc


def generate_claim_code() -> str:
    return secrets.token_hex(5)


def claim_url(code: str) -> str:
    return CLAIM_URL_TEMPLATE.format(code=code)


class PlayitRelayClient:
    def __init__(self, api_url: str = "https://api.playit.gg", *, requester: RelayRequester | None = None) -> None:
        self.api_url = api_url.rstrip("/")
        self._requester = requester or _default_requester

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.api_url}{path}"
        headers = {"Content-Type": "application/json", "Accept": "application/json", "User-Agent": USER_AGENT}
        status, body, _headers = self._requester(url, headers, json.dumps(payload).encode("utf-8"))
        if status == 429 or status >= 500:
            raise TransientNetworkError(f"Relay returned HTTP {status} for {path}")
        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError as exc:
            raise ServerDeckError(
                f"Relay returned malformed JSON for {path} (HTTP {status}).",
                kind=ErrorKind.UNKNOWN,
            ) from exc
        if not isinstance(parsed, dict):
            raise ServerDeckError(f"Relay returned an unexpected payload for {path}.", kind=ErrorKind.UNKNOWN)
        if status >= 400 and parsed.get("status") != "fail":
            raise ServerDeckError(
                f"Relay rejected {path} (HTTP {status}): {parsed.get('message') or body.strip()}",
                kind=ErrorKind.UNKNOWN,
            )
        return parsed

    def setup_claim(self, code: str) -> str:
        """Register or poll ``code``; returns the claim stage reported by the relay."""
        parsed = self._post("/claim/setup", {"code": code, "agent_type": AGENT_TYPE, "version": AGENT_VERSION})
        if parsed.get("status") != "success":
            raise ServerDeckError(
                f"Claim setup failed: {parsed.get('data') or parsed.get('message') or 'unknown reason'}",
                kind=ErrorKind.UNKNOWN,
            )
        stage = str(parsed.get("data") or "")
        logger.debug("claim-setup code=%s stage=%s", code, stage)
        return stage

    def exchange_claim(self, code: str) -> str | None:
        """Secret key for an accepted claim, or None while it is not accepted yet."""
        parsed = self._post("/claim/exchange", {"code": code})
        if parsed.get("status") != "success":
            logger.debug("claim-exchange pending code=%s reply=%s", code, parsed.get("data"))
            return None
        data = parsed.get("data")
        secret = data.get("secret_key") if isinstance(data, dict) else None
        if not isinstance(secret, str) or not secret.strip():
            raise ServerDeckError("Relay accepted the claim but returned no secret.", kind=ErrorKind.UNKNOWN)
        return secret.strip()
