"""Per-instance playit tunnel lifecycle and claim flow."""

from __future__ import annotations

import atexit
import json
import logging as py_logging
import os
import subprocess
import threading
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import replace
from pathlib import Path
from typing import IO

from serverdeck.download.http import TransientNetworkError
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.events import TUNNEL_INFO_UPDATED, TUNNEL_STATUS_CHANGED, EventChannel, Subscription
from serverdeck.locking import KeyedLock
from serverdeck.process.log_parser import decode_line
from serverdeck.tunnel.agent import agent_command, ensure_agent, parse_public_address, popen_agent, write_agent_config
from serverdeck.tunnel.models import TunnelRecord, TunnelStatus
from serverdeck.tunnel.relay import (
    CLAIM_ACCEPTED,
    CLAIM_REJECTED,
    PlayitRelayClient,
    claim_url,
    generate_claim_code,
)

logger = py_logging.getLogger(__name__)

SECRET_FILE = "secret.txt"
AGENT_STOP_SECONDS = 5.0

AgentSpawn = Callable[[list[str], Path], "subprocess.Popen[bytes]"]


class TunnelManager:
    """Tracks one tunnel record per instance next to the instance's process state.

    ``start`` claims an agent secret when none is stored, then runs the playit
    agent and watches its output for the public address. The relay connection
    state moves independently of the server process; the only coupling is that
    ``start`` requires ``is_instance_running`` to be true.
    """

    def __init__(
        self,
        tunnel_dir: Path,
        *,
        is_instance_running: Callable[[str], bool],
        relay: PlayitRelayClient | None = None,
        agent_provider: Callable[[], Path] | None = None,
        spawn: AgentSpawn | None = None,
        claim_poll_interval: float = 2.0,
        claim_max_wait: float = 300.0,
        secret_override: str = "",
        clock: Callable[[], float] = time.monotonic,
        code_factory: Callable[[], str] = generate_claim_code,
        register_atexit: bool = True,
    ) -> None:
        self.tunnel_dir = Path(tunnel_dir)
        self._is_instance_running = is_instance_running
        self._relay = relay or PlayitRelayClient()
        self._agent_provider = agent_provider or (lambda: ensure_agent(self.tunnel_dir))
        self._spawn = spawn or popen_agent
        self.claim_poll_interval = claim_poll_interval
        self.claim_max_wait = claim_max_wait
        self._secret_override = secret_override.strip()
        self._clock = clock
        self._code_factory = code_factory
        self.events = EventChannel("tunnel")
        self._records: dict[str, TunnelRecord] = {}
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._stop_requested: set[str] = set()
        self._cancel_claims: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._control = KeyedLock()
        self._load_records()
        if register_atexit:
            atexit.register(self.stop_all)

    # -- persistence -------------------------------------------------------

    @property
    def secret_path(self) -> Path:
        return self.tunnel_dir / SECRET_FILE

    def _config_dir(self, instance_id: str) -> Path:
        return self.tunnel_dir / "configs" / instance_id

    def _info_path(self, instance_id: str) -> Path:
        return self._config_dir(instance_id) / "tunnel-info.json"

    def _load_records(self) -> None:
        configs = self.tunnel_dir / "configs"
        if not configs.is_dir():
            return
        for info_path in sorted(configs.glob("*/tunnel-info.json")):
            try:
                record = TunnelRecord.from_dict(json.loads(info_path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError):
                logger.warning("Skipping unreadable tunnel record path=%s", info_path)
                continue
            self._records[record.instance_id] = record

    def _save_record(self, record: TunnelRecord) -> None:
        path = self._info_path(record.instance_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
        except OSError:
            logger.warning("Could not persist tunnel record instance=%s", record.instance_id)

    def stored_secret(self) -> str:
        if self._secret_override:
            return self._secret_override
        try:
            return self.secret_path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def _store_secret(self, secret: str) -> Path:
        self.tunnel_dir.mkdir(parents=True, exist_ok=True)
        # Create with 0600 so the secret is never world-readable, even briefly.
        fd = os.open(self.secret_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(secret)
        with suppress(OSError):
            self.secret_path.chmod(0o600)
        return self.secret_path

    def _secret_file_for_agent(self) -> Path:
        if self._secret_override and self._read_secret_file() != self._secret_override:
            return self._store_secret(self._secret_override)
        return self.secret_path

    def _read_secret_file(self) -> str:
        try:
            return self.secret_path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    # -- records -----------------------------------------------------------

    def subscribe(self, subscription: Subscription | None = None) -> Subscription:
        return self.events.subscribe(subscription)

    def get(self, instance_id: str) -> TunnelRecord:
        with self._lock:
            record = self._records.get(instance_id)
            if record is None:
                raise ServerDeckError(
                    f"No tunnel for instance: {instance_id}",
                    kind=ErrorKind.NOT_FOUND,
                    hint="Create the tunnel first.",
                )
            return replace(record)

    def find(self, instance_id: str) -> TunnelRecord | None:
        with self._lock:
            record = self._records.get(instance_id)
            return replace(record) if record is not None else None

    def list(self) -> list[TunnelRecord]:
        with self._lock:
            return [replace(self._records[key]) for key in sorted(self._records)]

    def _update(self, instance_id: str, *, status: TunnelStatus | None = None, **changes: object) -> TunnelRecord:
        with self._lock:
            record = self._records[instance_id]
            previous = record.status
            for name, value in changes.items():
                setattr(record, name, value)
            if status is not None:
                record.status = status
            snapshot = replace(record)
        if status is not None and status != previous:
            logger.info("tunnel-status instance=%s %s->%s", instance_id, previous.value, status.value)
            self.events.publish(TUNNEL_STATUS_CHANGED, instance_id, status=status.value)
        if changes:
            self.events.publish(TUNNEL_INFO_UPDATED, instance_id, record=snapshot.to_dict())
        return snapshot

    def create(self, instance_id: str, local_port: int) -> TunnelRecord:
        if not 1 <= local_port <= 65535:
            raise ServerDeckError(f"Invalid local port: {local_port}", kind=ErrorKind.INVALID_REQUEST)
        with self._control.hold(instance_id):
            with self._lock:
                existing = self._records.get(instance_id)
                if existing is not None and not existing.is_terminal:
                    return replace(existing)
                record = TunnelRecord(instance_id=instance_id, local_port=local_port)
                self._records[instance_id] = record
            self._save_record(record)
            logger.info("Tunnel created instance=%s local_port=%s", instance_id, local_port)
            return replace(record)

    # -- lifecycle ---------------------------------------------------------

    def start(self, instance_id: str) -> TunnelRecord:
        with self._control.hold(instance_id):
            record = self.get(instance_id)
            if record.status.active:
                return record
            if record.is_terminal:
                raise ServerDeckError(
                    f"Tunnel for {instance_id} is in error state.",
                    kind=ErrorKind.INVALID_REQUEST,
                    hint="Delete and recreate the tunnel.",
                )
            if not self._is_instance_running(instance_id):
                raise ServerDeckError(
                    f"Instance is not running: {instance_id}",
                    kind=ErrorKind.ALREADY_STOPPED,
                    hint="Start the server before opening a tunnel.",
                )
            cancel = threading.Event()
            with self._lock:
                self._cancel_claims[instance_id] = cancel
                self._stop_requested.discard(instance_id)
            self._update(instance_id, status=TunnelStatus.STARTING, last_error="")
            try:
                if not self.stored_secret():
                    self._claim(instance_id, cancel)
                    self._update(instance_id, status=TunnelStatus.STARTING, claim_code="", claim_url="")
                self._launch_agent(instance_id)
            except ServerDeckError as exc:
                self._update(instance_id, status=TunnelStatus.STOPPED, last_error=exc.message)
                raise
            except Exception as exc:
                message = str(exc) or type(exc).__name__
                logger.exception("Tunnel start failed instance=%s", instance_id)
                self._update(instance_id, status=TunnelStatus.STOPPED, last_error=message)
                raise ServerDeckError(f"Could not start tunnel: {message}", kind=ErrorKind.UNKNOWN) from exc
            finally:
                with self._lock:
                    self._cancel_claims.pop(instance_id, None)
            return self.get(instance_id)

    def _claim(self, instance_id: str, cancel: threading.Event) -> str:
        code = self._code_factory()
        url = claim_url(code)
        self._update(instance_id, status=TunnelStatus.CLAIMING, claim_code=code, claim_url=url)
        logger.info("Waiting for tunnel claim instance=%s url=%s", instance_id, url)
        deadline = self._clock() + self.claim_max_wait
        while True:
            try:
                stage = self._relay.setup_claim(code)
                if stage == CLAIM_REJECTED:
                    raise ServerDeckError("The claim was rejected on playit.gg.", kind=ErrorKind.UNKNOWN)
                if stage == CLAIM_ACCEPTED:
                    secret = self._relay.exchange_claim(code)
                    if secret:
                        self._store_secret(secret)
                        logger.info("Tunnel claim accepted instance=%s", instance_id)
                        return secret
            except TransientNetworkError as exc:
                logger.warning("Claim poll failed instance=%s error=%s", instance_id, exc)
            if self._clock() >= deadline:
                raise ServerDeckError(
                    f"Claim was not confirmed within {self.claim_max_wait:.0f}s.",
                    kind=ErrorKind.CLAIM_TIMED_OUT,
                    hint=f"Open {url} and approve the agent, then start the tunnel again.",
                )
            if cancel.wait(self.claim_poll_interval):
                raise ServerDeckError("Tunnel claim cancelled.", kind=ErrorKind.CANCELLED)

    def _launch_agent(self, instance_id: str) -> None:
        record = self.get(instance_id)
        agent_path = self._agent_provider()
        config_dir = self._config_dir(instance_id)
        write_agent_config(config_dir, instance_id, record.local_port)
        command = agent_command(agent_path, self._secret_file_for_agent())
        try:
            process = self._spawn(command, config_dir)
        except OSError as exc:
            raise ServerDeckError(
                f"Could not start playit agent: {exc}",
                kind=ErrorKind.PROCESS_SPAWN_FAILED,
                hint="Remove the agent binary from the tunnel directory to force a fresh download.",
            ) from exc
        with self._lock:
            self._processes[instance_id] = process
        self._update(instance_id, status=TunnelStatus.RUNNING)
        pumps = [
            threading.Thread(
                target=self._pump,
                args=(instance_id, pipe),
                name=f"serverdeck-tunnel-{instance_id[:8]}",
                daemon=True,
            )
            for pipe in (process.stdout, process.stderr)
            if pipe is not None
        ]
        for pump in pumps:
            pump.start()
        threading.Thread(
            target=self._wait_for_exit,
            args=(instance_id, process, pumps),
            name=f"serverdeck-tunnel-wait-{instance_id[:8]}",
            daemon=True,
        ).start()
        logger.info("playit agent started instance=%s pid=%s", instance_id, process.pid)

    def _pump(self, instance_id: str, pipe: IO[bytes]) -> None:
        try:
            for raw in iter(pipe.readline, b""):
                line = decode_line(raw)
                if not line.strip():
                    continue
                logger.debug("playit instance=%s %s", instance_id, line)
                self._observe_output(instance_id, line)
        except (OSError, ValueError):
            logger.debug("Agent pipe closed instance=%s", instance_id)

    def _observe_output(self, instance_id: str, line: str) -> None:
        found = parse_public_address(line)
        if found is None:
            return
        record = self.find(instance_id)
        if record is None or (record.public_address, record.public_port) == found:
            return
        host, port = found
        snapshot = self._update(instance_id, public_address=host, public_port=port)
        self._save_record(snapshot)

    def _wait_for_exit(
        self,
        instance_id: str,
        process: subprocess.Popen[bytes],
        pumps: list[threading.Thread],
    ) -> None:
        exit_code = process.wait()
        for pump in pumps:
            pump.join(timeout=AGENT_STOP_SECONDS)
        with self._lock:
            owned = self._processes.get(instance_id) is process
            if owned:
                del self._processes[instance_id]
            requested = instance_id in self._stop_requested
            self._stop_requested.discard(instance_id)
            known = instance_id in self._records
        if not owned or not known:
            return
        if requested:
            self._update(instance_id, status=TunnelStatus.STOPPED)
        else:
            logger.error("playit agent exited unexpectedly instance=%s exit_code=%s", instance_id, exit_code)
            self._update(
                instance_id,
                status=TunnelStatus.ERROR,
                last_error=f"playit agent exited with code {exit_code}",
            )

    def stop(self, instance_id: str) -> TunnelRecord:
        with self._lock:
            cancel = self._cancel_claims.get(instance_id)
        if cancel is not None:
            cancel.set()
        with self._control.hold(instance_id):
            record = self.get(instance_id)
            with self._lock:
                process = self._processes.get(instance_id)
                if process is not None:
                    self._stop_requested.add(instance_id)
            if process is None:
                if cancel is None and not record.status.active:
                    raise ServerDeckError(
                        f"Tunnel is not running: {instance_id}",
                        kind=ErrorKind.ALREADY_STOPPED,
                    )
                return self._update(instance_id, status=TunnelStatus.STOPPED)
            self._update(instance_id, status=TunnelStatus.STOPPING)
            process.terminate()
            try:
                process.wait(timeout=AGENT_STOP_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("playit agent ignored terminate; killing instance=%s", instance_id)
                process.kill()
                process.wait(timeout=AGENT_STOP_SECONDS)
            with self._lock:
                if self._processes.get(instance_id) is process:
                    del self._processes[instance_id]
                self._stop_requested.discard(instance_id)
            return self._update(instance_id, status=TunnelStatus.STOPPED)

    def delete(self, instance_id: str) -> None:
        record = self.get(instance_id)
        if record.status.active:
            self.stop(instance_id)
        with self._control.hold(instance_id):
            with self._lock:
                self._records.pop(instance_id, None)
            with suppress(OSError):
                self._info_path(instance_id).unlink()
        self._control.discard(instance_id)
        logger.info("Tunnel deleted instance=%s", instance_id)

    def stop_all(self) -> None:
        with self._lock:
            ids = list(self._processes)
        for instance_id in ids:
            try:
                self.stop(instance_id)
            except ServerDeckError:
                continue
