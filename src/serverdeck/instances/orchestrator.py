"""Instance table, provisioning and lifecycle composition."""

from __future__ import annotations

import logging as py_logging
import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from serverdeck.config import AppConfig
from serverdeck.download.backends import ArtifactResolver
from serverdeck.download.downloader import Downloader
from serverdeck.download.forge import ForgeLaunch, install_forge_server
from serverdeck.download.models import CancellationToken, DownloadTask, ProgressSnapshot
from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.events import (
    DOWNLOAD_PROGRESS,
    LOG,
    SERVER_READY,
    STATUS_CHANGED,
    TUNNEL_INFO_UPDATED,
    TUNNEL_STATUS_CHANGED,
    Event,
    EventChannel,
    Subscription,
)
from serverdeck.instances.models import CreateInstanceRequest, Instance, LogEntry, UpdateInstanceRequest, utc_now
from serverdeck.instances.store import InstanceStore
from serverdeck.java.manager import JavaEnvironmentManager
from serverdeck.locking import KeyedLock
from serverdeck.process.log_parser import is_ready_line
from serverdeck.process.models import ProcessState
from serverdeck.process.supervisor import ProcessSupervisor
from serverdeck.retry import RetryPolicy
from serverdeck.tunnel.manager import TunnelManager
from serverdeck.tunnel.relay import PlayitRelayClient

logger = py_logging.getLogger(__name__)

ForgeInstaller = Callable[[str, Path, Path], ForgeLaunch]
DISPATCH_POLL_SECONDS = 0.2


def _invalid_request(exc: ValidationError) -> ServerDeckError:
    details = "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'request'}: {error['msg']}" for error in exc.errors()
    )
    return ServerDeckError(f"Invalid request: {details}", kind=ErrorKind.INVALID_REQUEST)


class InstanceOrchestrator:
    """Owns the instance table and composes download, Java, process and tunnel services.

    Supervisor and tunnel events are consumed by a dispatcher thread that keeps
    log history, timestamps, readiness and auto-restart in step, then republishes
    them on ``events``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        supervisor: ProcessSupervisor | None = None,
        java: JavaEnvironmentManager | None = None,
        resolver: ArtifactResolver | None = None,
        tunnels: TunnelManager | None = None,
        store: InstanceStore | None = None,
        forge_installer: ForgeInstaller | None = None,
        background: bool = True,
        max_workers: int = 4,
        auto_restart_delay: float = 2.0,
    ) -> None:
        self.config = config
        policy = RetryPolicy(
            max_attempts=config.download_max_attempts,
            initial_backoff_seconds=config.download_backoff_seconds,
        )
        downloader = Downloader(policy=policy)
        self.supervisor = supervisor or ProcessSupervisor(stop_timeout=config.stop_timeout_seconds)
        self.java = java or JavaEnvironmentManager(config.java_path, downloader=downloader)
        self.resolver = resolver or ArtifactResolver(downloader=downloader)
        self.tunnels = tunnels or TunnelManager(
            config.tunnel_path,
            is_instance_running=self.supervisor.is_running,
            relay=PlayitRelayClient(config.relay_api_url),
            claim_poll_interval=config.claim_poll_interval_seconds,
            claim_max_wait=config.claim_max_wait_seconds,
            secret_override=config.playit_secret,
        )
        self.store = store or InstanceStore(config.instances_path)
        self._forge_installer = forge_installer or install_forge_server
        self._background = background
        self._auto_restart_delay = auto_restart_delay
        self.events = EventChannel("instances")

        self._instances: dict[str, Instance] = {}
        self._history: dict[str, deque[LogEntry]] = {}
        self._ready_seen: set[str] = set()
        self._restart_counts: dict[str, int] = {}
        self._provisioning: dict[str, CancellationToken] = {}
        self._futures: dict[str, Future[Instance]] = {}
        self._lock = threading.RLock()
        self._control = KeyedLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="serverdeck-provision")

        self._inbox = Subscription()
        self.supervisor.subscribe(self._inbox)
        self.tunnels.subscribe(self._inbox)
        self._closing = threading.Event()
        self._dispatcher = threading.Thread(target=self._dispatch, name="serverdeck-dispatch", daemon=True)
        self._dispatcher.start()

    # -- queries -----------------------------------------------------------

    def subscribe(self, subscription: Subscription | None = None) -> Subscription:
        return self.events.subscribe(subscription)

    def _must_get(self, instance_id: str) -> Instance:
        with self._lock:
            instance = self._instances.get(instance_id)
        if instance is None:
            raise ServerDeckError(
                f"Instance not found: {instance_id}",
                kind=ErrorKind.NOT_FOUND,
                hint="Run `serverdeck list` to see known instances.",
            )
        return instance

    def _snapshot(self, instance: Instance) -> Instance:
        with self._lock:
            instance.status = self.supervisor.state(instance.id)
            return replace(instance, jvm_args=list(instance.jvm_args))

    def get(self, instance_id: str) -> Instance:
        return self._snapshot(self._must_get(instance_id))

    def list(self) -> list[Instance]:
        with self._lock:
            instances = list(self._instances.values())
        return sorted((self._snapshot(item) for item in instances), key=lambda item: (item.name.lower(), item.id))

    def logs(self, instance_id: str, limit: int | None = None) -> list[LogEntry]:
        self._must_get(instance_id)
        with self._lock:
            entries = list(self._history.get(instance_id, ()))
        if limit is not None and limit >= 0:
            entries = entries[-limit:] if limit else []
        return entries

    def provision_future(self, instance_id: str) -> Future[Instance] | None:
        with self._lock:
            return self._futures.get(instance_id)

    # -- creation ----------------------------------------------------------

    def create(self, request: CreateInstanceRequest | Mapping[str, Any]) -> Instance:
        try:
            parsed = request if isinstance(request, CreateInstanceRequest) else CreateInstanceRequest(**request)
        except ValidationError as exc:
            raise _invalid_request(exc) from exc

        ram_min = parsed.ram_min or self.config.default_ram_min
        ram_max = parsed.ram_max or max(self.config.default_ram_max, ram_min)
        if ram_min > ram_max:
            raise ServerDeckError(
                f"ram_min {ram_min} exceeds ram_max {ram_max}.",
                kind=ErrorKind.INVALID_REQUEST,
            )
        # Fail fast on targets no Java release can run.
        self.java.required_major_version(parsed.version)

        with self._lock:
            if any(item.name.lower() == parsed.name.lower() for item in self._instances.values()):
                raise ServerDeckError(
                    f"An instance named {parsed.name!r} already exists.",
                    kind=ErrorKind.INVALID_REQUEST,
                    hint="Choose a different instance name.",
                )
            root = self.store.create_root(parsed.name)
            instance = Instance(
                id=uuid.uuid4().hex,
                name=parsed.name,
                version=parsed.version,
                core_type=parsed.core_type,
                root=root,
                port=parsed.port or self.config.default_port,
                ram_min=ram_min,
                ram_max=ram_max,
                jvm_args=list(parsed.jvm_args),
                auto_restart=parsed.auto_restart,
                build=parsed.build,
                java_path_override=parsed.java_path,
            )
            self._instances[instance.id] = instance
            self._history[instance.id] = deque(maxlen=self.config.log_history_limit or None)
            token = CancellationToken()
            self._provisioning[instance.id] = token
        try:
            self.store.write_eula(root)
            self.store.write(instance)
        except OSError as exc:
            self._rollback(instance.id)
            raise ServerDeckError(f"Could not initialize instance directory: {exc}", kind=ErrorKind.UNKNOWN) from exc
        logger.info("Instance created id=%s name=%s core=%s version=%s", instance.id, instance.name, instance.core_type.value, instance.version)
        self.events.publish(STATUS_CHANGED, instance.id, status=ProcessState.STOPPED.value, ready=False)

        if self._background:
            with self._lock:
                self._futures[instance.id] = self._executor.submit(self._provision_or_rollback, instance.id, token)
            return self._snapshot(instance)
        return self._provision_or_rollback(instance.id, token)

    def _provision_or_rollback(self, instance_id: str, token: CancellationToken) -> Instance:
        try:
            return self._provision(instance_id, token)
        except ServerDeckError as exc:
            logger.error("Provisioning failed id=%s kind=%s error=%s", instance_id, exc.kind.value, exc.message)
            self._rollback(instance_id)
            self.events.publish(STATUS_CHANGED, instance_id, status="deleted", error=exc.message, error_kind=exc.kind.value)
            raise
        except Exception as exc:
            logger.exception("Provisioning crashed id=%s", instance_id)
            self._rollback(instance_id)
            self.events.publish(STATUS_CHANGED, instance_id, status="deleted", error=str(exc), error_kind=ErrorKind.UNKNOWN.value)
            raise ServerDeckError(str(exc) or type(exc).__name__, kind=ErrorKind.UNKNOWN) from exc
        except BaseException:
            logger.warning("Provisioning interrupted id=%s", instance_id)
            self._rollback(instance_id)
            self.events.publish(
                STATUS_CHANGED, instance_id, status="deleted", error="Provisioning interrupted.", error_kind=ErrorKind.CANCELLED.value
            )
            raise
        finally:
            with self._lock:
                self._provisioning.pop(instance_id, None)

    def _progress(self, instance_id: str, phase: str) -> Callable[[ProgressSnapshot], None]:
        def publish(snapshot: ProgressSnapshot) -> None:
            self.events.publish(
                DOWNLOAD_PROGRESS,
                instance_id,
                phase=phase,
                downloaded=snapshot.downloaded,
                total=snapshot.total,
                done=snapshot.done,
            )

        return publish

    def _provision(self, instance_id: str, token: CancellationToken) -> Instance:
        instance = self._must_get(instance_id)
        if token.cancelled:
            raise ServerDeckError("Provisioning cancelled.", kind=ErrorKind.CANCELLED)
        source = self.resolver.resolve(instance.core_type, instance.version, instance.build)
        destination = instance.root / source.filename
        task = DownloadTask(
            core_type=instance.core_type,
            version=instance.version,
            destination=destination,
            build=instance.build,
            token=token,
        )
        self.resolver.downloader.download(
            source,
            destination,
            task=task,
            on_progress=self._progress(instance_id, "artifact"),
        )
        if token.cancelled:
            raise ServerDeckError("Provisioning cancelled.", kind=ErrorKind.CANCELLED)

        if instance.java_path_override:
            runtime = self.java.validate_path(instance.java_path_override, instance.version)
        else:
            runtime = self.java.ensure(
                instance.version,
                on_progress=self._progress(instance_id, "java"),
                cancel=token,
            )
        if token.cancelled:
            raise ServerDeckError("Provisioning cancelled.", kind=ErrorKind.CANCELLED)

        artifact: str | None = source.filename
        args_file: str | None = None
        if source.requires_install:
            launch = self._forge_installer(runtime.path, destination, instance.root)
            artifact = launch.artifact.relative_to(instance.root).as_posix() if launch.artifact else None
            args_file = launch.args_file.relative_to(instance.root).as_posix() if launch.args_file else None

        with self._lock:
            instance.java_path = runtime.path
            instance.artifact = artifact
            instance.args_file = args_file
            instance.is_ready = True
        self.store.write(instance)
        logger.info("Instance ready id=%s java=%s", instance_id, runtime.path)
        self.events.publish(STATUS_CHANGED, instance_id, status=ProcessState.STOPPED.value, ready=True)
        return self.get(instance_id)

    def cancel_provision(self, instance_id: str) -> bool:
        self._must_get(instance_id)
        with self._lock:
            token = self._provisioning.get(instance_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Provisioning cancellation requested id=%s", instance_id)
        return True

    def _rollback(self, instance_id: str) -> None:
        with self._lock:
            instance = self._instances.pop(instance_id, None)
            self._history.pop(instance_id, None)
            self._futures.pop(instance_id, None)
        if instance is not None:
            self.store.delete_root(instance.root)

    # -- lifecycle ---------------------------------------------------------

    def start(self, instance_id: str) -> Instance:
        with self._control.hold(instance_id):
            with self._lock:
                self._restart_counts[instance_id] = 0
            return self._launch(instance_id)

    def _launch(self, instance_id: str) -> Instance:
        instance = self._must_get(instance_id)
        if not instance.is_ready:
            raise ServerDeckError(
                f"Instance {instance.name} is still being provisioned.",
                kind=ErrorKind.INVALID_REQUEST,
                hint="Wait for the download and Java setup to finish.",
            )
        artifact = instance.artifact_path
        args_file = instance.args_file_path
        if args_file is None and (artifact is None or not artifact.is_file()):
            raise ServerDeckError(
                f"Server artifact missing for {instance.name}: {artifact}",
                kind=ErrorKind.NOT_FOUND,
                hint="Delete and recreate the instance to download it again.",
            )
        java_path = instance.java_path
        if not java_path or not Path(java_path).exists():
            logger.warning("Recorded Java runtime missing id=%s path=%s; resolving again", instance_id, java_path)
            java_path = self.java.ensure(instance.version).path
            with self._lock:
                instance.java_path = java_path

        with self._lock:
            self._ready_seen.discard(instance_id)
        self.supervisor.launch(
            instance_id,
            java_path,
            artifact,
            instance.root,
            instance.memory,
            instance.jvm_args,
            args_file=args_file,
        )
        with self._lock:
            instance.last_started_at = utc_now()
        self.store.write(instance)
        return self.get(instance_id)

    def stop(self, instance_id: str, *, force: bool = False, timeout: float | None = None) -> Instance:
        with self._control.hold(instance_id):
            instance = self._must_get(instance_id)
            self._stop_tunnel(instance_id)
            self.supervisor.terminate(instance_id, graceful=not force, timeout=timeout)
            with self._lock:
                instance.last_stopped_at = utc_now()
            self.store.write(instance)
            return self.get(instance_id)

    def restart(self, instance_id: str) -> Instance:
        with self._control.hold(instance_id):
            try:
                self.stop(instance_id)
            except ServerDeckError as exc:
                if exc.kind != ErrorKind.ALREADY_STOPPED:
                    raise
            return self.start(instance_id)

    def _stop_tunnel(self, instance_id: str) -> None:
        record = self.tunnels.find(instance_id)
        if record is None or not record.status.active:
            return
        try:
            self.tunnels.stop(instance_id)
        except ServerDeckError as exc:
            logger.warning("Tunnel stop failed id=%s error=%s", instance_id, exc.message)

    def delete(self, instance_id: str) -> None:
        with self._control.hold(instance_id):
            instance = self._must_get(instance_id)
            with self._lock:
                token = self._provisioning.get(instance_id)
                future = self._futures.get(instance_id)
            if token is not None:
                token.cancel()
                if future is not None:
                    # Provisioning rolls itself back once it observes the cancellation.
                    future.exception()
            if self.supervisor.state(instance_id).alive:
                self._stop_tunnel(instance_id)
                self.supervisor.terminate(instance_id, graceful=True)
            if self.tunnels.find(instance_id) is not None:
                self.tunnels.delete(instance_id)
            self.supervisor.forget(instance_id)
            with self._lock:
                present = self._instances.pop(instance_id, None) is not None
                self._history.pop(instance_id, None)
                self._futures.pop(instance_id, None)
                self._restart_counts.pop(instance_id, None)
                self._ready_seen.discard(instance_id)
            if present:
                self.store.delete_root(instance.root)
        self._control.discard(instance_id)
        logger.info("Instance deleted id=%s name=%s", instance_id, instance.name)
        if present:
            self.events.publish(STATUS_CHANGED, instance_id, status="deleted")

    def update(self, instance_id: str, request: UpdateInstanceRequest | Mapping[str, Any]) -> Instance:
        try:
            parsed = request if isinstance(request, UpdateInstanceRequest) else UpdateInstanceRequest(**request)
        except ValidationError as exc:
            raise _invalid_request(exc) from exc
        with self._control.hold(instance_id):
            instance = self._must_get(instance_id)
            if self.supervisor.state(instance_id).alive:
                raise ServerDeckError(
                    f"Instance {instance.name} must be stopped before it can be edited.",
                    kind=ErrorKind.ALREADY_RUNNING,
                )
            changes = parsed.model_dump(exclude_none=True)
            ram_min = changes.get("ram_min", instance.ram_min)
            ram_max = changes.get("ram_max", instance.ram_max)
            if ram_min > ram_max:
                raise ServerDeckError(f"ram_min {ram_min} exceeds ram_max {ram_max}.", kind=ErrorKind.INVALID_REQUEST)
            with self._lock:
                if "name" in changes and any(
                    item.id != instance_id and item.name.lower() == changes["name"].lower()
                    for item in self._instances.values()
                ):
                    raise ServerDeckError(
                        f"An instance named {changes['name']!r} already exists.",
                        kind=ErrorKind.INVALID_REQUEST,
                    )
            if "java_path" in changes:
                runtime = self.java.validate_path(changes.pop("java_path"), instance.version)
                changes["java_path_override"] = runtime.path
                changes["java_path"] = runtime.path
            with self._lock:
                for name, value in changes.items():
                    setattr(instance, name, value)
            self.store.write(instance)
            return self.get(instance_id)

    def send_command(self, instance_id: str, command: str) -> None:
        self._must_get(instance_id)
        text = command.strip()
        if not text:
            raise ServerDeckError("Command cannot be empty.", kind=ErrorKind.INVALID_REQUEST)
        if not self.supervisor.is_running(instance_id):
            raise ServerDeckError(
                f"Instance is not running: {instance_id}",
                kind=ErrorKind.ALREADY_STOPPED,
                hint="Start the server before sending commands.",
            )
        if not self.supervisor.send_line(instance_id, text):
            raise ServerDeckError(f"Could not deliver command to {instance_id}.", kind=ErrorKind.UNKNOWN)
        self._record_log(instance_id, stream="stdin", line=f"> {text}", level="info")

    # -- tunnel helpers ----------------------------------------------------

    def create_tunnel(self, instance_id: str):
        instance = self._must_get(instance_id)
        return self.tunnels.create(instance_id, instance.port)

    # -- event dispatch ----------------------------------------------------

    def _record_log(self, instance_id: str, *, stream: str, line: str, level: str) -> Event:
        event = self.events.publish(LOG, instance_id, stream=stream, line=line, level=level)
        with self._lock:
            history = self._history.get(instance_id)
            if history is not None:
                history.append(
                    LogEntry(
                        instance_id=instance_id,
                        timestamp=event.timestamp.isoformat(),
                        stream=stream,
                        line=line,
                        level=level,
                    )
                )
        return event

    def _dispatch(self) -> None:
        while not self._closing.is_set():
            event = self._inbox.get(timeout=DISPATCH_POLL_SECONDS)
            if event is None:
                continue
            try:
                self._handle(event)
            except Exception:
                logger.exception("Event dispatch failed topic=%s instance=%s", event.topic, event.instance_id)

    def _handle(self, event: Event) -> None:
        instance_id = event.instance_id
        if event.topic == LOG:
            self._record_log(
                instance_id,
                stream=str(event.payload.get("stream", "stdout")),
                line=str(event.payload.get("line", "")),
                level=str(event.payload.get("level", "info")),
            )
            line = str(event.payload.get("line", ""))
            with self._lock:
                first = instance_id not in self._ready_seen and is_ready_line(line)
                if first:
                    self._ready_seen.add(instance_id)
            if first:
                logger.info("Server ready id=%s", instance_id)
                self.events.publish(SERVER_READY, instance_id)
            return
        if event.topic == STATUS_CHANGED:
            self._on_process_status(event)
            return
        if event.topic in {TUNNEL_STATUS_CHANGED, TUNNEL_INFO_UPDATED}:
            self.events.publish(event.topic, instance_id, **event.payload)

    def _on_process_status(self, event: Event) -> None:
        instance_id = event.instance_id
        status = ProcessState(event.payload["status"])
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is not None:
                instance.status = status
                if status in {ProcessState.STOPPED, ProcessState.CRASHED}:
                    instance.last_stopped_at = utc_now()
                    self._ready_seen.discard(instance_id)
        self.events.publish(STATUS_CHANGED, instance_id, **event.payload)
        if instance is None:
            return
        if status in {ProcessState.STOPPED, ProcessState.CRASHED}:
            self._stop_tunnel(instance_id)
            try:
                self.store.write(instance)
            except OSError:
                logger.warning("Could not persist instance metadata id=%s", instance_id)
        if status == ProcessState.CRASHED:
            self._record_log(
                instance_id,
                stream="supervisor",
                line=f"Server exited unexpectedly (exit code {event.payload.get('exit_code')}).",
                level="error",
            )
            self._maybe_auto_restart(instance)

    def _maybe_auto_restart(self, instance: Instance) -> None:
        if not instance.auto_restart:
            return
        with self._lock:
            attempts = self._restart_counts.get(instance.id, 0)
            if attempts >= self.config.auto_restart_limit:
                logger.warning("Auto-restart limit reached id=%s attempts=%s", instance.id, attempts)
                return
            self._restart_counts[instance.id] = attempts + 1
        logger.info("Scheduling auto-restart id=%s attempt=%s", instance.id, attempts + 1)
        timer = threading.Timer(self._auto_restart_delay, self._auto_restart, args=(instance.id,))
        timer.daemon = True
        timer.start()

    def _auto_restart(self, instance_id: str) -> None:
        if self._closing.is_set():
            return
        try:
            with self._control.hold(instance_id):
                if self.supervisor.state(instance_id) != ProcessState.CRASHED:
                    return
                self._launch(instance_id)
        except ServerDeckError as exc:
            logger.error("Auto-restart failed id=%s error=%s", instance_id, exc.message)

    # -- startup / shutdown ------------------------------------------------

    def load_instances(self) -> list[Instance]:
        loaded: list[Instance] = []
        for instance in self.store.discover():
            with self._lock:
                if instance.id in self._instances:
                    continue
                if not instance.is_ready:
                    logger.warning("Discarding unfinished instance id=%s name=%s", instance.id, instance.name)
                    self.store.delete_root(instance.root)
                    continue
                instance.status = ProcessState.STOPPED
                self._instances[instance.id] = instance
                self._history[instance.id] = deque(maxlen=self.config.log_history_limit or None)
            loaded.append(instance)
        logger.info("Loaded %s instance(s) from %s", len(loaded), self.store.instances_dir)
        return [self._snapshot(item) for item in loaded]

    def shutdown(self) -> None:
        if self._closing.is_set():
            return
        with self._lock:
            tokens = list(self._provisioning.values())
            futures = dict(self._futures)
        for token in tokens:
            token.cancel()
        self._executor.shutdown(wait=True, cancel_futures=True)
        for instance_id, future in futures.items():
            if future.cancelled():
                logger.info("Rolling back queued provisioning id=%s", instance_id)
                self._rollback(instance_id)
        self.tunnels.stop_all()
        self.supervisor.stop_all()
        self._closing.set()
        self._dispatcher.join(timeout=5)
        self._inbox.unsubscribe()
