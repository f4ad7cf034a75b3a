"""One JVM subprocess per instance with pumped output and exit tracking."""

from __future__ import annotations

import atexit
import logging as py_logging
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from serverdeck.errors import ErrorKind, ServerDeckError
from serverdeck.events import LOG, STATUS_CHANGED, EventChannel, Subscription
from serverdeck.locking import KeyedLock
from serverdeck.process.log_parser import decode_line, parse_log_level
from serverdeck.process.models import LogStream, MemoryBounds, ProcessHandle, ProcessState

logger = py_logging.getLogger(__name__)

SHUTDOWN_LINE = "stop"
KILL_GRACE_SECONDS = 10.0
PUMP_JOIN_SECONDS = 5.0

ProcessSpawn = Callable[[list[str], Path], "subprocess.Popen[bytes]"]


def _popen_spawn(command: list[str], cwd: Path) -> subprocess.Popen[bytes]:
    return subprocess.Popen(  # nosec B603
        command,
        cwd=str(cwd),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        bufsize=0,
    )


def build_java_command(
    java_path: str | Path,
    artifact_path: str | Path | None,
    memory: MemoryBounds,
    extra_args: Sequence[str] = (),
    *,
    args_file: str | Path | None = None,
) -> list[str]:
    command = [str(java_path), f"-Xms{memory.min_mb}M", f"-Xmx{memory.max_mb}M", *extra_args]
    if args_file is not None:
        return [*command, "@user_jvm_args.txt", f"@{args_file}", "nogui"]
    if artifact_path is None:
        raise ServerDeckError("A server jar or Forge argument file is required.", kind=ErrorKind.INVALID_REQUEST)
    return [*command, "-jar", str(artifact_path), "nogui"]


@dataclass
class _Session:
    handle: ProcessHandle
    stop_requested: bool = False
    exited: threading.Event = field(default_factory=threading.Event)
    pumps: list[threading.Thread] = field(default_factory=list)


class ProcessSupervisor:
    """Launches, feeds and stops instance processes.

    Every state transition is published as ``status-changed`` on ``events``
    and every output line as ``log``. Control calls for one instance are
    serialized; different instances never wait on each other.
    """

    def __init__(
        self,
        *,
        spawn: ProcessSpawn | None = None,
        stop_timeout: float = 30.0,
        register_atexit: bool = True,
    ) -> None:
        self._spawn = spawn or _popen_spawn
        self.stop_timeout = stop_timeout
        self.events = EventChannel("process")
        self._sessions: dict[str, _Session] = {}
        self._states: dict[str, ProcessState] = {}
        self._lock = threading.Lock()
        self._control = KeyedLock()
        if register_atexit:
            atexit.register(self.stop_all)

    def subscribe(self, subscription: Subscription | None = None) -> Subscription:
        return self.events.subscribe(subscription)

    def state(self, instance_id: str) -> ProcessState:
        with self._lock:
            return self._states.get(instance_id, ProcessState.STOPPED)

    def is_running(self, instance_id: str) -> bool:
        return self.state(instance_id) == ProcessState.RUNNING

    def running_ids(self) -> list[str]:
        with self._lock:
            return sorted(key for key, value in self._states.items() if value == ProcessState.RUNNING)

    def handle(self, instance_id: str) -> ProcessHandle | None:
        with self._lock:
            session = self._sessions.get(instance_id)
        return session.handle if session is not None else None

    def _set_state(self, instance_id: str, state: ProcessState, **payload: object) -> None:
        with self._lock:
            previous = self._states.get(instance_id, ProcessState.STOPPED)
            self._states[instance_id] = state
        if previous == state and not payload:
            return
        logger.debug("process-state instance=%s %s->%s", instance_id, previous.value, state.value)
        self.events.publish(STATUS_CHANGED, instance_id, status=state.value, **payload)

    def launch(
        self,
        instance_id: str,
        java_path: str | Path,
        artifact_path: str | Path | None,
        working_dir: str | Path,
        memory: MemoryBounds,
        extra_args: Sequence[str] = (),
        *,
        args_file: str | Path | None = None,
    ) -> ProcessHandle:
        with self._control.hold(instance_id):
            if self.state(instance_id).alive:
                raise ServerDeckError(
                    f"Instance already running: {instance_id}",
                    kind=ErrorKind.ALREADY_RUNNING,
                    hint="Stop the instance before starting it again.",
                )
            command = build_java_command(java_path, artifact_path, memory, extra_args, args_file=args_file)
            self._set_state(instance_id, ProcessState.STARTING)
            try:
                process = self._spawn(command, Path(working_dir))
            except OSError as exc:
                self._set_state(instance_id, ProcessState.STOPPED)
                logger.error("Process spawn failed instance=%s java=%s error=%s", instance_id, java_path, exc)
                raise ServerDeckError(
                    f"Could not start Java process: {exc}",
                    kind=ErrorKind.PROCESS_SPAWN_FAILED,
                    hint="Check that the configured Java executable exists and is executable.",
                ) from exc

            handle = ProcessHandle(
                instance_id=instance_id,
                pid=process.pid,
                command=tuple(command),
                process=process,
            )
            session = _Session(handle=handle)
            with self._lock:
                self._sessions[instance_id] = session
            self._set_state(instance_id, ProcessState.RUNNING, pid=process.pid)
            logger.info("Process launched instance=%s pid=%s", instance_id, process.pid)

            for stream, pipe in ((LogStream.STDOUT, process.stdout), (LogStream.STDERR, process.stderr)):
                if pipe is None:
                    continue
                pump = threading.Thread(
                    target=self._pump,
                    args=(instance_id, stream, pipe),
                    name=f"serverdeck-{stream.value}-{instance_id[:8]}",
                    daemon=True,
                )
                session.pumps.append(pump)
                pump.start()
            threading.Thread(
                target=self._wait_for_exit,
                args=(instance_id, session),
                name=f"serverdeck-wait-{instance_id[:8]}",
                daemon=True,
            ).start()
            return handle

    def _pump(self, instance_id: str, stream: LogStream, pipe: IO[bytes]) -> None:
        default_level = "info" if stream == LogStream.STDOUT else "error"
        try:
            for raw in iter(pipe.readline, b""):
                line = decode_line(raw)
                if not line.strip():
                    continue
                self.events.publish(
                    LOG,
                    instance_id,
                    stream=stream.value,
                    line=line,
                    level=parse_log_level(line) or default_level,
                )
        except (OSError, ValueError):
            logger.debug("Output pipe closed instance=%s stream=%s", instance_id, stream.value)

    def _wait_for_exit(self, instance_id: str, session: _Session) -> None:
        exit_code = session.handle.process.wait()
        for pump in session.pumps:
            pump.join(timeout=PUMP_JOIN_SECONDS)
        session.handle.exit_code = exit_code
        with self._lock:
            if self._sessions.get(instance_id) is session:
                del self._sessions[instance_id]
        clean = session.stop_requested or exit_code == 0
        final = ProcessState.STOPPED if clean else ProcessState.CRASHED
        if final == ProcessState.CRASHED:
            logger.warning("Process exited unexpectedly instance=%s exit_code=%s", instance_id, exit_code)
        else:
            logger.info("Process stopped instance=%s exit_code=%s", instance_id, exit_code)
        self._set_state(instance_id, final, exit_code=exit_code)
        session.exited.set()

    def send_line(self, instance_id: str, text: str) -> bool:
        with self._lock:
            session = self._sessions.get(instance_id)
            state = self._states.get(instance_id, ProcessState.STOPPED)
        if session is None or state != ProcessState.RUNNING:
            return False
        if text.strip().lower() == SHUTDOWN_LINE:
            session.stop_requested = True
        return self._write(session, text)

    @staticmethod
    def _write(session: _Session, text: str) -> bool:
        stdin = session.handle.process.stdin
        if stdin is None:
            return False
        payload = text if text.endswith("\n") else f"{text}\n"
        try:
            stdin.write(payload.encode("utf-8"))
            stdin.flush()
        except (OSError, ValueError):
            return False
        return True

    def terminate(
        self,
        instance_id: str,
        *,
        graceful: bool = True,
        timeout: float | None = None,
    ) -> ProcessState:
        with self._control.hold(instance_id):
            with self._lock:
                session = self._sessions.get(instance_id)
            if session is None or not self.state(instance_id).alive:
                raise ServerDeckError(
                    f"Instance is not running: {instance_id}",
                    kind=ErrorKind.ALREADY_STOPPED,
                )
            session.stop_requested = True
            self._set_state(instance_id, ProcessState.STOPPING)
            wait_seconds = self.stop_timeout if timeout is None else timeout
            if graceful and self._write(session, SHUTDOWN_LINE):
                if not session.exited.wait(wait_seconds):
                    logger.warning(
                        "Graceful stop timed out; killing instance=%s timeout=%s", instance_id, wait_seconds
                    )
                    self._kill(session)
            else:
                self._kill(session)
            if not session.exited.wait(KILL_GRACE_SECONDS):
                logger.error("Process did not exit after kill instance=%s pid=%s", instance_id, session.handle.pid)
            return self.state(instance_id)

    @staticmethod
    def _kill(session: _Session) -> None:
        try:
            session.handle.process.kill()
        except OSError:
            logger.debug("Kill failed; process already gone pid=%s", session.handle.pid)

    def forget(self, instance_id: str) -> None:
        with self._control.hold(instance_id):
            if self.state(instance_id).alive:
                raise ServerDeckError(
                    f"Instance still running: {instance_id}",
                    kind=ErrorKind.ALREADY_RUNNING,
                    hint="Stop the instance first.",
                )
            with self._lock:
                self._states.pop(instance_id, None)
        self._control.discard(instance_id)

    def stop_all(self) -> None:
        with self._lock:
            ids = list(self._sessions)
        for instance_id in ids:
            try:
                self.terminate(instance_id, graceful=True)
            except ServerDeckError:
                continue
